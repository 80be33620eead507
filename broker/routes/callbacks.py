from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Request

from broker.callbacks import CallbackPayload
from broker.operation_store import utcnow
from broker.routes._deps import (
    operation_not_found,
    require_operation_uuid,
    services_from_request,
    trace_id_from_request,
)
from broker.schemas import CallbackRequest, success_envelope

router = APIRouter(prefix="/api/callback", tags=["callbacks"])


@router.post("/{kind}/{operation_id}")
def receive_callback(
    kind: Literal["research", "implement"],
    operation_id: str,
    payload: CallbackRequest,
    request: Request,
):
    operation_id = require_operation_uuid(operation_id)
    outcome = services_from_request(request).reconciler.reconcile(
        expected_kind=kind,
        payload=CallbackPayload(
            operation_id=operation_id,
            success=payload.success,
            result=payload.result,
            error=payload.error,
        ),
    )
    if not outcome.processed:
        raise operation_not_found(operation_id)
    data = {
        "message": "Callback processed successfully",
        "operation_id": operation_id,
        "status": outcome.status,
        "timestamp": utcnow().isoformat(),
    }
    return success_envelope(data, trace_id_from_request(request), message=data["message"])
