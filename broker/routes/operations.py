from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Request

from broker.operation_store import STATUS_IN_PROGRESS, utcnow
from broker.routes._deps import (
    operation_not_found,
    require_operation_uuid,
    services_from_request,
    trace_id_from_request,
)
from broker.schemas import ImplementRequest, ResearchRequest, success_envelope
from broker.services import BrokerServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["operations"])


def _start_operation(
    services: BrokerServices,
    *,
    kind: str,
    payload: dict[str, Any],
    job_fields: dict[str, Any],
) -> dict[str, Any]:
    operation_id = str(uuid.uuid4())
    services.store.create(operation_id, kind, payload, status=STATUS_IN_PROGRESS)
    # Acknowledge first; dispatch failures only show up in the logs.
    services.dispatcher.dispatch_in_background(operation_id=operation_id, kind=kind, fields=job_fields)
    return {
        "operation_id": operation_id,
        "status": STATUS_IN_PROGRESS,
        "timestamp": utcnow().isoformat(),
    }


@router.post("/research", status_code=202)
def start_research(payload: ResearchRequest, request: Request):
    logger.info(
        'Initiating research for "%s" in "%s" industry',
        payload.process_type,
        payload.industry,
    )
    fields = payload.job_fields()
    data = _start_operation(
        services_from_request(request),
        kind="research",
        payload=fields,
        job_fields=fields,
    )
    data["message"] = "Research operation started"
    return success_envelope(data, trace_id_from_request(request), message=data["message"])


@router.post("/implement", status_code=202)
def start_implementation(payload: ImplementRequest, request: Request):
    summary = payload.summary()
    logger.info(
        'Initiating implementation for process "%s" (%d milestones)',
        payload.process.name,
        summary["processSummary"]["milestoneCount"],
    )
    data = _start_operation(
        services_from_request(request),
        kind="implement",
        payload=summary,
        job_fields=payload.job_fields(),
    )
    data["message"] = "Implementation operation started"
    return success_envelope(data, trace_id_from_request(request), message=data["message"])


@router.get("/status/{operation_id}")
def get_operation_status(operation_id: str, request: Request):
    operation_id = require_operation_uuid(operation_id)
    operation = services_from_request(request).store.get(operation_id)
    if operation is None:
        raise operation_not_found(operation_id)
    return success_envelope(operation.to_status_document(), trace_id_from_request(request))
