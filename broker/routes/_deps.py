from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from broker.errors import ApiError
from broker.schemas import error_envelope
from broker.services import BrokerServices


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def services_from_request(request: Request) -> BrokerServices:
    return request.app.state.services


def client_id_from_request(request: Request) -> str:
    api_key = request.headers.get("x-api-key", "").strip()
    if api_key:
        return f"key:{api_key}"
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def api_error_response(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
        details=exc.details,
    )


def require_operation_uuid(operation_id: str) -> str:
    candidate = operation_id.strip()
    try:
        normalized = uuid.UUID(candidate)
    except ValueError:
        raise ApiError(
            code="REQ_VALIDATION_FAILED",
            message="Operation ID must be a valid UUID",
            error_class="validation",
            retryable=False,
            http_status=400,
        ) from None
    return str(normalized)


def operation_not_found(operation_id: str) -> ApiError:
    return ApiError(
        code="OPERATION_NOT_FOUND",
        message=f"No operation found with ID: {operation_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )
