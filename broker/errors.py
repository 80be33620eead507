from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class DuplicateOperation(ApiError):
    def __init__(self, operation_id: str) -> None:
        super().__init__(
            code="OPERATION_DUPLICATE",
            message=f"operation already exists: {operation_id}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
        self.operation_id = operation_id


class UpstreamUnreachable(ApiError):
    """An outbound call to the workflow engine or model server did not complete."""

    def __init__(self, message: str, *, upstream: str, cause: str = "") -> None:
        details: dict[str, Any] = {"upstream": upstream}
        if cause:
            details["cause"] = cause
        super().__init__(
            code="UPSTREAM_UNREACHABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=502,
            details=details,
        )
        self.upstream = upstream
        self.cause = cause
