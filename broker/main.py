from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from broker.errors import ApiError
from broker.routes import callbacks, chat, health, operations
from broker.routes._deps import (
    api_error_response,
    client_id_from_request,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from broker.security import redact_sensitive, verify_api_key
from broker.services import BrokerServices, build_services
from broker.settings import BrokerSettings, validate_settings

logger = logging.getLogger(__name__)

RATE_LIMIT_EXEMPT_PATHS = frozenset({"/health", "/healthz"})


def _validation_messages(exc: RequestValidationError) -> list[str]:
    messages: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        msg = str(err.get("msg", "invalid value"))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def create_app(
    settings: BrokerSettings | None = None,
    services: BrokerServices | None = None,
) -> FastAPI:
    settings = settings or (services.settings if services is not None else BrokerSettings.from_env())
    validate_settings(settings)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services.start()
        try:
            yield
        finally:
            services.stop()

    app = FastAPI(title="Job Broker API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        started = time.perf_counter()
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", "").strip() or f"req_{uuid.uuid4().hex[:12]}"
        path = request.url.path
        logger.info("Request started: %s %s (%s)", request.method, path, request_id_from_request(request))
        logger.debug("Request headers: %s", redact_sensitive(dict(request.headers)))

        rate_headers: dict[str, str] = {}
        try:
            if path not in RATE_LIMIT_EXEMPT_PATHS:
                decision = services.rate_limiter.hit(client_id_from_request(request))
                rate_headers = decision.headers()
                if not decision.allowed:
                    raise ApiError(
                        code="RATE_LIMITED",
                        message="Rate limit exceeded, please try again later",
                        error_class="transient",
                        retryable=True,
                        http_status=429,
                    )
            if services.api_key.applies_to(path):
                verify_api_key(presented=request.headers.get("x-api-key"), cfg=services.api_key)
            response = await call_next(request)
        except ApiError as exc:
            if exc.code == "AUTH_UNAUTHORIZED":
                logger.warning("Authentication failed for %s %s", request.method, path)
            response = api_error_response(request, exc)

        for name, value in rate_headers.items():
            response.headers[name] = value
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        duration_ms = (time.perf_counter() - started) * 1000
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            level,
            "Request completed: %s %s %d (%.1f ms)",
            request.method,
            path,
            response.status_code,
            duration_ms,
        )
        return response

    # Outermost middleware: preflights never reach rate limiting or auth.
    allow_origins = list(settings.cors_allow_origins)
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials="*" not in allow_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error("Request failed with %s: %s", exc.code, exc.message)
        return api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        messages = _validation_messages(exc)
        logger.warning("Validation error on %s: %s", request.url.path, "; ".join(messages))
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"errors": messages},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message=f"The requested resource at {request.url.path} was not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    app.include_router(health.router)
    app.include_router(operations.router)
    app.include_router(callbacks.router)
    app.include_router(chat.router)
    return app
