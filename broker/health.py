from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from http.client import HTTPException
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit

from broker.errors import UpstreamUnreachable
from broker.model_server import ModelServerClient
from broker.operation_store import utcnow

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_S = 5.0
CRITICAL_SERVICES = ("workflow_engine", "model_server")


def _engine_root(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _probe_url(url: str, *, timeout_s: float) -> None:
    """Raise unless the host answers with a non-5xx status."""
    try:
        with request.urlopen(request.Request(url, method="GET"), timeout=timeout_s):
            return
    except HTTPError as exc:
        if exc.code < 500:
            return
        raise


class HealthChecker:
    def __init__(
        self,
        *,
        engine_url: str,
        webhooks: Mapping[str, str],
        model_client: ModelServerClient,
        timeout_s: float = PROBE_TIMEOUT_S,
        probe: Callable[..., None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine_url = engine_url
        self.webhooks = dict(webhooks)
        self.model_client = model_client
        self.timeout_s = timeout_s
        self._probe = probe or _probe_url
        self._clock = clock or utcnow
        self._started = time.monotonic()

    def check_engine(self) -> dict[str, Any]:
        service: dict[str, Any] = {"url": self.engine_url, "webhooks": dict(self.webhooks)}
        try:
            self._probe(_engine_root(self.engine_url), timeout_s=self.timeout_s)
        except (TimeoutError, URLError, HTTPException, OSError, ValueError) as exc:
            logger.warning("Workflow engine health check failed: %s", exc)
            service["status"] = "error"
            service["error"] = str(exc)
            return service
        service["status"] = "ok"
        return service

    def check_model_server(self) -> dict[str, Any]:
        client = self.model_client
        service: dict[str, Any] = {"url": client.base_url}
        try:
            service["version"] = client.version(timeout_s=self.timeout_s)
        except UpstreamUnreachable as exc:
            logger.warning("Model server health check failed: %s (%s)", exc.message, exc.cause)
            service["status"] = "error"
            service["error"] = exc.cause or exc.message
            service["model"] = {"name": client.model, "status": "unknown"}
            return service

        service["status"] = "ok"
        try:
            found = client.is_model_available(timeout_s=self.timeout_s)
        except UpstreamUnreachable as exc:
            service["status"] = "degraded"
            service["model"] = {"name": client.model, "status": "unknown", "error": exc.cause or exc.message}
            return service
        service["model"] = {"name": client.model, "status": "available" if found else "not_found"}
        if not found:
            service["status"] = "degraded"
        return service

    def check(self) -> dict[str, Any]:
        services: dict[str, Any] = {
            "api": {"status": "ok"},
            "workflow_engine": self.check_engine(),
            "model_server": self.check_model_server(),
        }
        failed = [name for name in CRITICAL_SERVICES if services[name]["status"] == "error"]
        degraded = any(services[name]["status"] != "ok" for name in CRITICAL_SERVICES)
        if len(failed) == len(CRITICAL_SERVICES):
            status = "down"
            logger.error("Health check: system is DOWN, all critical services unavailable")
        elif degraded:
            status = "degraded"
            logger.warning("Health check: system is DEGRADED, some services unavailable")
        else:
            status = "ok"
        return {
            "status": status,
            "uptime": int(time.monotonic() - self._started),
            "timestamp": self._clock().isoformat(),
            "services": services,
        }
