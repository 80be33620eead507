"""
Hand-off of jobs to the external workflow engine.

Each job is posted to the kind's webhook together with the callback URL the
engine must call when it is done. The request path uses
``dispatch_in_background``: the post runs on a small thread pool, the caller
answers its client immediately, and a failed post is only visible in the
logs. ``dispatch`` is the synchronous form and raises ``UpstreamUnreachable``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from http.client import HTTPException
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError

from broker.errors import UpstreamUnreachable

logger = logging.getLogger(__name__)

Transport = Callable[..., object]


def _post_json(*, endpoint: str, payload: dict[str, Any], timeout_s: float) -> object:
    body = json.dumps(payload, ensure_ascii=True).encode("utf-8")
    req = request.Request(
        endpoint,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    with request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read().decode("utf-8", errors="replace")
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        # Any 2xx body acknowledges the dispatch.
        return raw


class WorkflowDispatcher:
    def __init__(
        self,
        *,
        engine_base_url: str,
        webhooks: Mapping[str, str],
        public_base_url: str,
        timeout_s: float = 30.0,
        max_workers: int = 4,
        transport: Transport | None = None,
    ) -> None:
        self.engine_base_url = engine_base_url if engine_base_url.endswith("/") else f"{engine_base_url}/"
        self.webhooks = dict(webhooks)
        self.public_base_url = public_base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport or _post_json
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="dispatch")
        logger.info("Initialized workflow dispatcher with URL: %s", self.engine_base_url)

    def webhook_url(self, kind: str) -> str:
        webhook = self.webhooks.get(kind)
        if not webhook:
            raise ValueError(f"no webhook configured for kind: {kind}")
        return f"{self.engine_base_url}{webhook.lstrip('/')}"

    def build_callback_url(self, operation_id: str, kind: str) -> str:
        return f"{self.public_base_url}/api/callback/{kind}/{operation_id}"

    def build_payload(self, *, operation_id: str, kind: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "operationId": operation_id,
            **dict(fields),
            "callbackUrl": self.build_callback_url(operation_id, kind),
        }

    def dispatch(self, *, operation_id: str, kind: str, fields: Mapping[str, Any]) -> object:
        endpoint = self.webhook_url(kind)
        payload = self.build_payload(operation_id=operation_id, kind=kind, fields=fields)
        logger.info("Triggering %s workflow at %s for operation %s", kind, endpoint, operation_id)
        try:
            response = self._transport(endpoint=endpoint, payload=payload, timeout_s=self.timeout_s)
        except HTTPError as exc:
            raise UpstreamUnreachable(
                f"Failed to trigger {kind} workflow",
                upstream="workflow_engine",
                cause=f"HTTP {exc.code}",
            ) from exc
        except (TimeoutError, URLError, HTTPException, OSError, ValueError) as exc:
            raise UpstreamUnreachable(
                f"Failed to trigger {kind} workflow",
                upstream="workflow_engine",
                cause=str(exc),
            ) from exc
        logger.debug("%s workflow triggered for operation %s", kind, operation_id)
        return response

    def dispatch_in_background(
        self,
        *,
        operation_id: str,
        kind: str,
        fields: Mapping[str, Any],
    ) -> Future[object | None]:
        return self._executor.submit(
            self._dispatch_logged,
            operation_id=operation_id,
            kind=kind,
            fields=dict(fields),
        )

    def _dispatch_logged(self, *, operation_id: str, kind: str, fields: Mapping[str, Any]) -> object | None:
        try:
            return self.dispatch(operation_id=operation_id, kind=kind, fields=fields)
        except UpstreamUnreachable as exc:
            logger.error(
                "Dispatch of %s operation %s failed: %s (%s)",
                kind,
                operation_id,
                exc.message,
                exc.cause,
            )
            return None
        except Exception:
            logger.exception("Dispatch of %s operation %s failed unexpectedly", kind, operation_id)
            return None

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
