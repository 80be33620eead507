from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from http.client import HTTPException
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError

from broker.errors import UpstreamUnreachable

logger = logging.getLogger(__name__)

DEFAULT_CHAT_OPTIONS: dict[str, Any] = {
    "temperature": 0.2,
    "num_predict": 2048,
    "top_p": 0.9,
    "stop": ["</answer>"],
}

Opener = Callable[..., Any]


def merge_options(overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    options = {key: (list(value) if isinstance(value, list) else value) for key, value in DEFAULT_CHAT_OPTIONS.items()}
    if overrides:
        options.update(overrides)
    return options


def _default_opener(req: request.Request, *, timeout: float) -> Any:
    return request.urlopen(req, timeout=timeout)


class ModelServerClient:
    """Thin client for the model server's chat, version and tags endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_s: float = 120.0,
        opener: Opener | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = timeout_s
        self._opener = opener or _default_opener
        logger.info("Initialized model server client with URL: %s, model: %s", self.base_url, self.model)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _open(self, *, path: str, payload: dict[str, Any] | None = None, timeout_s: float | None = None) -> Any:
        try:
            if payload is None:
                req = request.Request(self._url(path), method="GET")
            else:
                req = request.Request(
                    self._url(path),
                    data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
                    method="POST",
                    headers={"Content-Type": "application/json"},
                )
            return self._opener(req, timeout=timeout_s or self.timeout_s)
        except HTTPError as exc:
            raise UpstreamUnreachable(
                f"Model server request to /{path.lstrip('/')} failed",
                upstream="model_server",
                cause=f"HTTP {exc.code}",
            ) from exc
        except (TimeoutError, URLError, HTTPException, OSError, ValueError) as exc:
            raise UpstreamUnreachable(
                f"Model server request to /{path.lstrip('/')} failed",
                upstream="model_server",
                cause=str(exc),
            ) from exc

    def _read_json(self, *, path: str, payload: dict[str, Any] | None = None, timeout_s: float | None = None) -> dict[str, Any]:
        resp = self._open(path=path, payload=payload, timeout_s=timeout_s)
        try:
            with resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except (TimeoutError, HTTPException, OSError) as exc:
            raise UpstreamUnreachable(
                f"Model server response from /{path.lstrip('/')} was interrupted",
                upstream="model_server",
                cause=str(exc),
            ) from exc
        try:
            data = json.loads(raw) if raw.strip() else {}
        except ValueError as exc:
            raise UpstreamUnreachable(
                f"Model server returned invalid JSON from /{path.lstrip('/')}",
                upstream="model_server",
                cause=raw[:200],
            ) from exc
        return data if isinstance(data, dict) else {}

    def chat_payload(
        self,
        *,
        messages: Iterable[Mapping[str, Any]],
        stream: bool,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "model": model or self.model,
            "messages": [dict(m) for m in messages],
            "stream": stream,
            "options": merge_options(options),
        }

    def chat(
        self,
        *,
        messages: Iterable[Mapping[str, Any]],
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = self.chat_payload(messages=messages, stream=False, model=model, options=options)
        logger.debug("Sending chat request to model server (model=%s)", payload["model"])
        return self._read_json(path="chat", payload=payload)

    def open_chat_stream(
        self,
        *,
        messages: Iterable[Mapping[str, Any]],
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Any:
        """Open a streaming chat request.

        The returned response is iterable line by line (newline-delimited JSON)
        and must be closed by the caller.
        """
        payload = self.chat_payload(messages=messages, stream=True, model=model, options=options)
        logger.debug("Opening chat stream to model server (model=%s)", payload["model"])
        return self._open(path="chat", payload=payload)

    def version(self, *, timeout_s: float | None = None) -> str:
        data = self._read_json(path="version", timeout_s=timeout_s)
        return str(data.get("version", "unknown"))

    def list_models(self, *, timeout_s: float | None = None) -> list[str]:
        data = self._read_json(path="tags", timeout_s=timeout_s)
        models = data.get("models") or []
        names: list[str] = []
        for item in models:
            if isinstance(item, Mapping) and item.get("name"):
                names.append(str(item["name"]))
        return names

    def is_model_available(self, *, timeout_s: float | None = None) -> bool:
        # The tags endpoint reports names with a tag suffix, e.g. "model:latest".
        return any(self.model in name for name in self.list_models(timeout_s=timeout_s))
