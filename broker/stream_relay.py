"""
Relay of a streaming model-server chat response to a client as framed events.

The relay is a pull-based state machine::

    STARTING -> STREAMING -> ENDED
        \\           \\
         +-----------+--> ABORTED

``frames()`` yields plain dict frames in upstream order; the HTTP layer encodes
each one with ``encode_frame`` as it is produced, so every content delta reaches
the client as soon as its upstream line has been read.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from enum import Enum
from http.client import HTTPException
from typing import Any

from broker.errors import UpstreamUnreachable
from broker.model_server import ModelServerClient

logger = logging.getLogger(__name__)

COUNTER_KEYS = ("total_duration", "eval_count")


class RelayState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    ENDED = "ended"
    ABORTED = "aborted"


def encode_frame(frame: Mapping[str, Any]) -> str:
    return f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"


def parse_chunk(line: bytes | str) -> dict[str, Any] | None:
    """Parse one NDJSON line; blank or malformed lines give ``None``."""
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        logger.warning("Dropping malformed stream chunk: %.200s", text)
        return None
    if not isinstance(data, dict):
        logger.warning("Dropping non-object stream chunk: %.200s", text)
        return None
    return data


def chunk_content(chunk: Mapping[str, Any]) -> str:
    message = chunk.get("message")
    if isinstance(message, Mapping):
        content = message.get("content")
        if isinstance(content, str):
            return content
    return ""


class StreamRelay:
    def __init__(
        self,
        *,
        client: ModelServerClient,
        messages: Iterable[Mapping[str, Any]],
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.client = client
        self.messages = [dict(m) for m in messages]
        self.model = model or client.model
        self.options = dict(options or {})
        self._clock = clock or time.time
        self._state = RelayState.STARTING
        self._upstream: Any = None
        self._cancelled = threading.Event()
        self._parts: list[str] = []
        created_ms = int(self._clock() * 1000)
        self.message_id = f"msg_{created_ms}"
        self.created_at = created_ms

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def full_content(self) -> str:
        return "".join(self._parts)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def open(self) -> None:
        """Open the upstream stream; on failure the relay is aborted and the error re-raised."""
        if self._upstream is not None:
            return
        try:
            self._upstream = self.client.open_chat_stream(
                messages=self.messages,
                model=self.model,
                options=self.options,
            )
        except UpstreamUnreachable:
            self._state = RelayState.ABORTED
            raise

    def cancel(self) -> None:
        """Stop forwarding and release the upstream response (client went away)."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        if self._state in (RelayState.STARTING, RelayState.STREAMING):
            logger.debug("Client disconnected from stream %s", self.message_id)
            self._state = RelayState.ABORTED
        self._close_upstream()

    def _close_upstream(self) -> None:
        upstream, self._upstream = self._upstream, None
        if upstream is None:
            return
        close = getattr(upstream, "close", None)
        if close is None:
            return
        try:
            close()
        except (OSError, HTTPException, ValueError):
            logger.debug("Error while closing upstream stream %s", self.message_id, exc_info=True)

    def start_frame(self) -> dict[str, Any]:
        return {
            "type": "start",
            "id": self.message_id,
            "model": self.model,
            "created_at": self.created_at,
        }

    def _end_frame(self, done_chunk: Mapping[str, Any] | None = None) -> dict[str, Any]:
        frame: dict[str, Any] = {"type": "end", "done": True, "full_content": self.full_content}
        if done_chunk is not None:
            for key in COUNTER_KEYS:
                if done_chunk.get(key) is not None:
                    frame[key] = done_chunk[key]
        return frame

    @staticmethod
    def _error_frame(message: str) -> dict[str, Any]:
        return {"type": "error", "error": message, "done": True}

    def frames(self) -> Iterator[dict[str, Any]]:
        if self._cancelled.is_set():
            return
        yield self.start_frame()
        if self._upstream is None:
            try:
                self.open()
            except UpstreamUnreachable as exc:
                logger.error("Failed to open chat stream: %s (%s)", exc.message, exc.cause)
                yield self._error_frame(exc.message)
                return

        self._state = RelayState.STREAMING
        try:
            for line in self._upstream:
                if self._cancelled.is_set():
                    return
                chunk = parse_chunk(line)
                if chunk is None:
                    continue
                content = chunk_content(chunk)
                if content:
                    self._parts.append(content)
                    yield {"type": "content_chunk", "content": content, "done": False}
                if chunk.get("done"):
                    self._state = RelayState.ENDED
                    yield self._end_frame(chunk)
                    return
            if self._cancelled.is_set():
                return
            logger.debug("Upstream stream %s ended without a done chunk", self.message_id)
            self._state = RelayState.ENDED
            yield self._end_frame()
        except (OSError, HTTPException, ValueError) as exc:
            if self._cancelled.is_set():
                return
            logger.error("Stream error on %s: %s", self.message_id, exc)
            self._state = RelayState.ABORTED
            yield self._error_frame("Stream error occurred")
        finally:
            if self._state in (RelayState.STARTING, RelayState.STREAMING):
                # Closed by the consumer before a terminal frame.
                self._state = RelayState.ABORTED
            self._close_upstream()
