from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import iterate_in_threadpool

from broker.routes._deps import services_from_request
from broker.schemas import ChatRequest
from broker.stream_relay import StreamRelay, encode_frame

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

FALLBACK_REPLY = "I apologize, but I couldn't generate a response."


def _sse_headers() -> dict[str, str]:
    return {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def _reply_text(response: dict) -> str:
    message = response.get("message")
    if isinstance(message, dict) and message.get("content"):
        return str(message["content"])
    if response.get("content"):
        return str(response["content"])
    return FALLBACK_REPLY


@router.post("")
def send_chat_message(payload: ChatRequest, request: Request):
    client = services_from_request(request).model_client
    logger.info(
        "Processing chat message (model=%s, messages=%d)",
        payload.model or "default",
        len(payload.messages),
    )
    response = client.chat(messages=payload.message_dicts(), model=payload.model, options=payload.options)
    now_ms = int(time.time() * 1000)
    # Message shape follows the Anthropic SDK so existing chat clients can consume it as is.
    return {
        "id": f"msg_{now_ms}",
        "model": payload.model or client.model,
        "created_at": now_ms,
        "content": [{"type": "text", "text": _reply_text(response)}],
        "role": "assistant",
    }


async def _event_stream(relay: StreamRelay) -> AsyncIterator[str]:
    try:
        async for frame in iterate_in_threadpool(relay.frames()):
            yield encode_frame(frame)
    finally:
        relay.cancel()


@router.post("/stream")
def stream_chat_message(payload: ChatRequest, request: Request):
    services = services_from_request(request)
    logger.info(
        "Processing streaming chat message (model=%s, messages=%d)",
        payload.model or "default",
        len(payload.messages),
    )
    relay = StreamRelay(
        client=services.model_client,
        messages=payload.message_dicts(),
        model=payload.model,
        options=payload.options,
    )
    # Nothing has been sent yet, so an open failure is answered as a JSON error.
    relay.open()
    return StreamingResponse(
        _event_stream(relay),
        media_type="text/event-stream",
        headers=_sse_headers(),
    )
