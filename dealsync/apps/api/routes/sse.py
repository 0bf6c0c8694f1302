from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator

from fastapi import Request
from fastapi.responses import StreamingResponse


logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
    # Stop nginx from buffering the stream.
    "X-Accel-Buffering": "no",
}

# Keep detached workflows referenced until they finish.
_background_tasks: set[asyncio.Task] = set()


def wrap_payload(payload_type: str, request_id: str, session_id: str | None, data: dict) -> dict:
    # Always include request/session identifiers for traceability across streamed events.
    return {
        "type": payload_type,
        "request_id": request_id,
        "session_id": session_id,
        "data": data,
    }


def sse_message(payload: dict) -> str:
    # SSE framing invariants: event name must be "message" and data must be a compact JSON line.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"event: message\ndata: {data}\n\n"


def detached_stream(http_request: Request, producer: AsyncIterator[dict[str, Any]]) -> StreamingResponse:
    """Run ``producer`` to completion in the background and relay its frames.

    A client disconnect only stops the relay; the workflow keeps running.
    """
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def pump() -> None:
        try:
            async for payload in producer:
                queue.put_nowait(payload)
        except Exception:  # noqa: BLE001 - producers emit their own error frames
            logger.exception("sse_producer_failed path=%s", http_request.url.path)
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(pump())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    async def event_stream() -> AsyncGenerator[str, None]:
        while True:
            if await http_request.is_disconnected():
                logger.info("sse_client_disconnected path=%s", http_request.url.path)
                return
            try:
                item = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            if item is None:
                return
            yield sse_message(item)

    return StreamingResponse(event_stream(), headers=SSE_HEADERS, media_type="text/event-stream")
