"""Server-Sent Events framing for streamed chat completions."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

from ..domain import ChatRequest, ChatResponse
from ..exceptions import KombatError
from ..services import ICompletionGateway
from .errors import error_payload

LOGGER = logging.getLogger(__name__)


def format_event(event_type: str, payload: Dict[str, Any]) -> str:
    """Frame one SSE event; the ``data`` line carries ``{"type", "payload"}`` JSON."""
    body = json.dumps({"type": event_type, "payload": payload}, ensure_ascii=False)
    return f"event: {event_type}\ndata: {body}\n\n"


def response_payload(response: ChatResponse) -> Dict[str, Any]:
    usage = None
    if response.usage is not None:
        usage = {
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        }
    return {
        "id": response.id,
        "model": response.model_id,
        "text": response.text,
        "finish_reason": response.finish_reason,
        "usage": usage,
    }


async def completion_events(
    gateway: ICompletionGateway,
    request: ChatRequest,
    *,
    keepalive_s: float = 15.0,
) -> AsyncIterator[str]:
    """Yield ``chunk`` events as text arrives, then one ``done`` or ``error`` event.

    A ``ping`` event is sent whenever nothing arrived for ``keepalive_s``.
    """
    mailbox: asyncio.Queue[Optional[str]] = asyncio.Queue()

    async def produce() -> ChatResponse:
        try:
            return await gateway.complete(request, mailbox.put_nowait, phase="chat")
        finally:
            mailbox.put_nowait(None)

    task = asyncio.create_task(produce())
    try:
        while True:
            try:
                delta = await asyncio.wait_for(mailbox.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield format_event("ping", {"ts": time_now_ms()})
                continue
            if delta is None:
                break
            yield format_event("chunk", {"delta": delta})

        try:
            response = await task
        except KombatError as exc:
            LOGGER.warning("Streamed completion for %s failed: %s", request.model_id, exc)
            yield format_event("error", error_payload(exc))
            return
        yield format_event("done", response_payload(response))
    finally:
        if not task.done():
            task.cancel()


def time_now_ms() -> int:
    """Return an integer millisecond timestamp."""
    return int(time.time() * 1000)


__all__ = ["completion_events", "format_event", "response_payload", "time_now_ms"]
