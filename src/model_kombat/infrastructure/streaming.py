"""Incremental decoder for server-sent chat completion streams."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, Callable, Dict, List, Optional, cast

import httpx

from ..domain import ChatResponse, Usage
from ..exceptions import StreamError

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_TOKEN = "[DONE]"


class StreamingDecoder:
    """Accumulate ``data:`` events into a complete chat response.

    Chunks may split lines (and UTF-8 sequences) anywhere; partial lines are
    buffered until their newline arrives. Unparsable events are logged and
    skipped.
    """

    def __init__(
        self,
        on_chunk: Optional[Callable[[str], None]] = None,
        *,
        model_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._on_chunk = on_chunk
        self._model_id = model_id
        self._logger = logger or LOGGER
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._parts: List[str] = []
        self._done = False
        self._events = 0
        self._skipped = 0
        self._id: Optional[str] = None
        self._model: Optional[str] = None
        self._finish_reason: Optional[str] = None
        self._usage: Optional[Dict[str, Any]] = None
        self._role = "assistant"

    @property
    def done(self) -> bool:
        return self._done

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def skipped_events(self) -> int:
        return self._skipped

    def feed(self, chunk: bytes) -> None:
        """Consume one raw chunk of the event stream."""
        if self._done:
            return
        self._pending += self._decoder.decode(chunk)
        while not self._done:
            newline = self._pending.find("\n")
            if newline == -1:
                break
            line = self._pending[:newline]
            self._pending = self._pending[newline + 1 :]
            self._handle_line(line.strip())

    def _handle_line(self, line: str) -> None:
        if not line or line.startswith(":"):
            return
        if not line.startswith(DATA_PREFIX):
            return
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE_TOKEN:
            self._done = True
            return

        try:
            event: Any = json.loads(data)
        except json.JSONDecodeError as exc:
            self._skipped += 1
            self._logger.warning("Skipping malformed stream event: %s (%s)", data[:200], exc)
            return
        if not isinstance(event, dict):
            self._skipped += 1
            self._logger.warning("Skipping non-object stream event: %s", data[:200])
            return
        self._handle_event(cast(Dict[str, Any], event))

    def _handle_event(self, event: Dict[str, Any]) -> None:
        self._events += 1
        error = event.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise StreamError(
                f"Upstream reported an error mid-stream: {message}",
                model_id=self._model_id,
                phase="stream",
                upstream_message=str(message),
            )

        if isinstance(event.get("id"), str):
            self._id = event["id"]
        if isinstance(event.get("model"), str):
            self._model = event["model"]
        if isinstance(event.get("usage"), dict):
            self._usage = cast(Dict[str, Any], event["usage"])

        choices = event.get("choices")
        if not isinstance(choices, list) or not choices:
            return
        choice = choices[0]
        if not isinstance(choice, dict):
            return
        choice_map = cast(Dict[str, Any], choice)
        if isinstance(choice_map.get("finish_reason"), str):
            self._finish_reason = choice_map["finish_reason"]

        delta = choice_map.get("delta")
        if not isinstance(delta, dict):
            return
        delta_map = cast(Dict[str, Any], delta)
        if isinstance(delta_map.get("role"), str):
            self._role = delta_map["role"]
        content = delta_map.get("content")
        if isinstance(content, str) and content:
            self._parts.append(content)
            if self._on_chunk is not None:
                self._on_chunk(content)

    def build_payload(self) -> Dict[str, Any]:
        """Return the accumulated stream in non-streaming response shape."""
        payload: Dict[str, Any] = {
            "id": self._id or "",
            "model": self._model or self._model_id or "",
            "choices": [
                {
                    "index": 0,
                    "message": {"role": self._role, "content": self.text},
                    "finish_reason": self._finish_reason,
                }
            ],
        }
        if self._usage is not None:
            payload["usage"] = self._usage
        return payload

    def finish(self) -> ChatResponse:
        """Return the reconstructed response; the terminator must have arrived."""
        if not self._done:
            raise StreamError(
                "Stream ended before the [DONE] terminator",
                model_id=self._model_id,
                phase="stream",
            )
        if self._events == 0:
            raise StreamError("Stream ended without any message", model_id=self._model_id, phase="stream")

        usage: Optional[Usage] = None
        if self._usage is not None:
            usage = Usage(
                prompt_tokens=int(self._usage.get("prompt_tokens") or 0),
                completion_tokens=int(self._usage.get("completion_tokens") or 0),
            )
        return ChatResponse(
            id=self._id or "",
            model_id=self._model or self._model_id or "",
            text=self.text,
            finish_reason=self._finish_reason,
            usage=usage,
            raw_payload=self.build_payload(),
        )

    async def decode(self, chunks: AsyncIterable[bytes]) -> ChatResponse:
        """Drain an async byte iterator and return the reconstructed response."""
        try:
            async for chunk in chunks:
                self.feed(chunk)
                if self._done:
                    break
        except (httpx.HTTPError, OSError) as exc:
            raise StreamError(
                f"Connection failed mid-stream: {exc}",
                model_id=self._model_id,
                phase="stream",
            ) from exc

        if not self._done and self._pending.strip():
            # final line without a trailing newline
            self._handle_line(self._pending.strip())
            self._pending = ""
        return self.finish()


__all__ = ["StreamingDecoder", "DATA_PREFIX", "DONE_TOKEN"]
