"""Utility service implementations."""

import datetime as dt
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, cast

from ..services import IFileSystemService, ITimeService


class TimeService(ITimeService):
    """Service for time-related operations."""

    def now_iso(self) -> str:
        """Return the current UTC timestamp in ISO-8601 format with a Z suffix."""
        return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")

    def monotonic(self) -> float:
        return time.monotonic()


class ResponseParser:
    """Pull the answer text out of non-streaming completion payloads.

    Text comes from the first choice's message content. Segmented content
    is joined; when there is none, the ``reasoning`` field and then the
    first tool call's arguments are used.
    """

    @staticmethod
    def has_choices(payload: Dict[str, Any]) -> bool:
        choices = payload.get("choices")
        return isinstance(choices, list) and bool(choices)

    @staticmethod
    def _first_choice(payload: Dict[str, Any]) -> Dict[str, Any]:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            return cast(Dict[str, Any], choices[0])
        return {}

    def extract_text(self, payload: Dict[str, Any]) -> str:
        message = self._first_choice(payload).get("message")
        if not isinstance(message, dict):
            return ""
        message = cast(Dict[str, Any], message)

        content: Any = message.get("content")
        if isinstance(content, list):
            content = "".join(_segment_text(segment) for segment in cast(List[Any], content))
        if isinstance(content, str) and content:
            return content

        reasoning = message.get("reasoning")
        if isinstance(reasoning, str) and reasoning.strip():
            return reasoning

        for call in message.get("tool_calls") or []:
            function = call.get("function") if isinstance(call, dict) else None
            arguments = function.get("arguments") if isinstance(function, dict) else None
            if isinstance(arguments, str) and arguments.strip():
                return arguments
        return ""

    @classmethod
    def extract_finish_reason(cls, payload: Dict[str, Any]) -> Optional[str]:
        choice = cls._first_choice(payload)
        for key in ("finish_reason", "native_finish_reason"):
            reason = choice.get(key)
            if isinstance(reason, str):
                return reason
        return None


def _segment_text(segment: Any) -> str:
    if isinstance(segment, str):
        return segment
    if isinstance(segment, dict):
        text = cast(Dict[str, Any], segment).get("text")
        if isinstance(text, str):
            return text
    return ""


class FileSystemService(IFileSystemService):
    """Service for file system operations."""

    def write_json(self, path: Path, data: Any) -> None:
        """Persist JSON data, creating parent directories on demand."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=2)


__all__ = [
    "TimeService",
    "ResponseParser",
    "FileSystemService",
]
