"""Test doubles shared by the pipeline, runner and web tests."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Union

from model_kombat.domain import ChatRequest, ChatResponse, Role, content_to_text
from model_kombat.services import ChunkCallback

Reply = Union[str, BaseException]
Responder = Callable[[ChatRequest, Optional[str]], Reply]


class ScriptedGateway:
    """Completion gateway answering from a responder function or a queue of replies."""

    def __init__(
        self,
        replies: Optional[List[Reply]] = None,
        *,
        responder: Optional[Responder] = None,
        models: Optional[List[Dict[str, Any]]] = None,
        chunk_size: int = 0,
    ) -> None:
        self._replies = list(replies or [])
        self._responder = responder
        self._models = models or []
        self._chunk_size = chunk_size
        self.calls: List[Dict[str, Any]] = []
        self.list_calls = 0
        self.closed = False

    async def complete(
        self,
        request: ChatRequest,
        on_chunk: Optional[ChunkCallback] = None,
        *,
        phase: Optional[str] = None,
    ) -> ChatResponse:
        request.validate()
        self.calls.append({"request": request, "phase": phase, "streamed": on_chunk is not None})
        if self._responder is not None:
            reply = self._responder(request, phase)
        else:
            reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if on_chunk is not None:
            size = self._chunk_size or max(len(reply), 1)
            for start in range(0, len(reply), size):
                on_chunk(reply[start : start + size])
        return ChatResponse(id=f"gen-{len(self.calls)}", model_id=request.model_id, text=reply)

    async def list_models(self) -> List[Dict[str, Any]]:
        self.list_calls += 1
        return list(self._models)

    async def aclose(self) -> None:
        self.closed = True

    def phases(self) -> List[Optional[str]]:
        return [call["phase"] for call in self.calls]

    def models_called(self) -> List[str]:
        return [call["request"].model_id for call in self.calls]


def last_user_text(request: ChatRequest) -> str:
    for message in reversed(request.messages):
        if message.role is Role.USER:
            return content_to_text(message.content)
    return ""


def judge_reply(relevance: int, accuracy: int, completeness: int, clarity: int, feedback: str = "Solid") -> str:
    return json.dumps(
        {
            "relevance": relevance,
            "accuracy": accuracy,
            "completeness": completeness,
            "clarity": clarity,
            "feedback": feedback,
        }
    )


def catalog_entry(
    model_id: str,
    *,
    name: Optional[str] = None,
    prompt_price: str = "0.000001",
    completion_price: str = "0.000002",
    supported_parameters: Optional[List[str]] = None,
    input_modalities: Optional[List[str]] = None,
) -> Dict[str, Any]:
    return {
        "id": model_id,
        "name": name or model_id,
        "context_length": 128000,
        "pricing": {"prompt": prompt_price, "completion": completion_price},
        "supported_parameters": supported_parameters if supported_parameters is not None else ["response_format"],
        "architecture": {"input_modalities": input_modalities or ["text"]},
    }


class StopAfter:
    """Stop signal that trips after ``checks`` calls to ``should_stop``."""

    def __init__(self, checks: int) -> None:
        self._remaining = checks

    def should_stop(self) -> bool:
        if self._remaining <= 0:
            return True
        self._remaining -= 1
        return False
