"""OpenRouter completion gateway built on the OpenAI SDK."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union, cast

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError

from ..domain import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ContentPart,
    ImagePart,
    Model,
    MultipartContent,
    Role,
    TextPart,
    Usage,
)
from ..exceptions import (
    AuthError,
    BadRequestError,
    GatewayError,
    InvalidResponseError,
    ModelUnavailableError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    UnknownError,
)
from ..services import ChunkCallback, ICompletionGateway
from .streaming import StreamingDecoder
from .transport import RateLimitedTransport
from .utility_services import ResponseParser

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

ModelLookup = Callable[[str], Optional[Model]]


def _upstream_message(body: Any) -> Optional[str]:
    """Pull the human-readable message out of an upstream error body."""
    if isinstance(body, dict):
        body_map = cast(Dict[str, Any], body)
        error = body_map.get("error", body_map)
        if isinstance(error, dict):
            message = cast(Dict[str, Any], error).get("message")
            if isinstance(message, str) and message:
                return message
        elif isinstance(error, str) and error:
            return error
        message = body_map.get("message")
        if isinstance(message, str) and message:
            return message
    elif isinstance(body, str) and body:
        return body
    return None


def format_base64_image(data: str, mime_type: str = "image/jpeg") -> str:
    """Return a data URL for base64 image data, adding the prefix when missing."""
    if data.startswith("data:"):
        return data
    return f"data:{mime_type};base64,{data}"


def create_multimodal_message(
    role: Union[Role, str], text: str, image_urls: Sequence[str] = ()
) -> ChatMessage:
    """Build a message mixing text with images; plain text when no image is given."""
    if not image_urls:
        return ChatMessage.text(role, text)
    parts: List[ContentPart] = [TextPart(text)]
    parts.extend(ImagePart(url) for url in image_urls)
    return ChatMessage(role=Role(role), content=MultipartContent(tuple(parts)))


def _retry_after(headers: Optional[httpx.Headers]) -> Optional[float]:
    if headers is None:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class OpenRouterClient(ICompletionGateway):
    """Completion gateway for an OpenRouter-compatible aggregator.

    All traffic, blocking, streaming and catalog alike, goes through one
    ``httpx.AsyncClient`` whose transport is the shared
    :class:`RateLimitedTransport`. The SDK never retries; failures are
    translated into the closed :mod:`model_kombat.exceptions` taxonomy.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = 120,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        referer: str = "https://github.com/model-kombat/model-kombat",
        title: str = "Model Kombat",
        logger: Optional[logging.Logger] = None,
    ):
        if not api_key:
            raise ValueError("OpenRouter API key is required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport or RateLimitedTransport()
        self._referer = referer
        self._title = title
        self._logger = logger or logging.getLogger(__name__)
        self._parser = ResponseParser()
        self._client: Optional[AsyncOpenAI] = None
        self._http_client: Optional[httpx.AsyncClient] = None
        self._model_lookup: Optional[ModelLookup] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def transport(self) -> httpx.AsyncBaseTransport:
        return self._transport

    def attach_catalog(self, lookup: ModelLookup) -> None:
        """Use a catalog lookup to decide whether a model can stream."""
        self._model_lookup = lookup

    def _ensure_client(self) -> AsyncOpenAI:
        """Lazily create and cache the OpenAI client."""
        if self._client is None:
            self._http_client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self._timeout, connect=10),
            )
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                http_client=self._http_client,
                timeout=httpx.Timeout(self._timeout, connect=10),
                max_retries=0,
            )
            self._logger.debug("Initialized OpenRouter client for %s", self._base_url)
        return self._client

    def _attribution_headers(self) -> Dict[str, str]:
        return {"HTTP-Referer": self._referer, "X-Title": self._title}

    def _supports_streaming(self, model_id: str) -> bool:
        if self._model_lookup is None:
            return True
        model = self._model_lookup(model_id)
        return model is None or model.capabilities.stream

    # ------------------------------------------------------------------ #
    # Catalog

    async def list_models(self) -> List[Dict[str, Any]]:
        """Fetch the raw model catalog."""
        self._ensure_client()
        assert self._http_client is not None
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            **self._attribution_headers(),
        }
        try:
            response = await self._http_client.get(f"{self._base_url}/models", headers=headers)
            response.raise_for_status()
            payload: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.error("Failed to fetch model catalog: %s", exc)
            raise self.map_error(exc, phase="catalog") from exc

        raw_data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(raw_data, list):
            raise InvalidResponseError("Unexpected response payload for model catalog.", phase="catalog")
        return [cast(Dict[str, Any], entry) for entry in cast(List[Any], raw_data) if isinstance(entry, dict)]

    async def test_connection(self) -> bool:
        """Return True when the catalog endpoint answers."""
        try:
            await self.list_models()
        except GatewayError as exc:
            self._logger.error("OpenRouter connection test failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------ #
    # Completions

    async def complete(
        self,
        request: ChatRequest,
        on_chunk: Optional[ChunkCallback] = None,
        *,
        phase: Optional[str] = None,
    ) -> ChatResponse:
        """Execute a chat completion request."""
        request.validate()
        stream = on_chunk is not None and self._supports_streaming(request.model_id)
        self._logger.debug(
            "POST %s/chat/completions model=%s messages=%d max_tokens=%s temperature=%.2f stream=%s",
            self._base_url,
            request.model_id,
            len(request.messages),
            request.max_tokens,
            request.temperature,
            stream,
        )
        started = time.monotonic()
        try:
            if stream:
                assert on_chunk is not None
                response = await self._stream_completion(request, on_chunk, phase)
            else:
                response = await self._blocking_completion(request, phase)
        except GatewayError as exc:
            self._logger.error("Chat completion failed: %s", exc)
            raise
        except (OpenAIError, httpx.HTTPError) as exc:
            mapped = self.map_error(exc, model_id=request.model_id, phase=phase)
            self._logger.error("Chat completion failed: %s", mapped)
            raise mapped from exc

        self._logger.debug(
            "Received completion model=%s latency=%.3fs finish=%s chars=%d",
            request.model_id,
            time.monotonic() - started,
            response.finish_reason,
            len(response.text),
        )
        return response

    async def _blocking_completion(self, request: ChatRequest, phase: Optional[str]) -> ChatResponse:
        client = self._ensure_client()
        raw_response = await client.chat.completions.with_raw_response.create(
            **request.to_payload(),
            extra_headers=self._attribution_headers(),
        )
        payload = cast(Dict[str, Any], raw_response.http_response.json())
        return self._build_response(payload, request.model_id, phase)

    async def _stream_completion(
        self, request: ChatRequest, on_chunk: ChunkCallback, phase: Optional[str]
    ) -> ChatResponse:
        client = self._ensure_client()
        decoder = StreamingDecoder(on_chunk, model_id=request.model_id, logger=self._logger)
        async with client.chat.completions.with_streaming_response.create(
            **request.to_payload(stream=True),
            extra_headers=self._attribution_headers(),
        ) as raw_response:
            result = await decoder.decode(raw_response.iter_bytes())
        if not result.text.strip():
            raise InvalidResponseError(
                "Streamed completion contained no content",
                model_id=request.model_id,
                phase=phase,
                payload=result.raw_payload,
            )
        return result

    def _build_response(self, payload: Dict[str, Any], model_id: str, phase: Optional[str]) -> ChatResponse:
        error_payload = payload.get("error")
        if not self._parser.has_choices(payload):
            raise InvalidResponseError(
                "Completion returned no choices",
                model_id=model_id,
                phase=phase,
                upstream_message=_upstream_message(payload),
                payload=cast(Dict[str, Any], error_payload) if isinstance(error_payload, dict) else None,
            )
        text = self._parser.extract_text(payload)
        if not text.strip():
            raise InvalidResponseError(
                "Completion returned empty content",
                model_id=model_id,
                phase=phase,
                payload=cast(Dict[str, Any], error_payload) if isinstance(error_payload, dict) else None,
            )

        usage: Optional[Usage] = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict):
            usage_map = cast(Dict[str, Any], raw_usage)
            usage = Usage(
                prompt_tokens=int(usage_map.get("prompt_tokens") or 0),
                completion_tokens=int(usage_map.get("completion_tokens") or 0),
            )
        return ChatResponse(
            id=str(payload.get("id") or ""),
            model_id=str(payload.get("model") or model_id),
            text=text,
            finish_reason=self._parser.extract_finish_reason(payload),
            usage=usage,
            raw_payload=payload,
        )

    # ------------------------------------------------------------------ #
    # Error mapping

    def map_error(
        self,
        exc: BaseException,
        *,
        model_id: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> GatewayError:
        """Translate SDK and transport failures into the gateway taxonomy."""
        if isinstance(exc, GatewayError):
            return exc

        if isinstance(exc, (APITimeoutError, httpx.TimeoutException)):
            return RequestTimeoutError(
                f"Request timeout after {self._timeout:g}s. The model might be overloaded.",
                model_id=model_id,
                phase=phase,
            )
        if isinstance(exc, (APIConnectionError, httpx.TransportError)):
            return NetworkError(
                f"Network error: {exc}. Please check your internet connection and try again.",
                model_id=model_id,
                phase=phase,
            )

        status_code: Optional[int] = None
        upstream: Optional[str] = None
        headers: Optional[httpx.Headers] = None
        if isinstance(exc, APIStatusError):
            status_code = exc.status_code
            headers = exc.response.headers
            upstream = _upstream_message(exc.body) or exc.message
        elif isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
            headers = exc.response.headers
            try:
                upstream = _upstream_message(exc.response.json())
            except ValueError:
                upstream = exc.response.text or None

        common: Dict[str, Any] = {
            "model_id": model_id,
            "phase": phase,
            "status_code": status_code,
            "upstream_message": upstream,
        }
        if status_code == 401:
            return AuthError("Invalid API key. Please check your OpenRouter API key.", **common)
        if status_code == 429:
            return RateLimitError(
                "Rate limit exceeded. Please try again later.", retry_after=_retry_after(headers), **common
            )
        if status_code == 404:
            subject = f"Model {model_id}" if model_id else "Requested resource"
            return ModelUnavailableError(f"{subject} not found or not available.", **common)
        if status_code == 400:
            return BadRequestError(f"Bad Request: {upstream or 'Invalid request'}", **common)
        return UnknownError(upstream or str(exc) or "Chat completion failed.", **common)

    # ------------------------------------------------------------------ #
    # Lifecycle

    async def aclose(self) -> None:
        """Close connections and cleanup resources."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        elif isinstance(self._transport, httpx.AsyncBaseTransport):
            await self._transport.aclose()
        self._client = None
        self._logger.debug("Closed OpenRouter client connections")

    async def __aenter__(self) -> "OpenRouterClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


__all__ = ["OPENROUTER_BASE_URL", "OpenRouterClient", "create_multimodal_message", "format_base64_image"]
