"""Cached catalog of upstream models."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union, cast

from ..domain import Model, ModelPricing
from ..exceptions import InvalidResponseError
from ..flagship import flagship_models
from ..services import ICompletionGateway, IModelCatalog

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60

# Legacy capability names still accepted by ``ModelCatalog.supports``.
CAPABILITY_ALIASES = {
    "supports_response_schema": "json_output",
    "json_mode": "json_output",
    "json_output": "json_output",
    "supports_vision": "vision",
    "vision": "vision",
    "supports_stream": "stream",
    "stream": "stream",
    "supports_functions": "function_calling",
    "function_calling": "function_calling",
}


def _string_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in cast(List[Any], value) if isinstance(item, str))


def _per_million(value: Any) -> float:
    """Convert an upstream per-token price (usually a string) to USD per million tokens."""
    try:
        return float(value) * 1_000_000
    except (TypeError, ValueError):
        return 0.0


def parse_model(entry: Dict[str, Any]) -> Model:
    """Build a :class:`Model` from one raw catalog entry."""
    model_id = entry.get("id")
    if not isinstance(model_id, str) or not model_id:
        raise InvalidResponseError("Catalog entry without an id", phase="catalog")

    pricing_raw = entry.get("pricing")
    pricing_map = cast(Dict[str, Any], pricing_raw) if isinstance(pricing_raw, dict) else {}
    architecture_raw = entry.get("architecture")
    architecture = cast(Dict[str, Any], architecture_raw) if isinstance(architecture_raw, dict) else {}
    capabilities_raw = entry.get("capabilities")
    legacy = cast(Dict[str, Any], capabilities_raw) if isinstance(capabilities_raw, dict) else {}

    context_length = entry.get("context_length")
    name = entry.get("name")
    description = entry.get("description")
    return Model(
        id=model_id,
        display_name=name if isinstance(name, str) and name else model_id,
        context_length=int(context_length) if isinstance(context_length, (int, float)) else 0,
        pricing=ModelPricing(
            input_per_mtok=_per_million(pricing_map.get("prompt")),
            output_per_mtok=_per_million(pricing_map.get("completion")),
        ),
        supported_parameters=_string_list(entry.get("supported_parameters")),
        input_modalities=_string_list(architecture.get("input_modalities")),
        legacy_response_schema=legacy.get("supports_response_schema") is True,
        description=description if isinstance(description, str) else "",
    )


class ModelCatalog(IModelCatalog):
    """In-memory model catalog refreshed wholesale from the upstream.

    A refresh is served from the cache when it is not forced, the cache is
    non-empty and the last fetch is younger than the TTL.
    """

    def __init__(
        self,
        client: ICompletionGateway,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._client = client
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._logger = logger or LOGGER
        self._models: Dict[str, Model] = {}
        self._fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def last_fetched(self) -> Optional[float]:
        return self._fetched_at

    def is_fresh(self) -> bool:
        if not self._models or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self._ttl

    async def refresh(self, force: bool = False) -> List[Model]:
        """Return the catalog, fetching it when the cache is stale or ``force`` is set."""
        async with self._lock:
            if not force and self.is_fresh():
                self._logger.debug("Model catalog cache hit (%d models)", len(self._models))
                return self.models()

            entries = await self._client.list_models()
            models: Dict[str, Model] = {}
            for entry in entries:
                try:
                    model = parse_model(entry)
                except InvalidResponseError as exc:
                    self._logger.warning("Skipping catalog entry: %s", exc)
                    continue
                models[model.id] = model

            self._models = models
            self._fetched_at = self._clock()
            self._logger.info("Fetched model catalog with %d models", len(models))
            return self.models()

    def get_model(self, model_id: str) -> Optional[Model]:
        return self._models.get(model_id)

    def models(self) -> List[Model]:
        return list(self._models.values())

    def json_capable_models(self) -> List[Model]:
        return [model for model in self._models.values() if model.capabilities.json_output]

    def vision_capable_models(self) -> List[Model]:
        return [model for model in self._models.values() if model.capabilities.vision]

    def stream_capable_models(self) -> List[Model]:
        return [model for model in self._models.values() if model.capabilities.stream]

    def flagship_models(self) -> List[Model]:
        return flagship_models(self._models.values())

    def supports(self, model: Union[Model, str], capability: str) -> bool:
        """Check a capability by name; unknown names are looked up in supported parameters."""
        resolved = self._models.get(model) if isinstance(model, str) else model
        if resolved is None:
            return False
        canonical = CAPABILITY_ALIASES.get(capability)
        if canonical is not None:
            return bool(getattr(resolved.capabilities, canonical))
        return capability in resolved.supported_parameters

    def estimate_cost(self, model_id: str, prompt_tokens: float, completion_tokens: float) -> float:
        """Estimate USD cost for a completion; zero for unknown models."""
        model = self._models.get(model_id)
        if model is None:
            return 0.0
        return model.pricing.cost(prompt_tokens, completion_tokens)

    def clear(self) -> None:
        self._models = {}
        self._fetched_at = None

    def __len__(self) -> int:
        return len(self._models)


__all__ = [
    "CAPABILITY_ALIASES",
    "DEFAULT_TTL_SECONDS",
    "ModelCatalog",
    "parse_model",
]
