"""Curated flagship models and round-robin model selection."""

from typing import Dict, Iterable, List, Sequence, TypeVar

from .domain import Model

AUTO_MODEL_ID = "openrouter/auto"

FLAGSHIP_MODEL_IDS = (
    # OpenAI
    "openai/gpt-5",
    "openai/gpt-4.1",
    "openai/o3",
    "openai/o1-preview",
    "openai/gpt-4o",
    # Anthropic
    "anthropic/claude-4-opus",
    "anthropic/claude-4-sonnet",
    "anthropic/claude-3.5-sonnet",
    "anthropic/claude-3-opus",
    # Google
    "google/gemini-2.5-pro",
    "google/gemini-2.0-pro",
    "google/gemini-2.0-flash-exp:free",
    "google/gemini-pro-1.5",
    # Meta
    "meta-llama/llama-3.1-405b-instruct",
    "meta-llama/llama-3.1-70b-instruct",
    "meta-llama/llama-3.2-90b-vision-instruct",
    # Mistral
    "mistralai/mistral-large",
    "mistralai/mixtral-8x22b",
    # xAI
    "x-ai/grok-2",
    "x-ai/grok-2-vision",
    # Alibaba
    "qwen/qwen3-235b",
    "qwen/qwen-2.5-72b-instruct",
    "qwen/qwq-32b-preview",
    # Cohere
    "cohere/command-r-plus",
    AUTO_MODEL_ID,
)

ModelT = TypeVar("ModelT", bound=Model)


def is_flagship_model(model_id: str) -> bool:
    """Match an id against the allow-list, case-insensitive substring either way."""
    needle = model_id.lower()
    if not needle:
        return False
    return any(needle in flagship or flagship in needle for flagship in FLAGSHIP_MODEL_IDS)


def flagship_models(models: Iterable[ModelT]) -> List[ModelT]:
    return [model for model in models if is_flagship_model(model.id)]


def group_models_by_provider(models: Iterable[ModelT]) -> Dict[str, List[ModelT]]:
    """Group models by the prefix of their id, preserving input order."""
    grouped: Dict[str, List[ModelT]] = {}
    for model in models:
        grouped.setdefault(model.provider, []).append(model)
    return grouped


def model_for_round(model_ids: Sequence[str], round_number: int) -> str:
    """Rotate through ``model_ids``; fall back to automatic routing when empty."""
    if not model_ids:
        return AUTO_MODEL_ID
    return model_ids[round_number % len(model_ids)]


__all__ = [
    "AUTO_MODEL_ID",
    "FLAGSHIP_MODEL_IDS",
    "is_flagship_model",
    "flagship_models",
    "group_models_by_provider",
    "model_for_round",
]
