from __future__ import annotations

from model_kombat.domain import Model, ModelPricing
from model_kombat.flagship import (
    AUTO_MODEL_ID,
    flagship_models,
    group_models_by_provider,
    is_flagship_model,
    model_for_round,
)


def _model(model_id: str) -> Model:
    return Model(id=model_id, display_name=model_id, context_length=8192, pricing=ModelPricing())


def test_flagship_matching_is_case_insensitive_substring_both_ways() -> None:
    assert is_flagship_model("openai/gpt-4o") is True
    assert is_flagship_model("OpenAI/GPT-4o") is True
    # allow-list entry contained in the id
    assert is_flagship_model("openai/gpt-4o-2024-08-06") is True
    # id contained in an allow-list entry
    assert is_flagship_model("claude-3.5-sonnet") is True
    assert is_flagship_model("tiny/local-model") is False
    assert is_flagship_model("") is False


def test_flagship_models_filters_and_keeps_order() -> None:
    models = [_model("x-ai/grok-2"), _model("tiny/local-model"), _model("google/gemini-2.5-pro")]
    assert [model.id for model in flagship_models(models)] == ["x-ai/grok-2", "google/gemini-2.5-pro"]


def test_group_models_by_provider() -> None:
    grouped = group_models_by_provider([_model("openai/a"), _model("meta/b"), _model("openai/c")])
    assert list(grouped) == ["openai", "meta"]
    assert [model.id for model in grouped["openai"]] == ["openai/a", "openai/c"]


def test_model_for_round_rotates_and_falls_back_to_auto_routing() -> None:
    ids = ["a/one", "b/two", "c/three"]
    assert [model_for_round(ids, round_number) for round_number in range(5)] == [
        "a/one",
        "b/two",
        "c/three",
        "a/one",
        "b/two",
    ]
    assert model_for_round([], 2) == AUTO_MODEL_ID
