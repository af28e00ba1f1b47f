from __future__ import annotations

import asyncio
import itertools
from typing import List, Optional, Tuple

import pytest

from fakes import ScriptedGateway, StopAfter, catalog_entry, last_user_text
from model_kombat.competition import CompetitionRunner, estimate_generation_cost
from model_kombat.domain import ChatRequest, CompetitorGeneration, FailurePolicy, GenerationStatus
from model_kombat.exceptions import ModelUnavailableError, NetworkError, ValidationError
from model_kombat.infrastructure.model_catalog import ModelCatalog, parse_model
from model_kombat.infrastructure.prompts_manager import PromptsManager

PROMPT = "Write a haiku about the sea."


def _ticking_clock(step: float = 0.25):
    counter = itertools.count()
    return lambda: next(counter) * step


def _loaded_catalog(*model_ids: str) -> ModelCatalog:
    catalog = ModelCatalog(ScriptedGateway(models=[catalog_entry(model_id, name=model_id.upper()) for model_id in model_ids]))
    asyncio.run(catalog.refresh())
    return catalog


def _echo(request: ChatRequest, phase: Optional[str]) -> str:
    return f"answer from {request.model_id}"


def test_generates_one_entry_per_competitor_in_order() -> None:
    gateway = ScriptedGateway(responder=_echo)
    runner = CompetitionRunner(gateway, PromptsManager(), clock=_ticking_clock())

    generations = asyncio.run(runner.run(PROMPT, ["a/one", "b/two", "c/three"]))

    assert [entry.model_id for entry in generations] == ["a/one", "b/two", "c/three"]
    assert all(entry.status is GenerationStatus.COMPLETED for entry in generations)
    assert generations[1].response == "answer from b/two"
    assert generations[0].generation_time_ms == 250
    assert gateway.phases() == ["competition"] * 3


def test_request_uses_competitor_defaults() -> None:
    gateway = ScriptedGateway(responder=_echo)

    asyncio.run(CompetitionRunner(gateway, PromptsManager()).run(PROMPT, ["a/one"]))

    request: ChatRequest = gateway.calls[0]["request"]
    assert request.max_tokens == 1500
    assert request.temperature == pytest.approx(0.7)
    assert last_user_text(request) == PROMPT
    assert request.messages[0].role.value == "system"


def test_temperature_override_is_applied() -> None:
    gateway = ScriptedGateway(responder=_echo)

    asyncio.run(CompetitionRunner(gateway, PromptsManager()).run(PROMPT, ["a/one"], temperature=0.2))

    assert gateway.calls[0]["request"].temperature == pytest.approx(0.2)


def test_failure_is_isolated_by_default() -> None:
    def responder(request: ChatRequest, phase: Optional[str]) -> object:
        if request.model_id == "b/two":
            return NetworkError("Connection reset", model_id="b/two", phase=phase)
        return _echo(request, phase)

    generations = asyncio.run(
        CompetitionRunner(ScriptedGateway(responder=responder), PromptsManager()).run(PROMPT, ["a/one", "b/two", "c/three"])
    )

    assert [entry.status for entry in generations] == [
        GenerationStatus.COMPLETED,
        GenerationStatus.FAILED,
        GenerationStatus.COMPLETED,
    ]
    assert generations[1].error == "Connection reset"
    assert generations[1].response == ""


def test_abort_policy_leaves_later_entries_pending() -> None:
    gateway = ScriptedGateway([ModelUnavailableError("No endpoints found"), "unused", "unused"])

    generations = asyncio.run(
        CompetitionRunner(gateway, PromptsManager()).run(
            PROMPT, ["a/one", "b/two", "c/three"], failure_policy=FailurePolicy.ABORT
        )
    )

    assert generations[0].status is GenerationStatus.FAILED
    assert generations[0].error == "No endpoints found"
    assert [entry.status for entry in generations[1:]] == [GenerationStatus.PENDING] * 2
    assert len(gateway.calls) == 1


def test_model_missing_from_loaded_catalog_fails_without_a_call() -> None:
    gateway = ScriptedGateway(responder=_echo)
    runner = CompetitionRunner(gateway, PromptsManager(), catalog=_loaded_catalog("a/one"))

    generations = asyncio.run(runner.run(PROMPT, ["ghost/model", "a/one"]))

    assert generations[0].status is GenerationStatus.FAILED
    assert generations[0].error == "Model ghost/model not found"
    assert generations[1].display_name == "A/ONE"
    assert gateway.models_called() == ["a/one"]


def test_empty_catalog_does_not_reject_models() -> None:
    catalog = ModelCatalog(ScriptedGateway())
    gateway = ScriptedGateway(responder=_echo)

    generations = asyncio.run(CompetitionRunner(gateway, PromptsManager(), catalog=catalog).run(PROMPT, ["any/model"]))

    assert generations[0].status is GenerationStatus.COMPLETED
    assert generations[0].display_name == "any/model"


def test_estimated_cost_uses_catalog_pricing() -> None:
    prompt = "p" * 400
    gateway = ScriptedGateway(["r" * 800])
    runner = CompetitionRunner(gateway, PromptsManager(), catalog=_loaded_catalog("a/one"))

    generations = asyncio.run(runner.run(prompt, ["a/one"]))

    # 100 prompt tokens at $1/M plus 200 completion tokens at $2/M
    assert generations[0].estimated_cost == pytest.approx(0.0005)


def test_estimate_generation_cost_without_model_is_zero() -> None:
    assert estimate_generation_cost("prompt", "response", None) == 0.0
    model = parse_model(catalog_entry("a/one", prompt_price="0.00001", completion_price="0"))
    assert estimate_generation_cost("x" * 40, "y" * 40, model) == pytest.approx(0.0001)


def test_updates_and_chunks_are_reported() -> None:
    gateway = ScriptedGateway(responder=_echo, chunk_size=5)
    updates: List[Tuple[str, GenerationStatus]] = []
    chunks: List[Tuple[str, str]] = []

    def on_update(entry: CompetitorGeneration) -> None:
        updates.append((entry.model_id, entry.status))

    asyncio.run(
        CompetitionRunner(gateway, PromptsManager()).run(
            PROMPT,
            ["a/one", "b/two"],
            on_update=on_update,
            on_chunk=lambda model_id, delta: chunks.append((model_id, delta)),
        )
    )

    assert updates == [
        ("a/one", GenerationStatus.GENERATING),
        ("a/one", GenerationStatus.COMPLETED),
        ("b/two", GenerationStatus.GENERATING),
        ("b/two", GenerationStatus.COMPLETED),
    ]
    assert "".join(delta for model_id, delta in chunks if model_id == "b/two") == "answer from b/two"


def test_concurrent_generation_keeps_input_order() -> None:
    gateway = ScriptedGateway(responder=_echo)
    model_ids = [f"vendor/model-{index}" for index in range(6)]

    generations = asyncio.run(CompetitionRunner(gateway, PromptsManager()).run(PROMPT, model_ids, concurrency=3))

    assert [entry.model_id for entry in generations] == model_ids
    assert [entry.response for entry in generations] == [f"answer from {model_id}" for model_id in model_ids]


def test_stop_signal_halts_between_competitors() -> None:
    gateway = ScriptedGateway(responder=_echo)

    generations = asyncio.run(
        CompetitionRunner(gateway, PromptsManager()).run(PROMPT, ["a/one", "b/two", "c/three"], control=StopAfter(2))
    )

    assert [entry.status for entry in generations] == [
        GenerationStatus.COMPLETED,
        GenerationStatus.PENDING,
        GenerationStatus.PENDING,
    ]


@pytest.mark.parametrize(
    ("prompt", "model_ids", "concurrency"),
    [("   ", ["a/one"], 1), (PROMPT, [], 1), (PROMPT, ["a/one"], 0)],
)
def test_invalid_arguments_are_rejected(prompt: str, model_ids: List[str], concurrency: int) -> None:
    runner = CompetitionRunner(ScriptedGateway(), PromptsManager())
    with pytest.raises(ValidationError):
        asyncio.run(runner.run(prompt, model_ids, concurrency=concurrency))
