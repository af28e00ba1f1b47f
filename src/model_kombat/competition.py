"""Head-to-head generation across competitor models."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import Callable, List, Optional, Sequence

from .domain import (
    ChatMessage,
    ChatRequest,
    CompetitorGeneration,
    FailurePolicy,
    GenerationStatus,
    Model,
    Role,
)
from .exceptions import KombatError, ValidationError
from .logging_config import LogContext
from .services import ChunkCallback, ICompletionGateway, IModelCatalog, IPromptsManager, IStopSignal

LOGGER = logging.getLogger(__name__)

# Rough characters-per-token ratio used for cost estimates.
CHARS_PER_TOKEN = 4

UpdateCallback = Callable[[CompetitorGeneration], None]
CompetitorChunkCallback = Callable[[str, str], None]


def estimate_generation_cost(prompt: str, response: str, model: Optional[Model]) -> float:
    """Estimate USD cost from character counts and the model's per-million pricing."""
    if model is None:
        return 0.0
    return model.pricing.cost(len(prompt) / CHARS_PER_TOKEN, len(response) / CHARS_PER_TOKEN)


class CompetitionRunner:
    """Generate one answer per competitor model for the same prompt.

    A competitor's failure is recorded on its entry and the others carry on,
    unless ``failure_policy`` is ``ABORT``, in which case entries not started
    yet stay pending.
    """

    def __init__(
        self,
        gateway: ICompletionGateway,
        prompts: IPromptsManager,
        *,
        catalog: Optional[IModelCatalog] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._gateway = gateway
        self._prompts = prompts
        self._catalog = catalog
        self._clock = clock or time.monotonic
        self._logger = logger or LOGGER

    def _lookup(self, model_id: str) -> Optional[Model]:
        if self._catalog is None:
            return None
        return self._catalog.get_model(model_id)

    def _catalog_loaded(self) -> bool:
        return self._catalog is not None and bool(self._catalog.models())

    async def run(
        self,
        prompt: str,
        competitor_model_ids: Sequence[str],
        *,
        concurrency: int = 1,
        failure_policy: FailurePolicy = FailurePolicy.ISOLATE,
        temperature: Optional[float] = None,
        on_update: Optional[UpdateCallback] = None,
        on_chunk: Optional[CompetitorChunkCallback] = None,
        control: Optional[IStopSignal] = None,
    ) -> List[CompetitorGeneration]:
        if not prompt.strip():
            raise ValidationError("A prompt is required", field="prompt", value=prompt)
        if not competitor_model_ids:
            raise ValidationError("At least one competitor model is required", field="competitor_model_ids", value=[])
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1", field="concurrency", value=concurrency)

        generations: List[CompetitorGeneration] = []
        for model_id in competitor_model_ids:
            model = self._lookup(model_id)
            generations.append(
                CompetitorGeneration(model_id=model_id, display_name=model.display_name if model else model_id)
            )

        aborted = False
        slots = asyncio.Semaphore(concurrency)

        def halted() -> bool:
            return aborted or (control is not None and control.should_stop())

        async def compete(entry: CompetitorGeneration) -> None:
            nonlocal aborted
            async with slots:
                if halted():
                    return
                await self._generate(prompt, entry, temperature, on_update, on_chunk)
                if entry.status is GenerationStatus.FAILED and failure_policy is FailurePolicy.ABORT:
                    self._logger.warning("Aborting competition after failure of %s", entry.model_id)
                    aborted = True

        with LogContext(phase="competition"):
            if concurrency == 1:
                for entry in generations:
                    if halted():
                        break
                    await compete(entry)
            else:
                await asyncio.gather(*(compete(entry) for entry in generations))

        completed = sum(1 for entry in generations if entry.status is GenerationStatus.COMPLETED)
        self._logger.info("Competition finished: %d of %d competitors completed", completed, len(generations))
        return generations

    async def _generate(
        self,
        prompt: str,
        entry: CompetitorGeneration,
        temperature: Optional[float],
        on_update: Optional[UpdateCallback],
        on_chunk: Optional[CompetitorChunkCallback],
    ) -> None:
        def report() -> None:
            if on_update is not None:
                on_update(entry)

        model = self._lookup(entry.model_id)
        with LogContext(model=entry.model_id):
            if model is None and self._catalog_loaded():
                entry.status = GenerationStatus.FAILED
                entry.error = f"Model {entry.model_id} not found"
                self._logger.error("Competitor %s is not in the model catalog", entry.model_id)
                report()
                return

            entry.status = GenerationStatus.GENERATING
            report()

            messages = [ChatMessage.text(Role.USER, prompt)]
            system = self._prompts.get_setting("competitor", "system")
            if isinstance(system, str) and system:
                messages.insert(0, ChatMessage.text(Role.SYSTEM, system))
            max_tokens = self._prompts.get_setting("competitor", "max_tokens")
            request = ChatRequest(
                model_id=entry.model_id,
                messages=tuple(messages),
                temperature=(
                    temperature
                    if temperature is not None
                    else float(self._prompts.get_setting("competitor", "temperature", 0.7))
                ),
                max_tokens=int(max_tokens) if max_tokens else None,
            )
            stream_to: Optional[ChunkCallback] = None
            if on_chunk is not None:
                stream_to = functools.partial(on_chunk, entry.model_id)
            started = self._clock()
            try:
                response = await self._gateway.complete(request, stream_to, phase="competition")
            except KombatError as exc:
                entry.status = GenerationStatus.FAILED
                entry.error = exc.message
                entry.generation_time_ms = int((self._clock() - started) * 1000)
                self._logger.error("Generation failed for %s: %s", entry.model_id, exc)
                report()
                return

            entry.response = response.text
            entry.generation_time_ms = int((self._clock() - started) * 1000)
            entry.estimated_cost = estimate_generation_cost(prompt, response.text, model)
            entry.status = GenerationStatus.COMPLETED
            self._logger.info(
                "Generated %d chars with %s in %dms", len(response.text), entry.model_id, entry.generation_time_ms
            )
            report()


__all__ = [
    "CHARS_PER_TOKEN",
    "CompetitionRunner",
    "estimate_generation_cost",
]
