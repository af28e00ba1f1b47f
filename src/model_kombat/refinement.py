"""Iterative self-critique of a prompt/answer lineage."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .domain import ChatMessage, ChatRequest, RefinementOutcome, RefinementRound, RefinementState, Role
from .exceptions import KombatError, ValidationError
from .flagship import AUTO_MODEL_ID, model_for_round
from .infrastructure.utility_services import TimeService
from .logging_config import LogContext
from .parsing import extract_improvements, is_converged, parse_labeled_response
from .services import ChunkCallback, ICompletionGateway, IPromptsManager, IStopSignal, ITimeService

LOGGER = logging.getLogger(__name__)

SEPARATE_MODE = "separate"
COMBINED_MODE = "combined"
REFINEMENT_MODES = (SEPARATE_MODE, COMBINED_MODE)

RoundCallback = Callable[[RefinementRound], None]
StateCallback = Callable[[RefinementState], None]


class _Cancelled(Exception):
    pass


@dataclass(frozen=True)
class RefinementSettings:
    """Parameters for one refinement run."""

    refiner_model_ids: Sequence[str]
    max_rounds: int = 3
    mode: str = SEPARATE_MODE
    temperature: Optional[float] = None
    early_stop: bool = True
    generate_seed: bool = False
    stream_refinement: bool = False

    def validate(self) -> None:
        if self.max_rounds < 1:
            raise ValidationError("max_rounds must be at least 1", field="max_rounds", value=self.max_rounds)
        if self.mode not in REFINEMENT_MODES:
            raise ValidationError(f"mode must be one of {', '.join(REFINEMENT_MODES)}", field="mode", value=self.mode)
        if not self.refiner_model_ids:
            raise ValidationError("At least one refiner model is required", field="refiner_model_ids", value=[])
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ValidationError("temperature must be between 0 and 2", field="temperature", value=self.temperature)


@dataclass
class _RunState:
    rounds: List[RefinementRound] = field(default_factory=list)
    state: RefinementState = RefinementState.IDLE


class RefinementPipeline:
    """Seed, then alternate critique and refinement for up to ``max_rounds`` rounds.

    Round 0 holds the seed (the prompt itself unless ``generate_seed`` is set).
    Each later round critiques the previous response and rewrites it. From
    round 2 on, a rewrite whose word overlap with its predecessor exceeds
    0.95 ends the run as converged. The first failing call ends the run as
    failed; rounds completed before it are kept in the outcome.
    """

    def __init__(
        self,
        gateway: ICompletionGateway,
        prompts: IPromptsManager,
        *,
        time_service: Optional[ITimeService] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._gateway = gateway
        self._prompts = prompts
        self._time = time_service or TimeService()
        self._logger = logger or LOGGER

    async def run(
        self,
        prompt: str,
        settings: RefinementSettings,
        *,
        on_round: Optional[RoundCallback] = None,
        on_state: Optional[StateCallback] = None,
        on_chunk: Optional[ChunkCallback] = None,
        control: Optional[IStopSignal] = None,
    ) -> RefinementOutcome:
        if not prompt.strip():
            raise ValidationError("A prompt is required", field="prompt", value=prompt)
        settings.validate()

        run = _RunState()

        def transition(state: RefinementState) -> None:
            run.state = state
            self._logger.debug("Refinement state -> %s", state.value)
            if on_state is not None:
                on_state(state)

        def checkpoint() -> None:
            if control is not None and control.should_stop():
                raise _Cancelled()

        error: Optional[Exception] = None
        with LogContext(phase="refinement"):
            try:
                seed_model = model_for_round(settings.refiner_model_ids, 0)
                seed = prompt
                if settings.generate_seed:
                    checkpoint()
                    seed = await self._generate_seed(prompt, seed_model, settings)
                seed_round = RefinementRound(
                    round_number=0,
                    response=seed,
                    timestamp=self._time.now_iso(),
                    model_id=seed_model if settings.generate_seed else None,
                )
                run.rounds.append(seed_round)
                transition(RefinementState.SEEDED)
                if on_round is not None:
                    on_round(seed_round)

                final_state = RefinementState.MAX_ROUNDS_REACHED
                for round_number in range(1, settings.max_rounds + 1):
                    entry = await self._run_round(
                        prompt, run.rounds[-1], round_number, settings, transition, checkpoint, on_chunk
                    )
                    run.rounds.append(entry)
                    if on_round is not None:
                        on_round(entry)
                    self._logger.info(
                        "Refinement round %d complete (model=%s, %d improvements)",
                        round_number,
                        entry.model_id,
                        len(entry.improvements_extracted),
                    )
                    if (
                        settings.early_stop
                        and round_number >= 2
                        and is_converged(run.rounds[-2].response, entry.response)
                    ):
                        self._logger.info("Stopped at round %d - response has stabilized", round_number)
                        final_state = RefinementState.CONVERGED
                        break
                transition(final_state)
            except _Cancelled:
                self._logger.info("Refinement cancelled after %d rounds", len(run.rounds))
                transition(RefinementState.CANCELLED)
            except KombatError as exc:
                self._logger.error("Refinement failed after %d rounds: %s", len(run.rounds), exc)
                error = exc
                transition(RefinementState.FAILED)

        return RefinementOutcome(rounds=tuple(run.rounds), state=run.state, error=error)

    async def _run_round(
        self,
        prompt: str,
        previous: RefinementRound,
        round_number: int,
        settings: RefinementSettings,
        transition: StateCallback,
        checkpoint: Callable[[], None],
        on_chunk: Optional[ChunkCallback],
    ) -> RefinementRound:
        model_id = model_for_round(settings.refiner_model_ids, round_number)
        stream_to = on_chunk if settings.stream_refinement else None
        with LogContext(round=round_number, model=model_id):
            if settings.mode == COMBINED_MODE:
                checkpoint()
                transition(RefinementState.CRITIQUING)
                reply = await self._complete(
                    "combined",
                    model_id,
                    settings,
                    user=self._prompts.render("combined.user", prompt=prompt, response=previous.response),
                    on_chunk=stream_to,
                )
                transition(RefinementState.REFINING)
                sections = parse_labeled_response(reply)
                critique, refined = sections.critique, sections.answer or previous.response
            else:
                checkpoint()
                transition(RefinementState.CRITIQUING)
                critique = await self._complete(
                    "critique",
                    model_id,
                    settings,
                    user=self._prompts.render("critique.user", prompt=prompt, response=previous.response),
                )
                checkpoint()
                transition(RefinementState.REFINING)
                refined = await self._complete(
                    "refine",
                    model_id,
                    settings,
                    user=self._prompts.render(
                        "refine.user", prompt=prompt, response=previous.response, critique=critique
                    ),
                    on_chunk=stream_to,
                )

        return RefinementRound(
            round_number=round_number,
            response=refined,
            critique=critique,
            improvements_extracted=tuple(extract_improvements(previous.response, refined, critique)),
            timestamp=self._time.now_iso(),
            model_id=model_id,
        )

    async def _generate_seed(self, prompt: str, model_id: str, settings: RefinementSettings) -> str:
        return await self._complete(
            "seed", model_id, settings, user=self._prompts.render("seed.user", prompt=prompt)
        )

    async def _complete(
        self,
        section: str,
        model_id: str,
        settings: RefinementSettings,
        *,
        user: str,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        messages: List[ChatMessage] = []
        system = self._prompts.get_setting(section, "system")
        if isinstance(system, str) and system:
            messages.append(ChatMessage.text(Role.SYSTEM, system))
        messages.append(ChatMessage.text(Role.USER, user))

        temperature = settings.temperature
        if temperature is None:
            temperature = float(self._prompts.get_setting(section, "temperature", 0.7))
        max_tokens = self._prompts.get_setting(section, "max_tokens")
        request = ChatRequest(
            model_id=model_id,
            messages=tuple(messages),
            temperature=temperature,
            max_tokens=int(max_tokens) if max_tokens else None,
        )
        response = await self._gateway.complete(request, on_chunk, phase=section)
        return response.text.strip()


async def enhance_prompt(
    gateway: ICompletionGateway,
    prompts: IPromptsManager,
    prompt: str,
    model_id: Optional[str] = None,
) -> str:
    """Ask a model to rewrite ``prompt`` into a clearer, more specific question."""
    if not prompt.strip():
        raise ValidationError("A prompt is required", field="prompt", value=prompt)
    model = model_id or str(prompts.get_setting("enhance", "model", AUTO_MODEL_ID))
    request = ChatRequest(
        model_id=model,
        messages=(ChatMessage.text(Role.USER, prompts.render("enhance.user", prompt=prompt)),),
        temperature=float(prompts.get_setting("enhance", "temperature", 0.7)),
    )
    response = await gateway.complete(request, phase="enhance")
    enhanced = response.text.strip()
    LOGGER.info("Enhanced prompt with %s (%d -> %d chars)", model, len(prompt), len(enhanced))
    return enhanced or prompt


__all__ = [
    "COMBINED_MODE",
    "REFINEMENT_MODES",
    "SEPARATE_MODE",
    "RefinementPipeline",
    "RefinementSettings",
    "enhance_prompt",
]
