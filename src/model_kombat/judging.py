"""Anonymized scoring of competitor generations by a judge model."""

from __future__ import annotations

import dataclasses
import logging
import random
from typing import Any, Callable, List, Optional, Sequence

from .domain import (
    CRITERIA_NAMES,
    ChatMessage,
    ChatRequest,
    CompetitorGeneration,
    CriterionScores,
    FailurePolicy,
    GenerationStatus,
    JudgingCriteria,
    JudgingResult,
    Role,
)
from .exceptions import JudgeParsingError, KombatError
from .logging_config import LogContext
from .parsing import extract_json_object
from .services import ICompletionGateway, IModelCatalog, IPromptsManager, IStopSignal

LOGGER = logging.getLogger(__name__)

DEFAULT_FALLBACK_SCORE = 70
PARSE_FAILURE_FEEDBACK = "Error parsing judgment response"
NO_FEEDBACK = "No feedback provided"

ResultCallback = Callable[[JudgingResult], None]


def weighted_total(scores: CriterionScores, criteria: JudgingCriteria) -> int:
    """Σ score * weight / 100, rounded half up."""
    numerator = sum(getattr(scores, name) * getattr(criteria, name) for name in CRITERIA_NAMES)
    return (numerator + 50) // 100


def rank_results(results: Sequence[JudgingResult]) -> List[JudgingResult]:
    """Sort by weighted total, best first, keeping input order on ties, and number the ranks."""
    ordered = sorted(results, key=lambda result: result.weighted_total, reverse=True)
    return [dataclasses.replace(result, rank=position) for position, result in enumerate(ordered, start=1)]


def _coerce_score(value: Any, name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise JudgeParsingError(f"Score for {name} is not a number", raw_response=str(value))
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise JudgeParsingError(f"Score for {name} is not a number", raw_response=str(value)) from exc
    return max(0, min(100, int(number + 0.5)))


def parse_judgment(text: str) -> tuple[CriterionScores, str]:
    """Read the four criterion scores and feedback from judge output."""
    data = extract_json_object(text)
    scores = CriterionScores(**{name: _coerce_score(data.get(name), name) for name in CRITERIA_NAMES})
    feedback = data.get("feedback")
    if not isinstance(feedback, str) or not feedback.strip():
        feedback = NO_FEEDBACK
    return scores, feedback


class JudgingPipeline:
    """Score completed generations one judge call at a time.

    The generations are shuffled before judging so calls carry no trace of
    the original order. Output that cannot be parsed gets the neutral
    fallback score on every criterion; a failed call gets zeros and an
    error.
    """

    def __init__(
        self,
        gateway: ICompletionGateway,
        prompts: IPromptsManager,
        *,
        catalog: Optional[IModelCatalog] = None,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._gateway = gateway
        self._prompts = prompts
        self._catalog = catalog
        self._rng = rng or random.Random()
        self._logger = logger or LOGGER

    def _judge_setting(self, key: str, default: Any) -> Any:
        value = self._prompts.get_judge_config().get(key)
        return default if value is None else value

    def _wants_json_mode(self, judge_model_id: str) -> bool:
        if self._catalog is None:
            return True
        model = self._catalog.get_model(judge_model_id)
        return model is None or model.capabilities.json_output

    def _build_request(
        self, judge_model_id: str, response: str, criteria: JudgingCriteria, prompt: Optional[str]
    ) -> ChatRequest:
        config = self._prompts.get_judge_config()
        blocks = [self._prompts.render_judge_instructions(criteria.as_dict())]
        if prompt and isinstance(config.get("request_context"), str):
            blocks.append(str(config["request_context"]).format(prompt=prompt))
        blocks.append(str(config.get("subject", "{response}")).format(response=response))

        messages: List[ChatMessage] = []
        system = config.get("system")
        if isinstance(system, str) and system:
            messages.append(ChatMessage.text(Role.SYSTEM, system))
        messages.append(ChatMessage.text(Role.USER, "\n\n".join(blocks)))
        return ChatRequest(
            model_id=judge_model_id,
            messages=tuple(messages),
            temperature=float(self._judge_setting("temperature", 0.3)),
            max_tokens=int(self._judge_setting("max_tokens", 800)),
            response_format={"type": "json_object"} if self._wants_json_mode(judge_model_id) else None,
        )

    async def run(
        self,
        generations: Sequence[CompetitorGeneration],
        criteria: JudgingCriteria,
        *,
        judge_model_id: str,
        prompt: Optional[str] = None,
        failure_policy: FailurePolicy = FailurePolicy.ISOLATE,
        on_result: Optional[ResultCallback] = None,
        control: Optional[IStopSignal] = None,
    ) -> List[JudgingResult]:
        """Judge every completed generation and return the ranked results."""
        eligible = [entry for entry in generations if entry.status is GenerationStatus.COMPLETED]
        skipped = len(generations) - len(eligible)
        if skipped:
            self._logger.info("Skipping %d generations that did not complete", skipped)

        order = list(eligible)
        self._rng.shuffle(order)
        fallback = int(self._judge_setting("fallback_score", DEFAULT_FALLBACK_SCORE))

        results: List[JudgingResult] = []
        with LogContext(phase="judging", judge=judge_model_id):
            for index, generation in enumerate(order, start=1):
                if control is not None and control.should_stop():
                    self._logger.info("Judging cancelled after %d of %d", len(results), len(order))
                    break
                self._logger.debug("Judging response %d of %d", index, len(order))
                result = await self._judge_one(judge_model_id, generation, criteria, prompt, fallback)
                results.append(result)
                if on_result is not None:
                    on_result(result)
                if result.error is not None and failure_policy is FailurePolicy.ABORT:
                    self._logger.warning("Aborting judging after failure on %s", generation.model_id)
                    break

        return rank_results(results)

    async def _judge_one(
        self,
        judge_model_id: str,
        generation: CompetitorGeneration,
        criteria: JudgingCriteria,
        prompt: Optional[str],
        fallback: int,
    ) -> JudgingResult:
        request = self._build_request(judge_model_id, generation.response, criteria, prompt)
        try:
            response = await self._gateway.complete(request, phase="judging")
        except KombatError as exc:
            self._logger.error("Judging failed for model %s: %s", generation.model_id, exc)
            message = exc.message
            return JudgingResult(
                model_id=generation.model_id,
                display_name=generation.display_name,
                scores=CriterionScores.uniform(0),
                weighted_total=0,
                feedback=f"Judging failed: {message}",
                error=message,
            )

        try:
            scores, feedback = parse_judgment(response.text)
        except JudgeParsingError as exc:
            self._logger.warning("Failed to parse judgment for %s: %s", generation.model_id, exc)
            scores, feedback = CriterionScores.uniform(fallback), PARSE_FAILURE_FEEDBACK

        total = weighted_total(scores, criteria)
        self._logger.info("Judged %s: %d", generation.model_id, total)
        return JudgingResult(
            model_id=generation.model_id,
            display_name=generation.display_name,
            scores=scores,
            weighted_total=total,
            feedback=feedback,
        )


__all__ = [
    "DEFAULT_FALLBACK_SCORE",
    "JudgingPipeline",
    "NO_FEEDBACK",
    "PARSE_FAILURE_FEEDBACK",
    "parse_judgment",
    "rank_results",
    "weighted_total",
]
