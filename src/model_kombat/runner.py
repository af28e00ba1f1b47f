"""End-to-end orchestration: enhance, refine, compete, judge."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from colorama import Fore, Style

from .competition import CompetitionRunner
from .domain import (
    CompetitorGeneration,
    FailurePolicy,
    GenerationStatus,
    JudgingCriteria,
    JudgingResult,
    RefinementOutcome,
    RefinementRound,
    RefinementState,
)
from .exceptions import KombatError, ValidationError
from .flagship import AUTO_MODEL_ID, flagship_models
from .infrastructure.utility_services import FileSystemService, TimeService
from .judging import JudgingPipeline
from .logging_config import LogContext
from .refinement import SEPARATE_MODE, RefinementPipeline, RefinementSettings, enhance_prompt
from .services import ICompletionGateway, IFileSystemService, IModelCatalog, IPromptsManager, ITimeService

LOGGER = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunnerConfig:
    """Configuration describing a single kombat run."""

    prompt: str
    refiner_model_ids: Sequence[str]
    competitor_model_ids: Sequence[str]
    judge_model_id: str
    max_refinement_rounds: int = 3
    refinement_mode: str = SEPARATE_MODE
    criteria: JudgingCriteria = field(default_factory=JudgingCriteria)
    enhance_prompt: bool = False
    enhance_model_id: Optional[str] = None
    generate_seed: bool = False
    early_stop: bool = True
    refinement_temperature: Optional[float] = None
    temperature: Optional[float] = None
    competition_concurrency: int = 1
    failure_policy: FailurePolicy = FailurePolicy.ISOLATE
    auto_competitors: int = 0
    stream: bool = False
    outdir: Optional[Path] = None
    verbose: bool = False
    use_color: bool = False


@dataclass
class RunArtifacts:
    """Everything a run produced, including partial state when it stopped early."""

    run_id: str
    status: str
    prompt: str
    enhanced_prompt: Optional[str] = None
    refinement: Optional[RefinementOutcome] = None
    competitor_model_ids: List[str] = field(default_factory=list)
    generations: List[CompetitorGeneration] = field(default_factory=list)
    results: List[JudgingResult] = field(default_factory=list)
    error: Optional[str] = None
    results_path: Optional[Path] = None

    @property
    def refined_prompt(self) -> Optional[str]:
        if self.refinement is None or not self.refinement.rounds:
            return None
        return self.refinement.final_response

    @property
    def winner(self) -> Optional[JudgingResult]:
        return self.results[0] if self.results else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "prompt": self.prompt,
            "enhanced_prompt": self.enhanced_prompt,
            "refinement": self.refinement.to_dict() if self.refinement else None,
            "refined_prompt": self.refined_prompt,
            "competitor_model_ids": list(self.competitor_model_ids),
            "generations": [entry.to_dict() for entry in self.generations],
            "results": [result.to_dict() for result in self.results],
            "winner": self.winner.to_dict() if self.winner else None,
            "error": self.error,
            "results_path": str(self.results_path) if self.results_path else None,
        }


@dataclass(frozen=True)
class RunnerEvent:
    """Lightweight payload emitted during runner progress updates."""

    type: str
    payload: Dict[str, Any]


class RunnerControl:
    """Cancellation hook shared between a run and its supervisor."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def should_stop(self) -> bool:
        """Return True when the run should halt before its next upstream call."""
        return self._cancelled.is_set()


class _RunCancelled(Exception):
    pass


class KombatRunner:
    """Run the full workflow for one prompt and report progress as events."""

    def __init__(
        self,
        config: RunnerConfig,
        *,
        gateway: ICompletionGateway,
        prompts: IPromptsManager,
        catalog: Optional[IModelCatalog] = None,
        refinement: Optional[RefinementPipeline] = None,
        competition: Optional[CompetitionRunner] = None,
        judging: Optional[JudgingPipeline] = None,
        time_service: Optional[ITimeService] = None,
        fs_service: Optional[IFileSystemService] = None,
        logger: Optional[logging.Logger] = None,
        progress_callback: Optional[Callable[[RunnerEvent], None]] = None,
        control: Optional[RunnerControl] = None,
    ) -> None:
        self.config = config
        self._gateway = gateway
        self._prompts = prompts
        self._catalog = catalog
        self._time = time_service or TimeService()
        self._refinement = refinement or RefinementPipeline(gateway, prompts, time_service=self._time)
        self._competition = competition or CompetitionRunner(gateway, prompts, catalog=catalog)
        self._judging = judging or JudgingPipeline(gateway, prompts, catalog=catalog)
        self._fs = fs_service or FileSystemService()
        self._logger = logger or LOGGER
        self._progress_callback = progress_callback
        self._control = control or RunnerControl()

    # --------------------------------------------------------------------- #
    # Logging helpers

    @staticmethod
    def _snippet(text: str, limit: int = 220) -> str:
        if not text:
            return "(empty)"
        collapsed = " ".join(text.strip().split())
        if len(collapsed) <= limit:
            return collapsed
        return collapsed[: limit - 1] + "…"

    def _color(self, text: str, code: str) -> str:
        if not self.config.use_color:
            return text
        return f"{code}{text}{Style.RESET_ALL}"

    def _verbose(self, text: str, code: str = Fore.WHITE) -> None:
        if self.config.verbose:
            self._logger.info("%s", self._color(text, code))

    # --------------------------------------------------------------------- #
    # Progress hooks

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._progress_callback is None:
            return
        self._progress_callback(RunnerEvent(type=event_type, payload=payload))

    def _on_round(self, entry: RefinementRound) -> None:
        label = "Seed" if entry.round_number == 0 else f"Round {entry.round_number}"
        self._verbose(f"  {label} ▶ {self._snippet(entry.response)}", Fore.GREEN)
        self._emit("refinement_round", round=entry.to_dict())

    def _on_competitor(self, entry: CompetitorGeneration) -> None:
        if entry.status is GenerationStatus.COMPLETED:
            self._verbose(f"  {entry.model_id} ▶ {self._snippet(entry.response)}", Fore.BLUE)
        elif entry.status is GenerationStatus.FAILED:
            self._verbose(f"  {entry.model_id} ▶ error={entry.error}", Fore.RED + Style.BRIGHT)
        self._emit("competitor", generation=entry.to_dict())

    def _on_judge_result(self, result: JudgingResult) -> None:
        self._verbose(f"  Judge ▶ {result.model_id}: {result.weighted_total}", Fore.YELLOW)
        self._emit("judge_result", result=result.to_dict())

    def _refinement_chunk(self, delta: str) -> None:
        self._emit("stream_chunk", phase="refinement", model=None, delta=delta)

    def _competition_chunk(self, model_id: str, delta: str) -> None:
        self._emit("stream_chunk", phase="competition", model=model_id, delta=delta)

    def _checkpoint(self) -> None:
        if self._control.should_stop():
            raise _RunCancelled()

    def _phase(self, name: str, **payload: Any) -> None:
        self._verbose(f"[Phase] {name}", Fore.MAGENTA + Style.BRIGHT)
        self._emit("phase_started", phase=name, **payload)

    # --------------------------------------------------------------------- #
    # Phases

    async def _select_competitors(self) -> List[str]:
        if self.config.competitor_model_ids:
            return list(self.config.competitor_model_ids)
        if self._catalog is None or self.config.auto_competitors <= 0:
            raise ValidationError("At least one competitor model is required", field="competitor_model_ids", value=[])
        await self._catalog.refresh()
        picked = [model.id for model in flagship_models(self._catalog.models()) if model.id != AUTO_MODEL_ID]
        if not picked:
            raise ValidationError("No flagship models available for automatic selection", field="competitor_model_ids")
        selected = picked[: self.config.auto_competitors]
        self._logger.info("Auto-selected competitors: %s", ", ".join(selected))
        return selected

    async def _execute(self, artifacts: RunArtifacts) -> None:
        config = self.config
        prompt = config.prompt

        if config.enhance_prompt:
            self._checkpoint()
            self._phase("enhancement")
            prompt = await enhance_prompt(self._gateway, self._prompts, prompt, config.enhance_model_id)
            artifacts.enhanced_prompt = prompt
            self._emit("prompt_enhanced", prompt=prompt)

        self._phase("refinement", max_rounds=config.max_refinement_rounds)
        outcome = await self._refinement.run(
            prompt,
            RefinementSettings(
                refiner_model_ids=tuple(config.refiner_model_ids),
                max_rounds=config.max_refinement_rounds,
                mode=config.refinement_mode,
                temperature=config.refinement_temperature,
                early_stop=config.early_stop,
                generate_seed=config.generate_seed,
                stream_refinement=config.stream,
            ),
            on_round=self._on_round,
            on_chunk=self._refinement_chunk if config.stream else None,
            control=self._control,
        )
        artifacts.refinement = outcome
        if outcome.state is RefinementState.CANCELLED:
            raise _RunCancelled()
        if outcome.state is RefinementState.FAILED:
            artifacts.status = STATUS_FAILED
            artifacts.error = str(outcome.error) if outcome.error else "Refinement failed"
            return

        refined_prompt = outcome.final_response
        self._checkpoint()
        competitors = await self._select_competitors()
        artifacts.competitor_model_ids = competitors
        self._phase("competition", competitors=competitors)
        artifacts.generations = await self._competition.run(
            refined_prompt,
            competitors,
            concurrency=config.competition_concurrency,
            failure_policy=config.failure_policy,
            temperature=config.temperature,
            on_update=self._on_competitor,
            on_chunk=self._competition_chunk if config.stream else None,
            control=self._control,
        )
        self._checkpoint()

        self._phase("judging", judge=config.judge_model_id)
        artifacts.results = await self._judging.run(
            artifacts.generations,
            config.criteria,
            judge_model_id=config.judge_model_id,
            prompt=refined_prompt,
            failure_policy=config.failure_policy,
            on_result=self._on_judge_result,
            control=self._control,
        )
        self._checkpoint()
        artifacts.status = STATUS_COMPLETED

    def _write_results(self, artifacts: RunArtifacts) -> None:
        if self.config.outdir is None:
            return
        path = self.config.outdir / f"kombat_{artifacts.run_id}.json"
        artifacts.results_path = path
        self._fs.write_json(path, artifacts.to_dict())
        self._logger.info("Wrote results to %s", path)

    # --------------------------------------------------------------------- #
    # Public API

    async def run(self) -> RunArtifacts:
        """Execute the configured run; failures are reported in the artifacts."""
        run_id = uuid.uuid4().hex[:12]
        artifacts = RunArtifacts(run_id=run_id, status=STATUS_FAILED, prompt=self.config.prompt)

        with LogContext(run_id=run_id):
            self._logger.info("Starting run %s", run_id)
            self._emit(
                "run_started",
                run_id=run_id,
                prompt=self.config.prompt,
                refiner_model_ids=list(self.config.refiner_model_ids),
                competitor_model_ids=list(self.config.competitor_model_ids),
                judge_model_id=self.config.judge_model_id,
                started_at=self._time.now_iso(),
            )
            try:
                await self._execute(artifacts)
            except _RunCancelled:
                artifacts.status = STATUS_CANCELLED
            except KombatError as exc:
                self._logger.error("Run %s failed: %s", run_id, exc)
                artifacts.status = STATUS_FAILED
                artifacts.error = str(exc)

            self._write_results(artifacts)
            if artifacts.status == STATUS_COMPLETED:
                winner = artifacts.winner
                if winner is not None:
                    self._verbose(
                        f"[OK] Winner: {winner.display_name} ({winner.weighted_total})", Fore.GREEN + Style.BRIGHT
                    )
                self._emit("run_completed", artifacts=artifacts.to_dict())
            elif artifacts.status == STATUS_CANCELLED:
                self._logger.info("Run %s cancelled", run_id)
                self._emit("run_cancelled", artifacts=artifacts.to_dict())
            else:
                self._emit("run_failed", error=artifacts.error, artifacts=artifacts.to_dict())
        return artifacts


__all__ = [
    "KombatRunner",
    "RunArtifacts",
    "RunnerConfig",
    "RunnerControl",
    "RunnerEvent",
    "STATUS_CANCELLED",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
]
