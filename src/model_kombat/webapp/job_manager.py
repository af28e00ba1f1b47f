"""Background orchestration of full runs for the web interface."""

from __future__ import annotations

import asyncio
import copy
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..domain import JudgingCriteria
from ..factories import RunnerConfigBuilder
from ..logging_config import get_logger
from ..runner import STATUS_CANCELLED, STATUS_COMPLETED, RunArtifacts, RunnerConfig, RunnerControl, RunnerEvent
from .websocket import WebSocketManager

LOGGER = get_logger(__name__)

ACTIVE_STATES = {"running", "cancelling"}
HISTORY_EVENTS = {
    "run_started",
    "phase_started",
    "prompt_enhanced",
    "refinement_round",
    "competitor",
    "judge_result",
    "run_completed",
    "run_cancelled",
    "run_failed",
}


class RunnerLike(Protocol):
    async def run(self) -> RunArtifacts: ...  # noqa: E704


RunnerFactory = Callable[[RunnerConfig, Callable[[RunnerEvent], None], RunnerControl], RunnerLike]


class JobManager:
    """Run one kombat at a time as an asyncio task and surface its events."""

    def __init__(
        self,
        *,
        runner_factory: RunnerFactory,
        outdir: Optional[Path] = None,
        defaults: Optional[Dict[str, Any]] = None,
        history_limit: int = 500,
    ) -> None:
        self._runner_factory = runner_factory
        self._outdir = outdir
        if self._outdir is not None:
            self._outdir.mkdir(parents=True, exist_ok=True)
        self._history_limit = history_limit
        self._defaults = self._build_defaults(defaults)

        self._websocket_manager: Optional[WebSocketManager] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._control = RunnerControl()

        self._state: str = "idle"
        self._last_error: Optional[str] = None
        self._artifacts: Optional[Dict[str, Any]] = None
        self._history: List[Dict[str, Any]] = []
        self._active_config: Optional[Dict[str, Any]] = None
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

    # ------------------------------------------------------------------ #
    # Public API

    @property
    def outdir(self) -> Optional[Path]:
        return self._outdir

    @property
    def state(self) -> str:
        return self._state

    def set_websocket_manager(self, manager: WebSocketManager) -> None:
        self._websocket_manager = manager

    def start_run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate ``payload`` and launch the run on the running event loop.

        Raises:
            ValidationError: If the merged configuration is invalid
            RuntimeError: If a run is already in progress
        """
        if self._state in ACTIVE_STATES:
            raise RuntimeError("A run is already in progress.")
        config = self.build_config(payload)
        config_dict = self._config_to_dict(config)

        self._state = "running"
        self._last_error = None
        self._artifacts = None
        self._history = []
        self._active_config = config_dict
        self._started_at = time.time()
        self._finished_at = None
        self._control = RunnerControl()
        self._task = asyncio.get_running_loop().create_task(self._run_worker(config, self._control))
        LOGGER.info(
            "Run started",
            competitors=len(config.competitor_model_ids),
            judge=config.judge_model_id,
            rounds=config.max_refinement_rounds,
        )

        self._publish_event(self._status_event())
        return config_dict

    def cancel(self) -> bool:
        if self._state != "running":
            return False
        self._state = "cancelling"
        self._control.cancel()
        self._publish_event(self._status_event())
        return True

    async def wait(self) -> None:
        """Wait for the active run, if any, to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def aclose(self) -> None:
        """Cancel an active run and wait for it to wind down."""
        task = self._task
        if task is None or task.done():
            return
        self._control.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=5)
        except asyncio.TimeoutError:
            task.cancel()

    def snapshot(self) -> Dict[str, Any]:
        return {"status": self._status_payload(), "history": copy.deepcopy(self._history)}

    def defaults(self) -> Dict[str, Any]:
        defaults_copy = copy.deepcopy(self._defaults)
        defaults_copy["outdir"] = str(self._outdir) if self._outdir is not None else None
        return defaults_copy

    # ------------------------------------------------------------------ #
    # Internal helpers

    async def _run_worker(self, config: RunnerConfig, control: RunnerControl) -> None:
        try:
            runner = self._runner_factory(config, self._handle_runner_event, control)
            artifacts = await runner.run()
            self._artifacts = artifacts.to_dict()
            if artifacts.status == STATUS_COMPLETED:
                self._state = "completed"
            elif artifacts.status == STATUS_CANCELLED:
                self._state = "cancelled"
            else:
                self._state = "error"
                self._last_error = artifacts.error
        except Exception as exc:
            LOGGER.exception("Runner execution failed")
            self._last_error = str(exc)
            self._state = "error"
        finally:
            self._finished_at = time.time()
            LOGGER.info("Run finished", state=self._state, error=self._last_error)
            self._publish_event(self._status_event())

    def _handle_runner_event(self, event: RunnerEvent) -> None:
        event_dict = {"type": event.type, "payload": event.payload}
        if event.type in HISTORY_EVENTS:
            self._history.append(copy.deepcopy(event_dict))
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit :]
        self._publish_event(event_dict)

    def _build_defaults(self, overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        base_defaults: Dict[str, Any] = {
            "refiner_models": ["openai/gpt-4o-mini"],
            "competitor_models": [],
            "judge_model": "openai/gpt-4o",
            "max_rounds": 3,
            "mode": "separate",
            "criteria": JudgingCriteria().as_dict(),
            "enhance_prompt": False,
            "generate_seed": False,
            "early_stop": True,
            "auto_competitors": 4,
            "concurrency": 1,
            "failure_policy": "isolate",
            "stream": True,
        }
        for key, value in (overrides or {}).items():
            if value is not None:
                base_defaults[key] = value
        return base_defaults

    def _publish_event(self, event: Dict[str, Any]) -> None:
        if self._websocket_manager is not None:
            self._websocket_manager.publish(event)

    def _status_event(self) -> Dict[str, Any]:
        return {"type": "status", "payload": self._status_payload()}

    def _status_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "state": self._state,
            "error": self._last_error,
            "config": copy.deepcopy(self._active_config),
            "started_at": self._started_at,
            "finished_at": self._finished_at,
            "ts": int(time.time() * 1000),
        }
        if self._artifacts is not None:
            payload["artifacts"] = copy.deepcopy(self._artifacts)
        return payload

    def build_config(self, payload: Dict[str, Any]) -> RunnerConfig:
        """Merge ``payload`` over the defaults and validate it through the builder."""
        merged = {**self.defaults(), **{k: v for k, v in payload.items() if v is not None}}

        builder = (
            RunnerConfigBuilder()
            .with_prompt(str(merged.get("prompt") or ""))
            .with_refiner_models(_model_list(merged.get("refiner_models")))
            .with_competitors(_model_list(merged.get("competitor_models")))
            .with_auto_competitors(int(merged.get("auto_competitors") or 0))
            .with_judge_model(str(merged.get("judge_model") or ""))
            .with_max_rounds(int(merged["max_rounds"]))
            .with_mode(str(merged["mode"]))
            .with_criteria(JudgingCriteria(**merged["criteria"]))
            .with_enhancement(bool(merged.get("enhance_prompt")), merged.get("enhance_model"))
            .with_generated_seed(bool(merged.get("generate_seed")))
            .with_early_stop(bool(merged.get("early_stop", True)))
            .with_refinement_temperature(merged.get("refinement_temperature"))
            .with_temperature(merged.get("temperature"))
            .with_concurrency(int(merged["concurrency"]))
            .with_failure_policy(merged["failure_policy"])
            .with_stream(bool(merged.get("stream")))
            .with_verbose(bool(merged.get("verbose")))
        )
        outdir = merged.get("outdir")
        if outdir:
            builder.with_outdir(Path(outdir))
        return builder.build()

    @staticmethod
    def _config_to_dict(config: RunnerConfig) -> Dict[str, Any]:
        return {
            "prompt": config.prompt,
            "refiner_models": list(config.refiner_model_ids),
            "competitor_models": list(config.competitor_model_ids),
            "judge_model": config.judge_model_id,
            "max_rounds": config.max_refinement_rounds,
            "mode": config.refinement_mode,
            "criteria": config.criteria.as_dict(),
            "enhance_prompt": config.enhance_prompt,
            "generate_seed": config.generate_seed,
            "early_stop": config.early_stop,
            "auto_competitors": config.auto_competitors,
            "concurrency": config.competition_concurrency,
            "failure_policy": config.failure_policy.value,
            "stream": config.stream,
            "outdir": str(config.outdir) if config.outdir else None,
        }


def _model_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.replace(",", " ").split() if item.strip()]
    return [str(item) for item in value]


__all__ = ["JobManager", "RunnerFactory"]
