# pyright: reportPrivateUsage=false
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from model_kombat.exceptions import ValidationError
from model_kombat.runner import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    RunArtifacts,
    RunnerConfig,
    RunnerControl,
    RunnerEvent,
)
from model_kombat.webapp.job_manager import JobManager


class FakeRunner:
    """Runner stand-in emitting a short scripted event sequence."""

    def __init__(
        self,
        config: RunnerConfig,
        progress: Callable[[RunnerEvent], None],
        control: RunnerControl,
        *,
        loops: int = 1,
        outcome: str = STATUS_COMPLETED,
        explode: bool = False,
    ) -> None:
        self.config = config
        self._progress = progress
        self._control = control
        self._loops = loops
        self._outcome = outcome
        self._explode = explode

    async def run(self) -> RunArtifacts:
        self._progress(RunnerEvent("run_started", {"prompt": self.config.prompt}))
        for index in range(self._loops):
            if self._control.should_stop():
                self._progress(RunnerEvent("run_cancelled", {}))
                return RunArtifacts(run_id="r1", status=STATUS_CANCELLED, prompt=self.config.prompt)
            self._progress(RunnerEvent("stream_chunk", {"delta": str(index)}))
            await asyncio.sleep(0.005)
        if self._explode:
            raise RuntimeError("runner exploded")
        self._progress(RunnerEvent("run_completed", {}))
        error = "Invalid API key" if self._outcome == STATUS_FAILED else None
        return RunArtifacts(run_id="r1", status=self._outcome, prompt=self.config.prompt, error=error)


def _factory(created: Optional[List[FakeRunner]] = None, **options: Any):
    def factory(config: RunnerConfig, progress: Callable[[RunnerEvent], None], control: RunnerControl) -> FakeRunner:
        runner = FakeRunner(config, progress, control, **options)
        if created is not None:
            created.append(runner)
        return runner

    return factory


class RecordingWebSocketManager:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def publish(self, event: Dict[str, Any]) -> None:
        self.events.append(event)


RUN = {"prompt": "Explain CRDTs", "competitor_models": ["a/one"]}


def test_defaults_merge_overrides_and_skip_none(tmp_path: Path) -> None:
    manager = JobManager(runner_factory=_factory(), outdir=tmp_path / "out", defaults={"max_rounds": 5, "mode": None})

    defaults = manager.defaults()
    assert defaults["max_rounds"] == 5
    assert defaults["mode"] == "separate"
    assert defaults["outdir"] == str(tmp_path / "out")
    assert (tmp_path / "out").is_dir()

    defaults["refiner_models"].append("mutated")
    assert manager.defaults()["refiner_models"] == ["openai/gpt-4o-mini"]


def test_build_config_merges_payload_over_defaults() -> None:
    manager = JobManager(runner_factory=_factory())

    config = manager.build_config(
        {
            "prompt": "Explain CRDTs",
            "competitor_models": "a/one, b/two",
            "criteria": {"relevance": 40, "accuracy": 30, "completeness": 20, "clarity": 10},
            "failure_policy": "abort",
            "max_rounds": None,
        }
    )

    assert config.competitor_model_ids == ("a/one", "b/two")
    assert config.refiner_model_ids == ("openai/gpt-4o-mini",)
    assert config.judge_model_id == "openai/gpt-4o"
    assert config.max_refinement_rounds == 3
    assert config.criteria.relevance == 40
    assert config.failure_policy.value == "abort"
    assert config.stream is True


@pytest.mark.parametrize(
    "payload",
    [
        {"prompt": ""},
        {"prompt": "x", "mode": "parallel"},
        {"prompt": "x", "criteria": {"relevance": 90, "accuracy": 90, "completeness": 0, "clarity": 0}},
        {"prompt": "x", "concurrency": 0},
    ],
)
def test_build_config_rejects_invalid_payload(payload: Dict[str, Any]) -> None:
    with pytest.raises(ValidationError):
        JobManager(runner_factory=_factory()).build_config(payload)


def test_run_completes_and_records_history() -> None:
    websocket = RecordingWebSocketManager()

    async def scenario() -> Dict[str, Any]:
        manager = JobManager(runner_factory=_factory(loops=2))
        manager.set_websocket_manager(websocket)  # type: ignore[arg-type]
        config = manager.start_run(RUN)
        assert config["competitor_models"] == ["a/one"]
        assert manager.state == "running"
        await manager.wait()
        return manager.snapshot()

    snapshot = asyncio.run(scenario())

    assert snapshot["status"]["state"] == "completed"
    assert snapshot["status"]["artifacts"]["status"] == "completed"
    assert snapshot["status"]["finished_at"] is not None
    assert [event["type"] for event in snapshot["history"]] == ["run_started", "run_completed"]
    published = [event["type"] for event in websocket.events]
    assert published[0] == "status"
    assert published.count("stream_chunk") == 2
    assert published[-1] == "status"
    assert websocket.events[-1]["payload"]["state"] == "completed"


def test_concurrent_runs_are_rejected_and_cancel_stops_the_run() -> None:
    async def scenario() -> JobManager:
        manager = JobManager(runner_factory=_factory(loops=200))
        manager.start_run(RUN)
        with pytest.raises(RuntimeError, match="already in progress"):
            manager.start_run(RUN)
        await asyncio.sleep(0.01)
        assert manager.cancel() is True
        assert manager.state == "cancelling"
        await manager.wait()
        return manager

    manager = asyncio.run(scenario())

    assert manager.state == "cancelled"
    assert manager.cancel() is False


def test_failed_and_crashed_runs_end_in_error() -> None:
    async def run_with(**options: Any) -> Dict[str, Any]:
        manager = JobManager(runner_factory=_factory(**options))
        manager.start_run(RUN)
        await manager.wait()
        return manager.snapshot()["status"]

    failed = asyncio.run(run_with(outcome=STATUS_FAILED))
    assert failed["state"] == "error"
    assert failed["error"] == "Invalid API key"

    crashed = asyncio.run(run_with(explode=True))
    assert crashed["state"] == "error"
    assert crashed["error"] == "runner exploded"
    assert "artifacts" not in crashed


def test_history_is_bounded() -> None:
    async def scenario() -> List[Dict[str, Any]]:
        manager = JobManager(runner_factory=_factory(), history_limit=3)
        manager.start_run(RUN)
        await manager.wait()
        for index in range(5):
            manager._handle_runner_event(RunnerEvent("judge_result", {"index": index}))
        return manager.snapshot()["history"]

    history = asyncio.run(scenario())

    assert len(history) == 3
    assert [event["payload"]["index"] for event in history] == [2, 3, 4]


def test_aclose_cancels_an_active_run() -> None:
    created: List[FakeRunner] = []

    async def scenario() -> JobManager:
        manager = JobManager(runner_factory=_factory(created, loops=500))
        manager.start_run(RUN)
        await asyncio.sleep(0.01)
        await manager.aclose()
        return manager

    manager = asyncio.run(scenario())

    assert manager.state == "cancelled"
    assert created[0]._control.cancelled is True


def test_run_lifecycle_is_logged_with_fields(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> None:
        manager = JobManager(runner_factory=_factory())
        manager.start_run(RUN)
        await manager.wait()

    with caplog.at_level("INFO", logger="model_kombat.webapp.job_manager"):
        asyncio.run(scenario())

    records = {record.getMessage(): record for record in caplog.records if record.name.endswith("job_manager")}
    started = records["Run started"]
    assert started.kombat_context == {"competitors": 1, "judge": "openai/gpt-4o", "rounds": 3}  # type: ignore[attr-defined]
    assert records["Run finished"].kombat_context == {"state": "completed", "error": None}  # type: ignore[attr-defined]
