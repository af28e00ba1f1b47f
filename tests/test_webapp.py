from __future__ import annotations

import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from fakes import ScriptedGateway, catalog_entry, judge_reply, last_user_text
from model_kombat.container import ServiceContainer
from model_kombat.domain import ChatRequest, ChatResponse
from model_kombat.exceptions import (
    AuthError,
    KombatError,
    ModelUnavailableError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)
from model_kombat.infrastructure.config_manager import ConfigurationManager
from model_kombat.infrastructure.model_catalog import ModelCatalog
from model_kombat.infrastructure.prompts_manager import PromptsManager
from model_kombat.infrastructure.utility_services import FileSystemService, TimeService
from model_kombat.services import (
    ChunkCallback,
    ICompletionGateway,
    IConfigurationManager,
    IFileSystemService,
    IModelCatalog,
    IPromptsManager,
    ITimeService,
)
from model_kombat.webapp import create_app
from model_kombat.webapp.errors import error_payload, status_for_error
from model_kombat.webapp.sse import format_event

MODELS = [
    catalog_entry("openai/gpt-4o", name="GPT-4o"),
    catalog_entry("tiny/local-model", name="Tiny"),
    catalog_entry("anthropic/claude-3.5-sonnet", name="Claude 3.5 Sonnet"),
]


def kombat_responder(request: ChatRequest, phase: Optional[str]) -> object:
    if phase == "critique":
        return "It should mention an example."
    if phase == "refine":
        return "A refined question about " + request.model_id
    if phase == "competition":
        return f"answer-{request.model_id}"
    if phase == "judging":
        match = re.search(r"answer-(\S+)", last_user_text(request))
        assert match is not None
        return judge_reply(90, 90, 90, 90) if match.group(1) == "b/two" else judge_reply(60, 60, 60, 60)
    return "Hello from the model"


class SlowGateway(ScriptedGateway):
    """Gateway whose calls wait until the test releases them."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.released = False

    async def complete(
        self, request: ChatRequest, on_chunk: Optional[ChunkCallback] = None, *, phase: Optional[str] = None
    ) -> ChatResponse:
        while not self.released:
            await asyncio.sleep(0.01)
        return await super().complete(request, on_chunk, phase=phase)


def build_container(gateway: ScriptedGateway, config: Optional[Dict[str, Any]] = None) -> ServiceContainer:
    config_manager = ConfigurationManager(environ={})
    config_manager.merge(config or {})
    container = ServiceContainer()
    container.register_singleton(IConfigurationManager, config_manager)
    container.register_singleton(ICompletionGateway, gateway)
    container.register_singleton(IModelCatalog, ModelCatalog(gateway))
    container.register_singleton(IPromptsManager, PromptsManager())
    container.register_singleton(ITimeService, TimeService())
    container.register_singleton(IFileSystemService, FileSystemService())
    return container


def _client(gateway: ScriptedGateway, config: Optional[Dict[str, Any]] = None) -> TestClient:
    return TestClient(create_app(container=build_container(gateway, config)))


def _wait_until_idle(client: TestClient) -> Dict[str, Any]:
    for _ in range(500):
        snapshot = client.get("/api/state").json()
        if snapshot["status"]["state"] not in ("running", "cancelling"):
            return snapshot
        time.sleep(0.01)
    raise AssertionError("run did not finish")


def _sse_events(body: str) -> List[Dict[str, Any]]:
    events = []
    for block in body.strip().split("\n\n"):
        data_line = next(line for line in block.splitlines() if line.startswith("data: "))
        events.append(json.loads(data_line[len("data: ") :]))
    return events


def test_health_defaults_and_idle_state() -> None:
    with _client(ScriptedGateway(), {"defaults": {"max_rounds": 5}}) as client:
        assert client.get("/api/health").json() == {"status": "ok"}

        defaults = client.get("/api/defaults").json()
        assert defaults["max_rounds"] == 5
        assert defaults["judge_model"] == "openai/gpt-4o"
        assert defaults["criteria"] == {"relevance": 25, "accuracy": 25, "completeness": 25, "clarity": 25}
        assert defaults["outdir"] is None

        state = client.get("/api/state").json()
        assert state["status"]["state"] == "idle"
        assert state["history"] == []


def test_models_listing_and_flagship_filter() -> None:
    gateway = ScriptedGateway(models=MODELS)
    with _client(gateway) as client:
        listing = client.get("/api/models").json()
        assert listing["count"] == 3
        assert listing["models"][0]["id"] == "openai/gpt-4o"
        assert listing["models"][0]["capabilities"]["json_output"] is True

        flagship = client.get("/api/models", params={"flagship_only": True}).json()
        assert [model["id"] for model in flagship["models"]] == ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"]

        client.get("/api/models", params={"force": True})
    assert gateway.list_calls == 2


def test_chat_returns_completion() -> None:
    gateway = ScriptedGateway(["Paris."])
    with _client(gateway) as client:
        response = client.post(
            "/api/chat",
            json={
                "model": "openai/gpt-4o",
                "messages": [
                    {"role": "system", "content": "Answer briefly."},
                    {"role": "user", "content": "Capital of France?", "image_urls": ["https://img.test/a.png"]},
                ],
                "json_mode": True,
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert body["text"] == "Paris."
    assert body["model"] == "openai/gpt-4o"
    request: ChatRequest = gateway.calls[0]["request"]
    assert gateway.phases() == ["chat"]
    assert request.response_format == {"type": "json_object"}
    assert request.messages[1].to_payload()["content"][1]["image_url"]["url"] == "https://img.test/a.png"


def test_chat_streams_server_sent_events() -> None:
    gateway = ScriptedGateway(["Streaming works"], chunk_size=5)
    with _client(gateway) as client:
        response = client.post(
            "/api/chat",
            json={"model": "openai/gpt-4o", "messages": [{"role": "user", "content": "Hi"}], "stream": True},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    assert [event["type"] for event in events] == ["chunk", "chunk", "chunk", "done"]
    assert "".join(event["payload"]["delta"] for event in events[:-1]) == "Streaming works"
    assert events[-1]["payload"]["text"] == "Streaming works"


def test_chat_stream_reports_upstream_error_as_event() -> None:
    gateway = ScriptedGateway([AuthError("Invalid API key", model_id="openai/gpt-4o", status_code=401)])
    with _client(gateway) as client:
        response = client.post(
            "/api/chat",
            json={"model": "openai/gpt-4o", "messages": [{"role": "user", "content": "Hi"}], "stream": True},
        )

    events = _sse_events(response.text)
    assert events == [
        {
            "type": "error",
            "payload": {
                "detail": "Invalid API key",
                "error": "AuthError",
                "model_id": "openai/gpt-4o",
                "phase": None,
                "upstream_status": 401,
            },
        }
    ]


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (AuthError("Invalid API key"), 401),
        (RateLimitError("Rate limit exceeded", retry_after=3), 429),
        (ModelUnavailableError("No such model"), 404),
        (RequestTimeoutError("Request timed out"), 504),
        (NetworkError("Connection refused"), 502),
    ],
)
def test_chat_maps_gateway_errors_to_status(error: KombatError, status_code: int) -> None:
    with _client(ScriptedGateway([error])) as client:
        response = client.post(
            "/api/chat", json={"model": "openai/gpt-4o", "messages": [{"role": "user", "content": "Hi"}]}
        )

    assert response.status_code == status_code
    body = response.json()
    assert body["detail"] == error.message
    assert body["error"] == type(error).__name__
    if isinstance(error, RateLimitError):
        assert body["retry_after"] == 3


def test_chat_rejects_invalid_requests() -> None:
    with _client(ScriptedGateway()) as client:
        trailing_system = client.post(
            "/api/chat", json={"model": "openai/gpt-4o", "messages": [{"role": "system", "content": "Rules"}]}
        )
        hot = client.post(
            "/api/chat",
            json={"model": "openai/gpt-4o", "messages": [{"role": "user", "content": "Hi"}], "temperature": 3},
        )

    assert trailing_system.status_code == 400
    assert trailing_system.json()["field"] == "messages"
    assert hot.status_code == 422


def test_refine_endpoint_returns_rounds() -> None:
    gateway = ScriptedGateway(responder=kombat_responder)
    with _client(gateway) as client:
        response = client.post(
            "/api/refine", json={"prompt": "What is a monad?", "refiner_models": ["r/one"], "max_rounds": 1}
        )

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "max_rounds_reached"
    assert [entry["round_number"] for entry in body["rounds"]] == [0, 1]
    assert body["final_response"] == "A refined question about r/one"


def test_refine_failure_keeps_partial_rounds() -> None:
    gateway = ScriptedGateway([RateLimitError("Rate limit exceeded")])
    with _client(gateway) as client:
        response = client.post("/api/refine", json={"prompt": "What is a monad?", "refiner_models": ["r/one"]})

    assert response.status_code == 429
    body = response.json()
    assert body["state"] == "failed"
    assert len(body["rounds"]) == 1
    assert body["error"] == "Rate limit exceeded"


def test_refine_rejects_invalid_settings() -> None:
    with _client(ScriptedGateway()) as client:
        response = client.post(
            "/api/refine", json={"prompt": "What is a monad?", "refiner_models": ["r/one"], "max_rounds": 0}
        )
    assert response.status_code == 400
    assert response.json()["field"] == "max_rounds"


def test_compete_endpoint_isolates_failures() -> None:
    def responder(request: ChatRequest, phase: Optional[str]) -> object:
        if request.model_id == "b/two":
            return NetworkError("Connection reset")
        return kombat_responder(request, phase)

    with _client(ScriptedGateway(responder=responder)) as client:
        response = client.post("/api/compete", json={"prompt": "Say hi", "models": ["a/one", "b/two"]})

    assert response.status_code == 200
    generations = response.json()["generations"]
    assert [entry["status"] for entry in generations] == ["completed", "failed"]
    assert generations[1]["error"] == "Connection reset"


def test_judge_endpoint_ranks_responses() -> None:
    gateway = ScriptedGateway(responder=kombat_responder)
    with _client(gateway) as client:
        response = client.post(
            "/api/judge",
            json={
                "generations": [
                    {"model_id": "a/one", "response": "answer-a/one"},
                    {"model_id": "b/two", "response": "answer-b/two", "display_name": "Model B"},
                ],
                "judge_model": "j/judge",
                "criteria": {"relevance": 40, "accuracy": 30, "completeness": 20, "clarity": 10},
            },
        )

    assert response.status_code == 200
    results = response.json()["results"]
    assert [(result["display_name"], result["rank"]) for result in results] == [("Model B", 1), ("a/one", 2)]
    assert results[0]["weighted_total"] == 90


def test_judge_endpoint_validates_input() -> None:
    with _client(ScriptedGateway()) as client:
        empty = client.post("/api/judge", json={"generations": [], "judge_model": "j/judge"})
        unbalanced = client.post(
            "/api/judge",
            json={
                "generations": [{"model_id": "a/one", "response": "text"}],
                "judge_model": "j/judge",
                "criteria": {"relevance": 50, "accuracy": 50, "completeness": 50, "clarity": 50},
            },
        )

    assert empty.status_code == 400
    assert empty.json()["field"] == "generations"
    assert unbalanced.status_code == 400
    assert unbalanced.json()["field"] == "criteria"


def test_run_executes_in_background_and_writes_results(tmp_path: Path) -> None:
    gateway = ScriptedGateway(responder=kombat_responder)
    with _client(gateway, {"server": {"outdir": str(tmp_path)}}) as client:
        started = client.post(
            "/api/run",
            json={
                "prompt": "Explain monads",
                "refiner_models": ["r/one"],
                "competitor_models": ["a/one", "b/two"],
                "judge_model": "j/judge",
                "max_rounds": 1,
            },
        )
        assert started.status_code == 200
        assert started.json()["status"] == "started"
        assert started.json()["config"]["competitor_models"] == ["a/one", "b/two"]

        snapshot = _wait_until_idle(client)

    status = snapshot["status"]
    assert status["state"] == "completed"
    assert status["artifacts"]["winner"]["model_id"] == "b/two"
    history_types = [event["type"] for event in snapshot["history"]]
    assert history_types[0] == "run_started"
    assert history_types[-1] == "run_completed"
    assert "stream_chunk" not in history_types
    assert list(tmp_path.glob("kombat_*.json"))


def test_run_rejects_invalid_config_and_concurrent_runs() -> None:
    gateway = SlowGateway(responder=kombat_responder)
    with _client(gateway) as client:
        invalid = client.post("/api/run", json={"prompt": "Explain monads", "competitor_models": ["a/one"], "mode": "x"})
        assert invalid.status_code == 400

        first = client.post("/api/run", json={"prompt": "Explain monads", "competitor_models": ["a/one"]})
        second = client.post("/api/run", json={"prompt": "Explain monads", "competitor_models": ["a/one"]})
        assert first.status_code == 200
        assert second.status_code == 409

        cancel = client.post("/api/cancel")
        assert cancel.json() == {"status": "cancelling"}
        gateway.released = True

        snapshot = _wait_until_idle(client)
        assert snapshot["status"]["state"] == "cancelled"
        assert client.post("/api/cancel").status_code == 400


def test_cancel_without_run_is_rejected() -> None:
    with _client(ScriptedGateway()) as client:
        response = client.post("/api/cancel")
    assert response.status_code == 400
    assert response.json()["detail"] == "No active run to cancel."


def test_websocket_replays_state_and_history() -> None:
    gateway = ScriptedGateway(responder=kombat_responder)
    with _client(gateway) as client:
        client.post(
            "/api/run",
            json={"prompt": "Explain monads", "competitor_models": ["a/one", "b/two"], "judge_model": "j/judge", "max_rounds": 1},
        )
        snapshot = _wait_until_idle(client)

        with client.websocket_connect("/api/ws") as websocket:
            status = websocket.receive_json()
            first_history = websocket.receive_json()

    assert status["type"] == "status"
    assert status["payload"]["state"] == "completed"
    assert first_history == snapshot["history"][0]
    assert first_history["type"] == "run_started"


def test_websocket_receives_live_events() -> None:
    gateway = ScriptedGateway(responder=kombat_responder)
    with _client(gateway) as client:
        with client.websocket_connect("/api/ws") as websocket:
            assert websocket.receive_json()["payload"]["state"] == "idle"
            client.post(
                "/api/run",
                json={"prompt": "Explain monads", "competitor_models": ["a/one"], "judge_model": "j/judge", "max_rounds": 1},
            )
            seen: List[str] = []
            while "run_completed" not in seen:
                seen.append(websocket.receive_json()["type"])

    assert seen[0] == "status"
    assert "stream_chunk" in seen
    assert "judge_result" in seen


def test_app_owns_container_built_from_config() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": []}))
    app = create_app({"api_key": "sk-or-test", "environ": {}, "transport": transport})
    container: ServiceContainer = app.state.service_container

    with TestClient(app) as client:
        assert client.get("/api/models").json() == {"models": [], "count": 0}

    assert not container.is_registered(ICompletionGateway)


def test_error_helpers() -> None:
    error = RateLimitError("Slow down", model_id="a/one", phase="competition", status_code=429, retry_after=2.5)

    assert status_for_error(error) == 429
    assert status_for_error(ValueError("boom")) == 500
    assert error_payload(error) == {
        "detail": "Slow down",
        "error": "RateLimitError",
        "model_id": "a/one",
        "phase": "competition",
        "upstream_status": 429,
        "retry_after": 2.5,
    }
    assert format_event("ping", {"ts": 1}) == 'event: ping\ndata: {"type": "ping", "payload": {"ts": 1}}\n\n'
