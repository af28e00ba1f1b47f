"""FastAPI application exposing the model-kombat gateway and pipelines."""

# pyright: reportUnusedFunction=false

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, cast

from fastapi import FastAPI, HTTPException, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..container import ServiceContainer, create_container
from ..domain import ChatRequest, CompetitorGeneration, FailurePolicy, GenerationStatus, JudgingCriteria, Role
from ..exceptions import KombatError, ValidationError
from ..factories import PipelineFactory
from ..flagship import flagship_models
from ..infrastructure.api_client import create_multimodal_message
from ..refinement import SEPARATE_MODE, RefinementSettings
from ..runner import KombatRunner, RunnerConfig, RunnerControl, RunnerEvent
from ..services import IConfigurationManager
from .errors import error_payload, status_for_error
from .job_manager import JobManager
from .sse import completion_events, response_payload
from .websocket import WebSocketManager

LOGGER = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]


# Pydantic models for request/response validation
class MessageBody(BaseModel):
    role: Role
    content: str
    image_urls: List[str] = Field(default_factory=list)


class ChatBody(BaseModel):
    """Request model for a single completion."""

    model: str
    messages: List[MessageBody]
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    json_mode: bool = False
    stream: bool = False


class CriteriaBody(BaseModel):
    relevance: int = 25
    accuracy: int = 25
    completeness: int = 25
    clarity: int = 25


class RefineBody(BaseModel):
    """Request model for a refinement run."""

    prompt: str
    refiner_models: List[str]
    max_rounds: int = 3
    mode: str = SEPARATE_MODE
    temperature: Optional[float] = None
    early_stop: bool = True
    generate_seed: bool = False


class CompeteBody(BaseModel):
    """Request model for a competition."""

    prompt: str
    models: List[str]
    concurrency: int = 1
    failure_policy: FailurePolicy = FailurePolicy.ISOLATE
    temperature: Optional[float] = Field(default=None, ge=0, le=2)


class GenerationBody(BaseModel):
    model_id: str
    response: str
    display_name: Optional[str] = None


class JudgeBody(BaseModel):
    """Request model for judging a set of responses."""

    generations: List[GenerationBody]
    judge_model: str
    criteria: CriteriaBody = Field(default_factory=CriteriaBody)
    prompt: Optional[str] = None
    failure_policy: FailurePolicy = FailurePolicy.ISOLATE


class RunRequest(BaseModel):
    """Request model for starting a full run; unset fields fall back to the defaults."""

    prompt: str
    refiner_models: Optional[List[str]] = None
    competitor_models: Optional[List[str]] = None
    judge_model: Optional[str] = None
    max_rounds: Optional[int] = None
    mode: Optional[str] = None
    criteria: Optional[CriteriaBody] = None
    enhance_prompt: Optional[bool] = None
    enhance_model: Optional[str] = None
    generate_seed: Optional[bool] = None
    early_stop: Optional[bool] = None
    refinement_temperature: Optional[float] = None
    temperature: Optional[float] = None
    auto_competitors: Optional[int] = None
    concurrency: Optional[int] = None
    failure_policy: Optional[FailurePolicy] = None
    stream: Optional[bool] = None
    verbose: Optional[bool] = None


class HealthResponse(BaseModel):
    status: str = "ok"


class ModelsResponse(BaseModel):
    models: List[Dict[str, Any]]
    count: int


class RunResponse(BaseModel):
    status: str
    config: Dict[str, Any]


class ActionResponse(BaseModel):
    status: str


def _factory(app: FastAPI) -> PipelineFactory:
    return cast(PipelineFactory, app.state.factory)


def _job_manager(app: FastAPI) -> JobManager:
    return cast(JobManager, app.state.job_manager)


def _criteria(body: CriteriaBody) -> JudgingCriteria:
    criteria = JudgingCriteria(**body.model_dump())
    criteria.validate()
    return criteria


def _setup_runner_factory(
    factory: PipelineFactory,
) -> Callable[[RunnerConfig, Callable[[RunnerEvent], None], RunnerControl], KombatRunner]:
    def di_runner_factory(
        config: RunnerConfig,
        progress_callback: Callable[[RunnerEvent], None],
        control: RunnerControl,
    ) -> KombatRunner:
        return factory.create_runner(config=config, control=control, progress_callback=progress_callback)

    return di_runner_factory


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(KombatError)
    async def kombat_error_handler(request: Request, exc: KombatError) -> JSONResponse:
        LOGGER.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_for_error(exc), content=error_payload(exc))


def _register_health_routes(app: FastAPI) -> None:
    """Register health, defaults, state and catalog endpoints."""

    @app.get("/api/health", response_model=HealthResponse, tags=["health"])
    async def api_health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/api/defaults", tags=["config"])
    async def api_defaults() -> Dict[str, Any]:
        """Get default run configuration values."""
        return _job_manager(app).defaults()

    @app.get("/api/state", tags=["state"])
    async def api_state() -> Dict[str, Any]:
        """Get current run state snapshot."""
        return _job_manager(app).snapshot()

    @app.get("/api/models", response_model=ModelsResponse, tags=["config"])
    async def api_models(force: bool = False, flagship_only: bool = False) -> ModelsResponse:
        """List catalog models, refreshing the cache when stale or forced."""
        models = await _factory(app).catalog.refresh(force=force)
        if flagship_only:
            models = flagship_models(models)
        return ModelsResponse(models=[model.to_dict() for model in models], count=len(models))


def _register_phase_routes(app: FastAPI) -> None:
    """Register endpoints that run a single phase and answer with its result."""

    @app.post("/api/chat", tags=["gateway"], response_model=None)
    async def api_chat(body: ChatBody) -> StreamingResponse | Dict[str, Any]:
        """Proxy one chat completion; ``stream`` answers with server-sent events."""
        request = ChatRequest(
            model_id=body.model,
            messages=tuple(
                create_multimodal_message(message.role, message.content, message.image_urls)
                for message in body.messages
            ),
            temperature=body.temperature,
            max_tokens=body.max_tokens,
            response_format={"type": "json_object"} if body.json_mode else None,
        )
        request.validate()
        gateway = _factory(app).gateway
        if body.stream:
            return StreamingResponse(
                completion_events(gateway, request),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache"},
            )
        response = await gateway.complete(request, phase="chat")
        return response_payload(response)

    @app.post("/api/refine", tags=["pipelines"], response_model=None)
    async def api_refine(body: RefineBody) -> JSONResponse:
        """Run a refinement; a failed run answers with the error status and its completed rounds."""
        outcome = await _factory(app).create_refinement().run(
            body.prompt,
            RefinementSettings(
                refiner_model_ids=tuple(body.refiner_models),
                max_rounds=body.max_rounds,
                mode=body.mode,
                temperature=body.temperature,
                early_stop=body.early_stop,
                generate_seed=body.generate_seed,
            ),
        )
        code = status_for_error(outcome.error) if outcome.error is not None else status.HTTP_200_OK
        return JSONResponse(status_code=code, content=outcome.to_dict())

    @app.post("/api/compete", tags=["pipelines"])
    async def api_compete(body: CompeteBody) -> Dict[str, Any]:
        generations = await _factory(app).create_competition().run(
            body.prompt,
            body.models,
            concurrency=body.concurrency,
            failure_policy=body.failure_policy,
            temperature=body.temperature,
        )
        return {"generations": [entry.to_dict() for entry in generations]}

    @app.post("/api/judge", tags=["pipelines"])
    async def api_judge(body: JudgeBody) -> Dict[str, Any]:
        """Score the submitted responses and answer with the ranked results."""
        if not body.generations:
            raise ValidationError("At least one response is required", field="generations", value=[])
        generations = [
            CompetitorGeneration(
                model_id=entry.model_id,
                display_name=entry.display_name or entry.model_id,
                response=entry.response,
                status=GenerationStatus.COMPLETED,
            )
            for entry in body.generations
        ]
        results = await _factory(app).create_judging().run(
            generations,
            _criteria(body.criteria),
            judge_model_id=body.judge_model,
            prompt=body.prompt,
            failure_policy=body.failure_policy,
        )
        return {"results": [result.to_dict() for result in results]}


def _register_control_routes(app: FastAPI) -> None:
    """Register full-run control endpoints."""

    @app.post("/api/run", response_model=RunResponse, tags=["control"])
    async def api_start_run(request: RunRequest) -> RunResponse:
        """Start a full run in the background; progress is published on the WebSocket."""
        payload = request.model_dump(exclude_none=True, mode="json")
        try:
            cfg = _job_manager(app).start_run(payload)
        except RuntimeError:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A run is already in progress")
        return RunResponse(status="started", config=cfg)

    @app.post("/api/cancel", response_model=ActionResponse, tags=["control"])
    async def api_cancel() -> ActionResponse:
        if _job_manager(app).cancel():
            return ActionResponse(status="cancelling")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No active run to cancel.")


def _register_websocket_routes(app: FastAPI) -> None:
    @app.websocket("/api/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Send a state snapshot, the run history, then live progress events."""
        ws_manager: WebSocketManager = app.state.websocket_manager
        snapshot = _job_manager(app).snapshot()

        await ws_manager.connect(websocket)
        initial_events: List[Dict[str, Any]] = [{"type": "status", "payload": snapshot["status"]}]
        initial_events.extend(snapshot["history"])
        await ws_manager.send_events(websocket, initial_events)


def _server_settings(config_manager: IConfigurationManager) -> Dict[str, Any]:
    server = config_manager.get_section("server")
    return {
        "outdir": server.get("outdir"),
        "cors_origins": server.get("cors_origins") or DEFAULT_CORS_ORIGINS,
        "defaults": config_manager.get_section("defaults"),
    }


def create_app(
    config: Optional[Mapping[str, Any]] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """Factory for the FastAPI web application.

    Args:
        config: Mapping handed to :func:`create_container` when no container is given
        container: Optional pre-built ServiceContainer; the caller keeps ownership

    Returns:
        Configured FastAPI application instance
    """
    owns_container = container is None
    services = container if container is not None else create_container(config)
    factory = PipelineFactory(services)
    settings = _server_settings(services.resolve(IConfigurationManager))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await _job_manager(app).aclose()
        if owns_container:
            await services.aclose()

    app = FastAPI(
        title="Model Kombat API",
        description="Prompt refinement, model competitions and judging over an OpenRouter-compatible gateway",
        version="1.0.0",
        lifespan=lifespan,
    )

    outdir = Path(settings["outdir"]) if settings["outdir"] else None
    manager = JobManager(
        runner_factory=_setup_runner_factory(factory),
        outdir=outdir,
        defaults=settings["defaults"],
    )
    websocket_manager = WebSocketManager()
    manager.set_websocket_manager(websocket_manager)

    app.state.service_container = services
    app.state.factory = factory
    app.state.job_manager = manager
    app.state.websocket_manager = websocket_manager
    if outdir is not None:
        LOGGER.info("[Artifacts] Using output directory: %s", outdir)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings["cors_origins"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_health_routes(app)
    _register_phase_routes(app)
    _register_control_routes(app)
    _register_websocket_routes(app)
    return app


__all__ = ["create_app"]
