"""Public API for the model-kombat package."""

from __future__ import annotations

from .competition import CompetitionRunner, estimate_generation_cost
from .container import ServiceContainer, create_container
from .domain import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    CompetitorGeneration,
    FailurePolicy,
    JudgingCriteria,
    JudgingResult,
    Model,
    RefinementOutcome,
    RefinementRound,
    RefinementState,
)
from .factories import PipelineFactory, RunnerConfigBuilder
from .flagship import FLAGSHIP_MODEL_IDS, is_flagship_model, model_for_round
from .infrastructure import ModelCatalog, OpenRouterClient, RateLimitedTransport, StreamingDecoder
from .judging import JudgingPipeline, rank_results, weighted_total
from .refinement import RefinementPipeline, RefinementSettings, enhance_prompt
from .runner import KombatRunner, RunArtifacts, RunnerConfig, RunnerControl, RunnerEvent
from .webapp import create_app

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "CompetitionRunner",
    "CompetitorGeneration",
    "FLAGSHIP_MODEL_IDS",
    "FailurePolicy",
    "JudgingCriteria",
    "JudgingPipeline",
    "JudgingResult",
    "KombatRunner",
    "Model",
    "ModelCatalog",
    "OpenRouterClient",
    "PipelineFactory",
    "RateLimitedTransport",
    "RefinementOutcome",
    "RefinementPipeline",
    "RefinementRound",
    "RefinementSettings",
    "RefinementState",
    "RunArtifacts",
    "RunnerConfig",
    "RunnerConfigBuilder",
    "RunnerControl",
    "RunnerEvent",
    "ServiceContainer",
    "StreamingDecoder",
    "create_app",
    "create_container",
    "enhance_prompt",
    "estimate_generation_cost",
    "is_flagship_model",
    "model_for_round",
    "rank_results",
    "weighted_total",
]
