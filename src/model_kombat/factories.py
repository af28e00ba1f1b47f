"""Factory functions for creating configured pipelines and runners."""

import random
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .competition import CompetitionRunner
from .container import ServiceContainer
from .domain import FailurePolicy, JudgingCriteria
from .exceptions import ValidationError
from .judging import JudgingPipeline
from .refinement import REFINEMENT_MODES, SEPARATE_MODE, RefinementPipeline
from .runner import KombatRunner, RunnerConfig, RunnerControl, RunnerEvent
from .services import ICompletionGateway, IFileSystemService, IModelCatalog, IPromptsManager, ITimeService


class PipelineFactory:
    """Build pipelines and runners with dependencies resolved from the container."""

    def __init__(self, container: ServiceContainer):
        self._container = container

    @property
    def gateway(self) -> ICompletionGateway:
        return self._container.resolve(ICompletionGateway)

    @property
    def prompts(self) -> IPromptsManager:
        return self._container.resolve(IPromptsManager)

    @property
    def catalog(self) -> IModelCatalog:
        return self._container.resolve(IModelCatalog)

    def create_refinement(self) -> RefinementPipeline:
        return RefinementPipeline(self.gateway, self.prompts, time_service=self._container.resolve(ITimeService))

    def create_competition(self) -> CompetitionRunner:
        return CompetitionRunner(self.gateway, self.prompts, catalog=self.catalog)

    def create_judging(self, rng: Optional[random.Random] = None) -> JudgingPipeline:
        return JudgingPipeline(self.gateway, self.prompts, catalog=self.catalog, rng=rng)

    def create_runner(
        self,
        config: RunnerConfig,
        control: Optional[RunnerControl] = None,
        progress_callback: Optional[Callable[[RunnerEvent], None]] = None,
    ) -> KombatRunner:
        """Create a runner for ``config``.

        Args:
            config: Runner configuration
            control: Optional cancellation hook
            progress_callback: Optional callback for progress events

        Returns:
            Configured KombatRunner instance
        """
        return KombatRunner(
            config,
            gateway=self.gateway,
            prompts=self.prompts,
            catalog=self.catalog,
            refinement=self.create_refinement(),
            competition=self.create_competition(),
            judging=self.create_judging(),
            time_service=self._container.resolve(ITimeService),
            fs_service=self._container.resolve(IFileSystemService),
            control=control,
            progress_callback=progress_callback,
        )


class RunnerConfigBuilder:
    """Builder for validated RunnerConfig instances."""

    def __init__(self) -> None:
        self._prompt: str = ""
        self._refiner_model_ids: List[str] = []
        self._competitor_model_ids: List[str] = []
        self._judge_model_id: str = ""
        self._max_rounds: int = 3
        self._mode: str = SEPARATE_MODE
        self._criteria: JudgingCriteria = JudgingCriteria()
        self._enhance: bool = False
        self._enhance_model_id: Optional[str] = None
        self._generate_seed: bool = False
        self._early_stop: bool = True
        self._refinement_temperature: Optional[float] = None
        self._temperature: Optional[float] = None
        self._concurrency: int = 1
        self._failure_policy: FailurePolicy = FailurePolicy.ISOLATE
        self._auto_competitors: int = 0
        self._stream: bool = False
        self._outdir: Optional[Path] = None
        self._verbose: bool = False
        self._use_color: bool = False

    def with_prompt(self, prompt: str) -> "RunnerConfigBuilder":
        if not prompt.strip():
            raise ValidationError("prompt must not be empty", field="prompt", value=prompt)
        self._prompt = prompt
        return self

    def with_refiner_models(self, model_ids: Sequence[str]) -> "RunnerConfigBuilder":
        self._refiner_model_ids = [model_id for model_id in model_ids if model_id]
        return self

    def with_competitors(self, model_ids: Sequence[str]) -> "RunnerConfigBuilder":
        self._competitor_model_ids = [model_id for model_id in model_ids if model_id]
        return self

    def with_auto_competitors(self, count: int) -> "RunnerConfigBuilder":
        """Pick up to ``count`` flagship models when no competitor is given."""
        if count < 0:
            raise ValidationError("auto competitor count must be non-negative", field="auto_competitors", value=count)
        self._auto_competitors = count
        return self

    def with_judge_model(self, model_id: str) -> "RunnerConfigBuilder":
        self._judge_model_id = model_id
        return self

    def with_max_rounds(self, rounds: int) -> "RunnerConfigBuilder":
        if rounds < 1:
            raise ValidationError("max refinement rounds must be at least 1", field="max_rounds", value=rounds)
        self._max_rounds = rounds
        return self

    def with_mode(self, mode: str) -> "RunnerConfigBuilder":
        if mode not in REFINEMENT_MODES:
            raise ValidationError(f"mode must be one of {', '.join(REFINEMENT_MODES)}", field="mode", value=mode)
        self._mode = mode
        return self

    def with_criteria(self, criteria: JudgingCriteria) -> "RunnerConfigBuilder":
        criteria.validate()
        self._criteria = criteria
        return self

    def with_enhancement(self, enabled: bool = True, model_id: Optional[str] = None) -> "RunnerConfigBuilder":
        self._enhance = enabled
        self._enhance_model_id = model_id
        return self

    def with_generated_seed(self, enabled: bool = True) -> "RunnerConfigBuilder":
        self._generate_seed = enabled
        return self

    def with_early_stop(self, enabled: bool = True) -> "RunnerConfigBuilder":
        self._early_stop = enabled
        return self

    def with_refinement_temperature(self, temperature: Optional[float]) -> "RunnerConfigBuilder":
        self._refinement_temperature = self._check_temperature(temperature, "refinement_temperature")
        return self

    def with_temperature(self, temperature: Optional[float]) -> "RunnerConfigBuilder":
        self._temperature = self._check_temperature(temperature, "temperature")
        return self

    def with_concurrency(self, concurrency: int) -> "RunnerConfigBuilder":
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1", field="concurrency", value=concurrency)
        self._concurrency = concurrency
        return self

    def with_failure_policy(self, policy: FailurePolicy | str) -> "RunnerConfigBuilder":
        try:
            self._failure_policy = FailurePolicy(policy)
        except ValueError as exc:
            raise ValidationError("unknown failure policy", field="failure_policy", value=policy) from exc
        return self

    def with_stream(self, enabled: bool = True) -> "RunnerConfigBuilder":
        self._stream = enabled
        return self

    def with_outdir(self, outdir: Optional[Path]) -> "RunnerConfigBuilder":
        self._outdir = outdir
        return self

    def with_verbose(self, verbose: bool = True) -> "RunnerConfigBuilder":
        self._verbose = verbose
        return self

    def with_color(self, use_color: bool = True) -> "RunnerConfigBuilder":
        self._use_color = use_color
        return self

    @staticmethod
    def _check_temperature(temperature: Optional[float], name: str) -> Optional[float]:
        if temperature is not None and not 0 <= temperature <= 2:
            raise ValidationError(f"{name} must be between 0 and 2", field=name, value=temperature)
        return temperature

    def build(self) -> RunnerConfig:
        """Build the configuration, checking the fields that have no default."""
        if not self._prompt:
            raise ValidationError("prompt is required", field="prompt")
        if not self._refiner_model_ids:
            raise ValidationError("at least one refiner model is required", field="refiner_model_ids")
        if not self._judge_model_id:
            raise ValidationError("a judge model is required", field="judge_model_id")
        if not self._competitor_model_ids and self._auto_competitors == 0:
            raise ValidationError("at least one competitor model is required", field="competitor_model_ids")

        return RunnerConfig(
            prompt=self._prompt,
            refiner_model_ids=tuple(self._refiner_model_ids),
            competitor_model_ids=tuple(self._competitor_model_ids),
            judge_model_id=self._judge_model_id,
            max_refinement_rounds=self._max_rounds,
            refinement_mode=self._mode,
            criteria=self._criteria,
            enhance_prompt=self._enhance,
            enhance_model_id=self._enhance_model_id,
            generate_seed=self._generate_seed,
            early_stop=self._early_stop,
            refinement_temperature=self._refinement_temperature,
            temperature=self._temperature,
            competition_concurrency=self._concurrency,
            failure_policy=self._failure_policy,
            auto_competitors=self._auto_competitors,
            stream=self._stream,
            outdir=self._outdir,
            verbose=self._verbose,
            use_color=self._use_color,
        )


__all__ = ["PipelineFactory", "RunnerConfigBuilder"]
