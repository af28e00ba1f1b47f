"""Command-line interface for model-kombat."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from colorama import Fore, Style, init as colorama_init

from .container import ServiceContainer, create_container
from .domain import FailurePolicy, JudgingCriteria
from .exceptions import ConfigurationError, KombatError
from .factories import PipelineFactory, RunnerConfigBuilder
from .flagship import flagship_models, group_models_by_provider
from .logging_config import StructuredFormatter, configure_logging
from .refinement import REFINEMENT_MODES, SEPARATE_MODE
from .runner import STATUS_COMPLETED, RunArtifacts, RunnerEvent

LOGGER = logging.getLogger(__name__)

DEFAULT_JUDGE_MODEL = "openai/gpt-4o"
DEFAULT_REFINER_MODEL = "openai/gpt-4o-mini"
DEFAULT_AUTO_COMPETITORS = 4


class ColorFormatter(StructuredFormatter):
    COLORS = {
        logging.DEBUG: Style.DIM + Fore.BLUE,
        logging.INFO: Fore.CYAN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Style.BRIGHT + Fore.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, "")
        message = super().format(record)
        if color:
            return f"{color}{message}{Style.RESET_ALL}"
        return message


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("prompt", nargs="?", help="Prompt to refine and put to the competitors")
    parser.add_argument("--prompt-file", type=Path, help="Read the prompt from a file instead")
    parser.add_argument(
        "--refiners",
        nargs="+",
        default=[DEFAULT_REFINER_MODEL],
        help=f"Models that critique and refine the prompt, used in rotation (default: {DEFAULT_REFINER_MODEL})",
    )
    parser.add_argument(
        "--competitors",
        nargs="+",
        default=[],
        help="Competitor model slugs; flagship models are picked automatically when omitted",
    )
    parser.add_argument(
        "--auto-competitors",
        type=int,
        default=DEFAULT_AUTO_COMPETITORS,
        help="How many flagship models to pick when no competitor is given",
    )
    parser.add_argument("--judge", default=DEFAULT_JUDGE_MODEL, help=f"Judge model slug (default: {DEFAULT_JUDGE_MODEL})")
    parser.add_argument("--rounds", type=int, default=3, help="Maximum refinement rounds")
    parser.add_argument("--mode", choices=REFINEMENT_MODES, default=SEPARATE_MODE, help="Refinement mode")
    parser.add_argument(
        "--weights",
        nargs=4,
        type=int,
        metavar=("RELEVANCE", "ACCURACY", "COMPLETENESS", "CLARITY"),
        help="Judging weights in percent; must sum to 100",
    )
    parser.add_argument("--enhance", action="store_true", help="Rewrite the prompt before refining it")
    parser.add_argument("--enhance-model", help="Model used for prompt enhancement")
    parser.add_argument("--generate-seed", action="store_true", help="Let the first refiner draft the seed answer")
    parser.add_argument("--no-early-stop", action="store_true", help="Always run every refinement round")
    parser.add_argument("--refine-temperature", type=float, help="Sampling temperature for refinement calls")
    parser.add_argument("--temperature", type=float, help="Sampling temperature for competitors")
    parser.add_argument("--concurrency", type=int, default=1, help="Competitor generations in flight at once")
    parser.add_argument(
        "--failure-policy",
        choices=[policy.value for policy in FailurePolicy],
        default=FailurePolicy.ISOLATE.value,
        help="Keep going after a competitor or judge failure (isolate) or stop (abort)",
    )
    parser.add_argument("--stream", action="store_true", help="Print text as it streams in")
    parser.add_argument("--outdir", type=Path, help="Write the run results as JSON to this directory")


def build_parser() -> argparse.ArgumentParser:
    """Construct the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="model-kombat",
        description="Refine a prompt with critique rounds, pit models against each other and judge the answers.",
    )
    parser.add_argument("--config", type=Path, help="YAML or JSON configuration file")
    parser.add_argument("--verbose", action="store_true", help="Show progress of every phase.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging to trace HTTP calls.")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output.")
    parser.add_argument("--log-file", type=Path, help="Also write logs to this file")

    commands = parser.add_subparsers(dest="command", required=True)
    _add_run_arguments(commands.add_parser("run", help="Run a full kombat"))

    models = commands.add_parser("models", help="List the models available upstream")
    models.add_argument("--flagship", action="store_true", help="Only list flagship models")
    models.add_argument("--force", action="store_true", help="Bypass the catalog cache")
    models.add_argument("--by-provider", action="store_true", help="Group the listing by provider")

    serve = commands.add_parser("serve", help="Start the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def setup_logging(debug: bool, verbose: bool, *, no_color: bool = False, log_file: Optional[Path] = None) -> bool:
    """Configure root logging; return whether colored output is enabled."""
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    else:
        level = "WARNING"

    use_color = not no_color and sys.stderr.isatty() and os.getenv("NO_COLOR") is None
    if use_color:
        colorama_init()
    configure_logging(
        level=level,
        log_file=log_file,
        format_string="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        console_formatter=ColorFormatter if use_color else None,
    )
    return use_color


def _paint(text: str, code: str, use_color: bool) -> str:
    return f"{code}{text}{Style.RESET_ALL}" if use_color else text


def _read_prompt(args: argparse.Namespace) -> str:
    if args.prompt_file is not None:
        return args.prompt_file.read_text(encoding="utf-8")
    if args.prompt:
        return str(args.prompt)
    raise ConfigurationError("Provide a prompt argument or --prompt-file")


def _container_config(args: argparse.Namespace) -> Dict[str, Any]:
    return {"config_file": args.config} if args.config is not None else {}


def _print_summary(artifacts: RunArtifacts, use_color: bool) -> None:
    if artifacts.refined_prompt:
        print(_paint("Refined prompt:", Style.BRIGHT, use_color))
        print(artifacts.refined_prompt)
        print()
    if artifacts.results:
        print(_paint("Ranking:", Style.BRIGHT, use_color))
        for result in artifacts.results:
            line = f"  {result.rank}. {result.display_name} - {result.weighted_total}"
            if result.error:
                line += f" (error: {result.error})"
            print(_paint(line, Fore.GREEN if result.rank == 1 else Fore.WHITE, use_color))
    for generation in artifacts.generations:
        if generation.error:
            print(_paint(f"  {generation.model_id} failed: {generation.error}", Fore.RED, use_color))
    if artifacts.results_path is not None:
        print(f"Results written to {artifacts.results_path}")


async def _run_command(args: argparse.Namespace, use_color: bool) -> int:
    builder = (
        RunnerConfigBuilder()
        .with_prompt(_read_prompt(args))
        .with_refiner_models(args.refiners)
        .with_competitors(args.competitors)
        .with_auto_competitors(0 if args.competitors else args.auto_competitors)
        .with_judge_model(args.judge)
        .with_max_rounds(args.rounds)
        .with_mode(args.mode)
        .with_enhancement(args.enhance, args.enhance_model)
        .with_generated_seed(args.generate_seed)
        .with_early_stop(not args.no_early_stop)
        .with_refinement_temperature(args.refine_temperature)
        .with_temperature(args.temperature)
        .with_concurrency(args.concurrency)
        .with_failure_policy(args.failure_policy)
        .with_stream(args.stream)
        .with_outdir(args.outdir)
        .with_verbose(args.verbose or args.debug)
        .with_color(use_color)
    )
    if args.weights:
        builder.with_criteria(JudgingCriteria(*args.weights))
    config = builder.build()
    if config.outdir is not None:
        config.outdir.mkdir(parents=True, exist_ok=True)

    def print_chunks(event: RunnerEvent) -> None:
        if event.type == "stream_chunk":
            sys.stdout.write(event.payload["delta"])
            sys.stdout.flush()
        elif event.type == "phase_started":
            print(_paint(f"\n== {event.payload['phase']} ==", Fore.MAGENTA, use_color))

    container = create_container(_container_config(args))
    try:
        runner = PipelineFactory(container).create_runner(
            config, progress_callback=print_chunks if config.stream else None
        )
        artifacts = await runner.run()
    finally:
        await container.aclose()

    if config.stream:
        print()
    _print_summary(artifacts, use_color)
    if artifacts.status != STATUS_COMPLETED:
        print(_paint(f"Run {artifacts.status}: {artifacts.error or ''}".rstrip(": "), Fore.RED, use_color))
        return 1
    return 0


async def _models_command(args: argparse.Namespace, use_color: bool) -> int:
    container: ServiceContainer = create_container(_container_config(args))
    try:
        models = await PipelineFactory(container).catalog.refresh(force=args.force)
    finally:
        await container.aclose()

    if args.flagship:
        models = flagship_models(models)
    if args.by_provider:
        for provider, entries in sorted(group_models_by_provider(models).items()):
            print(_paint(provider, Style.BRIGHT, use_color))
            for model in entries:
                print(f"  {model.id}  {model.display_name}")
    else:
        for model in models:
            print(f"{model.id}  {model.display_name}  ctx={model.context_length}")
    print(f"{len(models)} models")
    return 0


def _serve_command(args: argparse.Namespace) -> int:
    import uvicorn

    from .webapp import create_app

    uvicorn.run(create_app(_container_config(args)), host=args.host, port=args.port)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    use_color = setup_logging(args.debug, args.verbose, no_color=args.no_color, log_file=args.log_file)

    try:
        if args.command == "serve":
            return _serve_command(args)
        if args.command == "models":
            return asyncio.run(_models_command(args, use_color))
        return asyncio.run(_run_command(args, use_color))
    except KeyboardInterrupt:
        print("\n[Interrupted] Exiting.")
        return 130
    except ConfigurationError as exc:
        print(_paint(f"Configuration error: {exc}", Fore.RED, use_color), file=sys.stderr)
        return 2
    except KombatError as exc:
        print(_paint(f"Error: {exc}", Fore.RED, use_color), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
