# cli.py
from __future__ import annotations

import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Optional, Sequence

import click

from gatedci.config import EngineConfig
from gatedci.errors import DefinitionError, GatedCIError
from gatedci.git_facts.git import trigger_facts
from gatedci.loader import find_pipeline_files, load_pipeline
from gatedci.model import PipelineDefinition, RunStatus, TriggerContext, normalize_event
from gatedci.scheduler import CancelToken, Scheduler, plan as plan_graph
from gatedci.ui.console import Console, get_console, set_console

EXIT_INTERRUPTED = 130


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the CLI argument or by looking for
    gatedci.yml / gatedci.yaml / *_pipeline.py in the current directory.

    Raises:
        SystemExit: If no file, or more than one candidate, is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create gatedci.yml or specify a different path:\n  gatedci run --pipeline ci/build.yml",
            )
            sys.exit(1)
        return path

    candidates = find_pipeline_files(Path("."))

    if not candidates:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", "  gatedci.yml", "  gatedci.yaml", "  *_pipeline.py"],
            suggestion="Create gatedci.yml, or specify a pipeline explicitly:\n  gatedci run --pipeline ci/build.yml",
        )
        sys.exit(1)

    if len(candidates) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {p}" for p in candidates],
            suggestion="Specify a pipeline explicitly:\n  gatedci run --pipeline gatedci.yml",
        )
        sys.exit(1)

    return candidates[0]


def _exit_invalid(e: DefinitionError) -> None:
    get_console().print_error(
        "Invalid pipeline definition",
        e.message,
        details=[f"{k}: {v}" for k, v in {"source": e.source, **e.details}.items() if v],
    )
    sys.exit(1)


def _load_or_exit(path: Path) -> PipelineDefinition:
    try:
        return load_pipeline(path)
    except DefinitionError as e:
        _exit_invalid(e)


def _parse_inputs(values: Sequence[str]) -> Dict[str, str]:
    inputs: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--input")
        inputs[key.strip()] = value
    return inputs


def _read_secrets(names: Sequence[str]) -> Dict[str, str]:
    secrets: Dict[str, str] = {}
    for name in names:
        if name not in os.environ:
            raise click.BadParameter(f"secret {name!r} is not set in the environment", param_hint="--secret")
        secrets[name] = os.environ[name]
    return secrets


def _check_event(ctx, param, value):
    try:
        return normalize_event(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from None


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, step details and engine logs)",
)
@click.pass_context
def cli(ctx, debug):
    """gatedci: declarative, dependency-gated CI pipelines."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (defaults to gatedci.yml if present)")
@click.option("--event", default="push", show_default=True, callback=_check_event, help="Trigger event kind")
@click.option("--branch", default=None, help="Branch name (defaults to the checked-out git branch)")
@click.option("--sha", default=None, help="Commit sha (defaults to git HEAD)")
@click.option("--input", "inputs", multiple=True, metavar="KEY=VALUE", help="Manual trigger input")
@click.option("--secret", "secrets", multiple=True, metavar="NAME", help="Expose an environment variable as a secret")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--workspace", default=None, type=click.Path(file_okay=False), help="Workspace directory")
@click.option("--artifact-dir", default=None, type=click.Path(file_okay=False), help="Artifact store directory")
@click.option("--coverage-url", default=None, help="Coverage ingestion endpoint")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the job graph before running")
@click.pass_context
def run(ctx, pipeline_file, event, branch, sha, inputs, secrets, workers, workspace, artifact_dir, coverage_url, print_plan):
    """Run a pipeline."""
    console = get_console()

    path = discover_pipeline(pipeline_file)
    definition = _load_or_exit(path)

    try:
        config = EngineConfig.from_env(
            max_workers=workers,
            workspace=workspace,
            artifact_dir=artifact_dir,
            coverage_url=coverage_url,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from None

    console.print_debug(
        f"workspace={config.workspace} work_dir={config.work_dir} "
        f"artifacts={config.artifact_dir} workers={config.max_workers}"
    )

    git_branch, git_sha = trigger_facts(config.workspace)
    trigger = TriggerContext(
        event=event,
        branch=branch if branch is not None else git_branch,
        sha=sha or git_sha,
        inputs=_parse_inputs(inputs),
        secrets=_read_secrets(secrets),
    )

    cancel = CancelToken()
    interrupted = False
    try:
        scheduler = Scheduler(definition, trigger, config=config, cancel=cancel, console=console)

        console.print_run_started(
            pipeline=definition.name,
            source=str(path),
            job_count=len(scheduler.graph.jobs),
            event=trigger.event,
            branch=trigger.branch,
        )
        if print_plan:
            console.print_plan(scheduler.graph)

        with ThreadPoolExecutor(max_workers=1) as runner:
            future = runner.submit(scheduler.run)
            try:
                result = future.result()
            except KeyboardInterrupt:
                interrupted = True
                cancel.cancel("interrupted by user")
                console.print_info("\nInterrupted, waiting for running steps to finish...")
                result = future.result()
    except DefinitionError as e:
        _exit_invalid(e)
    except GatedCIError as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result)
    console.print_failure_output(result)

    if interrupted:
        sys.exit(EXIT_INTERRUPTED)
    if result.status is not RunStatus.SUCCEEDED:
        sys.exit(1)


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (defaults to gatedci.yml if present)")
@click.pass_context
def plan(ctx, pipeline_file):
    """Show the job graph of a pipeline without running it."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    definition = _load_or_exit(path)
    try:
        graph = plan_graph(definition)
    except DefinitionError as e:
        _exit_invalid(e)

    console.print_info(f"Pipeline: {definition.name} ({path})")
    console.print_plan(graph)
    for stage in definition.stages:
        if stage.condition is not None:
            console.print_info(f"  {stage.id} runs when {stage.condition.describe()}")


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (defaults to gatedci.yml if present)")
def validate(pipeline_file: Optional[str]):
    """Check a pipeline definition and exit non-zero when it is invalid."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    definition = _load_or_exit(path)
    try:
        graph = plan_graph(definition)
    except DefinitionError as e:
        _exit_invalid(e)
    console.print_info(
        f"OK: {definition.name}: {len(definition.stages)} stage(s), {len(graph.jobs)} job(s), "
        f"{len(graph.levels)} level(s)"
    )


if __name__ == "__main__":
    cli()
