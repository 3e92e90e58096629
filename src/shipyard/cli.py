from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config import PipelineConfig, load_config
from .dockerfiles import write_dockerfiles
from .errors import PipelineError
from .logging_config import configure_logging
from .models import EventType, RepositoryEvent
from .orchestrator import RunController, RunResult, generate_run_id
from .sandbox import CommandRunner
from .stages import build_pipeline_stages
from .stages.image_builder import build_image, local_reference
from .stages.publisher import image_references
from .trigger import eligible_stages
from .workspace import WorkspaceManager

console = Console()

EVENT_CHOICES = click.Choice([event.value for event in EventType])


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="shipyard", message="shipyard %(version)s")
def main() -> None:
    """Test, package, publish and deploy a service on repository events."""


@main.command()
@click.option("--event", "event_type", type=EVENT_CHOICES, default=None, help="Repository event type.")
@click.option("--branch", type=str, default=None, help="Branch (or refs/heads/...) the event targets.")
@click.option("--commit", type=str, default=None, help="Commit identifier of the event.")
@click.option("--committed-at", type=click.DateTime(), default=None, help="Commit timestamp (newest-commit policy).")
@click.option("--from-github-env", is_flag=True, default=False, help="Read the event from GitHub Actions variables.")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--source-dir", type=click.Path(exists=True, file_okay=False, path_type=Path), default=None)
@click.option("--dry-run", is_flag=True, default=False, help="Log docker/ssh commands without running them.")
@click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")
@click.option("--run-id", type=str, default=None, help="Override generated run identifier.")
def run(
    event_type: Optional[str],
    branch: Optional[str],
    commit: Optional[str],
    committed_at: Optional[datetime],
    from_github_env: bool,
    config_path: Optional[Path],
    source_dir: Optional[Path],
    dry_run: bool,
    verbose: bool,
    run_id: Optional[str],
) -> None:
    """Execute the pipeline for one repository event."""

    logger = configure_logging(verbose=verbose, logger_name="shipyard.cli")
    try:
        config = _prepare_config(config_path, dry_run, source_dir)
        event = _build_event(event_type, branch, commit, committed_at, from_github_env)
        controller = RunController(config=config, stages=build_pipeline_stages())
        result = controller.execute(event, run_id=run_id)
    except (PipelineError, ValidationError) as exc:
        raise click.ClickException(str(exc)) from exc

    logger.debug("Run summary: %s", result.run.summary())
    _print_summary(result)
    if not result.succeeded:
        sys.exit(1)


@main.command()
@click.option("--event", "event_type", type=EVENT_CHOICES, required=True)
@click.option("--branch", type=str, required=True)
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
def evaluate(event_type: str, branch: str, config_path: Optional[Path]) -> None:
    """Print the stages an event is allowed to run."""

    config = _load(config_path)
    event = RepositoryEvent(type=EventType(event_type), branch=branch, commit="evaluate")
    for name in eligible_stages(event, config.release_branch):
        click.echo(name)


@main.command()
@click.option("--output", "output_dir", type=click.Path(file_okay=False, path_type=Path), default=Path("."))
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
def render(output_dir: Path, config_path: Optional[Path]) -> None:
    """Write the canonical test and release Dockerfiles."""

    config = _load(config_path)
    for path in write_dockerfiles(config.build, output_dir).values():
        click.echo(str(path))


@main.command()
@click.argument("commit")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
def refs(commit: str, config_path: Optional[Path]) -> None:
    """Print the version and latest image references for COMMIT."""

    config = _load(config_path)
    try:
        for reference in image_references(config.image, commit):
            click.echo(reference)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.option("--commit", type=str, default=None, help="Commit baked into the image; `unversioned` when omitted.")
@click.option("--tag", "local_ref", type=str, default=None, help="Local tag for the built image.")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--source-dir", type=click.Path(exists=True, file_okay=False, path_type=Path), default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
def build(
    commit: Optional[str],
    local_ref: Optional[str],
    config_path: Optional[Path],
    source_dir: Optional[Path],
    dry_run: bool,
    verbose: bool,
) -> None:
    """Build the release image locally without testing or publishing it."""

    configure_logging(verbose=verbose, logger_name="shipyard.cli")
    try:
        config = _prepare_config(config_path, dry_run, source_dir)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    build_id = generate_run_id()
    workspace = WorkspaceManager(config.work_root)
    workdir = workspace.create(build_id)
    try:
        runner = CommandRunner(workdir, dry_run=config.dry_run, policy=config.sandbox)
        image = build_image(
            runner,
            config,
            workdir,
            local_ref or local_reference(config.image.name, build_id),
            commit=commit,
        )
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        workspace.discard(workdir, keep=config.keep_workdir)
    click.echo(f"{image.local_ref} ({image.embedded_commit})")


def _load(config_path: Optional[Path]) -> PipelineConfig:
    try:
        return load_config(config_path)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc


def _prepare_config(config_path: Optional[Path], dry_run: bool, source_dir: Optional[Path]) -> PipelineConfig:
    config = load_config(config_path, dry_run=dry_run)
    if source_dir is not None:
        config.source_dir = source_dir
    config.source_dir = Path(config.source_dir).resolve()
    config.work_root.mkdir(parents=True, exist_ok=True)
    return config


def _build_event(
    event_type: Optional[str],
    branch: Optional[str],
    commit: Optional[str],
    committed_at: Optional[datetime],
    from_github_env: bool,
) -> RepositoryEvent:
    if from_github_env:
        return RepositoryEvent.from_github_env()
    missing = [
        option
        for option, value in (("--event", event_type), ("--branch", branch), ("--commit", commit))
        if not value
    ]
    if missing:
        raise click.UsageError(f"Missing {', '.join(missing)} (or pass --from-github-env)")
    return RepositoryEvent(
        type=EventType(event_type),
        branch=branch,
        commit=commit,
        committed_at=committed_at,
    )


def _print_summary(result: RunResult) -> None:
    run = result.run
    table = Table(title=f"Run {run.run_id}", show_lines=True)
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Details")
    for stage in run.stages:
        table.add_row(stage.name, stage.status.value, stage.summary)
    console.print(table)
    if run.artifact:
        for tag in run.artifact.tags:
            console.print(f"Published: {run.artifact.reference(tag)} {run.artifact.digest or ''}".rstrip())
    console.print(f"Commit: {run.commit}")
    console.print(f"Status: {run.status.value}")
