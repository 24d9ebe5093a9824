"""Typer CLI wiring for the stepcat orchestrator."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

import typer

from stepcat import __version__
from stepcat.config import Settings, load_settings
from stepcat.errors import ConfigError, StepcatError
from stepcat.logging import configure_logging, get_logger, log_exceptions
from stepcat.models import IterationStatus, StepStatus
from stepcat.orchestrator import Orchestrator
from stepcat.storage import DEFAULT_DB_DIRNAME, Database
from stepcat.storage.database import default_db_path

app = typer.Typer(help="Step-by-step plan executor driving coding agents, CI and code review")

logger = get_logger(__name__)

LOG_FILENAME = "stepcat.log"


def _version_callback(value: bool) -> None:
    """Print the stepcat package version when requested."""

    if value:
        typer.echo(f"stepcat {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stepcat version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option(
        "",
        "--log-level",
        help="Set stepcat log level (e.g. info, warning, debug). Overrides STEPCAT_LOG_LEVEL.",
    ),
) -> None:
    """Global callback to wire shared options like --version."""

    configure_logging(log_level or None)
    ctx.obj = {"log_level": log_level or None}

    return None


def _fail(message: str, started: Optional[float] = None) -> None:
    typer.echo("", err=True)
    typer.echo("=" * 60, err=True)
    typer.echo("FAILED", err=True)
    typer.echo("=" * 60, err=True)
    typer.echo(message, err=True)
    if started is not None:
        typer.echo(f"Elapsed: {time.monotonic() - started:.1f}s", err=True)
    raise typer.Exit(code=1)


def _database_path(settings: Settings, work_dir: Path) -> Path:
    if settings.database_path:
        path = Path(settings.database_path)
        return path if path.is_absolute() else work_dir / path
    return default_db_path(work_dir)


def _validate_resume(
    db_path: Path, execution_id: int, work_dir: Path, plan_file: Optional[Path]
) -> None:
    if not db_path.exists():
        raise StepcatError(
            f"No stepcat database found at {db_path}. Nothing to resume in {work_dir}."
        )
    with Database(db_path=db_path) as database:
        plan = database.get_plan(execution_id)
    if plan is None:
        raise StepcatError(f"Execution ID {execution_id} not found in {db_path}")
    if Path(plan.work_dir).resolve() != work_dir:
        raise StepcatError(
            f"Execution {execution_id} belongs to work directory {plan.work_dir}, not {work_dir}"
        )
    if plan_file is not None and plan_file.resolve() != Path(plan.plan_file_path).resolve():
        raise StepcatError(
            f"Plan file {plan_file} does not match execution {execution_id} "
            f"({plan.plan_file_path})"
        )


@app.command()
def run(
    ctx: typer.Context,
    file: Optional[Path] = typer.Option(
        None, "--file", "-f", help="Markdown plan file with '## Step N: Title' headings."
    ),
    directory: Optional[Path] = typer.Option(
        None, "--dir", "-d", help="Git work directory the agents operate in (default: cwd)."
    ),
    execution_id: Optional[int] = typer.Option(
        None, "--execution-id", "-e", help="Resume an existing execution."
    ),
    token: Optional[str] = typer.Option(
        None, "--token", "-t", help="GitHub token (default: config or GITHUB_TOKEN)."
    ),
    build_timeout: Optional[float] = typer.Option(
        None, "--build-timeout", help="Minutes to wait for GitHub Actions per commit."
    ),
    agent_timeout: Optional[float] = typer.Option(
        None, "--agent-timeout", help="Minutes each agent run may take."
    ),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", help="Committed iterations allowed per step."
    ),
    implementation_agent: Optional[str] = typer.Option(
        None, "--implementation-agent", help="Agent that writes code: claude or codex."
    ),
    review_agent: Optional[str] = typer.Option(
        None, "--review-agent", help="Agent that reviews commits: claude or codex."
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Path to a stepcat.yaml configuration file.",
    ),
) -> None:
    """Execute (or resume) a plan step by step until every step is complete."""

    started = time.monotonic()

    if file is None and execution_id is None:
        _fail("Either --file (new execution) or --execution-id (resume) is required.")
    if execution_id is None and directory is None:
        _fail("--dir is required when starting a new execution.")

    work_dir = (directory or Path.cwd()).resolve()
    if not work_dir.is_dir():
        _fail(f"Work directory does not exist: {work_dir}")
    if file is not None and not file.exists():
        _fail(f"Plan file does not exist: {file}")

    try:
        settings = load_settings(
            work_dir,
            config_path=config,
            overrides={
                "github_token": token,
                "build_timeout_minutes": build_timeout,
                "agent_timeout_minutes": agent_timeout,
                "max_iterations_per_step": max_iterations,
                "implementation_agent": implementation_agent,
                "review_agent": review_agent,
            },
        )
    except ConfigError as exc:
        _fail(str(exc))

    # --log-level beats STEPCAT_LOG_LEVEL and stepcat.yaml
    log_level = (ctx.obj or {}).get("log_level") or settings.log_level
    configure_logging(log_level, log_file=work_dir / DEFAULT_DB_DIRNAME / LOG_FILENAME)

    if not settings.github_token:
        _fail(
            "GitHub token is required. Pass --token, set it in stepcat.yaml "
            "or export GITHUB_TOKEN."
        )

    db_path = _database_path(settings, work_dir)
    storage: Optional[Database] = None
    try:
        if execution_id is not None:
            _validate_resume(db_path, execution_id, work_dir, file)
        storage = Database(db_path=db_path)
        orchestrator = Orchestrator(
            work_dir=work_dir,
            plan_file=file,
            execution_id=execution_id,
            storage=storage,
            implementation_agent_kind=settings.implementation_agent,
            review_agent_kind=settings.review_agent,
            github_token=settings.github_token,
            build_timeout_minutes=settings.build_timeout_minutes,
            agent_timeout_minutes=settings.agent_timeout_minutes,
            max_iterations_per_step=settings.max_iterations_per_step,
            poll_interval_seconds=settings.poll_interval_seconds,
        )
        with log_exceptions(logger, message="stepcat run aborted"):
            plan_id = orchestrator.run()
    except StepcatError as exc:
        _fail(str(exc), started)
    except Exception as exc:
        _fail(f"Unexpected error: {exc}", started)
    finally:
        if storage is not None:
            storage.close()

    elapsed = time.monotonic() - started
    if orchestrator.stop_controller.was_stop_after_step_triggered():
        typer.echo(f"Stopped after step as requested. Resume with --execution-id {plan_id}")
    else:
        typer.echo(f"All steps completed in {elapsed:.1f}s (execution ID: {plan_id})")


@app.command()
def status(
    directory: Optional[Path] = typer.Option(
        None, "--dir", "-d", help="Work directory holding the .stepcat database (default: cwd)."
    ),
    execution_id: Optional[int] = typer.Option(
        None, "--execution-id", "-e", help="Execution to show (default: the latest)."
    ),
) -> None:
    """Summarise an execution's steps and iterations."""

    work_dir = (directory or Path.cwd()).resolve()
    db_path = default_db_path(work_dir)
    if not db_path.exists():
        _fail(f"No stepcat database found at {db_path}")

    with Database(db_path=db_path) as database:
        if execution_id is None:
            plans = database.get_all_plans()
            if not plans:
                _fail("No executions recorded yet.")
            execution_id = plans[0].id
        try:
            state = database.get_execution_state(execution_id)
        except StepcatError as exc:
            _fail(str(exc))

    plan = state.plan
    completed = sum(1 for step in state.steps if step.status is StepStatus.COMPLETED)
    typer.echo(f"Execution {plan.id}: {plan.plan_file_path}")
    typer.echo(f"Repository: {plan.owner}/{plan.repo}")
    typer.echo(f"Progress: {completed}/{len(state.steps)} steps completed")
    for step in state.steps:
        typer.echo(f"  Step {step.step_number}: {step.title} [{step.status.value}]")
        for iteration in state.iterations.get(step.id, []):
            details = [iteration.type.value, iteration.status.value]
            if iteration.commit_sha:
                details.append(iteration.commit_sha[:7])
            if iteration.build_status is not None:
                details.append(f"build={iteration.build_status.value}")
            if iteration.review_status is not None:
                details.append(f"review={iteration.review_status.value}")
            marker = "x" if iteration.status is IterationStatus.FAILED else "-"
            typer.echo(f"    {marker} #{iteration.iteration_number} {' '.join(details)}")


def main() -> None:
    """Entry point used by the console script."""

    app()


if __name__ == "__main__":
    main()
