import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

import stepcat.cli as cli_module
from stepcat import __version__
from stepcat.cli import app
from stepcat.controls import StopController
from stepcat.errors import MaxIterationsExceededError
from stepcat.models import IterationStatus, IterationType, StepStatus
from stepcat.storage import Database

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_ambient_token(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)


class FakeOrchestrator:
    instances: list["FakeOrchestrator"] = []
    error: Exception | None = None
    log_levels: list[int] = []

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.stop_controller = StopController()
        FakeOrchestrator.instances.append(self)

    def run(self) -> int:
        FakeOrchestrator.log_levels.append(logging.getLogger("stepcat").level)
        if FakeOrchestrator.error is not None:
            raise FakeOrchestrator.error
        return self.kwargs.get("execution_id") or 1


@pytest.fixture
def fake_orchestrator(monkeypatch):
    FakeOrchestrator.instances = []
    FakeOrchestrator.error = None
    FakeOrchestrator.log_levels = []
    monkeypatch.setattr(cli_module, "Orchestrator", FakeOrchestrator)
    return FakeOrchestrator


def _plan(tmp_path: Path) -> Path:
    plan = tmp_path / "plan.md"
    plan.write_text("## Step 1: Setup\n", encoding="utf-8")
    return plan


def test_cli_supports_version_flag():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.stdout.strip() == f"stepcat {__version__}"


def test_cli_supports_short_version_flag():
    result = runner.invoke(app, ["-V"])

    assert result.exit_code == 0
    assert result.stdout.strip() == f"stepcat {__version__}"


def test_run_requires_file_or_execution_id(tmp_path):
    result = runner.invoke(app, ["run", "--dir", str(tmp_path)])

    assert result.exit_code == 1
    assert "Either --file" in result.output


def test_run_requires_token(tmp_path, fake_orchestrator):
    result = runner.invoke(app, ["run", "--file", str(_plan(tmp_path)), "--dir", str(tmp_path)])

    assert result.exit_code == 1
    assert "GitHub token is required" in result.output
    assert fake_orchestrator.instances == []


def test_run_passes_settings_to_orchestrator(tmp_path, fake_orchestrator):
    (tmp_path / "stepcat.yaml").write_text("stepcat:\n  build_timeout_minutes: 15\n", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "run",
            "--file",
            str(_plan(tmp_path)),
            "--dir",
            str(tmp_path),
            "--token",
            "ghp_test",
            "--max-iterations",
            "5",
            "--review-agent",
            "claude",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "All steps completed" in result.output
    kwargs = fake_orchestrator.instances[0].kwargs
    assert kwargs["github_token"] == "ghp_test"
    assert kwargs["max_iterations_per_step"] == 5
    assert kwargs["build_timeout_minutes"] == 15.0
    assert kwargs["review_agent_kind"] == "claude"
    assert kwargs["implementation_agent_kind"] == "claude"
    assert kwargs["work_dir"] == tmp_path.resolve()
    assert (tmp_path / ".stepcat" / "stepcat.log").exists()


def test_log_level_flag_applies_to_run(tmp_path, fake_orchestrator, monkeypatch):
    monkeypatch.setenv("STEPCAT_LOG_LEVEL", "warning")
    (tmp_path / "stepcat.yaml").write_text("stepcat:\n  log_level: error\n", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "--log-level",
            "debug",
            "run",
            "--file",
            str(_plan(tmp_path)),
            "--dir",
            str(tmp_path),
            "--token",
            "t",
        ],
    )

    assert result.exit_code == 0, result.output
    assert fake_orchestrator.log_levels == [logging.DEBUG]


def test_log_level_from_environment_without_flag(tmp_path, fake_orchestrator, monkeypatch):
    monkeypatch.setenv("STEPCAT_LOG_LEVEL", "warning")

    result = runner.invoke(
        app, ["run", "--file", str(_plan(tmp_path)), "--dir", str(tmp_path), "--token", "t"]
    )

    assert result.exit_code == 0, result.output
    assert fake_orchestrator.log_levels == [logging.WARNING]


def test_run_failure_exits_with_banner(tmp_path, fake_orchestrator):
    fake_orchestrator.error = MaxIterationsExceededError(1, 3)

    result = runner.invoke(
        app,
        ["run", "--file", str(_plan(tmp_path)), "--dir", str(tmp_path), "--token", "t"],
    )

    assert result.exit_code == 1
    assert "FAILED" in result.output
    assert "Step 1 exceeded maximum iterations (3)" in result.output


def test_resume_without_database_fails(tmp_path, fake_orchestrator):
    result = runner.invoke(
        app, ["run", "--execution-id", "1", "--dir", str(tmp_path), "--token", "t"]
    )

    assert result.exit_code == 1
    assert "No stepcat database found" in result.output


def test_resume_rejects_other_work_dir(tmp_path, fake_orchestrator):
    with Database(tmp_path) as database:
        plan = database.create_plan(str(_plan(tmp_path)), "/somewhere/else", "acme", "widgets")

    result = runner.invoke(
        app, ["run", "--execution-id", str(plan.id), "--dir", str(tmp_path), "--token", "t"]
    )

    assert result.exit_code == 1
    assert "belongs to work directory" in result.output


def test_resume_rejects_unknown_execution(tmp_path, fake_orchestrator):
    Database(tmp_path).close()

    result = runner.invoke(
        app, ["run", "--execution-id", "7", "--dir", str(tmp_path), "--token", "t"]
    )

    assert result.exit_code == 1
    assert "Execution ID 7 not found" in result.output


def test_resume_passes_execution_id(tmp_path, fake_orchestrator):
    with Database(tmp_path) as database:
        plan = database.create_plan(
            str(_plan(tmp_path)), str(tmp_path.resolve()), "acme", "widgets"
        )

    result = runner.invoke(
        app, ["run", "--execution-id", str(plan.id), "--dir", str(tmp_path), "--token", "t"]
    )

    assert result.exit_code == 0, result.output
    assert fake_orchestrator.instances[0].kwargs["execution_id"] == plan.id
    assert fake_orchestrator.instances[0].kwargs["plan_file"] is None


def test_status_shows_latest_execution(tmp_path):
    with Database(tmp_path) as database:
        plan = database.create_plan(str(tmp_path / "plan.md"), str(tmp_path), "acme", "widgets")
        first = database.create_step(plan.id, 1, "Setup")
        database.create_step(plan.id, 2, "Implementation")
        database.update_step_status(first.id, StepStatus.COMPLETED)
        iteration = database.create_iteration(first.id, 1, IterationType.IMPLEMENTATION, "claude")
        database.update_iteration(
            iteration.id, commit_sha="abcdef1234", status=IterationStatus.COMPLETED
        )

    result = runner.invoke(app, ["status", "--dir", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert f"Execution {plan.id}" in result.output
    assert "Progress: 1/2 steps completed" in result.output
    assert "Step 1: Setup [completed]" in result.output
    assert "#1 implementation completed abcdef1" in result.output
    assert "Step 2: Implementation [pending]" in result.output


def test_status_unknown_execution(tmp_path):
    Database(tmp_path).close()

    result = runner.invoke(app, ["status", "--dir", str(tmp_path), "--execution-id", "9"])

    assert result.exit_code == 1
    assert "Execution ID 9 not found" in result.output
