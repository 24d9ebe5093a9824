import logging
from pathlib import Path
from typing import Optional

import pytest

from stepcat.agents.base import Agent, AgentRequest, AgentResult
from stepcat.controls import StopController
from stepcat.errors import (
    AgentError,
    ExecutionNotFoundError,
    MaxIterationsExceededError,
    MergeConflictError,
    MissingCommitError,
)
from stepcat.events import EventEmitter, EventRecorder
from stepcat.models import (
    BuildStatus,
    IssueStatus,
    IssueType,
    IterationStatus,
    IterationType,
    ReviewStatus,
    Severity,
    StepStatus,
    count_counted_iterations,
)
from stepcat.orchestrator import ExecutionEngine, Orchestrator
from stepcat.storage import Database

PASS_REVIEW = '{"result": "PASS", "issues": []}'
FAIL_REVIEW = (
    '{"result": "FAIL", "issues": [{"file": "src/app.py", "line": 3, '
    '"severity": "error", "description": "Missing error handling"}]}'
)

PLAN_TEXT = """# Widget plan

## Step 1: Setup

Create the project skeleton.

## Step 2: Implementation

Build the widget.
"""


class FakeRepo:
    """Stands in for the work tree's HEAD."""

    def __init__(self, head: str = "base000") -> None:
        self.head = head
        self.counter = 0
        self.pushes: list[Path] = []

    def commit(self) -> str:
        self.counter += 1
        self.head = f"commit{self.counter}"
        return self.head

    def push(self, work_dir: Path) -> str:
        self.pushes.append(work_dir)
        return ""


class FakeImplementationAgent(Agent):
    name = "claude"

    def __init__(self, repo: FakeRepo, commits: Optional[list[bool]] = None) -> None:
        self.repo = repo
        self.commits = commits or [True]
        self.requests: list[AgentRequest] = []

    def run(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        makes_commit = self.commits[min(len(self.requests) - 1, len(self.commits) - 1)]
        sha = self.repo.commit() if makes_commit else None
        return AgentResult(success=True, commit_sha=sha, output="agent transcript")


class FakeReviewAgent(Agent):
    name = "codex"

    def __init__(self, outputs: Optional[list] = None) -> None:
        self.outputs = outputs or [PASS_REVIEW]
        self.requests: list[AgentRequest] = []

    def run(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        output = self.outputs[min(len(self.requests) - 1, len(self.outputs) - 1)]
        if isinstance(output, Exception):
            raise output
        return AgentResult(success=True, output=output)


class FakeChecker:
    owner = "acme"
    repo = "widgets"

    def __init__(self, repo: FakeRepo, results: Optional[list] = None) -> None:
        self._repo = repo
        self.results = results or [True]
        self.checked: list[str] = []
        self.described: list[str] = []
        self._last: Optional[str] = None

    def wait_for_checks_to_pass(self, sha, timeout_minutes=30, attempt=1, max_attempts=1, iteration_id=None):
        self.checked.append(sha)
        self._last = sha
        result = self.results[min(len(self.checked) - 1, len(self.results) - 1)]
        if isinstance(result, Exception):
            raise result
        return result

    def get_last_tracked_sha(self):
        return self._last

    def get_latest_commit_sha(self):
        return self._repo.head

    def describe_failures(self, sha):
        self.described.append(sha)
        return f"tests failed on {sha}"


class Harness:
    def __init__(self, tmp_path: Path, **options) -> None:
        self.tmp_path = tmp_path
        self.plan_file = tmp_path / "plan.md"
        self.plan_file.write_text(options.pop("plan_text", PLAN_TEXT), encoding="utf-8")
        self.db = Database(tmp_path)
        self.repo = FakeRepo()
        self.agent = FakeImplementationAgent(self.repo, options.pop("commits", None))
        self.reviewer = FakeReviewAgent(options.pop("reviews", None))
        self.checker = FakeChecker(self.repo, options.pop("ci", None))
        self.emitter = EventEmitter()
        self.events = EventRecorder()
        self.emitter.subscribe(self.events)
        self.options = options

    def orchestrator(self, **overrides) -> Orchestrator:
        kwargs = dict(
            work_dir=self.tmp_path,
            plan_file=self.plan_file,
            storage=self.db,
            implementation_agent=self.agent,
            review_agent=self.reviewer,
            checker=self.checker,
            emitter=self.emitter,
            pusher=self.repo.push,
        )
        kwargs.update(self.options)
        kwargs.update(overrides)
        return Orchestrator(**kwargs)

    def seed_plan(self, titles=("Setup", "Implementation")):
        plan = self.db.create_plan(str(self.plan_file), str(self.tmp_path), "acme", "widgets")
        steps = [self.db.create_step(plan.id, number, title) for number, title in enumerate(titles, 1)]
        return plan, steps


@pytest.fixture
def harness(tmp_path: Path):
    def build(**options) -> Harness:
        return Harness(tmp_path, **options)

    return build


def test_two_steps_complete_with_one_implementation_each(harness):
    h = harness()

    plan_id = h.orchestrator().run()

    steps = h.db.get_steps(plan_id)
    assert [(step.title, step.status) for step in steps] == [
        ("Setup", StepStatus.COMPLETED),
        ("Implementation", StepStatus.COMPLETED),
    ]
    for step in steps:
        iterations = h.db.get_iterations(step.id)
        assert [(item.type, item.status) for item in iterations] == [
            (IterationType.IMPLEMENTATION, IterationStatus.COMPLETED)
        ]
        assert iterations[0].build_status is BuildStatus.PASSED
        assert iterations[0].review_status is ReviewStatus.PASSED
        assert iterations[0].review_log == PASS_REVIEW
        assert "agent transcript" in iterations[0].implementation_log

    assert len(h.repo.pushes) == 2
    assert h.checker.checked == ["commit1", "commit2"]
    starts = h.events.of_type("step_start")
    assert [(event.current, event.total) for event in starts] == [(1, 2), (2, 2)]
    assert len(h.events.of_type("all_complete")) == 1
    assert [event.is_resume for event in h.events.of_type("execution_started")] == [False]


def test_plan_records_owner_and_repo(harness):
    h = harness()

    plan = h.db.get_plan(h.orchestrator().run())

    assert (plan.owner, plan.repo) == ("acme", "widgets")
    assert Path(plan.plan_file_path) == h.plan_file.resolve()


def test_review_prompt_includes_plan_and_commit(harness):
    h = harness(plan_text="## Step 1: Setup\n\nUse poetry.\n")

    h.orchestrator().run()

    prompt = h.reviewer.requests[0].prompt
    assert "Use poetry." in prompt
    assert "git show commit1" in prompt
    assert h.reviewer.requests[0].expect_commit is False


def test_review_always_failing_exceeds_max_iterations(harness):
    h = harness(reviews=[FAIL_REVIEW], plan_text="## Step 1: Setup\n")

    with pytest.raises(MaxIterationsExceededError, match=r"exceeded maximum iterations \(3\)"):
        h.orchestrator(max_iterations_per_step=3).run()

    step = h.db.get_steps(1)[0]
    assert step.status is StepStatus.FAILED
    assert len(h.reviewer.requests) == 3
    iterations = h.db.get_iterations(step.id)
    assert [item.type for item in iterations] == [
        IterationType.IMPLEMENTATION,
        IterationType.REVIEW_FIX,
        IterationType.REVIEW_FIX,
    ]
    assert count_counted_iterations(iterations) == 3
    assert h.events.of_type("error")[-1].error == "Step 1 exceeded maximum iterations (3)"
    assert len(h.events.of_type("all_complete")) == 0


def test_review_fix_resolves_issues_and_reviews_the_fix(harness):
    h = harness(reviews=[FAIL_REVIEW, PASS_REVIEW], plan_text="## Step 1: Setup\n")

    h.orchestrator().run()

    step = h.db.get_steps(1)[0]
    first, fix = h.db.get_iterations(step.id)
    assert fix.type is IterationType.REVIEW_FIX
    assert fix.commit_sha == "commit2"
    issues = h.db.get_issues(first.id)
    assert [(issue.type, issue.file_path, issue.line_number) for issue in issues] == [
        (IssueType.CODEX_REVIEW, "src/app.py", 3)
    ]
    assert issues[0].status is IssueStatus.FIXED
    assert "Missing error handling" in h.agent.requests[1].prompt
    assert "Missing error handling" in h.reviewer.requests[1].prompt
    assert "git show commit2" in h.reviewer.requests[1].prompt
    assert [event.issue_id for event in h.events.of_type("issue_resolved")] == [issues[0].id]
    assert step.status is StepStatus.COMPLETED


def test_malformed_review_drives_a_review_fix(harness):
    h = harness(reviews=["Looks good to me!", PASS_REVIEW], plan_text="## Step 1: Setup\n")

    h.orchestrator().run()

    step = h.db.get_steps(1)[0]
    first, fix = h.db.get_iterations(step.id)
    assert fix.type is IterationType.REVIEW_FIX
    issue = h.db.get_issues(first.id)[0]
    assert issue.file_path == "unknown"
    assert "Failed to parse review output as JSON." in issue.description
    assert first.review_status is ReviewStatus.FAILED


def test_ci_failure_then_pass_creates_one_build_fix(harness):
    h = harness(ci=[False, True], plan_text="## Step 1: Setup\n")

    h.orchestrator().run()

    step = h.db.get_steps(1)[0]
    iterations = h.db.get_iterations(step.id)
    assert [item.type for item in iterations] == [
        IterationType.IMPLEMENTATION,
        IterationType.BUILD_FIX,
    ]
    implementation, build_fix = iterations
    assert build_fix.commit_sha == "commit2"
    assert implementation.build_status is BuildStatus.FAILED
    assert build_fix.build_status is BuildStatus.PASSED

    failures = h.db.get_issues(implementation.id)
    assert [issue.type for issue in failures] == [IssueType.CI_FAILURE]
    assert failures[0].description == "tests failed on commit1"
    assert h.db.get_issues(build_fix.id) == []

    assert "tests failed on commit1" in h.agent.requests[1].prompt
    assert "tests failed on commit1" in h.reviewer.requests[0].prompt
    assert [event.status for event in h.events.of_type("github_check")] == [
        "waiting",
        "failure",
        "waiting",
        "success",
    ]
    assert step.status is StepStatus.COMPLETED


def test_ci_failing_every_time_exceeds_max_iterations(harness):
    h = harness(ci=[False], plan_text="## Step 1: Setup\n")

    with pytest.raises(MaxIterationsExceededError):
        h.orchestrator(max_iterations_per_step=2).run()

    step = h.db.get_steps(1)[0]
    assert step.status is StepStatus.FAILED
    assert len(h.db.get_iterations(step.id)) == 2
    assert h.reviewer.requests == []


def test_merge_conflict_fails_the_step(harness):
    h = harness(ci=[MergeConflictError(7, "feature", "main")], plan_text="## Step 1: Setup\n")

    with pytest.raises(MergeConflictError, match="merge conflict"):
        h.orchestrator().run()

    step = h.db.get_steps(1)[0]
    assert step.status is StepStatus.FAILED
    iteration = h.db.get_iterations(step.id)[0]
    assert iteration.build_status is BuildStatus.MERGE_CONFLICT
    issues = h.db.get_issues(iteration.id)
    assert [issue.type for issue in issues] == [IssueType.MERGE_CONFLICT]
    assert "PR #7 is marked as having merge conflicts." in issues[0].description
    assert 'Branch "feature"' in issues[0].description
    assert h.events.of_type("github_check")[-1].status == "blocked"
    assert h.reviewer.requests == []


def test_missing_commit_is_fatal(harness):
    h = harness(commits=[False], plan_text="## Step 1: Setup\n")

    with pytest.raises(MissingCommitError, match="did not create a commit for implementation"):
        h.orchestrator().run()

    iteration = h.db.get_iterations(h.db.get_steps(1)[0].id)[0]
    assert iteration.status is IterationStatus.FAILED
    assert iteration.commit_sha is None
    assert h.repo.pushes == []
    assert "did not create a commit" in h.events.of_type("error")[-1].error


def test_review_agent_failure_is_recorded_and_raised(harness):
    h = harness(reviews=[AgentError("Codex failed with exit code 1")], plan_text="## Step 1: Setup\n")

    with pytest.raises(AgentError):
        h.orchestrator().run()

    iteration = h.db.get_iterations(h.db.get_steps(1)[0].id)[0]
    assert iteration.review_status is ReviewStatus.FAILED
    assert "Review agent failed with error" in iteration.review_log
    assert h.db.get_steps(1)[0].status is StepStatus.IN_PROGRESS


def test_resume_aborts_in_progress_iteration_and_uses_next_number(harness):
    h = harness(plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    stale = h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")

    h.orchestrator(plan_file=None, execution_id=plan.id).run()

    iterations = h.db.get_iterations(step.id)
    assert [(item.iteration_number, item.status) for item in iterations] == [
        (1, IterationStatus.ABORTED),
        (2, IterationStatus.COMPLETED),
    ]
    completes = h.events.of_type("iteration_complete")
    assert [event.iteration_id for event in completes] == [iterations[1].id]
    assert stale.id != iterations[1].id
    assert count_counted_iterations(iterations) == 1
    assert [event.is_resume for event in h.events.of_type("execution_started")] == [True]
    assert len(h.events.of_type("state_sync")) == 2


def test_resume_recovers_manual_commit(harness):
    h = harness(plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    failed = h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")
    h.db.update_iteration(failed.id, status=IterationStatus.FAILED)
    h.repo.head = "manual1"

    h.orchestrator(plan_file=None, execution_id=plan.id).run()

    iterations = h.db.get_iterations(step.id)
    assert len(iterations) == 1
    assert iterations[0].status is IterationStatus.COMPLETED
    assert iterations[0].commit_sha == "manual1"
    assert h.agent.requests == []
    assert h.checker.checked == ["manual1"]
    assert len(h.repo.pushes) == 1
    completes = h.events.of_type("iteration_complete")
    assert [(event.iteration_id, event.commit_sha) for event in completes] == [(failed.id, "manual1")]
    assert h.db.get_steps(plan.id)[0].status is StepStatus.COMPLETED


def test_resume_does_not_recover_known_head(harness):
    h = harness(plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    first = h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")
    h.db.update_iteration(first.id, commit_sha="known1", status=IterationStatus.COMPLETED)
    failed = h.db.create_iteration(step.id, 2, IterationType.REVIEW_FIX, "claude", "codex")
    h.db.update_iteration(failed.id, status=IterationStatus.FAILED)
    h.repo.head = "known1"

    h.orchestrator(plan_file=None, execution_id=plan.id).run()

    iterations = h.db.get_iterations(step.id)
    assert [(item.iteration_number, item.status, item.commit_sha) for item in iterations] == [
        (1, IterationStatus.COMPLETED, "known1"),
        (2, IterationStatus.FAILED, None),
    ]
    assert h.events.of_type("iteration_complete") == []
    assert h.checker.checked == ["known1"]


def test_resume_with_every_step_done_completes_immediately(harness):
    h = harness()
    plan, steps = h.seed_plan()
    for step in steps:
        h.db.update_step_status(step.id, StepStatus.COMPLETED)

    assert h.orchestrator(plan_file=None, execution_id=plan.id).run() == plan.id

    assert len(h.events.of_type("all_complete")) == 1
    assert h.events.of_type("step_start") == []


def test_resume_unknown_execution(harness):
    h = harness()

    with pytest.raises(ExecutionNotFoundError, match="Execution ID 99 not found"):
        h.orchestrator(plan_file=None, execution_id=99).run()


def test_stop_after_step_returns_early(harness):
    h = harness()
    controller = StopController()
    controller.request_stop_after_step()

    plan_id = h.orchestrator(stop_controller=controller).run()

    assert [step.status for step in h.db.get_steps(plan_id)] == [
        StepStatus.COMPLETED,
        StepStatus.PENDING,
    ]
    assert controller.was_stop_after_step_triggered()
    assert h.events.of_type("all_complete") == []


def test_stop_after_step_from_run_state_file(harness, tmp_path):
    h = harness()
    run_state = tmp_path / ".stepcat" / "run-state"
    run_state.parent.mkdir(parents=True, exist_ok=True)
    run_state.write_text("SOFT_STOP\n", encoding="utf-8")

    plan_id = h.orchestrator().run()

    assert h.db.get_steps(plan_id)[1].status is StepStatus.PENDING


def test_requires_plan_file_or_execution_id(harness):
    h = harness()

    with pytest.raises(ValueError):
        h.orchestrator(plan_file=None)


def test_execution_engine_alias():
    assert ExecutionEngine is Orchestrator


def test_fail_verdict_without_issues_is_accepted(harness):
    h = harness(reviews=['{"result": "FAIL", "issues": []}'], plan_text="## Step 1: Setup\n")

    h.orchestrator().run()

    step = h.db.get_steps(1)[0]
    (iteration,) = h.db.get_iterations(step.id)
    assert step.status is StepStatus.COMPLETED
    assert iteration.review_status is ReviewStatus.PASSED
    assert "commit accepted" in iteration.review_log
    assert h.db.get_issues(iteration.id) == []


def test_resume_recovered_fix_resolves_open_issues(harness):
    h = harness(plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    implementation = h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")
    h.db.update_iteration(implementation.id, commit_sha="c1", status=IterationStatus.COMPLETED)
    failure = h.db.create_issue(implementation.id, IssueType.CI_FAILURE, "tests failed on c1")
    build_fix = h.db.create_iteration(step.id, 2, IterationType.BUILD_FIX, "claude", "codex")
    h.db.update_iteration(build_fix.id, status=IterationStatus.FAILED)
    h.repo.head = "manual99"

    h.orchestrator(plan_file=None, execution_id=plan.id).run()

    iterations = h.db.get_iterations(step.id)
    assert [(item.iteration_number, item.status, item.commit_sha) for item in iterations] == [
        (1, IterationStatus.COMPLETED, "c1"),
        (2, IterationStatus.COMPLETED, "manual99"),
    ]
    assert h.db.get_open_issues(step.id) == []
    assert h.db.get_issues(implementation.id)[0].status is IssueStatus.FIXED
    assert [event.issue_id for event in h.events.of_type("issue_resolved")] == [failure.id]
    assert "tests failed on c1" in h.reviewer.requests[0].prompt
    assert h.db.get_steps(plan.id)[0].status is StepStatus.COMPLETED


def test_resume_rereview_does_not_duplicate_open_issues(harness):
    h = harness(reviews=[FAIL_REVIEW, PASS_REVIEW], plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    implementation = h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")
    h.db.update_iteration(implementation.id, commit_sha="c1", status=IterationStatus.COMPLETED)
    earlier = h.db.create_issue(
        implementation.id,
        IssueType.CODEX_REVIEW,
        "Missing error handling",
        file_path="src/app.py",
        line_number=3,
        severity=Severity.ERROR,
    )
    h.db.create_iteration(step.id, 2, IterationType.REVIEW_FIX, "claude", "codex")

    h.orchestrator(plan_file=None, execution_id=plan.id).run()

    issues = h.db.get_issues(implementation.id)
    assert [issue.id for issue in issues] == [earlier.id]
    assert issues[0].status is IssueStatus.FIXED
    assert h.events.of_type("issue_found") == []
    assert "Missing error handling" in h.agent.requests[0].prompt
    iterations = h.db.get_iterations(step.id)
    assert [(item.iteration_number, item.type, item.status) for item in iterations] == [
        (1, IterationType.IMPLEMENTATION, IterationStatus.COMPLETED),
        (2, IterationType.REVIEW_FIX, IterationStatus.ABORTED),
        (3, IterationType.REVIEW_FIX, IterationStatus.COMPLETED),
    ]


def test_resume_finishes_uncommitted_work_in_aborted_iteration(harness, git_repo):
    h = harness(plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    interrupted = h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")
    (git_repo / "wip.py").write_text("print('half done')\n", encoding="utf-8")

    h.orchestrator(work_dir=git_repo, plan_file=None, execution_id=plan.id).run()

    (iteration,) = h.db.get_iterations(step.id)
    assert iteration.id == interrupted.id
    assert (iteration.status, iteration.commit_sha) == (IterationStatus.COMPLETED, "commit1")
    assert len(h.agent.requests) == 1
    assert h.agent.requests[0].resume_session is True
    assert "interrupted while implementing Step 1" in h.agent.requests[0].prompt
    assert h.checker.checked == ["commit1"]
    assert len(h.repo.pushes) == 1
    completes = h.events.of_type("iteration_complete")
    assert [event.iteration_id for event in completes] == [interrupted.id]
    assert h.db.get_steps(plan.id)[0].status is StepStatus.COMPLETED


def test_resume_starts_fresh_when_uncommitted_recovery_makes_no_commit(harness, git_repo):
    h = harness(commits=[False, True], plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")
    (git_repo / "wip.py").write_text("print('half done')\n", encoding="utf-8")

    h.orchestrator(work_dir=git_repo, plan_file=None, execution_id=plan.id).run()

    iterations = h.db.get_iterations(step.id)
    assert [(item.iteration_number, item.status, item.commit_sha) for item in iterations] == [
        (1, IterationStatus.ABORTED, None),
        (2, IterationStatus.COMPLETED, "commit1"),
    ]
    assert [request.resume_session for request in h.agent.requests] == [True, False]


def test_stepcat_state_directory_is_not_uncommitted_work(harness, git_repo):
    h = harness(plan_text="## Step 1: Setup\n")
    plan, (step,) = h.seed_plan(titles=("Setup",))
    h.db.update_step_status(step.id, StepStatus.IN_PROGRESS)
    h.db.create_iteration(step.id, 1, IterationType.IMPLEMENTATION, "claude", "codex")
    (git_repo / ".stepcat").mkdir()
    (git_repo / ".stepcat" / "stepcat.log").write_text("{}\n", encoding="utf-8")

    h.orchestrator(work_dir=git_repo, plan_file=None, execution_id=plan.id).run()

    assert [request.resume_session for request in h.agent.requests] == [False]
    assert [item.iteration_number for item in h.db.get_iterations(step.id)] == [1, 2]


def test_resume_refreshes_pending_steps_from_edited_plan(harness):
    h = harness(plan_text="## Step 1: Setup\n## Step 2: Implementation\n## Step 3: Docs\n")
    plan, steps = h.seed_plan(titles=("Setup", "Implementation", "Old docs", "Dropped"))
    h.db.update_step_status(steps[0].id, StepStatus.COMPLETED)

    h.orchestrator(plan_file=None, execution_id=plan.id).run()

    refreshed = h.db.get_steps(plan.id)
    assert [(step.step_number, step.title, step.status) for step in refreshed] == [
        (1, "Setup", StepStatus.COMPLETED),
        (2, "Implementation", StepStatus.COMPLETED),
        (3, "Docs", StepStatus.COMPLETED),
    ]
    assert len(h.agent.requests) == 2


def test_log_records_carry_execution_and_step(harness, caplog):
    h = harness(plan_text="## Step 1: Setup\n")
    caplog.set_level(logging.INFO, logger="stepcat.orchestrator")

    plan_id = h.orchestrator().run()

    step_records = [record for record in caplog.records if record.getMessage() == "STEP 1: Setup"]
    assert [record.metadata for record in step_records] == [{"execution_id": plan_id, "step": 1}]
