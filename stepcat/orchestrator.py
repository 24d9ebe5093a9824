"""Step/iteration state machine driving agents, CI and review for a plan."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional

from stepcat.agents.base import Agent, AgentKind, AgentRequest, AgentResult, create_agent
from stepcat.ci_checker import GitHubChecker
from stepcat.controls.run_state import RUN_STATE_FILENAME, StopController
from stepcat.errors import (
    ExecutionNotFoundError,
    MaxIterationsExceededError,
    MergeConflictError,
    MissingCommitError,
    StepcatError,
)
from stepcat.events import (
    AllCompleteEvent,
    ErrorEvent,
    Event,
    EventEmitter,
    ExecutionStartedEvent,
    GitHubCheckEvent,
    IssueFoundEvent,
    IssueResolvedEvent,
    IterationCompleteEvent,
    IterationStartEvent,
    LogEvent,
    ReviewCompleteEvent,
    ReviewStartEvent,
    StateSyncEvent,
    StepCompleteEvent,
    StepStartEvent,
)
from stepcat.integrations import git
from stepcat.integrations.github import GitHubClient
from stepcat.logging import get_logger
from stepcat.models import (
    BuildStatus,
    Issue,
    IssueStatus,
    IssueType,
    Iteration,
    IterationStatus,
    IterationType,
    Plan,
    ReviewStatus,
    Severity,
    Step,
    StepStatus,
    count_counted_iterations,
)
from stepcat.plan_parser import PlanStep, load_plan
from stepcat.prompts import (
    build_fix_prompt,
    continue_interrupted_prompt,
    implementation_prompt,
    review_build_fix_prompt,
    review_code_fixes_prompt,
    review_fix_prompt,
    review_implementation_prompt,
)
from stepcat.review_parser import ReviewParser, ReviewResult
from stepcat.storage import Database, Storage

logger = get_logger(__name__)

DEFAULT_MAX_ITERATIONS_PER_STEP = 3
DEFAULT_TIMEOUT_MINUTES = 30

_STAGE_LABELS = {
    IterationType.IMPLEMENTATION: "implementation",
    IterationType.BUILD_FIX: "build fix",
    IterationType.REVIEW_FIX: "review fix",
}


def _latest_committed(iterations: list[Iteration]) -> Optional[Iteration]:
    committed = [
        iteration
        for iteration in iterations
        if iteration.commit_sha and iteration.status is not IterationStatus.ABORTED
    ]
    return max(committed, key=lambda item: item.iteration_number, default=None)


class Orchestrator:
    """Runs every pending step of a plan to completion, one iteration at a time.

    All state lives in ``storage``; nothing that recovery depends on is held
    only in memory, so a killed process can be resumed with ``execution_id``.
    Collaborators are resolved once here: agents from their :class:`AgentKind`
    and the CI checker from the work directory's ``origin`` remote.
    """

    def __init__(
        self,
        *,
        work_dir: Path | str,
        plan_file: Optional[Path | str] = None,
        execution_id: Optional[int] = None,
        storage: Optional[Storage] = None,
        implementation_agent: Optional[Agent] = None,
        review_agent: Optional[Agent] = None,
        implementation_agent_kind: AgentKind | str = AgentKind.CLAUDE,
        review_agent_kind: AgentKind | str = AgentKind.CODEX,
        checker: Optional[GitHubChecker] = None,
        github_token: Optional[str] = None,
        emitter: Optional[EventEmitter] = None,
        build_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
        agent_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
        max_iterations_per_step: int = DEFAULT_MAX_ITERATIONS_PER_STEP,
        poll_interval_seconds: Optional[float] = None,
        stop_controller: Optional[StopController] = None,
        pusher: Optional[Callable[[Path], str]] = None,
    ) -> None:
        if plan_file is None and execution_id is None:
            raise ValueError("Either plan_file or execution_id is required.")
        if max_iterations_per_step < 1:
            raise ValueError("max_iterations_per_step must be at least 1")

        self.work_dir = Path(work_dir).resolve()
        self.plan_file = Path(plan_file).resolve() if plan_file is not None else None
        self.execution_id = execution_id
        self.storage: Storage = storage if storage is not None else Database(self.work_dir)
        self.emitter = emitter or EventEmitter()
        self.build_timeout_minutes = build_timeout_minutes
        self.agent_timeout_minutes = agent_timeout_minutes
        self.max_iterations_per_step = max_iterations_per_step
        self.stop_controller = stop_controller or StopController(
            self.work_dir / ".stepcat" / RUN_STATE_FILENAME
        )
        self._push = pusher or git.push

        self.implementation_agent_kind = AgentKind.from_string(implementation_agent_kind)
        self.review_agent_kind = AgentKind.from_string(review_agent_kind)
        self.implementation_agent = implementation_agent or create_agent(
            self.implementation_agent_kind
        )
        self.review_agent = review_agent or create_agent(self.review_agent_kind)

        if checker is None:
            owner, repo = GitHubChecker.parse_repo_info(self.work_dir)
            client = GitHubClient(github_token or "", owner, repo)
            checker_options = {}
            if poll_interval_seconds is not None:
                checker_options["poll_interval"] = poll_interval_seconds
            checker = GitHubChecker(client, self.work_dir, emitter=self.emitter, **checker_options)
        self.checker = checker

        self.review_parser = ReviewParser()
        self.plan: Optional[Plan] = None
        self._logger = logger
        self.plan_content = ""

    # Public API ---------------------------------------------------------------

    def run(self) -> int:
        """Execute until every step is complete; returns the execution id."""

        started = time.monotonic()
        plan = self._initialize_or_resume()

        steps = self.storage.get_steps(plan.id)
        pending = [
            step for step in steps if step.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS)
        ]
        self._log(
            f"Found {len(steps)} steps ({len(steps) - len(pending)} done, {len(pending)} pending)"
        )

        if not pending:
            self._log("All steps are already complete", "success")
            self._emit(AllCompleteEvent(total_time_ms=0))
            return plan.id

        step = self._current_step()
        while step is not None:
            self._execute_step(step)

            if self.stop_controller.is_stop_after_step_requested():
                self.stop_controller.mark_stop_after_step_triggered()
                self._log(
                    f"Stopping after step {step.step_number} as requested; "
                    f"resume with --execution-id {plan.id}",
                    "warn",
                )
                return plan.id

            step = self._current_step()

        total_ms = int((time.monotonic() - started) * 1000)
        self._log(f"All steps completed in {total_ms / 1000:.1f}s", "success")
        self._emit(AllCompleteEvent(total_time_ms=total_ms))
        return plan.id

    # Startup ------------------------------------------------------------------

    def _initialize_or_resume(self) -> Plan:
        if self.execution_id is not None:
            self._log(f"Resuming execution ID: {self.execution_id}")
            plan = self.storage.get_plan(self.execution_id)
            if plan is None:
                raise ExecutionNotFoundError(self.execution_id)
            self._bind_plan(plan)
            self.plan_file = Path(plan.plan_file_path)
            self.plan_content, parsed_steps = load_plan(self.plan_file)
            self._log(f"Loaded plan from database: {plan.plan_file_path}")
            self._sync_pending_steps(parsed_steps)

            self._emit(ExecutionStartedEvent(execution_id=plan.id, is_resume=True))
            self._emit_state_sync()

            self._abort_incomplete_iterations()
            self._recover_manual_commit()
            self._recover_uncommitted_changes()

            self._emit_state_sync()
            return plan

        assert self.plan_file is not None
        self.plan_content, parsed_steps = load_plan(self.plan_file)

        self._log("Starting new execution")
        plan = self.storage.create_plan(
            str(self.plan_file), str(self.work_dir), self.checker.owner, self.checker.repo
        )
        self._bind_plan(plan)
        self.execution_id = plan.id
        for parsed in parsed_steps:
            self.storage.create_step(plan.id, parsed.number, parsed.title)
        self._log(f"Created execution {plan.id} with {len(parsed_steps)} steps", "success")

        self._emit(ExecutionStartedEvent(execution_id=plan.id, is_resume=False))
        self._emit_state_sync()
        return plan

    def _bind_plan(self, plan: Plan) -> None:
        self.plan = plan
        self._logger = get_logger(__name__, metadata={"execution_id": plan.id})

    def _sync_pending_steps(self, parsed_steps: list[PlanStep]) -> None:
        """Pick up plan edits made after the current step while the run was stopped."""

        current = self._current_step()
        if current is None:
            self._log("No pending steps found, skipping plan refresh")
            return

        start = current.step_number + 1
        deleted, created = self.storage.replace_pending_steps(
            current.plan_id,
            start,
            [(parsed.number, parsed.title) for parsed in parsed_steps],
        )
        if deleted or created:
            self._log(
                f"Refreshed plan steps from step {start} (removed {deleted}, added {created})"
            )

    def _abort_incomplete_iterations(self) -> None:
        assert self.plan is not None
        step_numbers = {step.id: step.step_number for step in self.storage.get_steps(self.plan.id)}
        aborted = 0
        for iteration in self.storage.get_iterations_for_plan(self.plan.id):
            if iteration.status is IterationStatus.IN_PROGRESS:
                self._log(
                    f"Found incomplete iteration {iteration.iteration_number} for step "
                    f"{step_numbers.get(iteration.step_id, iteration.step_id)}, marking as aborted",
                    "warn",
                )
                self.storage.update_iteration(iteration.id, status=IterationStatus.ABORTED)
                aborted += 1
        if aborted:
            self._log(f"Cleaned up {aborted} aborted iteration(s)")

    def _recover_manual_commit(self) -> None:
        """Adopt HEAD as the result of a failed agent run finished by hand."""

        step = self._current_step()
        if step is None:
            return
        iterations = self.storage.get_iterations(step.id)
        if not iterations:
            return

        latest = iterations[-1]
        if latest.status is not IterationStatus.FAILED or latest.commit_sha:
            return

        try:
            head = self.checker.get_latest_commit_sha()
        except StepcatError as exc:
            self._log(f"Could not read HEAD for manual commit recovery: {exc}", "warn")
            return

        assert self.plan is not None
        known = {
            iteration.commit_sha
            for iteration in self.storage.get_iterations_for_plan(self.plan.id)
            if iteration.commit_sha
        }
        if head in known:
            return

        self._log(
            f"Detected manual commit {head[:7]} for step {step.step_number}, "
            f"recovering iteration {latest.iteration_number}",
            step=step,
        )
        self.storage.update_iteration(
            latest.id, commit_sha=head, status=IterationStatus.COMPLETED
        )
        self._push_commit(step)
        self._emit(
            IterationCompleteEvent(
                step_id=step.id,
                iteration_id=latest.id,
                iteration_number=latest.iteration_number,
                status=IterationStatus.COMPLETED.value,
                commit_sha=head,
            )
        )
        if latest.type is not IterationType.IMPLEMENTATION:
            self._resolve_open_issues(step)

    def _recover_uncommitted_changes(self) -> None:
        """Let the implementation agent finish and commit work left in the tree by a crash."""

        changes = self._uncommitted_changes()
        if not changes:
            return

        self._log("Detected uncommitted changes in working directory:", "warn")
        self._log("\n".join(changes), "warn")

        step = self._current_step()
        if step is None:
            self._log("No pending steps found, cannot recover uncommitted changes", "warn")
            return

        aborted = [
            iteration
            for iteration in self.storage.get_iterations(step.id)
            if iteration.status is IterationStatus.ABORTED
        ]
        if not aborted:
            self._log("No aborted iterations found, will start fresh implementation")
            return

        interrupted = aborted[-1]
        agent_label = self._agent_label(self.implementation_agent_kind.value)
        self._log(
            f"Found aborted iteration {interrupted.iteration_number} for step "
            f"{step.step_number}; asking {agent_label} to finish and commit the work",
            step=step,
        )
        request = AgentRequest(
            work_dir=self.work_dir,
            prompt=continue_interrupted_prompt(step.step_number, step.title, str(self.plan_file)),
            timeout_minutes=self.agent_timeout_minutes,
            expect_commit=True,
            capture_output=True,
            resume_session=True,
        )
        try:
            result = self.implementation_agent.run(request)
        except StepcatError as exc:
            self._log(f"Failed to recover interrupted session ({exc}), will start fresh", "warn")
            return
        if not result.commit_sha:
            self._log("Failed to recover interrupted session, will start fresh", "warn")
            return

        self._log(
            f"Recovered interrupted session with commit {result.commit_sha}", "success", step=step
        )
        self.storage.update_iteration(
            interrupted.id,
            commit_sha=result.commit_sha,
            status=IterationStatus.COMPLETED,
            implementation_log=self._agent_log(
                result.output, git.working_tree_status(self.work_dir)
            ),
        )
        self._push_commit(step)
        self._emit(
            IterationCompleteEvent(
                step_id=step.id,
                iteration_id=interrupted.id,
                iteration_number=interrupted.iteration_number,
                status=IterationStatus.COMPLETED.value,
                commit_sha=result.commit_sha,
            )
        )
        if interrupted.type is not IterationType.IMPLEMENTATION:
            self._resolve_open_issues(step)

    def _uncommitted_changes(self) -> list[str]:
        status = git.working_tree_status(self.work_dir)
        if status == "clean" or status.startswith("git "):
            return []
        # the database and log live under .stepcat/ inside the work tree
        return [
            line
            for line in status.splitlines()
            if line.strip() and not line[3:].strip().strip('"').startswith(".stepcat")
        ]

    # Step loop ----------------------------------------------------------------

    def _current_step(self) -> Optional[Step]:
        assert self.plan is not None
        for step in self.storage.get_steps(self.plan.id):
            if step.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                return step
        return None

    def _execute_step(self, step: Step) -> None:
        assert self.plan is not None
        self.storage.update_step_status(step.id, StepStatus.IN_PROGRESS)
        step.status = StepStatus.IN_PROGRESS

        steps = self.storage.get_steps(self.plan.id)
        completed_steps = sum(1 for item in steps if item.status is StepStatus.COMPLETED)
        self._emit(
            StepStartEvent(
                step_number=step.step_number,
                step_title=step.title,
                current=completed_steps + 1,
                total=len(steps),
            )
        )
        self._log(f"STEP {step.step_number}: {step.title}", step=step)

        iterations = self.storage.get_iterations(step.id)
        highest = max((item.iteration_number for item in iterations), default=0)
        has_completed = any(item.status is IterationStatus.COMPLETED for item in iterations)

        if not has_completed:
            if count_counted_iterations(iterations) >= self.max_iterations_per_step:
                self._fail_max_iterations(step)
            iteration = self._run_agent_iteration(
                step,
                highest + 1,
                IterationType.IMPLEMENTATION,
                implementation_prompt(step.step_number, step.title, str(self.plan_file)),
            )
            next_number = iteration.iteration_number + 1
        else:
            next_number = highest + 1

        while True:
            iterations = self.storage.get_iterations(step.id)
            attempts = count_counted_iterations(iterations)
            if attempts > self.max_iterations_per_step:
                break

            checked = _latest_committed(iterations)
            if checked is None:
                raise StepcatError(
                    f"No committed iteration found for step {step.step_number} to check."
                )

            if not self._wait_for_ci(step, checked, attempts):
                build_errors = self.checker.describe_failures(
                    self.checker.get_last_tracked_sha() or checked.commit_sha
                )
                self._record_issue(checked, IssueType.CI_FAILURE, build_errors)
                if attempts >= self.max_iterations_per_step:
                    self._fail_max_iterations(step)
                self._run_agent_iteration(
                    step,
                    next_number,
                    IterationType.BUILD_FIX,
                    build_fix_prompt(step.step_number, str(self.plan_file), build_errors),
                )
                next_number += 1
                continue

            review = self._review(step, checked)
            if not review.passed and review.issues:
                raised = self._record_review_issues(checked, review)
                if attempts >= self.max_iterations_per_step:
                    self._fail_max_iterations(step)
                self._run_agent_iteration(
                    step,
                    next_number,
                    IterationType.REVIEW_FIX,
                    review_fix_prompt(step.step_number, str(self.plan_file), raised),
                )
                next_number += 1
                continue

            self.storage.update_step_status(step.id, StepStatus.COMPLETED)
            self._log(f"Step {step.step_number} completed", "success", step=step)
            self._emit(StepCompleteEvent(step_number=step.step_number, step_id=step.id))
            return

        self._fail_max_iterations(step)

    # Iterations ---------------------------------------------------------------

    def _run_agent_iteration(
        self, step: Step, number: int, iteration_type: IterationType, prompt: str
    ) -> Iteration:
        agent_name = self.implementation_agent_kind.value
        iteration = self.storage.create_iteration(
            step.id,
            number,
            iteration_type,
            agent_name,
            self.review_agent_kind.value,
        )
        self._emit(
            IterationStartEvent(
                step_id=step.id,
                iteration_id=iteration.id,
                iteration_number=number,
                iteration_type=iteration_type.value,
                implementation_agent=agent_name,
                review_agent=self.review_agent_kind.value,
            )
        )
        self._log(f"Iteration {number}: {_STAGE_LABELS[iteration_type]}", step=step)

        request = AgentRequest(
            work_dir=self.work_dir,
            prompt=prompt,
            timeout_minutes=self.agent_timeout_minutes,
            expect_commit=True,
            capture_output=True,
        )
        try:
            result: AgentResult = self.implementation_agent.run(request)
        except Exception as exc:
            self.storage.update_iteration(
                iteration.id,
                status=IterationStatus.FAILED,
                implementation_log=f"Agent failed: {exc}",
            )
            self._emit(ErrorEvent(error=f"{self._agent_label(agent_name)} failed: {exc}"))
            raise

        tree_status = git.working_tree_status(self.work_dir)
        agent_log = self._agent_log(result.output, tree_status)

        if not result.commit_sha:
            self.storage.update_iteration(
                iteration.id, status=IterationStatus.FAILED, implementation_log=agent_log
            )
            suffix = self._dirty_suffix(tree_status)
            message = (
                f"{self._agent_label(agent_name)} completed but did not create a commit "
                f"for {_STAGE_LABELS[iteration_type]}{suffix}"
            )
            self._log(message, "error", step=step)
            self._emit(ErrorEvent(error=message))
            raise MissingCommitError(message)

        iteration = self.storage.update_iteration(
            iteration.id,
            commit_sha=result.commit_sha,
            status=IterationStatus.COMPLETED,
            implementation_log=agent_log,
        )
        self._push_commit(step)
        self._emit(
            IterationCompleteEvent(
                step_id=step.id,
                iteration_id=iteration.id,
                iteration_number=number,
                status=IterationStatus.COMPLETED.value,
                commit_sha=result.commit_sha,
            )
        )

        if iteration_type is not IterationType.IMPLEMENTATION:
            self._resolve_open_issues(step)
        return iteration

    def _resolve_open_issues(self, step: Step) -> None:
        """A new fix commit supersedes every issue still open on the step."""

        for issue in self.storage.get_open_issues(step.id):
            self.storage.update_issue_status(issue.id, IssueStatus.FIXED)
            self._emit(IssueResolvedEvent(issue_id=issue.id))

    def _wait_for_ci(self, step: Step, checked: Iteration, attempts: int) -> bool:
        sha = checked.commit_sha or self.checker.get_latest_commit_sha()
        self.storage.update_iteration(checked.id, build_status=BuildStatus.PENDING)
        self._emit(
            GitHubCheckEvent(
                status="waiting",
                sha=sha,
                attempt=attempts,
                max_attempts=self.max_iterations_per_step,
                iteration_id=checked.id,
            )
        )
        self._log(f"Checking GitHub Actions for commit {sha}", step=step)
        self.storage.update_iteration(checked.id, build_status=BuildStatus.IN_PROGRESS)

        try:
            passed = self.checker.wait_for_checks_to_pass(
                sha,
                self.build_timeout_minutes,
                attempts,
                self.max_iterations_per_step,
                iteration_id=checked.id,
            )
        except MergeConflictError as exc:
            self._handle_merge_conflict(step, exc, attempts)
            raise
        except StepcatError as exc:
            self._emit(ErrorEvent(error=str(exc)))
            raise

        tracked = self.checker.get_last_tracked_sha() or sha
        if tracked != sha:
            self._log(f"CI result taken from superseding commit {tracked[:7]}", step=step)

        if not passed:
            self.storage.update_iteration(checked.id, build_status=BuildStatus.FAILED)
            self._emit(
                GitHubCheckEvent(
                    status="failure",
                    sha=tracked,
                    attempt=attempts,
                    max_attempts=self.max_iterations_per_step,
                    iteration_id=checked.id,
                )
            )
            self._log("GitHub Actions checks failed", "error", step=step)
            return False

        self.storage.update_iteration(checked.id, build_status=BuildStatus.PASSED)
        self._emit(
            GitHubCheckEvent(
                status="success",
                sha=tracked,
                attempt=attempts,
                max_attempts=self.max_iterations_per_step,
                iteration_id=checked.id,
            )
        )
        self._log("All GitHub Actions checks passed", "success", step=step)
        return True

    def _handle_merge_conflict(self, step: Step, error: MergeConflictError, attempts: int) -> None:
        iterations = self.storage.get_iterations(step.id)
        latest = iterations[-1] if iterations else None
        tracked = self.checker.get_last_tracked_sha() or ""

        if latest is not None:
            self.storage.update_iteration(latest.id, build_status=BuildStatus.MERGE_CONFLICT)
            description = "\n".join(
                [
                    f"PR #{error.pr_number} is marked as having merge conflicts.",
                    f'Conflicts must be resolved against "{error.base_branch}".',
                    f'Branch "{error.branch}" needs to be rebased or merged with the latest '
                    "base before CI can run.",
                    "Resolve the conflicts and rerun this step.",
                ]
            )
            self._record_issue(
                latest, IssueType.MERGE_CONFLICT, description, severity=Severity.ERROR
            )

        self._emit(
            GitHubCheckEvent(
                status="blocked",
                sha=tracked,
                attempt=attempts,
                max_attempts=self.max_iterations_per_step,
                iteration_id=latest.id if latest else None,
                check_name="Merge conflict detected",
            )
        )
        self.storage.update_step_status(step.id, StepStatus.FAILED)
        self._log(str(error), "error", step=step)
        self._emit(ErrorEvent(error=str(error)))

    def _review(self, step: Step, checked: Iteration) -> ReviewResult:
        commit_sha = checked.commit_sha or "HEAD"
        prompt_type = checked.type
        if prompt_type is IterationType.IMPLEMENTATION:
            prompt = review_implementation_prompt(
                step.step_number, step.title, self.plan_content, commit_sha
            )
        elif prompt_type is IterationType.BUILD_FIX:
            prompt = review_build_fix_prompt(self._build_errors_before(step, checked), commit_sha)
        else:
            prompt = review_code_fixes_prompt(self._review_issues_before(step, checked), commit_sha)

        reviewer = self.review_agent_kind.value
        self.storage.update_iteration(
            checked.id, review_status=ReviewStatus.IN_PROGRESS, review_agent=reviewer
        )
        self._emit(
            ReviewStartEvent(iteration_id=checked.id, prompt_type=prompt_type.value, agent=reviewer)
        )
        self._log(
            f"Running {self._agent_label(reviewer)} code review ({prompt_type.value})", step=step
        )

        request = AgentRequest(
            work_dir=self.work_dir,
            prompt=prompt,
            timeout_minutes=self.agent_timeout_minutes,
            expect_commit=False,
            capture_output=True,
        )
        try:
            run = self.review_agent.run(request)
        except Exception as exc:
            self.storage.update_iteration(
                checked.id,
                review_status=ReviewStatus.FAILED,
                review_log=(
                    f"Review agent failed with error: {exc}\n"
                    f"Review agent: {reviewer}\nPrompt type: {prompt_type.value}"
                ),
            )
            self._log(f"Review agent failed: {exc}", "error", step=step)
            self._emit(ErrorEvent(error=f"Review agent failed: {exc}"))
            raise

        review = self.review_parser.parse(run.output)
        accepted = review.passed or not review.issues
        review_log = run.output
        if accepted and not review.passed:
            review_log = f"{run.output}\n\nFAIL verdict listed no issues; commit accepted."
        self.storage.update_iteration(
            checked.id,
            review_log=review_log,
            review_status=ReviewStatus.PASSED if accepted else ReviewStatus.FAILED,
        )
        self._emit(
            ReviewCompleteEvent(
                iteration_id=checked.id,
                result=review.result,
                issue_count=len(review.issues),
                agent=reviewer,
            )
        )
        level = "success" if accepted else "warn"
        self._log(
            f"Review result: {review.result} ({len(review.issues)} issue(s))", level, step=step
        )
        return review

    def _issues_before(self, step: Step, checked: Iteration, issue_type: IssueType) -> list[Issue]:
        numbers = {item.id: item.iteration_number for item in self.storage.get_iterations(step.id)}
        earlier = [
            issue
            for issue in self.storage.get_issues_for_step_by_type(step.id, issue_type)
            if numbers.get(issue.iteration_id, 0) < checked.iteration_number
        ]
        if not earlier:
            return []
        newest = max(numbers[issue.iteration_id] for issue in earlier)
        return [issue for issue in earlier if numbers[issue.iteration_id] == newest]

    def _build_errors_before(self, step: Step, checked: Iteration) -> str:
        issues = self._issues_before(step, checked, IssueType.CI_FAILURE)
        if not issues:
            return "No build errors were recorded."
        return "\n\n".join(issue.description for issue in issues)

    def _review_issues_before(self, step: Step, checked: Iteration) -> list[Issue]:
        return self._issues_before(step, checked, IssueType.CODEX_REVIEW)

    def _record_issue(
        self,
        iteration: Iteration,
        issue_type: IssueType,
        description: str,
        *,
        file_path: Optional[str] = None,
        line_number: Optional[int] = None,
        severity: Optional[Severity] = None,
    ) -> Issue:
        issue = self.storage.create_issue(
            iteration.id,
            issue_type,
            description,
            file_path=file_path,
            line_number=line_number,
            severity=severity,
        )
        self._emit(
            IssueFoundEvent(
                issue_id=issue.id,
                iteration_id=iteration.id,
                issue_type=issue_type.value,
                description=description,
                file_path=file_path,
                line_number=line_number,
                severity=severity.value if severity else None,
            )
        )
        return issue

    def _record_review_issues(self, checked: Iteration, review: ReviewResult) -> list[Issue]:
        """Persist review findings, reusing ones still open from an earlier review of the commit.

        A resumed run reviews the same commit again when its fix iteration was
        aborted; identical findings map onto the existing open issues.
        """

        still_open: dict[tuple, Issue] = {}
        for issue in self.storage.get_issues(checked.id):
            if issue.type is IssueType.CODEX_REVIEW and issue.status is IssueStatus.OPEN:
                still_open.setdefault(
                    (issue.file_path, issue.line_number, issue.description), issue
                )

        raised = []
        for found in review.issues:
            existing = still_open.pop((found.file, found.line, found.description), None)
            if existing is not None:
                raised.append(existing)
                continue
            raised.append(
                self._record_issue(
                    checked,
                    IssueType.CODEX_REVIEW,
                    found.description,
                    file_path=found.file,
                    line_number=found.line,
                    severity=Severity(found.severity),
                )
            )
        return raised

    def _fail_max_iterations(self, step: Step) -> None:
        self.storage.update_step_status(step.id, StepStatus.FAILED)
        error = MaxIterationsExceededError(step.step_number, self.max_iterations_per_step)
        self._log(str(error), "error", step=step)
        self._emit(ErrorEvent(error=str(error)))
        raise error

    # Helpers ------------------------------------------------------------------

    def _push_commit(self, step: Step) -> None:
        try:
            output = self._push(self.work_dir)
        except StepcatError as exc:
            self._log(f"Failed to push commit: {exc}", "error", step=step)
            self._emit(ErrorEvent(error=str(exc)))
            raise
        if output:
            self._logger.debug("git push output:\n%s", output)
        self._log("Pushed commit to GitHub", "success", step=step)

    @staticmethod
    def _agent_label(kind: str) -> str:
        return "Claude Code" if kind == AgentKind.CLAUDE.value else "Codex"

    @staticmethod
    def _agent_log(output: Optional[str], tree_status: str) -> str:
        parts = []
        if output:
            parts.append(output)
        parts.append(f"Working tree status after agent run:\n{tree_status}")
        return "\n\n".join(parts)

    @staticmethod
    def _dirty_suffix(tree_status: str) -> str:
        if tree_status == "clean" or tree_status.startswith("git "):
            return ""
        changed = len([line for line in tree_status.splitlines() if line.strip()])
        return f" (working tree dirty: {changed} changed path(s))"

    def _emit_state_sync(self) -> None:
        assert self.plan is not None
        self._emit(StateSyncEvent(state=self.storage.get_execution_state(self.plan.id)))

    def _emit(self, event: Event) -> None:
        self.emitter.emit(event)

    def _log(self, message: str, level: str = "info", *, step: Optional[Step] = None) -> None:
        log = self._logger
        log_method = {"warn": log.warning, "error": log.error}.get(level, log.info)
        extra = {"metadata": {"step": step.step_number}} if step is not None else {}
        log_method("%s", message, extra=extra)
        self._emit(
            LogEvent(
                message=message,
                level=level,
                step_number=step.step_number if step else None,
            )
        )


ExecutionEngine = Orchestrator

__all__ = ["DEFAULT_MAX_ITERATIONS_PER_STEP", "ExecutionEngine", "Orchestrator"]
