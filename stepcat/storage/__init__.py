"""Persistence contract used by the execution engine."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from stepcat.models import (
    ExecutionState,
    Issue,
    IssueStatus,
    IssueType,
    Iteration,
    IterationType,
    Plan,
    Severity,
    Step,
    StepStatus,
)


class Storage(Protocol):
    """Durable record of plans, steps, iterations and issues."""

    def create_plan(self, plan_file_path: str, work_dir: str, owner: str, repo: str) -> Plan:
        ...

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        ...

    def get_all_plans(self) -> list[Plan]:
        ...

    def create_step(self, plan_id: int, step_number: int, title: str) -> Step:
        ...

    def get_steps(self, plan_id: int) -> list[Step]:
        ...

    def update_step_status(self, step_id: int, status: StepStatus) -> None:
        ...

    def replace_pending_steps(
        self, plan_id: int, start_step_number: int, steps: list[tuple[int, str]]
    ) -> tuple[int, int]:
        ...

    def create_iteration(
        self,
        step_id: int,
        iteration_number: int,
        iteration_type: IterationType,
        implementation_agent: str,
        review_agent: Optional[str] = None,
    ) -> Iteration:
        ...

    def get_iteration(self, iteration_id: int) -> Optional[Iteration]:
        ...

    def get_iterations(self, step_id: int) -> list[Iteration]:
        ...

    def get_iterations_for_plan(self, plan_id: int) -> list[Iteration]:
        ...

    def update_iteration(self, iteration_id: int, **changes: Any) -> Iteration:
        ...

    def create_issue(
        self,
        iteration_id: int,
        issue_type: IssueType,
        description: str,
        file_path: Optional[str] = None,
        line_number: Optional[int] = None,
        severity: Optional[Severity] = None,
        status: IssueStatus = IssueStatus.OPEN,
    ) -> Issue:
        ...

    def get_issues(self, iteration_id: int) -> list[Issue]:
        ...

    def get_issues_for_step_by_type(self, step_id: int, issue_type: IssueType) -> list[Issue]:
        ...

    def update_issue_status(self, issue_id: int, status: IssueStatus) -> None:
        ...

    def get_open_issues(self, step_id: int) -> list[Issue]:
        ...

    def get_execution_state(self, plan_id: int) -> ExecutionState:
        ...

    def close(self) -> None:
        ...


from stepcat.storage.database import DEFAULT_DB_DIRNAME, DEFAULT_DB_FILENAME, Database  # noqa: E402

__all__ = ["DEFAULT_DB_DIRNAME", "DEFAULT_DB_FILENAME", "Database", "Storage"]
