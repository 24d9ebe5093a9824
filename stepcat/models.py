"""Persistent records for plans, steps, iterations and issues."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class IterationType(str, Enum):
    IMPLEMENTATION = "implementation"
    BUILD_FIX = "build_fix"
    REVIEW_FIX = "review_fix"


class IterationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class BuildStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"
    MERGE_CONFLICT = "merge_conflict"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"


class IssueType(str, Enum):
    CI_FAILURE = "ci_failure"
    CODEX_REVIEW = "codex_review"
    MERGE_CONFLICT = "merge_conflict"


class IssueStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Plan:
    id: int
    plan_file_path: str
    work_dir: str
    owner: str
    repo: str
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Step:
    id: int
    plan_id: int
    step_number: int
    title: str
    status: StepStatus = StepStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass
class Iteration:
    """One attempt within a step; produces at most one commit."""

    id: int
    step_id: int
    iteration_number: int
    type: IterationType
    status: IterationStatus = IterationStatus.IN_PROGRESS
    commit_sha: Optional[str] = None
    build_status: Optional[BuildStatus] = None
    review_status: Optional[ReviewStatus] = None
    implementation_agent: str = "claude"
    review_agent: Optional[str] = None
    implementation_log: Optional[str] = None
    review_log: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def counts_toward_limit(self) -> bool:
        return self.commit_sha is not None and self.status is not IterationStatus.ABORTED

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["status"] = self.status.value
        payload["build_status"] = self.build_status.value if self.build_status else None
        payload["review_status"] = self.review_status.value if self.review_status else None
        return payload


@dataclass
class Issue:
    id: int
    iteration_id: int
    type: IssueType
    description: str
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    severity: Optional[Severity] = None
    status: IssueStatus = IssueStatus.OPEN
    created_at: str = field(default_factory=utc_now)
    resolved_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["status"] = self.status.value
        payload["severity"] = self.severity.value if self.severity else None
        return payload


@dataclass
class ExecutionState:
    """Snapshot of everything recorded for one plan."""

    plan: Plan
    steps: list[Step]
    iterations: dict[int, list[Iteration]] = field(default_factory=dict)
    issues: dict[int, list[Issue]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
            "iterations": [
                iteration.to_dict()
                for step in self.steps
                for iteration in self.iterations.get(step.id, [])
            ],
            "issues": [
                issue.to_dict() for issues in self.issues.values() for issue in issues
            ],
        }


def count_counted_iterations(iterations: list[Iteration]) -> int:
    """Number of iterations that count toward the per-step limit."""

    return sum(1 for iteration in iterations if iteration.counts_toward_limit)


__all__ = [
    "BuildStatus",
    "ExecutionState",
    "Issue",
    "IssueStatus",
    "IssueType",
    "Iteration",
    "IterationStatus",
    "IterationType",
    "Plan",
    "ReviewStatus",
    "Severity",
    "Step",
    "StepStatus",
    "count_counted_iterations",
    "utc_now",
]
