"""Typed events emitted by the orchestrator and a fire-and-forget emitter."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Optional

from stepcat.logging import get_logger
from stepcat.models import ExecutionState

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Event:
    type: ClassVar[str] = "event"
    timestamp: int = field(default_factory=_now_ms, kw_only=True)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for key, value in asdict(self).items():
            payload[key] = value.value if isinstance(value, Enum) else value
        return payload


@dataclass
class ExecutionStartedEvent(Event):
    type: ClassVar[str] = "execution_started"
    execution_id: int
    is_resume: bool


@dataclass
class StateSyncEvent(Event):
    """Full snapshot so observers attached mid-run can catch up."""

    type: ClassVar[str] = "state_sync"
    state: ExecutionState

    def to_dict(self) -> dict[str, Any]:
        payload = {"type": self.type, "timestamp": self.timestamp}
        payload.update(self.state.to_dict())
        return payload


@dataclass
class StepStartEvent(Event):
    type: ClassVar[str] = "step_start"
    step_number: int
    step_title: str
    current: int
    total: int


@dataclass
class StepCompleteEvent(Event):
    type: ClassVar[str] = "step_complete"
    step_number: int
    step_id: int


@dataclass
class IterationStartEvent(Event):
    type: ClassVar[str] = "iteration_start"
    step_id: int
    iteration_id: int
    iteration_number: int
    iteration_type: str
    implementation_agent: str
    review_agent: Optional[str] = None


@dataclass
class IterationCompleteEvent(Event):
    type: ClassVar[str] = "iteration_complete"
    step_id: int
    iteration_id: int
    iteration_number: int
    status: str
    commit_sha: Optional[str] = None


@dataclass
class IssueFoundEvent(Event):
    type: ClassVar[str] = "issue_found"
    issue_id: int
    iteration_id: int
    issue_type: str
    description: str
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    severity: Optional[str] = None


@dataclass
class IssueResolvedEvent(Event):
    type: ClassVar[str] = "issue_resolved"
    issue_id: int


@dataclass
class GitHubCheckEvent(Event):
    """CI polling progress for the tracked sha."""

    type: ClassVar[str] = "github_check"
    status: str
    sha: str
    attempt: int = 1
    max_attempts: int = 1
    iteration_id: Optional[int] = None
    check_name: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class ReviewStartEvent(Event):
    type: ClassVar[str] = "codex_review_start"
    iteration_id: int
    prompt_type: str
    agent: str


@dataclass
class ReviewCompleteEvent(Event):
    type: ClassVar[str] = "codex_review_complete"
    iteration_id: int
    result: str
    issue_count: int
    agent: str


@dataclass
class LogEvent(Event):
    type: ClassVar[str] = "log"
    message: str
    level: str = "info"
    step_number: Optional[int] = None
    iteration_number: Optional[int] = None


@dataclass
class AllCompleteEvent(Event):
    type: ClassVar[str] = "all_complete"
    total_time_ms: int


@dataclass
class ErrorEvent(Event):
    type: ClassVar[str] = "error"
    error: str


EventCallback = Callable[[Event], None]


class EventEmitter:
    """Callback list; a failing subscriber is logged and skipped."""

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # noqa: BLE001 - observers must never break the run
                logger.exception("Event subscriber failed while handling %s", event.type)


class EventRecorder:
    """Subscriber that keeps every event in memory, handy for hosts and tests."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[Event]:
        return [event for event in self.events if event.type == event_type]


__all__ = [
    "AllCompleteEvent",
    "ErrorEvent",
    "Event",
    "EventCallback",
    "EventEmitter",
    "EventRecorder",
    "ExecutionStartedEvent",
    "GitHubCheckEvent",
    "IssueFoundEvent",
    "IssueResolvedEvent",
    "IterationCompleteEvent",
    "IterationStartEvent",
    "LogEvent",
    "ReviewCompleteEvent",
    "ReviewStartEvent",
    "StateSyncEvent",
    "StepCompleteEvent",
    "StepStartEvent",
]
