"""User-controlled requests to stop an execution between steps."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional, Union

__all__ = ["RUN_STATE_FILENAME", "RunState", "StopController", "read_run_state"]

RUN_STATE_FILENAME = "run-state"


class RunState(Enum):
    """Directives a user can leave in the run-state file."""

    CONTINUE = "CONTINUE"
    STOP_AFTER_STEP = "STOP_AFTER_STEP"

    @classmethod
    def from_string(cls, raw: str) -> "RunState":
        """Normalize a string into a :class:`RunState` value.

        ``SOFT_STOP`` is accepted as an alias for
        :pydata:`RunState.STOP_AFTER_STEP`; unknown values default to
        :pydata:`RunState.CONTINUE`.
        """

        normalized = (raw or "").strip().upper().replace("-", "_")
        if normalized == "SOFT_STOP":
            return cls.STOP_AFTER_STEP
        for state in cls:
            if normalized in {state.name, state.value}:
                return state
        return cls.CONTINUE


def read_run_state(path: Union[str, Path, None]) -> RunState:
    """Return the directive recorded at ``path``.

    Missing or unreadable files default to :pydata:`RunState.CONTINUE`.
    """

    if not path:
        return RunState.CONTINUE

    try:
        raw_text = Path(path).read_text(encoding="utf-8")
    except OSError:
        return RunState.CONTINUE

    return RunState.from_string(raw_text)


class StopController:
    """Tracks whether the run should end once the current step completes.

    Requests come either from :meth:`request_stop_after_step` (for hosts
    embedding the orchestrator) or from the run-state file, which is re-read
    every time the orchestrator asks.
    """

    def __init__(self, run_state_path: Optional[Union[str, Path]] = None) -> None:
        self.run_state_path = Path(run_state_path) if run_state_path else None
        self._requested = False
        self._triggered = False

    def request_stop_after_step(self) -> None:
        self._requested = True

    def is_stop_after_step_requested(self) -> bool:
        if self._requested:
            return True
        return read_run_state(self.run_state_path) is RunState.STOP_AFTER_STEP

    def mark_stop_after_step_triggered(self) -> None:
        self._triggered = True

    def was_stop_after_step_triggered(self) -> bool:
        return self._triggered
