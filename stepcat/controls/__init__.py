"""Run control for long executions."""

from stepcat.controls.run_state import RUN_STATE_FILENAME, RunState, StopController, read_run_state

__all__ = ["RUN_STATE_FILENAME", "RunState", "StopController", "read_run_state"]
