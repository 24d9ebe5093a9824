"""Exception hierarchy shared by the stepcat engine and its collaborators."""

from __future__ import annotations

from typing import Optional


class StepcatError(RuntimeError):
    """Base class for every fatal stepcat failure."""


class ConfigError(StepcatError):
    """Raised when configuration values cannot be interpreted."""


class ExecutionNotFoundError(StepcatError):
    def __init__(self, execution_id: int) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution ID {execution_id} not found")


class PlanParseError(StepcatError):
    """Raised when a plan file cannot be read or contains no usable steps."""


class AgentError(StepcatError):
    """Raised when an agent process fails to start or exits unsuccessfully."""


class AgentTimeoutError(AgentError):
    def __init__(self, agent: str, timeout_minutes: float) -> None:
        self.agent = agent
        self.timeout_minutes = timeout_minutes
        super().__init__(f"{agent} timed out after {timeout_minutes:g} minutes")


class MissingCommitError(StepcatError):
    """Raised when an agent reports success without producing a commit."""


class MaxIterationsExceededError(StepcatError):
    def __init__(self, step_number: int, max_iterations: int) -> None:
        self.step_number = step_number
        self.max_iterations = max_iterations
        super().__init__(
            f"Step {step_number} exceeded maximum iterations ({max_iterations})"
        )


class PushError(StepcatError):
    """Raised when ``git push`` fails; the message carries git's diagnostics."""


class CITimeoutError(StepcatError):
    def __init__(self, sha: str, timeout_minutes: float) -> None:
        self.sha = sha
        self.timeout_minutes = timeout_minutes
        super().__init__(
            f"Timeout waiting for GitHub Actions checks on {sha[:7]} "
            f"after {timeout_minutes:g} minutes"
        )


class GitHubAPIError(StepcatError):
    def __init__(self, status_code: int, message: str, url: Optional[str] = None) -> None:
        self.status_code = status_code
        self.url = url
        target = f" ({url})" if url else ""
        super().__init__(f"GitHub API error {status_code}{target}: {message}")


class MergeConflictError(StepcatError):
    """Raised when the open pull request for the branch cannot be merged cleanly."""

    def __init__(self, pr_number: int, branch: str, base_branch: str) -> None:
        self.pr_number = pr_number
        self.branch = branch
        self.base_branch = base_branch
        super().__init__(
            f"PR #{pr_number} ({branch} -> {base_branch}) has a merge conflict. "
            f'Rebase or merge "{base_branch}" into "{branch}" and resume.'
        )


__all__ = [
    "AgentError",
    "AgentTimeoutError",
    "CITimeoutError",
    "ConfigError",
    "ExecutionNotFoundError",
    "GitHubAPIError",
    "MaxIterationsExceededError",
    "MergeConflictError",
    "MissingCommitError",
    "PlanParseError",
    "PushError",
    "StepcatError",
]
