"""Agent contract and the shared subprocess runner for CLI-based agents."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from stepcat.errors import AgentError, AgentTimeoutError
from stepcat.integrations import git
from stepcat.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MINUTES = 30
DEFAULT_HEARTBEAT_SECONDS = 30.0


@dataclass
class AgentRequest:
    work_dir: Path
    prompt: str
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    expect_commit: bool = False
    capture_output: bool = False
    resume_session: bool = False


@dataclass
class AgentResult:
    success: bool
    commit_sha: Optional[str] = None
    output: Optional[str] = None


class AgentKind(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"

    @classmethod
    def from_string(cls, raw: "str | AgentKind") -> "AgentKind":
        if isinstance(raw, AgentKind):
            return raw
        normalized = (raw or "").strip().lower()
        if normalized in {"claude", "claude_code", "claude-code", "anthropic"}:
            return cls.CLAUDE
        if normalized in {"codex", "openai-codex", "codex-openai"}:
            return cls.CODEX
        raise ValueError(f"Unsupported agent: {raw} (expected 'claude' or 'codex')")


class Agent(ABC):
    """Runs one implementation or review task in a work directory.

    Implementations detect a new commit by comparing HEAD before and after
    the run and never push.
    """

    name: str = "agent"

    @abstractmethod
    def run(self, request: AgentRequest) -> AgentResult:
        pass


class CLIAgent(Agent):
    """Agent backed by a command-line tool that reads its prompt from stdin."""

    executable_env: str = ""
    default_executable: str = ""
    display_name: str = "Agent"

    def __init__(
        self,
        cli_path: Optional[str] = None,
        *,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
    ) -> None:
        self._cli_path = cli_path
        self._heartbeat_seconds = heartbeat_seconds

    def resolve_cli_path(self) -> str:
        explicit = self._cli_path or os.getenv(self.executable_env)
        if isinstance(explicit, str) and explicit.strip():
            return explicit.strip()
        found = shutil.which(self.default_executable)
        if not found:
            raise AgentError(
                f"{self.display_name} binary '{self.default_executable}' not found on PATH. "
                f"Install it or set {self.executable_env}."
            )
        return found

    @abstractmethod
    def build_command(self, cli_path: str, request: AgentRequest) -> list[str]:
        pass

    def detects_commit(self, request: AgentRequest) -> bool:
        return True

    def captures_output(self, request: AgentRequest) -> bool:
        return request.capture_output

    def run(self, request: AgentRequest) -> AgentResult:
        cli_path = self.resolve_cli_path()
        work_dir = Path(request.work_dir)
        command = self.build_command(cli_path, request)
        detect_commit = self.detects_commit(request)

        head_before = git.head_commit(work_dir) if detect_commit else None
        logger.info(
            "Running %s in %s: %s (timeout=%sm, HEAD before: %s)",
            self.display_name,
            work_dir,
            shlex.join(command),
            request.timeout_minutes,
            head_before or "(no commit yet)",
        )

        stdout_text, stderr_text = self._communicate(command, work_dir, request)

        if stderr_text:
            logger.debug("%s stderr:\n%s", self.display_name, stderr_text)

        output = stdout_text if self.captures_output(request) else None
        if not detect_commit:
            logger.info("%s completed", self.display_name)
            return AgentResult(success=True, commit_sha=None, output=output)

        head_after = git.head_commit(work_dir)
        if not head_after:
            logger.warning("%s completed but HEAD could not be read", self.display_name)
            return AgentResult(success=True, commit_sha=None, output=output)
        if head_after == head_before:
            logger.info("%s completed (no commit created)", self.display_name)
            return AgentResult(success=True, commit_sha=None, output=output)

        logger.info("%s completed and created commit %s", self.display_name, head_after)
        return AgentResult(success=True, commit_sha=head_after, output=output)

    def _communicate(
        self, command: list[str], work_dir: Path, request: AgentRequest
    ) -> tuple[str, str]:
        try:
            process = subprocess.Popen(
                command,
                cwd=work_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise AgentError(f"Failed to start {self.display_name}: {exc}") from exc

        timeout_seconds = request.timeout_minutes * 60
        heartbeat = max(0.01, min(self._heartbeat_seconds, timeout_seconds))
        start_time = time.monotonic()
        pending_input: Optional[str] = request.prompt

        while True:
            try:
                stdout, stderr = process.communicate(pending_input, timeout=heartbeat)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                elapsed = time.monotonic() - start_time
                if elapsed >= timeout_seconds:
                    process.kill()
                    process.communicate()
                    logger.warning(
                        "%s timed out after %.1fs; process killed", self.display_name, elapsed
                    )
                    raise AgentTimeoutError(self.display_name, request.timeout_minutes)
                logger.info("%s still running (elapsed %.1fs)", self.display_name, elapsed)

        elapsed = time.monotonic() - start_time
        logger.info(
            "%s finished in %.2fs with return code %s",
            self.display_name,
            elapsed,
            process.returncode,
        )
        stdout_text = (stdout or "").strip()
        stderr_text = (stderr or "").strip()
        if process.returncode != 0:
            detail = stderr_text or stdout_text
            raise AgentError(
                f"{self.display_name} failed with exit code {process.returncode}"
                + (f": {detail[-2000:]}" if detail else "")
            )
        return stdout_text, stderr_text


def create_agent(kind: "str | AgentKind", **options) -> Agent:
    """Build the agent adapter for ``kind``; called once per phase."""

    resolved = AgentKind.from_string(kind)
    if resolved is AgentKind.CLAUDE:
        from stepcat.agents.claude import ClaudeCodeAgent

        return ClaudeCodeAgent(**options)

    from stepcat.agents.codex import CodexAgent

    return CodexAgent(**options)


__all__ = [
    "Agent",
    "AgentKind",
    "AgentRequest",
    "AgentResult",
    "CLIAgent",
    "create_agent",
]
