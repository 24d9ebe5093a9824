"""Codex CLI adapter."""

from __future__ import annotations

from stepcat.agents.base import AgentRequest, CLIAgent


class CodexAgent(CLIAgent):
    """Runs ``codex exec`` against the work directory.

    Output is always captured since review verdicts are read from stdout;
    HEAD is only compared when the caller expects a commit. Interrupted
    sessions are not resumed; the prompt alone carries the context.
    """

    name = "codex"
    display_name = "Codex"
    executable_env = "STEPCAT_CODEX_PATH"
    default_executable = "codex"

    def build_command(self, cli_path: str, request: AgentRequest) -> list[str]:
        return [cli_path, "exec", "--cd", str(request.work_dir)]

    def detects_commit(self, request: AgentRequest) -> bool:
        return request.expect_commit

    def captures_output(self, request: AgentRequest) -> bool:
        return True
