"""Claude Code CLI adapter."""

from __future__ import annotations

from stepcat.agents.base import AgentRequest, CLIAgent


class ClaudeCodeAgent(CLIAgent):
    """Runs ``claude --print`` with edits auto-accepted in the work directory."""

    name = "claude"
    display_name = "Claude Code"
    executable_env = "STEPCAT_CLAUDE_PATH"
    default_executable = "claude"

    def build_command(self, cli_path: str, request: AgentRequest) -> list[str]:
        command = [
            cli_path,
            "--print",
            "--verbose",
            "--add-dir",
            str(request.work_dir),
            "--permission-mode",
            "acceptEdits",
        ]
        if request.resume_session:
            # picks up the most recent conversation in the work directory
            command.append("--continue")
        return command
