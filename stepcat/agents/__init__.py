"""Agent adapters that implement, fix and review plan steps."""

from stepcat.agents.base import (
    Agent,
    AgentKind,
    AgentRequest,
    AgentResult,
    CLIAgent,
    create_agent,
)

__all__ = [
    "Agent",
    "AgentKind",
    "AgentRequest",
    "AgentResult",
    "CLIAgent",
    "create_agent",
]
