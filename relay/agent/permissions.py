"""Tool permission filter.

Pure functions over an AgentDescriptor. Deny is fail-closed: a name that is
not literally on an explicit allow-list is refused.
"""

from __future__ import annotations

from collections.abc import Iterable

from relay.agent.registry import AgentDescriptor
from relay.providers.types import ToolSpec


class ToolDeniedError(Exception):
    """The agent is not allowed to call the requested tool."""

    def __init__(self, agent_type: str, tool_name: str) -> None:
        self.agent_type = agent_type
        self.tool_name = tool_name
        super().__init__(f"Agent '{agent_type}' is not allowed to use tool '{tool_name}'")


def is_tool_allowed(agent: AgentDescriptor | None, tool_name: str) -> bool:
    # No agent means the unrestricted default agent.
    if agent is None or agent.allows_all_tools:
        return True
    return tool_name in agent.tools


def filter_tool_specs(agent: AgentDescriptor | None, specs: Iterable[ToolSpec]) -> list[ToolSpec]:
    """Drop catalog entries the agent may not call."""
    return [spec for spec in specs if is_tool_allowed(agent, spec.name)]


def check_tool_allowed(agent: AgentDescriptor | None, tool_name: str) -> None:
    """Raise ToolDeniedError when ``tool_name`` is not allowed for ``agent``."""
    if not is_tool_allowed(agent, tool_name):
        raise ToolDeniedError(agent.agent_type if agent else "default", tool_name)
