"""Agent descriptors and the registry that serves them.

An agent is a named bundle of system prompt, tool allow-list and optional
model override. Descriptors are read-only once built.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from loguru import logger

from relay.config.schema import AgentProfile, RelayConfig

WILDCARD = "*"
DEFAULT_AGENT_TYPE = "general-purpose"


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    agent_type: str
    system_prompt: str = ""
    tools: Literal["*"] | frozenset[str] = WILDCARD
    model: str = ""

    @property
    def allows_all_tools(self) -> bool:
        return self.tools == WILDCARD

    @classmethod
    def from_profile(cls, agent_type: str, profile: AgentProfile) -> AgentDescriptor:
        tools: Literal["*"] | frozenset[str]
        if isinstance(profile.tools, str):
            tools = WILDCARD
        else:
            tools = frozenset(profile.tools)
        return cls(
            agent_type=agent_type,
            system_prompt=profile.system_prompt,
            tools=tools,
            model=profile.model,
        )


class AgentRegistry:
    """Lookup of agent descriptors by type."""

    def __init__(self, agents: list[AgentDescriptor] | None = None) -> None:
        self._agents: dict[str, AgentDescriptor] = {}
        for agent in agents or ():
            self.register(agent)

    @classmethod
    def from_config(cls, config: RelayConfig) -> AgentRegistry:
        """Build descriptors from ``agents.profiles`` plus the built-in default agent.

        A configured ``general-purpose`` profile replaces the built-in one.
        """
        registry = cls(
            [
                AgentDescriptor(
                    agent_type=DEFAULT_AGENT_TYPE,
                    system_prompt=config.agents.defaults.system_prompt,
                    tools=WILDCARD,
                )
            ]
        )
        for agent_type, profile in config.agents.profiles.items():
            registry.register(AgentDescriptor.from_profile(agent_type, profile))
        return registry

    def register(self, agent: AgentDescriptor) -> None:
        if agent.agent_type in self._agents:
            logger.debug("Replacing agent descriptor: {}", agent.agent_type)
        self._agents[agent.agent_type] = agent

    def get_agent(self, agent_type: str) -> AgentDescriptor | None:
        return self._agents.get(agent_type)

    def agent_types(self) -> list[str]:
        return list(self._agents)
