"""Capability-addressable agent registry."""

from typing import Iterable, Protocol

from ..logging_config import get_logger
from ..models import Message

logger = get_logger(__name__)


class IAgent(Protocol):
    """A capability provider that replies to messages."""

    @property
    def agent_id(self) -> str:
        """Agent identifier."""
        ...

    @property
    def capabilities(self) -> frozenset[str]:
        """Capability tags the agent declares it can serve."""
        ...

    async def handle(self, message: Message) -> dict:
        """Process a message and return the reply payload."""
        ...


class AgentRegistry:
    """Registry of agents addressable by capability tags."""

    def __init__(self, agents: Iterable[IAgent] = ()):
        # dict preserves registration order, used as the final tie-break
        self._agents: dict[str, IAgent] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: IAgent) -> None:
        """Register an agent. Agent ids must be unique."""
        if agent.agent_id in self._agents:
            raise ValueError(f"Agent already registered: {agent.agent_id}")
        self._agents[agent.agent_id] = agent
        logger.info(
            "Registered agent %s with capabilities: %s",
            agent.agent_id,
            sorted(agent.capabilities),
        )

    def unregister(self, agent_id: str) -> None:
        """Remove an agent if present."""
        if self._agents.pop(agent_id, None) is not None:
            logger.info("Unregistered agent %s", agent_id)

    def get(self, agent_id: str) -> IAgent | None:
        return self._agents.get(agent_id)

    def candidates(self, required: Iterable[str]) -> list[IAgent]:
        """Agents whose capabilities are a superset of `required`."""
        required_set = frozenset(required)
        return [
            agent
            for agent in self._agents.values()
            if required_set <= frozenset(agent.capabilities)
        ]

    def position(self, agent_id: str) -> int:
        """Registration index of an agent."""
        return list(self._agents).index(agent_id)

    def all_capabilities(self) -> frozenset[str]:
        caps: set[str] = set()
        for agent in self._agents.values():
            caps.update(agent.capabilities)
        return frozenset(caps)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    @property
    def agent_ids(self) -> list[str]:
        return list(self._agents)
