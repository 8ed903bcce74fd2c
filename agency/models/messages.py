"""Message-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Iterable, Mapping


@dataclass(frozen=True)
class Message:
    """A single unit of inter-agent communication."""

    sender_id: str
    content: str | bytes  # opaque payload, usually serialized JSON
    metadata: Mapping[str, str] = field(default_factory=dict)
    required_capabilities: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        # Freeze containers so the message cannot change after routing
        object.__setattr__(
            self,
            "metadata",
            MappingProxyType({str(k): str(v) for k, v in self.metadata.items()}),
        )
        object.__setattr__(
            self, "required_capabilities", frozenset(self.required_capabilities)
        )

    @classmethod
    def create(
        cls,
        sender_id: str,
        content: str | bytes,
        metadata: Mapping[str, Any] | None = None,
        capabilities: Iterable[str] = (),
    ) -> "Message":
        """Build a message from loose arguments."""
        return cls(
            sender_id=sender_id,
            content=content,
            metadata=dict(metadata or {}),
            required_capabilities=frozenset(capabilities),
        )

    def to_dict(self) -> dict:
        content = self.content
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        return {
            "sender_id": self.sender_id,
            "content": content,
            "metadata": dict(self.metadata),
            "required_capabilities": sorted(self.required_capabilities),
        }


@dataclass
class AgentReply:
    """Reply produced by an agent for one delivery."""

    delivery_id: str
    agent_id: str
    payload: dict
    received_at: datetime
