"""Echo agent implementation."""

import json
from typing import Iterable

from ..logging_config import get_logger
from ..models import Message

logger = get_logger(__name__)


class EchoAgent:
    """Minimal agent that echoes the task back, for development and tests."""

    def __init__(self, agent_id: str, capabilities: Iterable[str]):
        self._agent_id = agent_id
        self._capabilities = frozenset(capabilities)
        self._handled = 0

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def capabilities(self) -> frozenset[str]:
        return self._capabilities

    @property
    def handled_count(self) -> int:
        return self._handled

    async def handle(self, message: Message) -> dict:
        """Return the decoded task and context unchanged."""
        try:
            payload = json.loads(message.content)
        except (TypeError, ValueError):
            payload = {"raw": message.to_dict()["content"]}
        if not isinstance(payload, dict):
            payload = {"raw": payload}

        self._handled += 1
        task = payload.get("task", "unknown")
        logger.info(
            "EchoAgent %s handled task %s from %s",
            self._agent_id,
            task,
            message.sender_id,
        )

        return {
            "task": task,
            "echo": payload.get("context", {}),
            "agent_id": self._agent_id,
            "step": message.metadata.get("step"),
        }
