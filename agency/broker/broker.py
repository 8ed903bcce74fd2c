"""MessageBroker: capability routing with optional request/response."""

import asyncio
import itertools
import math
import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..errors import AgentError, NoCapableAgentError, ReplyTimeoutError
from ..logging_config import get_logger
from ..models import AgentReply, Message
from ..tracker import ITracker
from .registry import AgentRegistry, IAgent

logger = get_logger(__name__)


class IMessageBroker(Protocol):
    """Delivers messages to exactly one capable agent."""

    async def route_message(self, message: Message) -> str:
        """Fire-and-forget delivery. Returns the delivery id."""
        ...

    async def route_message_and_wait(
        self, message: Message, timeout: float | None = None
    ) -> AgentReply:
        """Deliver and wait for the reply, bounded by `timeout` seconds."""
        ...


class MessageBroker:
    """Routes messages to agents selected by capability match.

    Selection among qualifying agents is deterministic for a given registry
    snapshot: fewest in-flight deliveries first, then least recently used,
    then registration order.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        default_timeout: float = 30.0,
        tracker: ITracker | None = None,
    ):
        self._validate_timeout(default_timeout)
        self._registry = registry
        self._default_timeout = default_timeout
        self._tracker = tracker
        self._in_flight: dict[str, int] = {}
        self._last_used: dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._pending: dict[str, asyncio.Task] = {}

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @staticmethod
    def _validate_timeout(timeout: float) -> None:
        if timeout <= 0 or not math.isfinite(timeout):
            raise ValueError(f"Timeout must be a positive finite number, got {timeout}")

    def select_agent(self, message: Message) -> IAgent:
        """Pick the agent that will receive `message`."""
        candidates = self._registry.candidates(message.required_capabilities)
        if not candidates:
            raise NoCapableAgentError(message.required_capabilities)

        return min(
            candidates,
            key=lambda agent: (
                self._in_flight.get(agent.agent_id, 0),
                self._last_used.get(agent.agent_id, 0),
                self._registry.position(agent.agent_id),
            ),
        )

    def _dispatch(self, message: Message) -> tuple[str, IAgent, asyncio.Task]:
        agent = self.select_agent(message)
        delivery_id = str(uuid.uuid4())
        self._last_used[agent.agent_id] = next(self._sequence)
        self._in_flight[agent.agent_id] = self._in_flight.get(agent.agent_id, 0) + 1

        task = asyncio.create_task(self._deliver(agent, delivery_id, message))
        self._pending[delivery_id] = task
        task.add_done_callback(
            lambda _: self._release(agent.agent_id, delivery_id)
        )
        logger.debug(
            "Message from %s dispatched to %s (delivery %s)",
            message.sender_id,
            agent.agent_id,
            delivery_id,
        )
        return delivery_id, agent, task

    def _release(self, agent_id: str, delivery_id: str) -> None:
        # Runs on task completion, including cancellation before the first step
        self._pending.pop(delivery_id, None)
        self._in_flight[agent_id] = max(0, self._in_flight.get(agent_id, 1) - 1)

    async def _deliver(
        self, agent: IAgent, delivery_id: str, message: Message
    ) -> AgentReply:
        try:
            payload = await agent.handle(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise AgentError(agent.agent_id, e) from e

        if not isinstance(payload, dict):
            payload = {"result": payload}

        return AgentReply(
            delivery_id=delivery_id,
            agent_id=agent.agent_id,
            payload=payload,
            received_at=datetime.now(timezone.utc),
        )

    async def _trace(self, event_type: str, data: dict) -> None:
        if self._tracker is not None:
            await self._tracker.track(event_type, "message_broker", data)

    async def route_message(self, message: Message) -> str:
        """Fire-and-forget delivery. Returns the delivery id."""
        delivery_id, agent, task = self._dispatch(message)
        task.add_done_callback(self._log_background_failure)
        await self._trace(
            "message_routed",
            {
                "delivery_id": delivery_id,
                "sender_id": message.sender_id,
                "agent_id": agent.agent_id,
                "wait": False,
            },
        )
        return delivery_id

    @staticmethod
    def _log_background_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background delivery failed: %s", error)

    async def route_message_and_wait(
        self, message: Message, timeout: float | None = None
    ) -> AgentReply:
        """Deliver and wait for the reply, bounded by `timeout` seconds."""
        timeout = self._default_timeout if timeout is None else timeout
        self._validate_timeout(timeout)

        delivery_id, agent, task = self._dispatch(message)
        await self._trace(
            "message_routed",
            {
                "delivery_id": delivery_id,
                "sender_id": message.sender_id,
                "agent_id": agent.agent_id,
                "wait": True,
                "timeout": timeout,
            },
        )

        try:
            # wait_for cancels the delivery when the timeout fires
            reply = await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent %s did not reply within %ss (delivery %s)",
                agent.agent_id,
                timeout,
                delivery_id,
            )
            await self._trace(
                "message_timed_out",
                {"delivery_id": delivery_id, "agent_id": agent.agent_id},
            )
            raise ReplyTimeoutError(agent.agent_id, timeout) from None

        await self._trace(
            "message_replied",
            {"delivery_id": delivery_id, "agent_id": agent.agent_id},
        )
        return reply

    def utilization(self) -> float:
        """In-flight deliveries per registered agent, clamped to [0, 1]."""
        if not len(self._registry):
            return 0.0
        busy = sum(self._in_flight.values())
        return max(0.0, min(1.0, busy / len(self._registry)))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def close(self) -> None:
        """Cancel all in-flight deliveries."""
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
