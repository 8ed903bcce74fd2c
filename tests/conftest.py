"""Pytest configuration and fixtures."""

import asyncio
import sys
from pathlib import Path
from typing import Iterable
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))


class StubAgent:
    """Scriptable agent for broker and pipeline tests.

    `replies` maps a step name to a dict reply or an exception instance (or a
    list of those, consumed one per call). `delay` makes the agent slow;
    `hang` makes it never answer.
    """

    def __init__(
        self,
        agent_id: str,
        capabilities: Iterable[str],
        replies: dict | None = None,
        delay: float = 0.0,
        hang: bool = False,
    ):
        self.agent_id = agent_id
        self.capabilities = frozenset(capabilities)
        self.replies = dict(replies or {})
        self.delay = delay
        self.hang = hang
        self.received = []

    async def handle(self, message) -> dict:
        self.received.append(message)
        if self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        step = message.metadata.get("step", "task")
        reply = self.replies.get(step, {"handled_by": self.agent_id, "step": step})
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


@pytest.fixture
def make_agent():
    """Factory for StubAgent instances."""
    return StubAgent


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from agency.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def event_bus(storage):
    """Create EventBus with storage."""
    from agency.event_bus import EventBus

    return EventBus(storage)


@pytest.fixture
def tracker(storage, event_bus):
    """Create Tracker with storage and event bus."""
    from agency.tracker import Tracker

    return Tracker(event_bus=event_bus, storage=storage)


@pytest.fixture
def registry():
    """Create an empty agent registry."""
    from agency.broker import AgentRegistry

    return AgentRegistry()


@pytest_asyncio.fixture
async def broker(registry, tracker):
    """Create MessageBroker with a short default timeout."""
    from agency.broker import MessageBroker

    br = MessageBroker(registry, default_timeout=1.0, tracker=tracker)
    yield br
    await br.close()


@pytest.fixture
def state_manager(storage, event_bus):
    """Create SessionStateManager."""
    from agency.sessions import SessionStateManager

    return SessionStateManager(storage, event_bus)


@pytest.fixture
def analytics(storage):
    """Create SessionAnalytics backed by storage."""
    from agency.sessions import SessionAnalytics

    return SessionAnalytics(storage)


@pytest.fixture
def settings():
    """Fast settings: short timeouts and no real backoff."""
    from agency.config import Settings

    return Settings(
        reply_timeout=0.5,
        step_retries=1,
        retry_backoff=0.01,
        stall_seconds=60.0,
        agent_backend="echo",
    )


@pytest.fixture
def two_step_type():
    """Session type with two steps served by different capabilities."""
    from agency.sessions import SessionType, StepDefinition

    return SessionType(
        name="two_step",
        steps=(
            StepDefinition(name="stepA", capabilities={"alpha"}),
            StepDefinition(name="stepB", capabilities={"beta"}, requires=("stepA",)),
        ),
    )


@pytest.fixture
def session_types(two_step_type):
    """Registry with the built-in catalog plus the two-step test type."""
    from agency.sessions import default_registry

    types = default_registry()
    types.register(two_step_type)
    return types


@pytest.fixture
def orchestrator(storage, state_manager, broker, session_types, analytics, event_bus, settings):
    """Create SessionOrchestrator over the test components."""
    from agency.sessions import SessionOrchestrator

    return SessionOrchestrator(
        storage=storage,
        state_manager=state_manager,
        broker=broker,
        session_types=session_types,
        analytics=analytics,
        event_bus=event_bus,
        settings=settings,
    )


@pytest.fixture
def mock_llm():
    """Create mock LLM provider."""
    llm = Mock()
    llm.complete = AsyncMock(return_value='{"result": "ok"}')
    return llm
