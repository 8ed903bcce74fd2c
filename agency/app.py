"""Application bootstrap and lifecycle management."""

import os
from typing import Iterable, Protocol

from .agents import EchoAgent, LLMAgent
from .broker import AgentRegistry, IAgent, MessageBroker
from .config import Settings, resolve_db_path
from .event_bus import EventBus
from .llm import LLMProvider
from .logging_config import get_logger
from .sessions import (
    SessionAnalytics,
    SessionOrchestrator,
    SessionStateManager,
    SessionTypeRegistry,
    default_registry,
)
from .sessions.catalog import catalog_capabilities
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Drop all sessions and stored data."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(
        self,
        db_path: str | None = None,
        settings: Settings | None = None,
        agents: Iterable[IAgent] | None = None,
        session_types: SessionTypeRegistry | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._settings = settings or Settings.from_env()
        self._agents = list(agents) if agents is not None else None
        self._session_types = session_types

        # Components (will be initialized in start())
        self._storage: IStorage | None = None
        self._event_bus: EventBus | None = None
        self._tracker: ITracker | None = None
        self._registry: AgentRegistry | None = None
        self._broker: MessageBroker | None = None
        self._state_manager: SessionStateManager | None = None
        self._analytics: SessionAnalytics | None = None
        self._orchestrator: SessionOrchestrator | None = None

    def _default_agents(self) -> list[IAgent]:
        capabilities = catalog_capabilities()
        if self._settings.agent_backend == "echo":
            return [EchoAgent("echo_agent", capabilities)]

        llm = LLMProvider(model=self._settings.model)
        logger.info("LLM provider initialized (%s)", llm.model)
        return [LLMAgent("llm_agent", capabilities, llm)]

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        # 1. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized")

        # 2. EventBus (depends on Storage for persistence)
        self._event_bus = EventBus(self._storage)

        # 3. Tracker (depends on EventBus + Storage)
        self._tracker = Tracker(self._event_bus, self._storage)
        await self._tracker.start()

        # 4. Agents and broker
        agents = self._agents if self._agents is not None else self._default_agents()
        self._registry = AgentRegistry(agents)
        self._broker = MessageBroker(
            self._registry,
            default_timeout=self._settings.reply_timeout,
            tracker=self._tracker,
        )
        logger.info("Broker initialized with agents %s", self._registry.agent_ids)

        # 5. Session layer
        self._build_session_layer()
        logger.info("All components initialized successfully")

    def _build_session_layer(self) -> None:
        self._state_manager = SessionStateManager(self._storage, self._event_bus)
        self._analytics = SessionAnalytics(self._storage, self._settings.thresholds)
        self._orchestrator = SessionOrchestrator(
            storage=self._storage,
            state_manager=self._state_manager,
            broker=self._broker,
            session_types=self._session_types or default_registry(),
            analytics=self._analytics,
            event_bus=self._event_bus,
            settings=self._settings,
        )

    async def _cancel_sessions(self) -> None:
        if self._orchestrator:
            for session in self._orchestrator.list_sessions():
                await self._orchestrator.cancel_session(session.session_id)
        if self._broker:
            await self._broker.close()

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        await self._cancel_sessions()
        if self._tracker:
            await self._tracker.stop()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Drop all sessions and stored data."""
        await self._cancel_sessions()
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")
        if self._broker:
            self._build_session_layer()
            logger.info("Reset complete")

    def _require(self, component):
        if component is None:
            raise RuntimeError("Application not started")
        return component

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        return self._require(self._storage)

    @property
    def broker(self) -> MessageBroker:
        return self._require(self._broker)

    @property
    def registry(self) -> AgentRegistry:
        return self._require(self._registry)

    @property
    def state_manager(self) -> SessionStateManager:
        return self._require(self._state_manager)

    @property
    def analytics(self) -> SessionAnalytics:
        return self._require(self._analytics)

    @property
    def orchestrator(self) -> SessionOrchestrator:
        """Get orchestrator instance."""
        return self._require(self._orchestrator)
