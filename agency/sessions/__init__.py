"""Sessions module: state machine, pipeline engine, orchestration, analytics."""

from .analytics import SessionAnalytics
from .catalog import BUILTIN_SESSION_TYPES, default_registry
from .orchestrator import SessionOrchestrator
from .session import ISessionObserver, Session
from .state_manager import (
    DEFAULT_TRANSITIONS,
    InMemoryStateRepository,
    IStateRepository,
    SessionStateManager,
    StateEntry,
)
from .types import (
    SessionType,
    SessionTypeRegistry,
    StepContext,
    StepDefinition,
    default_report,
)

__all__ = [
    "SessionStateManager",
    "IStateRepository",
    "InMemoryStateRepository",
    "StateEntry",
    "DEFAULT_TRANSITIONS",
    "Session",
    "ISessionObserver",
    "SessionType",
    "SessionTypeRegistry",
    "StepDefinition",
    "StepContext",
    "default_report",
    "BUILTIN_SESSION_TYPES",
    "default_registry",
    "SessionOrchestrator",
    "SessionAnalytics",
]
