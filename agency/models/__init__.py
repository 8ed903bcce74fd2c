"""Core data models for agency."""

from .messages import AgentReply, Message
from .events import LifecycleEvent, Topic
from .sessions import (
    TERMINAL_STATUSES,
    Channel,
    SessionArchive,
    SessionArtifact,
    SessionReport,
    SessionState,
    SessionStatus,
    StateTransition,
)
from .tracing import TraceEvent

__all__ = [
    # Messages
    "Message",
    "AgentReply",
    # Events
    "LifecycleEvent",
    "Topic",
    # Sessions
    "SessionStatus",
    "TERMINAL_STATUSES",
    "SessionState",
    "StateTransition",
    "SessionArtifact",
    "SessionReport",
    "SessionArchive",
    "Channel",
    # Tracing
    "TraceEvent",
]
