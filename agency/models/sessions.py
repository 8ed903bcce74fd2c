"""Session-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal


class SessionStatus(str, Enum):
    """Default lifecycle states of a session."""

    INITIALIZED = "initialized"
    ACTIVE = "active"
    PAUSED = "paused"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED.value, SessionStatus.FAILED.value})


@dataclass(frozen=True)
class SessionState:
    """Materialized current state of a session."""

    status: str
    data: dict
    timestamp: datetime


@dataclass(frozen=True)
class StateTransition:
    """One entry of the append-only state history."""

    session_id: str
    from_state: str | None
    to_state: str
    timestamp: datetime
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SessionArtifact:
    """Immutable result of one pipeline step."""

    session_id: str
    step: str
    content: dict
    created_at: datetime
    status: str = "completed"
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SessionReport:
    """Final or failure report of a session."""

    session_id: str
    kind: Literal["final", "failure"]
    content: dict
    created_at: datetime


@dataclass
class SessionArchive:
    """Durable archive record of a finished session."""

    session_id: str
    session_type: str
    status: str
    content: dict
    archived_at: datetime


@dataclass
class Channel:
    """Cross-session communication channel."""

    channel_id: str
    source_session: str
    target_session: str
    created_at: datetime
    messages: list[dict] = field(default_factory=list)
