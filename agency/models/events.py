"""Lifecycle event models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Topic(str, Enum):
    """EventBus topics (named lifecycle events)."""

    SESSION_CREATED = "session.created"
    SESSION_STARTED = "session.started"
    SESSION_STEP_COMPLETED = "session.step.completed"
    SESSION_ERROR_HANDLED = "session.error_handled"
    SESSION_COORDINATED = "session.coordinated"
    SESSION_RECOVERED = "session.recovered"
    SESSION_ARCHIVED = "session.archived"
    SESSION_METRICS_RECORDED = "session.metrics.recorded"
    STATE_INITIALIZED = "session.state.initialized"
    STATE_TRANSITIONED = "session.state.transitioned"
    STATE_SNAPSHOT_CREATED = "session.state.snapshot_created"
    STATE_SNAPSHOT_RESTORED = "session.state.snapshot_restored"
    STATE_IMPORTED = "session.state.imported"


@dataclass
class LifecycleEvent:
    """An event published through EventBus."""

    id: str
    topic: Topic
    payload: dict  # varies by topic
    source: str  # component that published
    timestamp: datetime
