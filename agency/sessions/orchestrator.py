"""SessionOrchestrator: lifecycle management for the active session set."""

import asyncio
import copy
import json
from datetime import datetime, timezone
from typing import Any, Mapping

from ..broker import MessageBroker
from ..config import Settings
from ..errors import (
    ConfigurationError,
    DuplicateSessionError,
    InvalidTransitionError,
    SessionBusyError,
    UnknownSessionError,
)
from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import (
    TERMINAL_STATUSES,
    Channel,
    Message,
    SessionArchive,
    SessionArtifact,
    SessionReport,
    SessionState,
    SessionStatus,
    Topic,
)
from ..storage import IStorage
from .analytics import SessionAnalytics
from .session import Session
from .state_manager import SessionStateManager, transition_to_dict
from .types import SessionTypeRegistry

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def backup_key(session_id: str) -> str:
    return f"session_backup_{session_id}"


class SessionOrchestrator:
    """Creates, runs, links, recovers and archives sessions.

    Every session runs in its own asyncio task. Sessions stay in the active
    set until `archive_session` writes their archive record. State changes
    are validated by the state manager; `allowed_transitions` can only narrow
    what the state manager permits.
    """

    def __init__(
        self,
        storage: IStorage,
        state_manager: SessionStateManager,
        broker: MessageBroker,
        session_types: SessionTypeRegistry,
        analytics: SessionAnalytics,
        event_bus: IEventBus | None = None,
        settings: Settings | None = None,
        allowed_transitions: Mapping[str, list[str]] | None = None,
    ):
        self._storage = storage
        self._state_manager = state_manager
        self._broker = broker
        self._session_types = session_types
        self._analytics = analytics
        self._event_bus = event_bus
        self._settings = settings or Settings()
        self._allowed = self._validate_allowed(allowed_transitions)

        self._sessions: dict[str, Session] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._channels: dict[str, Channel] = {}
        self._channel_locks: dict[str, asyncio.Lock] = {}
        self._step_stats: dict[str, dict[str, int]] = {}
        self._lock = asyncio.Lock()

    def _validate_allowed(
        self, allowed: Mapping[str, list[str]] | None
    ) -> dict[str, list[str]] | None:
        if allowed is None:
            return None
        for from_state, targets in allowed.items():
            for to_state in targets:
                if not self._state_manager.is_valid_transition(from_state, to_state):
                    raise ConfigurationError(
                        f"Allowed transition {from_state} -> {to_state} "
                        "is not permitted by the state manager"
                    )
        return {state: list(targets) for state, targets in allowed.items()}

    async def _emit(self, topic: Topic, payload: dict) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(topic, payload, source="orchestrator")

    # Registry of active sessions

    @property
    def session_types(self) -> SessionTypeRegistry:
        return self._session_types

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def is_active(self, session_id: str) -> bool:
        return session_id in self._sessions

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def create_session(
        self,
        session_type: str,
        configuration: Mapping[str, Any] | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Instantiate a session of a registered type and make it active."""
        definition = self._session_types.get(session_type)
        session = Session(
            definition,
            configuration or {},
            broker=self._broker,
            state_manager=self._state_manager,
            storage=self._storage,
            settings=self._settings,
            session_id=session_id,
        )
        if self.is_active(session.session_id):
            raise DuplicateSessionError(session.session_id)

        await session.initialize()
        await self.register_session(session)
        await self._analytics.record_metrics(
            session.session_id,
            {
                "completion_rate": 0.0,
                "error_rate": 0.0,
                "resource_utilization": self._broker.utilization(),
            },
        )
        await self._backup(session)

        logger.info("Session %s created (%s)", session.session_id, session_type)
        await self._emit(
            Topic.SESSION_CREATED,
            {
                "session_id": session.session_id,
                "session_type": session_type,
                "configuration": copy.deepcopy(dict(session.configuration)),
            },
        )
        return session

    async def register_session(self, session: Session) -> None:
        """Add a constructed session to the active set and observe it."""
        if not self._state_manager.has_state(session.session_id):
            await session.initialize()

        async with self._lock:
            if session.session_id in self._sessions:
                raise DuplicateSessionError(session.session_id)
            self._sessions[session.session_id] = session
            self._step_stats[session.session_id] = {"completed": 0, "errors": 0}
            session.observer = self

    # Running

    async def start_session(self, session_id: str) -> asyncio.Task:
        """Run the session pipeline in its own task."""
        session = self.get_session(session_id)
        if self.is_running(session_id):
            raise SessionBusyError(session_id)
        status = session.status
        if status in TERMINAL_STATUSES or status == SessionStatus.ARCHIVED.value:
            raise InvalidTransitionError(status, SessionStatus.ACTIVE.value)

        task = asyncio.create_task(session.run(), name=f"session-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(self._log_task_outcome)
        return task

    @staticmethod
    def _log_task_outcome(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s crashed: %s", task.get_name(), exc, exc_info=exc)

    async def wait_for_session(self, session_id: str) -> SessionReport:
        """Wait for a started session's pipeline to end."""
        task = self._tasks.get(session_id)
        if task is None:
            raise UnknownSessionError(session_id)
        return await task

    async def run_session(self, session_id: str) -> SessionReport:
        await self.start_session(session_id)
        return await self.wait_for_session(session_id)

    async def cancel_session(self, session_id: str) -> bool:
        """Cancel a running pipeline. The session ends in `failed`."""
        self.get_session(session_id)
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return False

        task.cancel()
        await asyncio.wait([task])
        logger.info("Session %s cancelled", session_id)
        return True

    # Coordination

    async def coordinate_sessions(
        self, source_id: str, target_id: str, message: Message | dict | str
    ) -> Channel:
        """Deliver a message from one active session to another.

        The channel for an ordered (source, target) pair is created once and
        reused; deliveries on one channel keep their send order.
        """
        channel_id = f"channel_{source_id}_{target_id}"
        async with self._lock:
            for session_id in (source_id, target_id):
                if session_id not in self._sessions:
                    raise UnknownSessionError(session_id)
            target = self._sessions[target_id]
            channel = self._channels.get(channel_id)
            if channel is None:
                channel = Channel(
                    channel_id=channel_id,
                    source_session=source_id,
                    target_session=target_id,
                    created_at=_now(),
                )
                self._channels[channel_id] = channel
                logger.info("Channel %s established", channel_id)
            channel_lock = self._channel_locks.setdefault(channel_id, asyncio.Lock())

        if not isinstance(message, Message):
            content = message if isinstance(message, str) else json.dumps(message, default=str)
            message = Message.create(
                sender_id=source_id,
                content=content,
                metadata={"channel_id": channel_id},
            )

        async with channel_lock:
            channel.messages.append(
                {
                    "sequence": len(channel.messages) + 1,
                    "message": message.to_dict(),
                    "sent_at": _now().isoformat(),
                }
            )
            await target.handle_incoming_message(channel_id, message)

        await self._backup(target)
        await self._emit(
            Topic.SESSION_COORDINATED,
            {
                "channel_id": channel_id,
                "source_session": source_id,
                "target_session": target_id,
                "sequence": len(channel.messages),
            },
        )
        return channel

    def get_channel(self, channel_id: str) -> Channel | None:
        return self._channels.get(channel_id)

    def channels_for(self, session_id: str) -> list[Channel]:
        return [
            channel
            for channel in self._channels.values()
            if session_id in (channel.source_session, channel.target_session)
        ]

    # State management

    async def manage_session_state(self, session_id: str, new_state: str) -> SessionState:
        """Request a lifecycle change for an active session."""
        session = self.get_session(session_id)
        current = session.status

        if self._allowed is not None and new_state not in self._allowed.get(current, []):
            raise InvalidTransitionError(current, new_state)

        if new_state == SessionStatus.ARCHIVED.value:
            _, state = await self._archive(session_id)
            return state

        if new_state in TERMINAL_STATUSES and self.is_running(session_id):
            raise SessionBusyError(session_id)

        state = await self._state_manager.transition_state(session_id, new_state)
        # Only `active` lets the pipeline make progress
        if new_state == SessionStatus.ACTIVE.value:
            session.resume()
        else:
            session.pause()

        await self._backup(session)
        return state

    async def pause_session(self, session_id: str) -> SessionState:
        return await self.manage_session_state(session_id, SessionStatus.PAUSED.value)

    async def resume_session(self, session_id: str) -> SessionState:
        return await self.manage_session_state(session_id, SessionStatus.ACTIVE.value)

    # Backup and recovery

    async def _backup(self, session: Session) -> None:
        if not self._state_manager.has_state(session.session_id):
            return
        await self._storage.put_snapshot(
            backup_key(session.session_id),
            {
                "session_id": session.session_id,
                "session_type": session.type_name,
                "configuration": copy.deepcopy(dict(session.configuration)),
                "state": self._state_manager.export_state(session.session_id),
                "received_messages": session.received_messages,
                "backed_up_at": _now().isoformat(),
            },
        )

    async def recover_session(self, session_id: str) -> Session | None:
        """Rebuild a session from its last backup, or None without one.

        Working data and FSM state come from the same backup blob. Completed
        steps are not re-run: their artifacts are already persisted.
        """
        backup = await self._storage.get_snapshot(backup_key(session_id))
        if not backup:
            return None
        if self.is_running(session_id):
            raise SessionBusyError(session_id)

        definition = self._session_types.get(backup["session_type"])
        await self._state_manager.import_state(session_id, backup["state"], replace=True)

        session = Session(
            definition,
            backup["configuration"],
            broker=self._broker,
            state_manager=self._state_manager,
            storage=self._storage,
            settings=self._settings,
            session_id=session_id,
        )
        session.restore_received(backup.get("received_messages", []))
        if session.status == SessionStatus.PAUSED.value:
            session.pause()

        async with self._lock:
            self._sessions[session_id] = session
            self._step_stats.setdefault(session_id, {"completed": 0, "errors": 0})
            self._tasks.pop(session_id, None)
            session.observer = self
        await self._analytics.load_metrics(session_id)

        logger.info("Session %s recovered in state %s", session_id, session.status)
        await self._emit(
            Topic.SESSION_RECOVERED,
            {"session_id": session_id, "status": session.status},
        )
        return session

    # Archival

    async def archive_session(self, session_id: str) -> SessionArchive:
        """Write the archive record and remove the session from the active set."""
        archive, _ = await self._archive(session_id)
        return archive

    async def _archive(self, session_id: str) -> tuple[SessionArchive, SessionState]:
        session = self.get_session(session_id)
        if self.is_running(session_id):
            raise SessionBusyError(session_id)
        final_status = session.status
        if final_status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(final_status, SessionStatus.ARCHIVED.value)

        # The record is written while the session is still terminal
        artifacts = await self._storage.get_artifacts(session_id)
        reports = await self._storage.get_reports(session_id)
        transitions = await self._storage.get_transitions(session_id)
        metrics = await self._storage.get_metrics(session_id)
        archive = SessionArchive(
            session_id=session_id,
            session_type=session.type_name,
            status=final_status,
            content={
                "configuration": copy.deepcopy(dict(session.configuration)),
                "state": self._state_manager.export_state(session_id),
                "transitions": [transition_to_dict(t) for t in transitions],
                "artifacts": [self._artifact_to_dict(a) for a in artifacts],
                "reports": {
                    report.kind: {
                        "content": report.content,
                        "created_at": report.created_at.isoformat(),
                    }
                    for report in reports
                },
                "metrics": [
                    {"timestamp": m["timestamp"].isoformat(), "metrics": m["metrics"]}
                    for m in metrics
                ],
                "analytics": self._analytics.generate_report(session_id),
                "channels": [
                    {
                        "channel_id": channel.channel_id,
                        "source_session": channel.source_session,
                        "target_session": channel.target_session,
                        "messages": list(channel.messages),
                    }
                    for channel in self.channels_for(session_id)
                ],
                "received_messages": session.received_messages,
            },
            archived_at=_now(),
        )
        await self._storage.save_archive(archive)

        state = await self._state_manager.transition_state(
            session_id, SessionStatus.ARCHIVED.value, {"archived_at": _now().isoformat()}
        )

        async with self._lock:
            self._sessions.pop(session_id, None)
            self._tasks.pop(session_id, None)
            self._step_stats.pop(session_id, None)
            for channel in self.channels_for(session_id):
                self._channels.pop(channel.channel_id, None)
                self._channel_locks.pop(channel.channel_id, None)
        self._analytics.forget(session_id)
        self._state_manager.forget(session_id)
        await self._storage.delete_snapshot(backup_key(session_id))

        logger.info("Session %s archived (%s)", session_id, final_status)
        await self._emit(
            Topic.SESSION_ARCHIVED,
            {
                "session_id": session_id,
                "final_status": final_status,
                "artifacts": len(artifacts),
            },
        )
        return archive, state

    @staticmethod
    def _artifact_to_dict(artifact: SessionArtifact) -> dict:
        return {
            "step": artifact.step,
            "content": artifact.content,
            "status": artifact.status,
            "metadata": artifact.metadata,
            "created_at": artifact.created_at.isoformat(),
        }

    # Health and analytics

    def check_health(self) -> dict:
        now = _now()
        sessions = {}
        for session_id, session in self._sessions.items():
            running = self.is_running(session_id)
            idle = (now - session.last_activity).total_seconds()
            sessions[session_id] = {
                "status": session.status,
                "session_type": session.type_name,
                "running": running,
                "current_step": session.current_step,
                "last_activity": session.last_activity.isoformat(),
                "stalled": running
                and not session.is_paused
                and idle > self._settings.stall_seconds,
                "health": self._analytics.get_health_status(session_id),
            }
        return {
            "timestamp": now.isoformat(),
            "active_sessions": len(sessions),
            "running_sessions": sum(1 for s in sessions.values() if s["running"]),
            "broker": {
                "utilization": self._broker.utilization(),
                "pending_deliveries": self._broker.pending_count,
            },
            "sessions": sessions,
        }

    def analyze_session_metrics(self, session_id: str) -> dict:
        return self._analytics.generate_report(session_id)

    # Session observer

    async def on_session_started(self, session: Session) -> None:
        await self._backup(session)
        await self._emit(
            Topic.SESSION_STARTED,
            {"session_id": session.session_id, "session_type": session.type_name},
        )

    async def on_step_completed(
        self, session: Session, artifact: SessionArtifact, elapsed_ms: float
    ) -> None:
        stats = self._step_stats.setdefault(session.session_id, {"completed": 0, "errors": 0})
        stats["completed"] += 1
        await self._record_progress(session, {"response_time": elapsed_ms})
        await self._backup(session)
        await self._emit(
            Topic.SESSION_STEP_COMPLETED,
            {
                "session_id": session.session_id,
                "step": artifact.step,
                "agent_id": artifact.metadata.get("agent_id"),
                "elapsed_ms": round(elapsed_ms, 3),
            },
        )

    async def on_step_failed(
        self, session: Session, step: str | None, error: BaseException, fatal: bool
    ) -> None:
        stats = self._step_stats.setdefault(session.session_id, {"completed": 0, "errors": 0})
        stats["errors"] += 1
        await self._record_progress(session, {})
        await self._emit(
            Topic.SESSION_ERROR_HANDLED,
            {
                "session_id": session.session_id,
                "step": step,
                "error_type": type(error).__name__,
                "error": str(error),
                "fatal": fatal,
            },
        )

    async def on_session_finished(self, session: Session, report: SessionReport) -> None:
        await self._backup(session)
        logger.info(
            "Session %s finished with %s report", session.session_id, report.kind
        )

    async def _record_progress(self, session: Session, extra: dict) -> None:
        stats = self._step_stats.get(session.session_id, {"completed": 0, "errors": 0})
        attempts = stats["completed"] + stats["errors"]
        metrics = {
            "completion_rate": len(session.artifacts) / len(session.pipeline),
            "error_rate": stats["errors"] / attempts if attempts else 0.0,
            "resource_utilization": self._broker.utilization(),
            **extra,
        }
        await self._analytics.record_metrics(session.session_id, metrics)
        await self._emit(
            Topic.SESSION_METRICS_RECORDED,
            {"session_id": session.session_id, "metrics": metrics},
        )
