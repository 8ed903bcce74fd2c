"""Finite-state machine store for session lifecycle."""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Protocol

from ..errors import (
    DuplicateSessionError,
    InvalidStateDataError,
    InvalidTransitionError,
    SnapshotNotFoundError,
    StateDefinitionError,
    UnknownSessionError,
    UnknownStateError,
)
from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import SessionState, SessionStatus, StateTransition, Topic
from ..storage import IStorage

logger = get_logger(__name__)

DEFAULT_TRANSITIONS: dict[str, list[str]] = {
    "initialized": ["active"],
    "active": ["paused", "completed", "failed"],
    "paused": ["active", "completed", "failed"],
    "blocked": ["active", "failed"],
    "completed": ["archived"],
    "failed": ["archived"],
    "archived": [],
}


@dataclass(frozen=True)
class StateEntry:
    """Current state and the history that produced it, swapped as one unit."""

    state: SessionState
    history: tuple[StateTransition, ...]


class IStateRepository(Protocol):
    """Keyed store for the current-state cache plus its history."""

    def get(self, session_id: str) -> StateEntry | None:
        ...

    def put(self, session_id: str, entry: StateEntry) -> None:
        ...

    def delete(self, session_id: str) -> None:
        ...


class InMemoryStateRepository:
    """Process-local state repository."""

    def __init__(self):
        self._entries: dict[str, StateEntry] = {}

    def get(self, session_id: str) -> StateEntry | None:
        return self._entries.get(session_id)

    def put(self, session_id: str, entry: StateEntry) -> None:
        # Single assignment: readers see the old entry or the new one
        self._entries[session_id] = entry

    def delete(self, session_id: str) -> None:
        self._entries.pop(session_id, None)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def state_to_dict(state: SessionState) -> dict:
    return {
        "status": state.status,
        "data": dict(state.data),
        "timestamp": state.timestamp.isoformat(),
    }


def state_from_dict(data: dict) -> SessionState:
    return SessionState(
        status=data["status"],
        data=dict(data.get("data") or {}),
        timestamp=datetime.fromisoformat(data["timestamp"]),
    )


def transition_to_dict(transition: StateTransition) -> dict:
    return {
        "session_id": transition.session_id,
        "from_state": transition.from_state,
        "to_state": transition.to_state,
        "timestamp": transition.timestamp.isoformat(),
        "metadata": dict(transition.metadata),
    }


def transition_from_dict(session_id: str, data: dict) -> StateTransition:
    return StateTransition(
        session_id=session_id,
        from_state=data.get("from_state"),
        to_state=data["to_state"],
        timestamp=datetime.fromisoformat(data["timestamp"]),
        metadata=dict(data.get("metadata") or {}),
    )


class SessionStateManager:
    """Session lifecycle FSM with an append-only transition history.

    The current state is a cache derived from the latest transition. Every
    write appends to the durable transition log first and then swaps the
    (state, history) pair in the repository in one step, so a reader never
    sees one without the other. Writes for one session are serialized by a
    per-session lock.
    """

    def __init__(
        self,
        storage: IStorage,
        event_bus: IEventBus | None = None,
        repository: IStateRepository | None = None,
    ):
        self._storage = storage
        self._event_bus = event_bus
        self._repository = repository or InMemoryStateRepository()
        self._states: list[str] = [status.value for status in SessionStatus]
        self._transitions: dict[str, list[str]] = {
            state: list(targets) for state, targets in DEFAULT_TRANSITIONS.items()
        }
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    async def _emit(self, topic: Topic, payload: dict) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(topic, payload, source="state_manager")

    # Definition

    @property
    def states(self) -> tuple[str, ...]:
        return tuple(self._states)

    @property
    def transitions(self) -> dict[str, list[str]]:
        return {state: list(targets) for state, targets in self._transitions.items()}

    def is_valid_transition(self, from_state: str, to_state: str) -> bool:
        """Check if state transition is valid."""
        return to_state in self._transitions.get(from_state, [])

    def _require_declared(self, state: str) -> None:
        if state not in self._states:
            raise UnknownStateError(state)

    def add_custom_state(self, state: str, transitions: Iterable[str] = ()) -> None:
        """Declare a new state and its outgoing transitions."""
        if state in self._states:
            raise StateDefinitionError(f"State already exists: {state}")
        targets = list(dict.fromkeys(transitions))
        for target in targets:
            if target != state and target not in self._states:
                raise UnknownStateError(target)

        self._states.append(state)
        self._transitions[state] = targets
        logger.info("Custom state %s added with transitions %s", state, targets)

    def add_custom_transition(self, from_state: str, to_state: str) -> None:
        """Allow an extra edge between two declared states."""
        self._require_declared(from_state)
        self._require_declared(to_state)

        targets = self._transitions.setdefault(from_state, [])
        if to_state not in targets:
            targets.append(to_state)
            logger.info("Custom transition %s -> %s added", from_state, to_state)

    # Reads

    def has_state(self, session_id: str) -> bool:
        return self._repository.get(session_id) is not None

    def get_current_state(self, session_id: str) -> SessionState | None:
        """Get current session state."""
        entry = self._repository.get(session_id)
        return entry.state if entry else None

    def get_state_history(self, session_id: str) -> list[StateTransition]:
        """Get session state history, oldest first."""
        entry = self._repository.get(session_id)
        return list(entry.history) if entry else []

    def get_entry(self, session_id: str) -> StateEntry | None:
        """Current state and history as one consistent pair."""
        return self._repository.get(session_id)

    # Writes

    async def initialize_state(
        self, session_id: str, data: dict | None = None
    ) -> SessionState:
        """Create the `initialized` record for a session."""
        async with self._lock(session_id):
            if self._repository.get(session_id) is not None:
                raise DuplicateSessionError(session_id)

            now = _now()
            transition = StateTransition(
                session_id=session_id,
                from_state=None,
                to_state=SessionStatus.INITIALIZED.value,
                timestamp=now,
            )
            await self._storage.append_transition(transition)

            state = SessionState(
                status=SessionStatus.INITIALIZED.value,
                data=dict(data or {}),
                timestamp=now,
            )
            self._repository.put(session_id, StateEntry(state, (transition,)))

        await self._emit(
            Topic.STATE_INITIALIZED,
            {"session_id": session_id, "state": state_to_dict(state)},
        )
        return state

    async def transition_state(
        self,
        session_id: str,
        new_state: str,
        data: dict | None = None,
        metadata: dict | None = None,
    ) -> SessionState:
        """Transition session to a new state."""
        self._require_declared(new_state)

        async with self._lock(session_id):
            entry = self._repository.get(session_id)
            if entry is None:
                raise UnknownSessionError(session_id)

            current = entry.state.status
            self._require_declared(current)
            if not self.is_valid_transition(current, new_state):
                raise InvalidTransitionError(current, new_state)

            now = _now()
            transition = StateTransition(
                session_id=session_id,
                from_state=current,
                to_state=new_state,
                timestamp=now,
                metadata=dict(metadata or {}),
            )
            await self._storage.append_transition(transition)

            state = SessionState(
                status=new_state,
                data={**entry.state.data, **(data or {})},
                timestamp=now,
            )
            self._repository.put(
                session_id, StateEntry(state, entry.history + (transition,))
            )

        logger.info("Session %s: %s -> %s", session_id, current, new_state)
        await self._emit(
            Topic.STATE_TRANSITIONED,
            {
                "session_id": session_id,
                "from_state": current,
                "to_state": new_state,
                "state_data": dict(data or {}),
            },
        )
        return state

    # Snapshots

    @staticmethod
    def _snapshot_key(session_id: str, snapshot_id: str) -> str:
        return f"session_snapshot_{session_id}_{snapshot_id}"

    async def save_state_snapshot(self, session_id: str) -> str:
        """Save current state and history; returns the snapshot id."""
        entry = self._repository.get(session_id)
        if entry is None:
            raise UnknownSessionError(session_id)

        snapshot_id = f"snapshot_{uuid.uuid4().hex}"
        snapshot = {
            "session_id": session_id,
            "snapshot_id": snapshot_id,
            "state": state_to_dict(entry.state),
            "history": [transition_to_dict(t) for t in entry.history],
            "timestamp": _now().isoformat(),
        }
        await self._storage.put_snapshot(self._snapshot_key(session_id, snapshot_id), snapshot)

        await self._emit(
            Topic.STATE_SNAPSHOT_CREATED,
            {"session_id": session_id, "snapshot_id": snapshot_id},
        )
        return snapshot_id

    async def restore_state_snapshot(self, session_id: str, snapshot_id: str) -> SessionState:
        """Restore state and history from a snapshot.

        Bypasses the transition table. The in-memory history is truncated to
        the snapshot's history; the durable log keeps every past transition
        and gets a restore marker.
        """
        snapshot = await self._storage.get_snapshot(self._snapshot_key(session_id, snapshot_id))
        if not snapshot:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")

        state = state_from_dict(snapshot["state"])
        history = tuple(
            transition_from_dict(session_id, item) for item in snapshot["history"]
        )
        self._require_declared(state.status)

        async with self._lock(session_id):
            entry = self._repository.get(session_id)
            await self._storage.append_transition(
                StateTransition(
                    session_id=session_id,
                    from_state=entry.state.status if entry else None,
                    to_state=state.status,
                    timestamp=_now(),
                    metadata={"restored_from": snapshot_id},
                )
            )
            self._repository.put(session_id, StateEntry(state, history))

        await self._emit(
            Topic.STATE_SNAPSHOT_RESTORED,
            {
                "session_id": session_id,
                "snapshot_id": snapshot_id,
                "state": state_to_dict(state),
            },
        )
        return state

    # Export / import

    def export_state(self, session_id: str) -> dict:
        """Serialize current state and history."""
        entry = self._repository.get(session_id)
        if entry is None:
            raise UnknownSessionError(session_id)

        return {
            "current_state": state_to_dict(entry.state),
            "state_history": [transition_to_dict(t) for t in entry.history],
            "metadata": {
                "exported_at": _now().isoformat(),
                "session_id": session_id,
            },
        }

    async def import_state(
        self, session_id: str, state_data: dict, replace: bool = False
    ) -> SessionState:
        """Load exported state for a session.

        The durable log receives one marker entry for the import rather than
        a second copy of the imported history.
        """
        if (
            not isinstance(state_data, dict)
            or "current_state" not in state_data
            or "state_history" not in state_data
        ):
            raise InvalidStateDataError("Invalid state data format")

        try:
            state = state_from_dict(state_data["current_state"])
            history = tuple(
                transition_from_dict(session_id, item)
                for item in state_data["state_history"]
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidStateDataError(f"Invalid state data format: {e}") from e

        self._require_declared(state.status)
        for transition in history:
            self._require_declared(transition.to_state)

        async with self._lock(session_id):
            entry = self._repository.get(session_id)
            if entry is not None and not replace:
                raise DuplicateSessionError(session_id)

            await self._storage.append_transition(
                StateTransition(
                    session_id=session_id,
                    from_state=entry.state.status if entry else None,
                    to_state=state.status,
                    timestamp=_now(),
                    metadata={"imported": True, "history_length": len(history)},
                )
            )
            self._repository.put(session_id, StateEntry(state, history))

        await self._emit(
            Topic.STATE_IMPORTED,
            {"session_id": session_id, "state": state_to_dict(state)},
        )
        return state

    def forget(self, session_id: str) -> None:
        """Drop the cached entry and lock; the durable log is untouched."""
        self._repository.delete(session_id)
        self._locks.pop(session_id, None)
