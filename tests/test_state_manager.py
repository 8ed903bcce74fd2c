"""Tests for SessionStateManager."""

import asyncio

import pytest

from agency.errors import (
    DuplicateSessionError,
    InvalidStateDataError,
    InvalidTransitionError,
    SnapshotNotFoundError,
    StateDefinitionError,
    UnknownSessionError,
    UnknownStateError,
)
from agency.models import Topic
from agency.sessions import DEFAULT_TRANSITIONS, SessionStateManager


class TestTransitionTable:
    """Tests for the transition table and its extension."""

    @pytest.mark.asyncio
    async def test_default_table(self, state_manager):
        """Test the default lifecycle edges."""
        assert state_manager.transitions == DEFAULT_TRANSITIONS
        assert state_manager.is_valid_transition("initialized", "active")
        assert state_manager.is_valid_transition("paused", "failed")
        assert not state_manager.is_valid_transition("active", "archived")
        assert not state_manager.is_valid_transition("failed", "active")
        assert state_manager.transitions["archived"] == []

    @pytest.mark.asyncio
    async def test_add_custom_state(self, state_manager):
        """Test declaring a new state with outgoing edges."""
        state_manager.add_custom_state("review", ["active", "failed"])
        state_manager.add_custom_transition("active", "review")

        assert "review" in state_manager.states
        assert state_manager.is_valid_transition("active", "review")
        assert state_manager.is_valid_transition("review", "active")

    @pytest.mark.asyncio
    async def test_add_duplicate_state(self, state_manager):
        """Test that existing states cannot be redeclared."""
        with pytest.raises(StateDefinitionError):
            state_manager.add_custom_state("active")

    @pytest.mark.asyncio
    async def test_custom_state_with_unknown_target(self, state_manager):
        """Test that edges must point at declared states."""
        with pytest.raises(UnknownStateError):
            state_manager.add_custom_state("review", ["nowhere"])

        assert "review" not in state_manager.states

    @pytest.mark.asyncio
    async def test_custom_transition_needs_declared_states(self, state_manager):
        """Test that custom edges need both ends declared."""
        with pytest.raises(UnknownStateError):
            state_manager.add_custom_transition("active", "nowhere")

    @pytest.mark.asyncio
    async def test_managers_do_not_share_tables(self, storage):
        """Test that extending one manager leaves others untouched."""
        first = SessionStateManager(storage)
        second = SessionStateManager(storage)

        first.add_custom_transition("failed", "active")

        assert not second.is_valid_transition("failed", "active")


class TestStateLifecycle:
    """Tests for initialize and transition."""

    @pytest.mark.asyncio
    async def test_initialize_state(self, state_manager, storage):
        """Test creating the initialized record."""
        state = await state_manager.initialize_state("s1", {"owner": "team"})

        assert state.status == "initialized"
        assert state.data == {"owner": "team"}
        history = state_manager.get_state_history("s1")
        assert [(t.from_state, t.to_state) for t in history] == [(None, "initialized")]
        assert len(await storage.get_transitions("s1")) == 1

    @pytest.mark.asyncio
    async def test_initialize_twice(self, state_manager):
        """Test that a session is initialized once."""
        await state_manager.initialize_state("s1")

        with pytest.raises(DuplicateSessionError):
            await state_manager.initialize_state("s1")

    @pytest.mark.asyncio
    async def test_transition_merges_data(self, state_manager):
        """Test that transition data is merged into the state."""
        await state_manager.initialize_state("s1", {"a": 1})

        state = await state_manager.transition_state("s1", "active", {"b": 2})

        assert state.status == "active"
        assert state.data == {"a": 1, "b": 2}
        assert state_manager.get_current_state("s1") == state

    @pytest.mark.asyncio
    async def test_current_state_follows_last_valid_transition(self, state_manager):
        """Test that the state equals the last valid transition's target."""
        await state_manager.initialize_state("s1")
        path = ["active", "paused", "active", "completed", "archived"]

        for target in path:
            await state_manager.transition_state("s1", target)
            assert state_manager.get_current_state("s1").status == target

        history = state_manager.get_state_history("s1")
        assert [t.to_state for t in history] == ["initialized"] + path

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_state(self, state_manager, storage):
        """Test active -> archived is rejected without side effects."""
        await state_manager.initialize_state("s1")
        await state_manager.transition_state("s1", "active")

        with pytest.raises(InvalidTransitionError) as exc_info:
            await state_manager.transition_state("s1", "archived")

        assert exc_info.value.from_state == "active"
        assert exc_info.value.to_state == "archived"
        assert state_manager.get_current_state("s1").status == "active"
        assert len(state_manager.get_state_history("s1")) == 2
        assert len(await storage.get_transitions("s1")) == 2

    @pytest.mark.asyncio
    async def test_unknown_target_state(self, state_manager):
        """Test that undeclared targets are rejected."""
        await state_manager.initialize_state("s1")

        with pytest.raises(UnknownStateError):
            await state_manager.transition_state("s1", "exploded")

    @pytest.mark.asyncio
    async def test_transition_unknown_session(self, state_manager):
        """Test transitioning a session without state."""
        with pytest.raises(UnknownSessionError):
            await state_manager.transition_state("ghost", "active")

    @pytest.mark.asyncio
    async def test_reads_for_unknown_session(self, state_manager):
        """Test pure reads for an unknown session."""
        assert state_manager.get_current_state("ghost") is None
        assert state_manager.get_state_history("ghost") == []

    @pytest.mark.asyncio
    async def test_forget_keeps_durable_log(self, state_manager, storage):
        """Test that forget drops the cached entry and lock but not the log."""
        await state_manager.initialize_state("s1")
        await state_manager.transition_state("s1", "active")

        state_manager.forget("s1")
        state_manager.forget("s1")

        assert not state_manager.has_state("s1")
        assert "s1" not in state_manager._locks
        assert len(await storage.get_transitions("s1")) == 2

    @pytest.mark.asyncio
    async def test_transition_emits_event(self, state_manager, event_bus):
        """Test that transitions are published on the bus."""
        seen = []

        async def handler(event):
            seen.append(event.payload)

        event_bus.subscribe(Topic.STATE_TRANSITIONED, handler)
        await state_manager.initialize_state("s1")
        await state_manager.transition_state("s1", "active")

        assert seen == [
            {
                "session_id": "s1",
                "from_state": "initialized",
                "to_state": "active",
                "state_data": {},
            }
        ]


class TestAtomicity:
    """Tests for consistent reads under concurrent writes."""

    @pytest.mark.asyncio
    async def test_reader_never_sees_torn_state(self, state_manager):
        """Test that state and latest history entry always agree."""
        await state_manager.initialize_state("s1")
        observed = []
        done = asyncio.Event()

        async def reader():
            while not done.is_set():
                entry = state_manager.get_entry("s1")
                observed.append(entry.state.status == entry.history[-1].to_state)
                await asyncio.sleep(0)

        async def writer():
            await state_manager.transition_state("s1", "active")
            for _ in range(20):
                await state_manager.transition_state("s1", "paused")
                await state_manager.transition_state("s1", "active")
            done.set()

        await asyncio.gather(reader(), writer())

        assert observed
        assert all(observed)

    @pytest.mark.asyncio
    async def test_concurrent_transitions_are_serialized(self, state_manager):
        """Test that racing writers cannot both leave the same state."""
        await state_manager.initialize_state("s1")
        await state_manager.transition_state("s1", "active")

        results = await asyncio.gather(
            state_manager.transition_state("s1", "completed"),
            state_manager.transition_state("s1", "failed"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidTransitionError)
        assert len(state_manager.get_state_history("s1")) == 3


class TestSnapshots:
    """Tests for snapshot save and restore."""

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, state_manager):
        """Test restore right after save is observably a no-op."""
        await state_manager.initialize_state("s1", {"k": "v"})
        await state_manager.transition_state("s1", "active")
        before_state = state_manager.get_current_state("s1")
        before_history = state_manager.get_state_history("s1")

        snapshot_id = await state_manager.save_state_snapshot("s1")
        await state_manager.restore_state_snapshot("s1", snapshot_id)

        assert state_manager.get_current_state("s1") == before_state
        assert state_manager.get_state_history("s1") == before_history

    @pytest.mark.asyncio
    async def test_restore_reverts_and_truncates(self, state_manager, storage):
        """Test restore after three more transitions."""
        await state_manager.initialize_state("s1")
        await state_manager.transition_state("s1", "active")
        snapshot_id = await state_manager.save_state_snapshot("s1")

        await state_manager.transition_state("s1", "paused")
        await state_manager.transition_state("s1", "active")
        await state_manager.transition_state("s1", "completed")

        state = await state_manager.restore_state_snapshot("s1", snapshot_id)

        assert state.status == "active"
        assert state_manager.get_current_state("s1").status == "active"
        history = state_manager.get_state_history("s1")
        assert [t.to_state for t in history] == ["initialized", "active"]

        # durable log keeps everything plus a restore marker
        durable = await storage.get_transitions("s1")
        assert [t.to_state for t in durable] == [
            "initialized", "active", "paused", "active", "completed", "active",
        ]
        assert durable[-1].from_state == "completed"
        assert durable[-1].metadata == {"restored_from": snapshot_id}

    @pytest.mark.asyncio
    async def test_restore_bypasses_transition_table(self, state_manager):
        """Test that restore may move out of a terminal state."""
        await state_manager.initialize_state("s1")
        await state_manager.transition_state("s1", "active")
        snapshot_id = await state_manager.save_state_snapshot("s1")
        await state_manager.transition_state("s1", "failed")

        await state_manager.restore_state_snapshot("s1", snapshot_id)

        assert state_manager.get_current_state("s1").status == "active"

    @pytest.mark.asyncio
    async def test_unknown_snapshot(self, state_manager):
        """Test restoring a snapshot that was never saved."""
        await state_manager.initialize_state("s1")

        with pytest.raises(SnapshotNotFoundError):
            await state_manager.restore_state_snapshot("s1", "snapshot_missing")

    @pytest.mark.asyncio
    async def test_snapshot_unknown_session(self, state_manager):
        """Test snapshotting a session without state."""
        with pytest.raises(UnknownSessionError):
            await state_manager.save_state_snapshot("ghost")


class TestExportImport:
    """Tests for export_state and import_state."""

    @pytest.mark.asyncio
    async def test_export_import_between_managers(self, state_manager, storage):
        """Test moving a session's state to another manager."""
        await state_manager.initialize_state("s1", {"k": "v"})
        await state_manager.transition_state("s1", "active")
        exported = state_manager.export_state("s1")

        other = SessionStateManager(storage)
        state = await other.import_state("s1", exported)

        assert state == state_manager.get_current_state("s1")
        assert other.get_state_history("s1") == state_manager.get_state_history("s1")
        assert exported["metadata"]["session_id"] == "s1"

    @pytest.mark.asyncio
    async def test_import_over_existing_needs_replace(self, state_manager):
        """Test that import does not silently overwrite."""
        await state_manager.initialize_state("s1")
        exported = state_manager.export_state("s1")

        with pytest.raises(DuplicateSessionError):
            await state_manager.import_state("s1", exported)

        await state_manager.transition_state("s1", "active")
        state = await state_manager.import_state("s1", exported, replace=True)
        assert state.status == "initialized"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"current_state": {}},
            {"current_state": {"status": "active"}, "state_history": []},
            {
                "current_state": {"status": "active", "timestamp": "not-a-date"},
                "state_history": [],
            },
            "not a dict",
        ],
    )
    async def test_import_rejects_bad_payloads(self, state_manager, payload):
        """Test invalid import payloads."""
        with pytest.raises(InvalidStateDataError):
            await state_manager.import_state("s1", payload)

    @pytest.mark.asyncio
    async def test_import_rejects_undeclared_status(self, state_manager):
        """Test importing a state this manager does not know."""
        payload = {
            "current_state": {
                "status": "review",
                "data": {},
                "timestamp": "2024-01-01T00:00:00+00:00",
            },
            "state_history": [],
        }

        with pytest.raises(UnknownStateError):
            await state_manager.import_state("s1", payload)

    @pytest.mark.asyncio
    async def test_export_unknown_session(self, state_manager):
        """Test exporting a session without state."""
        with pytest.raises(UnknownSessionError):
            state_manager.export_state("ghost")
