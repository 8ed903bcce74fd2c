"""Tests for Application."""

from unittest.mock import patch

import pytest
import pytest_asyncio

from agency.app import Application
from agency.config import Settings
from agency.sessions import SessionType, SessionTypeRegistry, StepDefinition


def _echo_settings() -> Settings:
    return Settings(agent_backend="echo", reply_timeout=1.0, retry_backoff=0.01)


@pytest_asyncio.fixture
async def app():
    """Create and start a test application."""
    application = Application(db_path=":memory:", settings=_echo_settings())
    await application.start()
    yield application
    await application.stop()


class TestApplicationStart:
    """Tests for Application.start()."""

    @pytest.mark.asyncio
    async def test_start_initializes_components(self, app):
        """Test that start wires every component."""
        assert app.storage is not None
        assert app.broker is not None
        assert app.state_manager is not None
        assert app.analytics is not None
        assert app.orchestrator is not None
        assert app._tracker._event_bus is app._event_bus
        assert app._tracker._storage is app._storage

    @pytest.mark.asyncio
    async def test_start_creates_database_tables(self, app):
        async with app._storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = {row[0] for row in await cursor.fetchall()}
        assert {"session_artifacts", "state_transitions", "snapshots"} <= tables

    @pytest.mark.asyncio
    async def test_echo_backend_registers_echo_agent(self, app):
        assert app.registry.agent_ids == ["echo_agent"]
        assert "daily_standup" in app.orchestrator.session_types

    @pytest.mark.asyncio
    async def test_llm_backend_registers_llm_agent(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test_key")
        application = Application(db_path=":memory:", settings=Settings(agent_backend="llm"))

        with patch("agency.llm.llm_provider.anthropic.AsyncAnthropic"):
            await application.start()
        try:
            assert application.registry.agent_ids == ["llm_agent"]
        finally:
            await application.stop()

    def test_components_unavailable_before_start(self):
        application = Application(db_path=":memory:", settings=_echo_settings())

        with pytest.raises(RuntimeError, match="not started"):
            application.orchestrator

    @pytest.mark.asyncio
    async def test_custom_agents_and_types(self, make_agent):
        agent = make_agent("custom", ["alpha"])
        types = SessionTypeRegistry([SessionType("solo", (StepDefinition("only", {"alpha"}),))])
        application = Application(
            db_path=":memory:",
            settings=_echo_settings(),
            agents=[agent],
            session_types=types,
        )
        await application.start()
        try:
            session = await application.orchestrator.create_session("solo")
            report = await application.orchestrator.run_session(session.session_id)
        finally:
            await application.stop()

        assert report.kind == "final"
        assert len(agent.received) == 1


class TestApplicationFlow:
    """End-to-end runs through the started application."""

    @pytest.mark.asyncio
    async def test_security_audit_end_to_end(self, app):
        """Test a built-in session type answered by the echo agent."""
        orchestrator = app.orchestrator
        session = await orchestrator.create_session("security_audit", {"scope": "api"})

        report = await orchestrator.run_session(session.session_id)

        assert report.kind == "final"
        assert report.content["summary"]["completed_steps"] == len(session.pipeline)
        first_step = session.pipeline[0]
        assert report.content["results"][first_step]["agent_id"] == "echo_agent"

        archive = await orchestrator.archive_session(session.session_id)
        assert len(archive.content["artifacts"]) == len(session.pipeline)

        events = await app.storage.get_trace_events(limit=500)
        event_types = {e.event_type for e in events}
        assert "message_routed" in event_types
        assert "message_replied" in event_types
        assert "lifecycle_event_published" in event_types

    @pytest.mark.asyncio
    async def test_reset_clears_sessions_and_data(self, app):
        session = await app.orchestrator.create_session("security_audit")
        await app.orchestrator.run_session(session.session_id)
        old_orchestrator = app.orchestrator

        await app.reset()

        assert app.orchestrator is not old_orchestrator
        assert app.orchestrator.list_sessions() == []
        assert await app.storage.get_artifacts(session.session_id) == []
        assert app.state_manager.get_current_state(session.session_id) is None
