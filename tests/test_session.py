"""Tests for the Session step pipeline."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from agency.errors import InvalidTransitionError, MissingArtifactError
from agency.models import Message, SessionArtifact
from agency.sessions import Session, SessionType, StepDefinition


@pytest.fixture
def make_session(broker, state_manager, storage, settings):
    """Build and initialize sessions over the test components."""

    async def factory(session_type, configuration=None, observer=None):
        session = Session(
            session_type,
            configuration or {},
            broker=broker,
            state_manager=state_manager,
            storage=storage,
            settings=settings,
            observer=observer,
        )
        await session.initialize()
        return session

    return factory


class RecordingObserver:
    """Collects observer callbacks."""

    def __init__(self):
        self.calls = []

    async def on_session_started(self, session):
        self.calls.append(("started", None))

    async def on_step_completed(self, session, artifact, elapsed_ms):
        self.calls.append(("step", artifact.step))

    async def on_step_failed(self, session, step, error, fatal):
        self.calls.append(("failed", step, type(error).__name__, fatal))

    async def on_session_finished(self, session, report):
        self.calls.append(("finished", report.kind))


class TestSessionBasics:
    """Tests for session construction."""

    @pytest.mark.asyncio
    async def test_generated_id_and_initial_state(self, make_session, two_step_type):
        """Test id format and initialized status."""
        session = await make_session(two_step_type)

        assert session.session_id.startswith("session_")
        assert session.status == "initialized"
        assert session.pipeline == ["stepA", "stepB"]

    @pytest.mark.asyncio
    async def test_configuration_is_deep_copied_and_read_only(self, make_session, two_step_type):
        """Test that callers cannot change configuration afterwards."""
        config = {"team": {"members": ["a"]}}
        session = await make_session(two_step_type, config)

        config["team"]["members"].append("b")

        assert session.configuration["team"]["members"] == ["a"]
        with pytest.raises(TypeError):
            session.configuration["team"] = {}

    @pytest.mark.asyncio
    async def test_incoming_messages_are_queued(self, make_session, two_step_type):
        """Test that cross-session messages are kept in order."""
        session = await make_session(two_step_type)
        await session.handle_incoming_message("ch", Message.create("other", "one"))
        await session.handle_incoming_message("ch", Message.create("other", "two"))

        assert [m["message"]["content"] for m in session.received_messages] == ["one", "two"]


class TestSessionRun:
    """Tests for running the pipeline."""

    @pytest.mark.asyncio
    async def test_run_to_completion(
        self, make_session, two_step_type, registry, make_agent, storage, state_manager
    ):
        """Test a pipeline whose steps all succeed."""
        registry.register(make_agent("a1", ["alpha"], replies={"stepA": {"a": 1}}))
        registry.register(make_agent("b1", ["beta"], replies={"stepB": {"b": 2}}))
        session = await make_session(two_step_type)

        report = await session.run()

        assert report.kind == "final"
        assert report.content["results"] == {"stepA": {"a": 1}, "stepB": {"b": 2}}
        assert report.content["summary"] == {"total_steps": 2, "completed_steps": 2}
        assert session.status == "completed"
        assert [t.to_state for t in state_manager.get_state_history(session.session_id)] == [
            "initialized", "active", "completed",
        ]
        assert await storage.get_report(session.session_id, "final") is not None

    @pytest.mark.asyncio
    async def test_messages_carry_task_context_and_metadata(
        self, make_session, two_step_type, registry, make_agent
    ):
        """Test message payload and routing metadata."""
        alpha = make_agent("a1", ["alpha"], replies={"stepA": {"a": 1}})
        beta = make_agent("b1", ["beta"])
        registry.register(alpha)
        registry.register(beta)
        session = await make_session(two_step_type)

        await session.run()

        first = alpha.received[0]
        assert json.loads(first.content) == {"task": "stepA", "context": {}}
        assert dict(first.metadata) == {
            "session_id": session.session_id,
            "session_type": "two_step",
            "step": "stepA",
        }
        assert first.required_capabilities == frozenset({"alpha"})
        second = json.loads(beta.received[0].content)
        assert second["context"]["previous_results"] == {"stepA": {"a": 1}}

    @pytest.mark.asyncio
    async def test_context_keys_select_configuration(
        self, make_session, registry, make_agent
    ):
        """Test that only named configuration keys reach the agent."""
        session_type = SessionType(
            name="ctx",
            steps=(StepDefinition("only", {"alpha"}, context_keys=("team", "missing")),),
        )
        agent = make_agent("a1", ["alpha"])
        registry.register(agent)
        session = await make_session(session_type, {"team": "core", "secret": "x"})

        await session.run()

        assert json.loads(agent.received[0].content)["context"] == {"team": "core"}

    @pytest.mark.asyncio
    async def test_no_capable_agent_fails_session(
        self, make_session, two_step_type, registry, make_agent, storage
    ):
        """Test stepA succeeds, stepB has no agent, session fails."""
        registry.register(make_agent("a1", ["alpha"]))
        session = await make_session(two_step_type)

        report = await session.run()

        assert report.kind == "failure"
        assert report.content["failed_step"] == "stepB"
        assert report.content["error_type"] == "NoCapableAgentError"
        assert report.content["completed_steps"] == ["stepA"]
        assert session.status == "failed"
        artifacts = await storage.get_artifacts(session.session_id)
        assert [a.step for a in artifacts] == ["stepA"]
        assert await storage.get_report(session.session_id, "final") is None

    @pytest.mark.asyncio
    async def test_observer_sees_progress(
        self, make_session, two_step_type, registry, make_agent
    ):
        """Test observer callbacks for a failing run."""
        registry.register(make_agent("a1", ["alpha"]))
        observer = RecordingObserver()
        session = await make_session(two_step_type, observer=observer)

        await session.run()

        assert observer.calls == [
            ("started", None),
            ("step", "stepA"),
            ("failed", "stepB", "NoCapableAgentError", True),
            ("finished", "failure"),
        ]

    @pytest.mark.asyncio
    async def test_custom_report_builder(self, make_session, registry, make_agent):
        """Test that the session type's builder aggregates artifacts."""

        def count_steps(session_type, artifacts, configuration):
            return {"count": len(artifacts), "label": configuration["label"]}

        session_type = SessionType(
            name="counted",
            steps=(StepDefinition("one", {"alpha"}), StepDefinition("two", {"alpha"})),
            report_builder=count_steps,
        )
        registry.register(make_agent("a1", ["alpha"]))
        session = await make_session(session_type, {"label": "x"})

        report = await session.run()

        assert report.content["count"] == 2
        assert report.content["label"] == "x"
        assert report.content["session_id"] == session.session_id

    @pytest.mark.asyncio
    async def test_run_rejects_terminal_session(
        self, make_session, two_step_type, registry, make_agent
    ):
        """Test that a finished session cannot run again."""
        registry.register(make_agent("a1", ["alpha", "beta"]))
        session = await make_session(two_step_type)
        await session.run()

        with pytest.raises(InvalidTransitionError):
            await session.run()


class TestSessionFailurePolicy:
    """Tests for retries, fallback and fatal errors."""

    @pytest.mark.asyncio
    async def test_agent_error_is_retried(self, make_session, registry, make_agent):
        """Test that a failing agent gets another attempt."""
        session_type = SessionType(name="retry", steps=(StepDefinition("only", {"alpha"}),))
        registry.register(
            make_agent("a1", ["alpha"], replies={"only": [RuntimeError("flaky"), {"ok": True}]})
        )
        observer = RecordingObserver()
        session = await make_session(session_type, observer=observer)

        report = await session.run()

        assert report.kind == "final"
        artifact = await session.get_artifact("only")
        assert artifact.content == {"ok": True}
        assert artifact.metadata["attempts"] == 2
        assert ("failed", "only", "AgentError", False) in observer.calls

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_retries(self, make_session, registry, make_agent):
        """Test that repeated timeouts fail the session."""
        session_type = SessionType(
            name="slow",
            steps=(StepDefinition("only", {"alpha"}, timeout=0.05, max_retries=1),),
        )
        agent = make_agent("silent", ["alpha"], hang=True)
        registry.register(agent)
        session = await make_session(session_type)

        report = await session.run()

        assert report.kind == "failure"
        assert report.content["error_type"] == "ReplyTimeoutError"
        assert len(agent.received) == 2
        assert session.status == "failed"

    @pytest.mark.asyncio
    async def test_fallback_capabilities(self, make_session, registry, make_agent):
        """Test retry with relaxed capabilities when nobody qualifies."""
        session_type = SessionType(
            name="fallback",
            steps=(
                StepDefinition(
                    "only", {"alpha", "rare"}, fallback_capabilities={"alpha"}
                ),
            ),
        )
        registry.register(make_agent("a1", ["alpha"]))
        session = await make_session(session_type)

        report = await session.run()

        assert report.kind == "final"
        artifact = await session.get_artifact("only")
        assert artifact.metadata["capabilities"] == ["alpha"]
        assert artifact.metadata["attempts"] == 1

    @pytest.mark.asyncio
    async def test_missing_artifact_is_explicit(self, make_session, registry, make_agent):
        """Test that reading an absent artifact fails the step."""

        async def needs_ghost(context):
            return {"value": context.artifact("ghost")}

        session_type = SessionType(
            name="missing",
            steps=(StepDefinition("local", handler=needs_ghost),),
        )
        session = await make_session(session_type)

        report = await session.run()

        assert report.kind == "failure"
        assert report.content["error_type"] == MissingArtifactError.__name__
        assert report.content["failed_step"] == "local"

    @pytest.mark.asyncio
    async def test_local_handler_step(self, make_session, registry, make_agent):
        """Test a step computed without the broker."""

        async def summarize(context):
            return {"upper": context.artifact("fetch")["word"].upper()}

        session_type = SessionType(
            name="local",
            steps=(
                StepDefinition("fetch", {"alpha"}),
                StepDefinition("summarize", handler=summarize, requires=("fetch",)),
            ),
        )
        registry.register(make_agent("a1", ["alpha"], replies={"fetch": {"word": "hi"}}))
        session = await make_session(session_type)

        report = await session.run()

        assert report.content["results"]["summarize"] == {"upper": "HI"}


class TestSessionResumption:
    """Tests for pause, resume, recovery skip and cancellation."""

    @pytest.mark.asyncio
    async def test_existing_artifacts_are_not_rerun(
        self, make_session, two_step_type, registry, make_agent, storage
    ):
        """Test that persisted steps are skipped."""
        alpha = make_agent("a1", ["alpha"])
        registry.register(alpha)
        registry.register(make_agent("b1", ["beta"]))
        session = await make_session(two_step_type)
        await storage.save_artifact(
            SessionArtifact(
                session_id=session.session_id,
                step="stepA",
                content={"from": "earlier run"},
                created_at=datetime.now(timezone.utc),
            )
        )

        report = await session.run()

        assert alpha.received == []
        assert report.content["results"]["stepA"] == {"from": "earlier run"}

    @pytest.mark.asyncio
    async def test_pause_holds_pipeline(
        self, make_session, two_step_type, registry, make_agent, storage
    ):
        """Test that a paused session does not start its next step."""
        registry.register(make_agent("a1", ["alpha", "beta"]))
        session = await make_session(two_step_type)
        session.pause()

        task = asyncio.create_task(session.run())
        await asyncio.sleep(0.05)

        assert session.is_paused
        assert await storage.get_artifacts(session.session_id) == []

        session.resume()
        report = await asyncio.wait_for(task, 1.0)
        assert report.kind == "final"

    @pytest.mark.asyncio
    async def test_cancel_fails_session(
        self, make_session, two_step_type, registry, make_agent, storage
    ):
        """Test that cancellation ends in failed and is re-raised."""
        registry.register(make_agent("silent", ["alpha"], hang=True))
        session = await make_session(two_step_type)

        task = asyncio.create_task(session.run())
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.status == "failed"
        report = await storage.get_report(session.session_id, "failure")
        assert report.content["error_type"] == "Cancelled"
        assert report.content["failed_step"] == "stepA"
