"""Generic step-pipeline engine shared by every session type."""

import asyncio
import copy
import json
import time
import uuid
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Protocol

from ..broker import IMessageBroker
from ..config import Settings
from ..errors import (
    AgentError,
    InvalidTransitionError,
    MissingArtifactError,
    NoCapableAgentError,
    ReplyTimeoutError,
    UnknownSessionError,
)
from ..logging_config import get_session_logger
from ..models import (
    TERMINAL_STATUSES,
    Message,
    SessionArtifact,
    SessionReport,
    SessionStatus,
)
from ..storage import IStorage
from .state_manager import SessionStateManager
from .types import SessionType, StepContext, StepDefinition


class ISessionObserver(Protocol):
    """Receives pipeline progress from a running session."""

    async def on_session_started(self, session: "Session") -> None:
        ...

    async def on_step_completed(
        self, session: "Session", artifact: SessionArtifact, elapsed_ms: float
    ) -> None:
        ...

    async def on_step_failed(
        self, session: "Session", step: str | None, error: BaseException, fatal: bool
    ) -> None:
        ...

    async def on_session_finished(self, session: "Session", report: SessionReport) -> None:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Session:
    """One running instance of a session type.

    Steps run strictly in order. Each step either asks an agent through the
    broker or runs its local handler, and its result is persisted as an
    artifact before the next step starts. Step errors stop here: the session
    writes a failure report and moves to `failed` instead of raising.
    """

    def __init__(
        self,
        session_type: SessionType,
        configuration: Mapping[str, Any],
        broker: IMessageBroker,
        state_manager: SessionStateManager,
        storage: IStorage,
        settings: Settings | None = None,
        session_id: str | None = None,
        observer: ISessionObserver | None = None,
    ):
        self.session_id = session_id or f"session_{uuid.uuid4().hex}"
        self.session_type = session_type
        self.configuration: Mapping[str, Any] = MappingProxyType(
            copy.deepcopy(dict(configuration))
        )
        self.observer = observer

        self._broker = broker
        self._state_manager = state_manager
        self._storage = storage
        self._settings = settings or Settings()
        self._logger = get_session_logger(
            __name__, self.session_id, session_type=session_type.name
        )

        self._artifacts: dict[str, SessionArtifact] = {}
        self._received: list[dict] = []
        self._resume = asyncio.Event()
        self._resume.set()
        self._current_step: str | None = None
        self.created_at = _now()
        self.last_activity = self.created_at

    # Introspection

    @property
    def type_name(self) -> str:
        return self.session_type.name

    @property
    def pipeline(self) -> list[str]:
        return self.session_type.step_names

    @property
    def status(self) -> str | None:
        state = self._state_manager.get_current_state(self.session_id)
        return state.status if state else None

    @property
    def current_step(self) -> str | None:
        return self._current_step

    @property
    def is_paused(self) -> bool:
        return not self._resume.is_set()

    @property
    def received_messages(self) -> list[dict]:
        return list(self._received)

    @property
    def artifacts(self) -> dict[str, SessionArtifact]:
        return dict(self._artifacts)

    async def get_artifact(self, step: str) -> SessionArtifact | None:
        if step in self._artifacts:
            return self._artifacts[step]
        return await self._storage.get_artifact(self.session_id, step)

    def describe(self) -> dict:
        return {
            "session_id": self.session_id,
            "session_type": self.type_name,
            "status": self.status,
            "pipeline": self.pipeline,
            "current_step": self._current_step,
            "completed_steps": [s for s in self.pipeline if s in self._artifacts],
            "configuration": copy.deepcopy(dict(self.configuration)),
            "paused": self.is_paused,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    # Lifecycle

    async def initialize(self) -> None:
        """Create the FSM record for this session."""
        await self._state_manager.initialize_state(
            self.session_id,
            {"session_type": self.type_name, "pipeline": self.pipeline},
        )

    def pause(self) -> None:
        """Hold the pipeline before its next step."""
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    def restore_received(self, messages: list[dict]) -> None:
        self._received = list(messages)

    async def handle_incoming_message(self, channel_id: str, message: Message) -> None:
        """Queue a message delivered over a cross-session channel."""
        self._received.append(
            {
                "channel_id": channel_id,
                "message": message.to_dict(),
                "received_at": _now().isoformat(),
            }
        )
        self.last_activity = _now()
        self._logger.info("Received message from %s on %s", message.sender_id, channel_id)

    async def _activate(self) -> None:
        status = self.status
        if status is None:
            raise UnknownSessionError(self.session_id)
        if status in TERMINAL_STATUSES or status == SessionStatus.ARCHIVED.value:
            raise InvalidTransitionError(status, SessionStatus.ACTIVE.value)

        if status == SessionStatus.INITIALIZED.value:
            await self._state_manager.transition_state(
                self.session_id,
                SessionStatus.ACTIVE.value,
                {"started_at": _now().isoformat()},
            )
        elif status != SessionStatus.ACTIVE.value:
            # paused, blocked or a custom hold state: wait for resume
            self._resume.clear()

    async def run(self) -> SessionReport:
        """Run every remaining step and return the final or failure report."""
        await self._activate()
        self._logger.info("Session started with %d steps", len(self.session_type.steps))

        step_name: str | None = None
        try:
            if self.observer:
                await self.observer.on_session_started(self)
            for definition in self.session_type.steps:
                step_name = definition.name
                await self._resume.wait()
                await self._run_step(definition)
            step_name = None
            await self._resume.wait()
            report = await self._finish()
        except asyncio.CancelledError as e:
            self._logger.warning("Session cancelled during step %s", step_name)
            await self._fail(step_name, e)
            raise
        except Exception as e:
            self._logger.error(
                "Session failed at step %s: %s", step_name, e, exc_info=True
            )
            return await self._fail(step_name, e)
        finally:
            self._current_step = None

        return report

    # Steps

    async def _run_step(self, definition: StepDefinition) -> None:
        existing = await self._storage.get_artifact(self.session_id, definition.name)
        if existing is not None:
            self._artifacts[definition.name] = existing
            self._logger.info("Step %s already has an artifact, skipping", definition.name)
            return

        required: dict[str, SessionArtifact] = {}
        for name in definition.requires:
            artifact = await self.get_artifact(name)
            if artifact is None:
                raise MissingArtifactError(self.session_id, name)
            required[name] = artifact

        context = StepContext(
            session_id=self.session_id,
            session_type=self.type_name,
            step=definition,
            configuration=self.configuration,
            artifacts=required,
        )

        self._current_step = definition.name
        self.last_activity = _now()
        started = time.monotonic()

        if definition.handler is not None:
            content = await definition.handler(context)
            metadata = {"handler": "local", "attempts": 1}
        else:
            content, metadata = await self._ask_agents(definition, context.build())

        elapsed_ms = (time.monotonic() - started) * 1000
        artifact = SessionArtifact(
            session_id=self.session_id,
            step=definition.name,
            content=content,
            created_at=_now(),
            metadata={**metadata, "elapsed_ms": round(elapsed_ms, 3)},
        )
        await self._storage.save_artifact(artifact)
        self._artifacts[definition.name] = artifact
        self.last_activity = artifact.created_at
        self._logger.info("Step %s completed in %.1f ms", definition.name, elapsed_ms)

        if self.observer:
            await self.observer.on_step_completed(self, artifact, elapsed_ms)

    def _build_message(self, definition: StepDefinition, context: dict, capabilities) -> Message:
        return Message.create(
            sender_id=self.session_id,
            content=json.dumps({"task": definition.name, "context": context}, default=str),
            metadata={
                "session_id": self.session_id,
                "session_type": self.type_name,
                "step": definition.name,
            },
            capabilities=capabilities,
        )

    async def _ask_agents(
        self, definition: StepDefinition, context: dict
    ) -> tuple[dict, dict]:
        """Round-trip one step through the broker with retry and fallback."""
        retries = (
            definition.max_retries
            if definition.max_retries is not None
            else self._settings.step_retries
        )
        timeout = definition.timeout or self._settings.reply_timeout
        capabilities = definition.capabilities
        used_fallback = False
        attempt = 0

        while True:
            attempt += 1
            message = self._build_message(definition, context, capabilities)
            try:
                reply = await self._broker.route_message_and_wait(message, timeout=timeout)
            except NoCapableAgentError:
                if used_fallback or definition.fallback_capabilities is None:
                    raise
                self._logger.warning(
                    "No agent for step %s, retrying with fallback capabilities %s",
                    definition.name,
                    sorted(definition.fallback_capabilities),
                )
                capabilities = definition.fallback_capabilities
                used_fallback = True
                attempt -= 1
                continue
            except (ReplyTimeoutError, AgentError) as e:
                if attempt > retries:
                    raise
                if self.observer:
                    await self.observer.on_step_failed(self, definition.name, e, False)
                delay = self._settings.retry_backoff * (2 ** (attempt - 1))
                self._logger.warning(
                    "Step %s attempt %d failed (%s), retrying in %.2fs",
                    definition.name,
                    attempt,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            return reply.payload, {
                "agent_id": reply.agent_id,
                "delivery_id": reply.delivery_id,
                "attempts": attempt,
                "capabilities": sorted(capabilities),
            }

    # Outcomes

    async def _finish(self) -> SessionReport:
        report = await self._storage.get_report(self.session_id, "final")
        if report is None:
            artifacts = await self._storage.get_artifacts(self.session_id)
            content = self.session_type.build_report(artifacts, self.configuration)
            report = SessionReport(
                session_id=self.session_id,
                kind="final",
                content={
                    "session_id": self.session_id,
                    "generated_at": _now().isoformat(),
                    **content,
                },
                created_at=_now(),
            )
            await self._storage.save_report(report)

        await self._state_manager.transition_state(
            self.session_id,
            SessionStatus.COMPLETED.value,
            {"completed_at": report.created_at.isoformat()},
        )
        self.last_activity = _now()
        self._logger.info("Session completed")

        if self.observer:
            await self.observer.on_session_finished(self, report)
        return report

    async def _fail(self, step: str | None, error: BaseException) -> SessionReport:
        error_type = "Cancelled" if isinstance(error, asyncio.CancelledError) else type(error).__name__
        report = SessionReport(
            session_id=self.session_id,
            kind="failure",
            content={
                "session_id": self.session_id,
                "session_type": self.type_name,
                "failed_step": step,
                "error_type": error_type,
                "error": str(error),
                "completed_steps": [s for s in self.pipeline if s in self._artifacts],
                "generated_at": _now().isoformat(),
            },
            created_at=_now(),
        )
        await self._storage.save_report(report)

        if self._state_manager.is_valid_transition(self.status, SessionStatus.FAILED.value):
            await self._state_manager.transition_state(
                self.session_id,
                SessionStatus.FAILED.value,
                {"failed_step": step, "error": str(error)},
            )
        self.last_activity = _now()

        if self.observer:
            await self.observer.on_step_failed(self, step, error, True)
            await self.observer.on_session_finished(self, report)
        return report
