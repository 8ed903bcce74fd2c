"""Exception taxonomy for the session orchestration core."""

from typing import Iterable


class AgencyError(Exception):
    """Base class for all agency errors."""


# Broker


class NoCapableAgentError(AgencyError):
    """No registered agent declares the required capabilities."""

    def __init__(self, required: Iterable[str]):
        self.required = frozenset(required)
        super().__init__(
            f"No agent can handle capabilities: {sorted(self.required)}"
        )


class ReplyTimeoutError(AgencyError, TimeoutError):
    """An agent did not reply within the allotted time."""

    def __init__(self, agent_id: str, timeout: float):
        self.agent_id = agent_id
        self.timeout = timeout
        super().__init__(f"Agent {agent_id} did not reply within {timeout}s")


class AgentError(AgencyError):
    """An agent failed while handling a message."""

    def __init__(self, agent_id: str, cause: BaseException):
        self.agent_id = agent_id
        self.cause = cause
        super().__init__(f"Agent {agent_id} failed: {cause}")


# State machine


class UnknownStateError(AgencyError):
    """A state name is not declared in the state machine."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Unknown state: {state}")


class InvalidTransitionError(AgencyError):
    """A transition is not present in the transition table."""

    def __init__(self, from_state: str | None, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid state transition from {from_state} to {to_state}")


class StateDefinitionError(AgencyError):
    """Invalid extension of the state machine (e.g. duplicate state)."""


class SnapshotNotFoundError(AgencyError):
    """No snapshot stored under the given id."""


class InvalidStateDataError(AgencyError):
    """Imported state data has an unexpected shape."""


# Sessions


class MissingArtifactError(AgencyError):
    """A step needs an artifact that was never produced."""

    def __init__(self, session_id: str, step: str):
        self.session_id = session_id
        self.step = step
        super().__init__(f"Missing artifact for step '{step}' of session {session_id}")


class DuplicateArtifactError(AgencyError):
    """An artifact already exists for the (session, step) pair."""

    def __init__(self, session_id: str, step: str):
        self.session_id = session_id
        self.step = step
        super().__init__(f"Artifact for step '{step}' of session {session_id} already exists")


class DuplicateSessionError(AgencyError):
    """A session with this id is already known."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")


class UnknownSessionError(AgencyError):
    """No session with this id is known."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class UnknownSessionTypeError(AgencyError):
    """No session type registered under this name."""

    def __init__(self, session_type: str):
        self.session_type = session_type
        super().__init__(f"Invalid session type: {session_type}")


class SessionTypeError(AgencyError):
    """A session type definition is invalid."""


class SessionBusyError(AgencyError):
    """The operation requires a quiesced session but its pipeline is running."""

    def __init__(self, session_id: str, reason: str = "pipeline is running"):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is busy: {reason}")


class ConfigurationError(AgencyError):
    """Inconsistent component configuration."""
