"""Session type definitions: ordered step lists as data."""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Mapping

from ..errors import MissingArtifactError, SessionTypeError, UnknownSessionTypeError
from ..models import SessionArtifact

StepHandler = Callable[["StepContext"], Awaitable[dict]]
ReportBuilder = Callable[["SessionType", list[SessionArtifact], Mapping], dict]


@dataclass(frozen=True)
class StepDefinition:
    """One named unit of work in a pipeline.

    A step is answered by an agent chosen by `capabilities` unless it carries
    a local `handler`. `requires` names earlier steps whose artifacts must
    exist before this step runs; their content is passed along in the
    message context. `timeout` and `max_retries` override the settings
    defaults when set.
    """

    name: str
    capabilities: frozenset[str] = frozenset()
    context_keys: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    handler: StepHandler | None = None
    fallback_capabilities: frozenset[str] | None = None
    timeout: float | None = None
    max_retries: int | None = None

    def __post_init__(self):
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        object.__setattr__(self, "context_keys", tuple(self.context_keys))
        object.__setattr__(self, "requires", tuple(self.requires))
        if self.fallback_capabilities is not None:
            object.__setattr__(
                self, "fallback_capabilities", frozenset(self.fallback_capabilities)
            )


@dataclass(frozen=True)
class StepContext:
    """What a step sees when it runs."""

    session_id: str
    session_type: str
    step: StepDefinition
    configuration: Mapping
    artifacts: Mapping[str, SessionArtifact] = field(default_factory=dict)

    def artifact(self, step: str) -> dict:
        """Content of an earlier step's artifact."""
        found = self.artifacts.get(step)
        if found is None:
            raise MissingArtifactError(self.session_id, step)
        return found.content

    def build(self) -> dict:
        """Message context: selected configuration plus required artifacts."""
        context = {
            key: self.configuration[key]
            for key in self.step.context_keys
            if key in self.configuration
        }
        if self.step.requires:
            context["previous_results"] = {
                name: self.artifact(name) for name in self.step.requires
            }
        return context


def default_report(
    session_type: "SessionType", artifacts: list[SessionArtifact], configuration: Mapping
) -> dict:
    """Aggregate persisted artifacts in pipeline order."""
    by_step = {artifact.step: artifact for artifact in artifacts}
    ordered = [name for name in session_type.step_names if name in by_step]
    return {
        "session_type": session_type.name,
        "steps": ordered,
        "results": {name: by_step[name].content for name in ordered},
        "summary": {
            "total_steps": len(session_type.steps),
            "completed_steps": len(ordered),
        },
    }


@dataclass(frozen=True)
class SessionType:
    """A named pipeline and the aggregation applied to its artifacts."""

    name: str
    steps: tuple[StepDefinition, ...]
    report_builder: ReportBuilder | None = None
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    def get_step(self, name: str) -> StepDefinition | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def build_report(self, artifacts: list[SessionArtifact], configuration: Mapping) -> dict:
        builder = self.report_builder or default_report
        return builder(self, artifacts, configuration)

    def validate(self) -> None:
        """Reject malformed pipelines at registration time."""
        if not self.name:
            raise SessionTypeError("Session type needs a name")
        if not self.steps:
            raise SessionTypeError(f"Session type {self.name} has no steps")

        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise SessionTypeError(
                    f"Session type {self.name} repeats step {step.name}"
                )
            if step.handler is None and not step.capabilities:
                raise SessionTypeError(
                    f"Step {step.name} of {self.name} needs capabilities or a handler"
                )
            for required in step.requires:
                if required not in seen:
                    raise SessionTypeError(
                        f"Step {step.name} of {self.name} requires {required}, "
                        "which does not run before it"
                    )
            if step.max_retries is not None and step.max_retries < 0:
                raise SessionTypeError(f"Step {step.name} has negative max_retries")
            if step.timeout is not None and step.timeout <= 0:
                raise SessionTypeError(f"Step {step.name} has a non-positive timeout")
            seen.add(step.name)


class SessionTypeRegistry:
    """Maps session type names to their definitions."""

    def __init__(self, session_types: Iterable[SessionType] = ()):
        self._types: dict[str, SessionType] = {}
        for session_type in session_types:
            self.register(session_type)

    def register(self, session_type: SessionType) -> None:
        session_type.validate()
        if session_type.name in self._types:
            raise SessionTypeError(f"Session type already registered: {session_type.name}")
        self._types[session_type.name] = session_type

    def get(self, name: str) -> SessionType:
        session_type = self._types.get(name)
        if session_type is None:
            raise UnknownSessionTypeError(name)
        return session_type

    def names(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def __len__(self) -> int:
        return len(self._types)
