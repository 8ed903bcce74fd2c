"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(os.getenv("AGENCY_HOME", Path.cwd())).resolve()
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"
DEFAULT_DB_PATH = DATA_DIR / "agency.db"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DEFAULT_THRESHOLDS = {
    "response_time": 5000.0,  # milliseconds
    "error_rate": 0.05,
    "completion_rate": 0.95,
    "resource_utilization": 0.80,
}


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


@dataclass
class Settings:
    """Runtime knobs for the broker, pipelines and analytics."""

    reply_timeout: float = 30.0  # seconds per broker round-trip
    step_retries: int = 2
    retry_backoff: float = 0.5  # seconds, doubled per attempt
    stall_seconds: float = 300.0
    agent_backend: str = "llm"  # "llm" or "echo"
    model: str = "claude-3-5-sonnet-20241022"
    cors_origins: list[str] = field(default_factory=list)
    thresholds: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS)
    )

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from environment variables."""
        defaults = cls()
        return cls(
            reply_timeout=float(
                os.getenv("AGENCY_REPLY_TIMEOUT", defaults.reply_timeout)
            ),
            step_retries=int(os.getenv("AGENCY_STEP_RETRIES", defaults.step_retries)),
            retry_backoff=float(
                os.getenv("AGENCY_RETRY_BACKOFF", defaults.retry_backoff)
            ),
            stall_seconds=float(
                os.getenv("AGENCY_STALL_SECONDS", defaults.stall_seconds)
            ),
            agent_backend=os.getenv("AGENT_BACKEND", defaults.agent_backend),
            model=os.getenv("ANTHROPIC_MODEL", defaults.model),
            cors_origins=[
                origin.strip()
                for origin in os.getenv("CORS_ORIGINS", "").split(",")
                if origin.strip()
            ],
        )
