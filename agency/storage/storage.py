"""SQLite storage implementation."""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import aiosqlite

from ..config import resolve_db_path
from ..errors import DuplicateArtifactError
from ..models import (
    LifecycleEvent,
    SessionArchive,
    SessionArtifact,
    SessionReport,
    StateTransition,
    Topic,
    TraceEvent,
)


def _dump(value) -> str:
    return json.dumps(value, default=str)


def _ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class IStorage(Protocol):
    """Durable store for artifacts, state log, metrics, archives and caches."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Artifacts (append-only)
    async def save_artifact(self, artifact: SessionArtifact) -> None:
        """Create an artifact. Raises DuplicateArtifactError if one exists."""
        ...

    async def get_artifact(self, session_id: str, step: str) -> SessionArtifact | None:
        """Point query by (session_id, step)."""
        ...

    async def get_artifacts(self, session_id: str) -> list[SessionArtifact]:
        """All artifacts of a session in creation order."""
        ...

    # State transition log (append-only)
    async def append_transition(self, transition: StateTransition) -> None:
        """Append one transition to the durable log."""
        ...

    async def get_transitions(self, session_id: str) -> list[StateTransition]:
        """Transitions of a session ordered by time."""
        ...

    # Metrics
    async def save_metrics(self, session_id: str, metrics: dict, timestamp: datetime) -> None:
        """Record one metrics entry."""
        ...

    async def get_metrics(self, session_id: str) -> list[dict]:
        """Metrics entries of a session, oldest first."""
        ...

    # Reports
    async def save_report(self, report: SessionReport) -> None:
        """Store a final or failure report."""
        ...

    async def get_report(self, session_id: str, kind: str) -> SessionReport | None:
        """Get a report by kind."""
        ...

    async def get_reports(self, session_id: str) -> list[SessionReport]:
        """All reports of a session."""
        ...

    # Archives
    async def save_archive(self, archive: SessionArchive) -> None:
        """Store the archive record of a session."""
        ...

    async def get_archive(self, session_id: str) -> SessionArchive | None:
        """Get the archive record of a session."""
        ...

    # Snapshot cache (key-value)
    async def put_snapshot(self, key: str, value: dict) -> None:
        """Put a serialized blob."""
        ...

    async def get_snapshot(self, key: str) -> dict | None:
        """Get a serialized blob."""
        ...

    async def delete_snapshot(self, key: str) -> None:
        """Delete a blob."""
        ...

    # Lifecycle events
    async def save_event(self, event: LifecycleEvent) -> None:
        """Save a lifecycle event."""
        ...

    async def get_events(
        self, limit: int = 100, topic: Topic | None = None
    ) -> list[LifecycleEvent]:
        """Get lifecycle events (newest first)."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation."""

    _TABLES = [
        "session_artifacts",
        "state_transitions",
        "session_metrics",
        "session_reports",
        "session_archives",
        "snapshots",
        "lifecycle_events",
        "trace_events",
    ]

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    async def init(self) -> None:
        """Initialize database and create tables."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    # Artifacts
    async def save_artifact(self, artifact: SessionArtifact) -> None:
        """Create an artifact. Raises DuplicateArtifactError if one exists."""
        conn = self._require_conn()
        try:
            await conn.execute(
                """
                INSERT INTO session_artifacts
                (session_id, step, content, metadata, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact.session_id,
                    artifact.step,
                    _dump(artifact.content),
                    _dump(artifact.metadata),
                    artifact.status,
                    artifact.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateArtifactError(artifact.session_id, artifact.step) from e
        await conn.commit()

    def _row_to_artifact(self, row) -> SessionArtifact:
        return SessionArtifact(
            session_id=row[0],
            step=row[1],
            content=json.loads(row[2]),
            metadata=json.loads(row[3]),
            status=row[4],
            created_at=_ts(row[5]),
        )

    async def get_artifact(self, session_id: str, step: str) -> SessionArtifact | None:
        """Point query by (session_id, step)."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT session_id, step, content, metadata, status, created_at
            FROM session_artifacts
            WHERE session_id = ? AND step = ?
            """,
            (session_id, step),
        )
        row = await cursor.fetchone()
        return self._row_to_artifact(row) if row else None

    async def get_artifacts(self, session_id: str) -> list[SessionArtifact]:
        """All artifacts of a session in creation order."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT session_id, step, content, metadata, status, created_at
            FROM session_artifacts
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_artifact(row) for row in rows]

    # State transition log
    async def append_transition(self, transition: StateTransition) -> None:
        """Append one transition to the durable log."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT INTO state_transitions
            (session_id, from_state, to_state, metadata, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                transition.session_id,
                transition.from_state,
                transition.to_state,
                _dump(transition.metadata),
                transition.timestamp.isoformat(),
            ),
        )
        await conn.commit()

    async def get_transitions(self, session_id: str) -> list[StateTransition]:
        """Transitions of a session ordered by time."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT session_id, from_state, to_state, metadata, timestamp
            FROM state_transitions
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [
            StateTransition(
                session_id=row[0],
                from_state=row[1],
                to_state=row[2],
                metadata=json.loads(row[3]),
                timestamp=_ts(row[4]),
            )
            for row in rows
        ]

    # Metrics
    async def save_metrics(self, session_id: str, metrics: dict, timestamp: datetime) -> None:
        """Record one metrics entry."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT INTO session_metrics (session_id, metrics, timestamp)
            VALUES (?, ?, ?)
            """,
            (session_id, _dump(metrics), timestamp.isoformat()),
        )
        await conn.commit()

    async def get_metrics(self, session_id: str) -> list[dict]:
        """Metrics entries of a session, oldest first."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT metrics, timestamp
            FROM session_metrics
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [
            {"timestamp": _ts(row[1]), "metrics": json.loads(row[0])} for row in rows
        ]

    # Reports
    async def save_report(self, report: SessionReport) -> None:
        """Store a final or failure report."""
        conn = self._require_conn()
        try:
            await conn.execute(
                """
                INSERT INTO session_reports (session_id, kind, content, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    report.session_id,
                    report.kind,
                    _dump(report.content),
                    report.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateArtifactError(report.session_id, f"report:{report.kind}") from e
        await conn.commit()

    def _row_to_report(self, row) -> SessionReport:
        return SessionReport(
            session_id=row[0],
            kind=row[1],
            content=json.loads(row[2]),
            created_at=_ts(row[3]),
        )

    async def get_report(self, session_id: str, kind: str) -> SessionReport | None:
        """Get a report by kind."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT session_id, kind, content, created_at
            FROM session_reports
            WHERE session_id = ? AND kind = ?
            """,
            (session_id, kind),
        )
        row = await cursor.fetchone()
        return self._row_to_report(row) if row else None

    async def get_reports(self, session_id: str) -> list[SessionReport]:
        """All reports of a session."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT session_id, kind, content, created_at
            FROM session_reports
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_report(row) for row in rows]

    # Archives
    async def save_archive(self, archive: SessionArchive) -> None:
        """Store the archive record of a session."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT OR REPLACE INTO session_archives
            (session_id, session_type, status, content, archived_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                archive.session_id,
                archive.session_type,
                archive.status,
                _dump(archive.content),
                archive.archived_at.isoformat(),
            ),
        )
        await conn.commit()

    async def get_archive(self, session_id: str) -> SessionArchive | None:
        """Get the archive record of a session."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT session_id, session_type, status, content, archived_at
            FROM session_archives
            WHERE session_id = ?
            """,
            (session_id,),
        )
        row = await cursor.fetchone()

        if not row:
            return None

        return SessionArchive(
            session_id=row[0],
            session_type=row[1],
            status=row[2],
            content=json.loads(row[3]),
            archived_at=_ts(row[4]),
        )

    # Snapshot cache
    async def put_snapshot(self, key: str, value: dict) -> None:
        """Put a serialized blob."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT OR REPLACE INTO snapshots (key, value, updated_at)
            VALUES (?, ?, ?)
            """,
            (key, _dump(value), datetime.now(timezone.utc).isoformat()),
        )
        await conn.commit()

    async def get_snapshot(self, key: str) -> dict | None:
        """Get a serialized blob."""
        conn = self._require_conn()
        cursor = await conn.execute(
            "SELECT value FROM snapshots WHERE key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def delete_snapshot(self, key: str) -> None:
        """Delete a blob."""
        conn = self._require_conn()
        await conn.execute("DELETE FROM snapshots WHERE key = ?", (key,))
        await conn.commit()

    # Lifecycle events
    async def save_event(self, event: LifecycleEvent) -> None:
        """Save a lifecycle event."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT INTO lifecycle_events (id, topic, payload, source, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.topic.value,
                _dump(event.payload),
                event.source,
                event.timestamp.isoformat(),
            ),
        )
        await conn.commit()

    async def get_events(
        self, limit: int = 100, topic: Topic | None = None
    ) -> list[LifecycleEvent]:
        """Get lifecycle events (newest first)."""
        conn = self._require_conn()

        if topic:
            cursor = await conn.execute(
                """
                SELECT id, topic, payload, source, timestamp
                FROM lifecycle_events
                WHERE topic = ?
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                (topic.value, limit),
            )
        else:
            cursor = await conn.execute(
                """
                SELECT id, topic, payload, source, timestamp
                FROM lifecycle_events
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                (limit,),
            )
        rows = await cursor.fetchall()

        return [
            LifecycleEvent(
                id=row[0],
                topic=Topic(row[1]),
                payload=json.loads(row[2]),
                source=row[3],
                timestamp=_ts(row[4]),
            )
            for row in rows
        ]

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                _dump(event.data),
                event.timestamp.isoformat(),
            ),
        )
        await conn.commit()

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        conn = self._require_conn()

        # Build query dynamically
        conditions = []
        params: list = []

        if after:
            conditions.append("timestamp > ?")
            params.append(after.isoformat())
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_ts(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        conn = self._require_conn()

        for table in self._TABLES:
            await conn.execute(f"DELETE FROM {table}")

        await conn.commit()
