"""Observability API routes."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from ...app import Application
from ...models import Topic


class TraceEventResponse(BaseModel):
    """Response model for trace event."""

    id: str
    event_type: str
    actor: str
    data: dict[str, Any]
    timestamp: datetime


def create_observability_router(app: Application) -> APIRouter:
    """Create observability router."""
    router = APIRouter(prefix="/api", tags=["observability"])

    @router.get("/trace-events", response_model=list[TraceEventResponse])
    async def get_trace_events(
        after: str | None = Query(None, description="ISO timestamp filter"),
        limit: int = Query(100, ge=1, le=1000),
        event_type: str | None = Query(None, description="Filter by event type"),
        actor: str | None = Query(None, description="Filter by actor"),
    ) -> list[dict]:
        """Get trace events with optional filters."""
        after_dt = None
        if after:
            try:
                after_dt = datetime.fromisoformat(after)
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid after timestamp format")

        events = await app.storage.get_trace_events(
            after=after_dt,
            event_types=[event_type] if event_type else None,
            actor=actor,
            limit=limit,
        )
        return [
            {
                "id": e.id,
                "event_type": e.event_type,
                "actor": e.actor,
                "data": e.data,
                "timestamp": e.timestamp.isoformat(),
            }
            for e in events
        ]

    @router.get("/events")
    async def get_events(
        limit: int = Query(100, ge=1, le=1000),
        topic: str | None = Query(None, description="Filter by topic"),
    ) -> list[dict]:
        """Get lifecycle events, newest first."""
        try:
            topic_filter = Topic(topic) if topic else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown topic: {topic}")

        events = await app.storage.get_events(limit=limit, topic=topic_filter)
        return [
            {
                "id": e.id,
                "topic": e.topic.value,
                "source": e.source,
                "payload": e.payload,
                "timestamp": e.timestamp.isoformat(),
            }
            for e in events
        ]

    @router.get("/health")
    async def get_health() -> dict:
        return app.orchestrator.check_health()

    @router.get("/analytics/{session_id}")
    async def get_session_analytics(session_id: str) -> dict:
        return app.orchestrator.analyze_session_metrics(session_id)

    @router.get("/analytics")
    async def compare_sessions(
        session_id: list[str] = Query(..., description="Sessions to compare"),
    ) -> dict:
        return app.analytics.compare_sessions(session_id)

    return router
