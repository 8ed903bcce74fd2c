"""Session API routes."""

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ...app import Application
from ...errors import AgencyError
from ...models import SessionReport, SessionState
from ...sessions.state_manager import state_to_dict, transition_to_dict
from ..errors import to_http_error


class CreateSessionRequest(BaseModel):
    """Request model for session creation."""

    session_type: str
    configuration: dict[str, Any] = Field(default_factory=dict)
    start: bool = False


class StateChangeRequest(BaseModel):
    """Request model for a lifecycle change."""

    state: str


class CoordinateRequest(BaseModel):
    """Request model for cross-session messaging."""

    source_id: str
    target_id: str
    message: dict[str, Any] | str


def _report_to_dict(report: SessionReport) -> dict:
    return {
        "kind": report.kind,
        "content": report.content,
        "created_at": report.created_at.isoformat(),
    }


def _state_response(state: SessionState | None) -> dict:
    return state_to_dict(state) if state else {}


def create_sessions_router(app: Application) -> APIRouter:
    """Create sessions router."""
    router = APIRouter(prefix="/api/sessions", tags=["sessions"])

    @router.get("/types")
    async def list_session_types() -> list[dict]:
        registry = app.orchestrator.session_types
        return [
            {
                "name": name,
                "description": registry.get(name).description,
                "steps": registry.get(name).step_names,
            }
            for name in registry.names()
        ]

    @router.post("", status_code=201)
    async def create_session(request: CreateSessionRequest) -> dict:
        try:
            session = await app.orchestrator.create_session(
                request.session_type, request.configuration
            )
            if request.start:
                await app.orchestrator.start_session(session.session_id)
        except AgencyError as e:
            raise to_http_error(e)
        return session.describe()

    @router.get("")
    async def list_sessions() -> list[dict]:
        return [session.describe() for session in app.orchestrator.list_sessions()]

    @router.post("/coordinate")
    async def coordinate_sessions(request: CoordinateRequest) -> dict:
        try:
            channel = await app.orchestrator.coordinate_sessions(
                request.source_id, request.target_id, request.message
            )
        except AgencyError as e:
            raise to_http_error(e)
        return {
            "channel_id": channel.channel_id,
            "source_session": channel.source_session,
            "target_session": channel.target_session,
            "message_count": len(channel.messages),
        }

    @router.get("/{session_id}")
    async def get_session(session_id: str) -> dict:
        try:
            return app.orchestrator.get_session(session_id).describe()
        except AgencyError as e:
            raise to_http_error(e)

    @router.post("/{session_id}/start")
    async def start_session(
        session_id: str,
        wait: bool = Query(False, description="Block until the pipeline ends"),
    ) -> dict:
        try:
            if not wait:
                await app.orchestrator.start_session(session_id)
                return app.orchestrator.get_session(session_id).describe()
            report = await app.orchestrator.run_session(session_id)
        except AgencyError as e:
            raise to_http_error(e)
        return {
            "session": app.orchestrator.get_session(session_id).describe(),
            "report": _report_to_dict(report),
        }

    @router.post("/{session_id}/state")
    async def change_state(session_id: str, request: StateChangeRequest) -> dict:
        try:
            state = await app.orchestrator.manage_session_state(session_id, request.state)
        except AgencyError as e:
            raise to_http_error(e)
        return _state_response(state)

    @router.post("/{session_id}/cancel")
    async def cancel_session(session_id: str) -> dict:
        try:
            cancelled = await app.orchestrator.cancel_session(session_id)
        except AgencyError as e:
            raise to_http_error(e)
        return {"cancelled": cancelled}

    @router.post("/{session_id}/archive")
    async def archive_session(session_id: str) -> dict:
        try:
            archive = await app.orchestrator.archive_session(session_id)
        except AgencyError as e:
            raise to_http_error(e)
        return {
            "session_id": archive.session_id,
            "status": archive.status,
            "archived_at": archive.archived_at.isoformat(),
            "artifact_count": len(archive.content["artifacts"]),
        }

    @router.get("/{session_id}/archive")
    async def get_archive(session_id: str) -> dict:
        archive = await app.storage.get_archive(session_id)
        if archive is None:
            raise HTTPException(status_code=404, detail=f"No archive for {session_id}")
        return {
            "session_id": archive.session_id,
            "session_type": archive.session_type,
            "status": archive.status,
            "content": archive.content,
            "archived_at": archive.archived_at.isoformat(),
        }

    @router.post("/{session_id}/recover")
    async def recover_session(session_id: str) -> dict:
        try:
            session = await app.orchestrator.recover_session(session_id)
        except AgencyError as e:
            raise to_http_error(e)
        if session is None:
            raise HTTPException(status_code=404, detail=f"No backup for {session_id}")
        return session.describe()

    @router.get("/{session_id}/artifacts")
    async def get_artifacts(session_id: str) -> list[dict]:
        artifacts = await app.storage.get_artifacts(session_id)
        return [
            {
                "step": artifact.step,
                "status": artifact.status,
                "content": artifact.content,
                "metadata": artifact.metadata,
                "created_at": artifact.created_at.isoformat(),
            }
            for artifact in artifacts
        ]

    @router.get("/{session_id}/reports")
    async def get_reports(session_id: str) -> list[dict]:
        reports = await app.storage.get_reports(session_id)
        return [_report_to_dict(report) for report in reports]

    @router.get("/{session_id}/history")
    async def get_history(session_id: str) -> list[dict]:
        transitions = await app.storage.get_transitions(session_id)
        return [transition_to_dict(t) for t in transitions]

    return router
