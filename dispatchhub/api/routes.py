"""REST route definitions - thin wrappers around the registry and layout repository."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Request

from dispatchhub.api.auth import RequireKey
from dispatchhub.api.models import LayoutPutRequest, LayoutResponse, SessionDTO, SessionListResponse
from dispatchhub.core.errors import ServiceUnavailable
from dispatchhub.core.history import validate_session_id
from dispatchhub.core.layout import LayoutRepository, normalize_session_key
from dispatchhub.core.models import JsonDict, Session
from dispatchhub.core.registry import SessionRegistry

router = APIRouter(prefix="/api", dependencies=[RequireKey])


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_layout(request: Request) -> LayoutRepository:
    layout: Optional[LayoutRepository] = request.app.state.layout
    if layout is None:
        raise ServiceUnavailable("Layout storage not configured")
    return layout


def _session_dto(session: Session) -> SessionDTO:
    return SessionDTO(
        session_id=session.session_id,
        session_type=session.session_type.value,
        working_directory=session.working_directory,
        status=session.status.value,
        created_at=session.created_at.isoformat(),
    )


@router.get("/sessions", response_model=SessionListResponse, response_model_by_alias=True)
async def list_sessions(request: Request) -> SessionListResponse:
    """List live sessions."""
    registry = get_registry(request)
    return SessionListResponse(sessions=[_session_dto(s) for s in registry.list_sessions()])


@router.get("/sessions/{session_id}")
async def session_status(request: Request, session_id: str) -> JsonDict:
    info = await get_registry(request).session_status(session_id)
    return info.to_dict()


@router.get("/sessions/{session_id}/history")
async def session_history(
    request: Request,
    session_id: str,
    n: Optional[int] = Query(default=None, ge=0),
    tail: bool = True,
    after_seq: Optional[int] = Query(default=None, ge=0, alias="afterSeq"),
) -> JsonDict:
    """Replay records for reconnect catch-up (tail) or a full-session read."""
    validate_session_id(session_id)
    page = await get_registry(request).read_history(session_id, n=n, tail=tail, after_seq=after_seq)
    return page.to_dict()


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: str) -> JsonDict:
    validate_session_id(session_id)
    await get_registry(request).delete_session(session_id)
    return {"sessionId": session_id, "deleted": True}


@router.get("/stats")
async def stats(request: Request) -> JsonDict:
    return get_registry(request).stats()


@router.get("/layout", response_model=LayoutResponse, response_model_by_alias=True)
async def get_layout_for_client(
    request: Request,
    client_id: str = Query(..., alias="clientId", min_length=1),
) -> LayoutResponse:
    layout = await get_layout(request).get(client_id)
    return LayoutResponse(client_id=client_id, layout=layout)


@router.put("/layout")
async def put_layout(request: Request, body: LayoutPutRequest) -> JsonDict:
    session_id = normalize_session_key(body.model_dump(exclude_none=True))
    await get_layout(request).set(session_id, body.client_id, body.tile_id)
    return {"sessionId": session_id, "clientId": body.client_id, "tileId": body.tile_id}


@router.delete("/layout")
async def delete_layout(
    request: Request,
    client_id: str = Query(..., alias="clientId", min_length=1),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    run_id: Optional[str] = Query(default=None, alias="runId"),
) -> JsonDict:
    """Remove one placement; `runId` is accepted as the legacy name of `sessionId`."""
    resolved = normalize_session_key({"session_id": session_id, "run_id": run_id})
    removed = await get_layout(request).remove(resolved, client_id)
    return {"sessionId": resolved, "clientId": client_id, "removed": removed}
