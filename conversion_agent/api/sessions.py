from fastapi import APIRouter, Depends, HTTPException, Query

from conversion_agent.dependecies import get_orchestrator, get_sessions
from conversion_agent.models.domain import new_session_id
from conversion_agent.models.schemas import CreateSessionRequest, CreateSessionResponse, SessionInfo
from conversion_agent.services.orchestrator import Orchestrator
from conversion_agent.services.session_store import SessionStore

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.post("", response_model=CreateSessionResponse, status_code=201)
async def create_new_session(
    body: CreateSessionRequest | None = None,
    sessions: SessionStore = Depends(get_sessions),
):
    session = await sessions.get_or_create(new_session_id(), body.product_id if body else None)
    await sessions.persist(session)
    return CreateSessionResponse(session_id=session.session_id)


@router.get("", response_model=list[SessionInfo])
async def list_all_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sessions: SessionStore = Depends(get_sessions),
):
    rows = await sessions.list_sessions(limit=limit, offset=offset)
    return [
        SessionInfo(
            session_id=s["id"],
            product_id=s["product_id"],
            current_phase=s["current_phase"],
            created_at=s["created_at"],
            message_count=s["message_count"],
            last_active=s["updated_at"],
        )
        for s in rows
    ]


@router.get("/{session_id}")
async def get_session_detail(
    session_id: str,
    sessions: SessionStore = Depends(get_sessions),
):
    if session_id in sessions:
        # flush the cached copy so the stored record is current
        await sessions.persist(await sessions.get_or_create(session_id))

    record = await sessions.store.get_session_record(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Session not found")

    return {
        "session_id": record["id"],
        "product_id": record["product_id"],
        "current_phase": record["current_phase"],
        "created_at": record["created_at"],
        "status": record["status"],
        "messages": record["messages"],
    }


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    sessions: SessionStore = Depends(get_sessions),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    record = await sessions.store.get_session_record(session_id)
    if record is None and session_id not in sessions:
        raise HTTPException(status_code=404, detail="Session not found")

    await orchestrator.destroy(session_id)
