from fastapi import APIRouter, Depends, HTTPException

from conversion_agent.dependecies import get_orchestrator, get_sessions
from conversion_agent.models.domain import new_session_id
from conversion_agent.models.schemas import ChatRequest, ChatResponse, NavigateRequest, StartRequest
from conversion_agent.services.orchestrator import Orchestrator
from conversion_agent.services.session_store import SessionStore

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    if not body.message.strip() and body.action is None:
        raise HTTPException(status_code=422, detail="Either a message or a cart action is required")

    session_id = body.session_id or new_session_id()
    reply = await orchestrator.handle(session_id, body.message.strip(), body.product_id, body.action)
    return ChatResponse.of(session_id, reply)


@router.post("/start", response_model=ChatResponse)
async def start(
    body: StartRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    session_id = body.session_id or new_session_id()
    reply = await orchestrator.start(session_id, body.product_id)
    return ChatResponse.of(session_id, reply)


@router.post("/navigate", response_model=ChatResponse)
async def navigate(
    body: NavigateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    sessions: SessionStore = Depends(get_sessions),
):
    if body.session_id not in sessions:
        record = await sessions.store.get_session_record(body.session_id)
        if record is None or record.get("status") != "active":
            raise HTTPException(status_code=404, detail="Session not found")

    reply = await orchestrator.navigate(body.session_id, body.product_id)
    return ChatResponse.of(body.session_id, reply)
