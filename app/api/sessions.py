import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import get_db_path, get_state_store
from app.models.database import get_messages, list_sessions
from app.models.schemas import CreateSessionResponse, SessionInfo
from app.services.state_store import ConversationStateStore

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.post("", response_model=CreateSessionResponse, status_code=201)
async def create_new_session(store: ConversationStateStore = Depends(get_state_store)):
    session_id = str(uuid.uuid4())
    await store.reset(session_id)
    return CreateSessionResponse(session_id=session_id)


@router.get("", response_model=list[SessionInfo])
async def list_all_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db_path: str = Depends(get_db_path),
):
    sessions = await list_sessions(db_path, limit=limit, offset=offset)
    return [
        SessionInfo(
            session_id=s["id"],
            created_at=s["created_at"],
            phase=s["phase"],
            message_count=s["message_count"],
            last_active=s["updated_at"],
        )
        for s in sessions
    ]


@router.get("/{session_id}")
async def get_session_detail(
    session_id: str,
    db_path: str = Depends(get_db_path),
    store: ConversationStateStore = Depends(get_state_store),
):
    if not await store.exists(session_id):
        raise HTTPException(status_code=404, detail="Session not found")

    state = await store.load(session_id)
    messages = await get_messages(db_path, session_id)
    return {
        "session_id": session_id,
        "phase": state.phase,
        "state": state.model_dump(mode="json", exclude={"pending_images", "last_reply"}),
        "pending_images": [image.describe() for image in state.pending_images],
        "messages": messages,
    }


@router.delete("/{session_id}", status_code=204)
async def reset_session(
    session_id: str,
    store: ConversationStateStore = Depends(get_state_store),
):
    if not await store.exists(session_id):
        raise HTTPException(status_code=404, detail="Session not found")

    async with store.lock(session_id):
        await store.reset(session_id)
