from fastapi import APIRouter, Request, HTTPException

from ..db.kv_store import now_ms
from ..errors import SessionStoreError
from ..models.session import AppendMessageRequest, AppendOptions, LoadOptions, Message

router = APIRouter(prefix="/api/sessions")


def _get_session_store(request: Request):
    svc = request.app.state.session_store
    if not svc:
        raise HTTPException(status_code=503, detail="Session store not available")
    return svc


@router.get("/{user_id}")
async def list_sessions(request: Request, user_id: str, limit: int = 10):
    svc = _get_session_store(request)
    sessions = await svc.list(user_id, limit=limit)
    return {"sessions": [s.model_dump() for s in sessions], "count": len(sessions)}


@router.get("/{user_id}/{session_id}")
async def get_session(request: Request, user_id: str, session_id: str,
                      max_messages: int | None = None, include_summary: bool = True):
    svc = _get_session_store(request)
    if max_messages is not None and max_messages < 1:
        raise HTTPException(status_code=422, detail="max_messages must be >= 1")
    session = await svc.load(user_id, session_id, LoadOptions(
        max_messages=max_messages, include_summary=include_summary,
    ))
    return session.model_dump()


@router.post("/{user_id}/{session_id}/messages")
async def append_message(request: Request, user_id: str, session_id: str,
                         body: AppendMessageRequest):
    svc = _get_session_store(request)
    message = Message(role=body.role, content=body.content,
                      timestamp=now_ms(), metadata=body.metadata)
    try:
        await svc.append(user_id, session_id, message, AppendOptions(
            auto_compact=body.auto_compact, compaction_threshold=body.compaction_threshold,
        ))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SessionStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", "user_id": user_id, "session_id": session_id}


@router.post("/{user_id}/{session_id}/compact")
async def compact_session(request: Request, user_id: str, session_id: str):
    svc = _get_session_store(request)
    try:
        await svc.compact(user_id, session_id)
    except SessionStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", "user_id": user_id, "session_id": session_id}


@router.delete("/{user_id}/{session_id}")
async def delete_session(request: Request, user_id: str, session_id: str):
    svc = _get_session_store(request)
    try:
        deleted = await svc.delete(user_id, session_id)
    except SessionStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"deleted": deleted > 0, "versions": deleted}
