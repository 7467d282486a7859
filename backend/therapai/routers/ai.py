"""
AI chat routes
"""
import json
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import AsyncIterator, Optional

from therapai import config
from therapai.ai_service import AIService, AIServiceError, get_ai_service
from therapai.api_keys import ApiKeyStore
from therapai.crud import session as crud_session
from therapai.database import get_db
from therapai.routers.deps import get_current_user, get_key_store

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/ai",
    tags=["ai"]
)

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=8000)
    session_id: Optional[int] = None
    language: str = "en"

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message is required")
        return v

class AnalyzeRequest(BaseModel):
    session_id: int

def _history(messages) -> list:
    return [
        {"role": "user" if m.is_user else "assistant", "content": m.content}
        for m in messages
    ]

@router.post("/chat")
async def chat(
    request: ChatRequest,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    ai: AIService = Depends(get_ai_service),
    db: Session = Depends(get_db)
):
    """Send a message to the therapist and get its reply"""
    db_session = None
    history = []
    if request.session_id is not None:
        db_session = crud_session.get_user_session(db, request.session_id, current_user.id)
        if db_session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Session not found"
            )
        history = _history(crud_session.get_session_messages(db, db_session.id, limit=config.CHAT_HISTORY_LIMIT))

    try:
        reply, provider = await ai.chat(
            request.message,
            history=history,
            language=request.language,
            own_gemini_key=key_store.own_key("gemini"),
        )
    except AIServiceError as e:
        logger.error(f"AI chat failed for user {current_user.id}: {e.message} (upstream {e.upstream_status})")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=e.message
        )

    if db_session is not None:
        crud_session.add_message(db, db_session, request.message, is_user=True, commit=False)
        crud_session.add_message(db, db_session, reply, is_user=False)

    crud_session.record_usage(db, current_user.id, "ai_chat", len(request.message) + len(reply))

    return {
        "success": True,
        "data": {
            "response": reply,
            "session_id": request.session_id,
            "provider": provider,
        },
    }

def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"

@router.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    ai: AIService = Depends(get_ai_service),
    db: Session = Depends(get_db)
):
    """Like /chat, but the reply arrives as server-sent events.

    Each chunk is a `content` event. The stream ends with a `done` event
    carrying the full reply, or an `error` event. Both turns are saved to the
    session only once the reply is complete.
    """
    user_id = current_user.id
    history = []
    if request.session_id is not None:
        db_session = crud_session.get_user_session(db, request.session_id, user_id)
        if db_session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Session not found"
            )
        history = _history(crud_session.get_session_messages(db, db_session.id, limit=config.CHAT_HISTORY_LIMIT))
    own_key = key_store.own_key("gemini")

    async def events() -> AsyncIterator[str]:
        chunks = []
        try:
            async for chunk in ai.stream_chat(
                request.message,
                history=history,
                language=request.language,
                own_gemini_key=own_key,
            ):
                chunks.append(chunk)
                yield _sse({"type": "content", "content": chunk})
        except AIServiceError as e:
            logger.error(f"Streaming chat failed for user {user_id}: {e.message} (upstream {e.upstream_status})")
            yield _sse({"type": "error", "message": e.message})
            return

        reply = "".join(chunks)
        try:
            # Reload the session row; the one loaded above may be detached by now
            saved_session = None
            if request.session_id is not None:
                saved_session = crud_session.get_user_session(db, request.session_id, user_id)
            if saved_session is not None:
                crud_session.add_message(db, saved_session, request.message, is_user=True, commit=False)
                crud_session.add_message(db, saved_session, reply, is_user=False)
            crud_session.record_usage(db, user_id, "ai_chat", len(request.message) + len(reply))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Saving streamed chat for user {user_id} failed: {e}")
            yield _sse({"type": "error", "message": "Failed to save conversation"})
            return

        yield _sse({"type": "done", "response": reply, "session_id": request.session_id})

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )

@router.post("/analyze")
async def analyze(
    request: AnalyzeRequest,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    ai: AIService = Depends(get_ai_service),
    db: Session = Depends(get_db)
):
    """Mood and theme analysis over the last messages of a session"""
    db_session = crud_session.get_user_session(db, request.session_id, current_user.id)
    messages = crud_session.get_session_messages(db, db_session.id, limit=10) if db_session else []
    if not messages:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No conversation found"
        )

    try:
        analysis = await ai.analyze_conversation(_history(messages), own_gemini_key=key_store.own_key("gemini"))
    except AIServiceError as e:
        logger.error(f"Conversation analysis failed for session {request.session_id}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to analyze conversation"
        )

    return {"success": True, "data": analysis}
