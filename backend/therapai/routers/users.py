"""
User profile, therapy session and API key routes
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Dict, Literal, Optional

from therapai import config
from therapai.api_keys import API_SERVICES, ApiKeyError, ApiKeyStore
from therapai.billing import can_access_feature
from therapai.crud import session as crud_session
from therapai.crud import user as crud_user
from therapai.database import get_db
from therapai.routers.deps import get_current_user, get_key_store

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/users",
    tags=["users"]
)

class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    preferences: Optional[Dict] = None

class ProfileResponse(BaseModel):
    id: str
    email: Optional[str]
    full_name: Optional[str]
    avatar_url: Optional[str]
    subscription_tier: str
    preferences: Optional[Dict]
    created_at: datetime
    last_active: Optional[datetime]

    class Config:
        from_attributes = True

class SessionCreate(BaseModel):
    title: Optional[str] = None
    session_type: Literal["chat", "voice", "video"] = "chat"

class SessionEnd(BaseModel):
    summary: Optional[str] = None

class SessionResponse(BaseModel):
    id: int
    user_id: str
    title: str
    session_type: str
    start_time: datetime
    end_time: Optional[datetime]
    message_count: int
    total_words: int
    average_sentiment: float
    summary: Optional[str]

    class Config:
        from_attributes = True

class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1)
    is_user: bool
    audio_url: Optional[str] = None
    video_url: Optional[str] = None
    sentiment_score: Optional[float] = Field(None, ge=-1, le=1)

class MessageResponse(BaseModel):
    id: int
    session_id: int
    content: str
    is_user: bool
    timestamp: datetime
    audio_url: Optional[str]
    video_url: Optional[str]
    word_count: int
    sentiment_score: Optional[float]

    class Config:
        from_attributes = True

class ApiKeysUpdate(BaseModel):
    gemini: Optional[str] = None
    elevenlabs: Optional[str] = None
    tavus: Optional[str] = None
    use_own_keys: Optional[bool] = None

def _owned_session(db: Session, session_id: int, user_id: str):
    db_session = crud_session.get_user_session(db, session_id, user_id)
    if db_session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found"
        )
    return db_session

@router.get("/profile")
async def get_profile(current_user = Depends(get_current_user)):
    return {"success": True, "data": ProfileResponse.model_validate(current_user)}

@router.put("/profile")
async def update_profile(
    update: ProfileUpdate,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    user = crud_user.update_profile(
        db,
        current_user,
        full_name=update.full_name,
        preferences=update.preferences
    )
    return {"success": True, "data": ProfileResponse.model_validate(user)}

@router.get("/sessions")
async def list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's sessions, newest first"""
    sessions = crud_session.get_user_sessions(
        db=db,
        user_id=current_user.id,
        skip=(page - 1) * limit,
        limit=limit
    )
    return {"success": True, "data": [SessionResponse.model_validate(s) for s in sessions]}

@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def create_session(
    session_data: SessionCreate,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    db: Session = Depends(get_db)
):
    """Open a new therapy session"""
    if not can_access_feature("unlimited_sessions", current_user.subscription_tier, key_store):
        month_start = datetime.utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        used = crud_session.count_sessions_since(db, current_user.id, month_start)
        if used >= config.FREE_SESSIONS_PER_MONTH:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Free plan is limited to {config.FREE_SESSIONS_PER_MONTH} sessions per month"
            )

    db_session = crud_session.create_session(
        db=db,
        user_id=current_user.id,
        session_type=session_data.session_type,
        title=session_data.title
    )
    return {"success": True, "data": SessionResponse.model_validate(db_session)}

@router.put("/sessions/{session_id}/end")
async def end_session(
    session_id: int,
    session_end: SessionEnd,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_session = crud_session.end_session(db, session_id, current_user.id, summary=session_end.summary)
    if db_session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found"
        )
    return {"success": True, "data": SessionResponse.model_validate(db_session)}

@router.get("/sessions/{session_id}/messages")
async def list_messages(
    session_id: int,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_session = _owned_session(db, session_id, current_user.id)
    messages = crud_session.get_session_messages(db, db_session.id)
    return {"success": True, "data": [MessageResponse.model_validate(m) for m in messages]}

@router.post("/sessions/{session_id}/messages", status_code=status.HTTP_201_CREATED)
async def add_message(
    session_id: int,
    message: MessageCreate,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_session = _owned_session(db, session_id, current_user.id)
    db_message = crud_session.add_message(
        db,
        db_session,
        content=message.content,
        is_user=message.is_user,
        audio_url=message.audio_url,
        video_url=message.video_url,
        sentiment_score=message.sentiment_score
    )
    return {"success": True, "data": MessageResponse.model_validate(db_message)}

@router.get("/stats")
async def get_stats(
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return {"success": True, "data": crud_session.get_user_stats(db, current_user.id)}

@router.get("/api-keys")
async def get_api_keys(key_store: ApiKeyStore = Depends(get_key_store)):
    """Stored keys, masked"""
    return {"success": True, "data": {**key_store.masked(), "services": API_SERVICES}}

@router.put("/api-keys")
async def update_api_keys(
    update: ApiKeysUpdate,
    key_store: ApiKeyStore = Depends(get_key_store)
):
    keys = update.model_dump(exclude_unset=True, exclude={"use_own_keys"})
    try:
        key_store.set_keys(keys, use_own_keys=update.use_own_keys)
    except ApiKeyError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return {"success": True, "data": key_store.masked()}

@router.delete("/api-keys")
async def clear_api_keys(key_store: ApiKeyStore = Depends(get_key_store)):
    key_store.clear()
    return {"success": True, "data": key_store.masked()}
