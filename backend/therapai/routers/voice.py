"""
Voice synthesis routes
"""
import logging
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator
from typing import AsyncIterator, List, Optional

from therapai.api_keys import ApiKeyStore
from therapai.billing import can_access_feature
from therapai.routers.deps import get_current_user, get_key_store
from therapai.voice_service import VoiceService, VoiceServiceError, get_voice_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/voice",
    tags=["voice"]
)

class SpeechRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)
    voice_id: Optional[str] = None
    stability: float = Field(0.5, ge=0, le=1)
    similarity_boost: float = Field(0.8, ge=0, le=1)

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Text is required")
        return v

def _require_voice_access(current_user, key_store: ApiKeyStore) -> None:
    if not can_access_feature("voice", current_user.subscription_tier, key_store):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Voice responses require a Premium plan or your own ElevenLabs key"
        )

@router.get("/voices")
async def list_voices(
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    voice: VoiceService = Depends(get_voice_service)
):
    """Voices available on the ElevenLabs account"""
    try:
        voices = await voice.list_voices(api_key=key_store.own_key("elevenlabs"))
    except VoiceServiceError as e:
        logger.error(f"Get voices error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch voices"
        )
    return {"success": True, "data": voices}

@router.post("/generate")
async def generate_speech(
    request: SpeechRequest,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    voice: VoiceService = Depends(get_voice_service)
):
    """Speak `text` and return the audio inline"""
    _require_voice_access(current_user, key_store)

    try:
        data = await voice.generate_speech(
            request.text,
            voice_id=request.voice_id,
            stability=request.stability,
            similarity_boost=request.similarity_boost,
            api_key=key_store.own_key("elevenlabs"),
        )
    except VoiceServiceError as e:
        logger.error(f"Generate speech error for user {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate speech"
        )
    return {"success": True, "data": data}

@router.post("/stream")
async def stream_speech(
    request: SpeechRequest,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    voice: VoiceService = Depends(get_voice_service)
):
    """Speak `text` as a chunked audio/mpeg response"""
    _require_voice_access(current_user, key_store)

    chunks = voice.stream_speech(
        request.text,
        voice_id=request.voice_id,
        stability=request.stability,
        similarity_boost=request.similarity_boost,
        api_key=key_store.own_key("elevenlabs"),
    )
    # Pull the first chunk here so upstream failures still get an error response
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = b""
    except VoiceServiceError as e:
        logger.error(f"Stream speech error for user {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to stream speech"
        )

    async def audio() -> AsyncIterator[bytes]:
        yield first
        try:
            async for chunk in chunks:
                yield chunk
        except VoiceServiceError as e:
            logger.error(f"Speech stream for user {current_user.id} broke off: {e}")

    return StreamingResponse(audio(), media_type="audio/mpeg")

@router.post("/clone")
async def clone_voice(
    name: str = Form(..., min_length=1, max_length=100),
    description: Optional[str] = Form(None, max_length=500),
    files: List[UploadFile] = File(...),
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    voice: VoiceService = Depends(get_voice_service)
):
    """Create a voice from uploaded audio samples"""
    _require_voice_access(current_user, key_store)

    samples = []
    for index, upload in enumerate(files):
        content = await upload.read()
        if content:
            samples.append((upload.filename or f"sample_{index}.mp3", content, upload.content_type or "audio/mpeg"))
    if not name.strip() or not samples:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Name and audio files are required"
        )

    try:
        data = await voice.clone_voice(
            name.strip(),
            samples,
            description=description,
            api_key=key_store.own_key("elevenlabs"),
        )
    except VoiceServiceError as e:
        logger.error(f"Clone voice error for user {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to clone voice"
        )
    return {"success": True, "data": data}
