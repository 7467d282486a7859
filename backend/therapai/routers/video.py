"""
Video avatar routes
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator
from typing import Optional

from therapai.api_keys import ApiKeyStore
from therapai.billing import can_access_feature
from therapai.routers.deps import get_current_user, get_key_store
from therapai.video_service import (
    VideoPoller, VideoService, VideoServiceError, get_video_service, map_tavus_status,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/video",
    tags=["video"]
)

class VideoRequest(BaseModel):
    script: str = Field(..., min_length=1, max_length=5000)
    replica_id: Optional[str] = None
    voice_id: Optional[str] = None
    wait: bool = False  # poll until the video is finished before answering

    @field_validator("script")
    @classmethod
    def script_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Script is required")
        return v

class ReplicaRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    training_video_url: str = Field(..., min_length=1, max_length=2000)

    @field_validator("name", "training_video_url")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Name and training video URL are required")
        return v.strip()

def get_video_poller(service: VideoService = Depends(get_video_service)) -> VideoPoller:
    return VideoPoller(service)

@router.get("/replicas")
async def list_replicas(
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    video: VideoService = Depends(get_video_service)
):
    """Avatars available on the Tavus account"""
    try:
        replicas = await video.list_replicas(api_key=key_store.own_key("tavus"))
    except VideoServiceError as e:
        logger.error(f"Get replicas error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch replicas"
        )
    return {"success": True, "data": replicas}

@router.post("/generate")
async def generate_video(
    request: VideoRequest,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    video: VideoService = Depends(get_video_service),
    poller: VideoPoller = Depends(get_video_poller)
):
    """Start a video response, optionally waiting for it to finish"""
    if not can_access_feature("video", current_user.subscription_tier, key_store):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Video responses require a Pro plan or your own Tavus key"
        )

    api_key = key_store.own_key("tavus")
    try:
        job = await video.submit(
            request.script,
            replica_id=request.replica_id,
            voice_id=request.voice_id,
            api_key=api_key,
        )
        if request.wait:
            job = await poller.wait(job, api_key=api_key)
    except VideoServiceError as e:
        logger.error(f"Generate video error for user {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate video"
        )
    return {"success": True, "data": job.to_dict()}

@router.post("/replica")
async def create_replica(
    request: ReplicaRequest,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    video: VideoService = Depends(get_video_service)
):
    """Train a new avatar from a video of the speaker"""
    if not can_access_feature("video", current_user.subscription_tier, key_store):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Video responses require a Pro plan or your own Tavus key"
        )

    try:
        replica = await video.create_replica(
            request.name,
            request.training_video_url,
            api_key=key_store.own_key("tavus"),
        )
    except VideoServiceError as e:
        logger.error(f"Create replica error for user {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create replica"
        )
    return {"success": True, "data": replica}

@router.get("/status/{video_id}")
async def video_status(
    video_id: str,
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store),
    video: VideoService = Depends(get_video_service)
):
    """Current state of a generated video"""
    try:
        job = await video.get_status(video_id, api_key=key_store.own_key("tavus"))
    except VideoServiceError as e:
        logger.error(f"Get video status error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get video status"
        )
    return {"success": True, "data": job.to_dict()}

async def _webhook_payload(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload"
        )
    return payload

@router.post("/webhook")
async def video_webhook(request: Request):
    """Tavus status callback"""
    payload = await _webhook_payload(request)

    state = map_tavus_status(payload.get("status"))
    logger.info(f"Video {payload.get('video_id')} status updated: {state.value}")
    if state.is_terminal and payload.get("download_url"):
        logger.info(f"Video {payload.get('video_id')} ready at {payload['download_url']}")

    return {"success": True}

@router.post("/replica-webhook")
async def replica_webhook(request: Request):
    """Tavus replica training callback"""
    payload = await _webhook_payload(request)

    replica_id = payload.get("replica_id")
    logger.info(f"Replica {replica_id} training progress: {payload.get('training_progress')}%")
    if payload.get("status") == "ready":
        logger.info(f"Replica {replica_id} training completed")
    elif payload.get("status") == "error":
        logger.error(f"Replica {replica_id} training failed: {payload.get('error_message')}")

    return {"success": True}
