"""
Tavus video avatar proxy.

A generated video moves through submitted -> processing -> completed|failed.
Tavus reports its own status strings; TAVUS_STATES maps them onto ours.
VideoPoller drives a job to a terminal state by polling with a fixed interval
through an injected sleep, so tests can run it without waiting.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from therapai import config

logger = logging.getLogger(__name__)

TAVUS_API_URL = "https://tavusapi.com/v2"

class VideoState(str, enum.Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoState.COMPLETED, VideoState.FAILED)

TAVUS_STATES = {
    "queued": VideoState.SUBMITTED,
    "submitted": VideoState.SUBMITTED,
    "generating": VideoState.PROCESSING,
    "processing": VideoState.PROCESSING,
    "ready": VideoState.COMPLETED,
    "completed": VideoState.COMPLETED,
    "error": VideoState.FAILED,
    "failed": VideoState.FAILED,
    "deleted": VideoState.FAILED,
}

# Allowed moves; anything else is logged and ignored
TRANSITIONS = {
    VideoState.SUBMITTED: {VideoState.SUBMITTED, VideoState.PROCESSING, VideoState.COMPLETED, VideoState.FAILED},
    VideoState.PROCESSING: {VideoState.PROCESSING, VideoState.COMPLETED, VideoState.FAILED},
    VideoState.COMPLETED: {VideoState.COMPLETED},
    VideoState.FAILED: {VideoState.FAILED},
}

class VideoServiceError(Exception):
    """Tavus failed or is not configured"""

def map_tavus_status(status: Optional[str]) -> VideoState:
    state = TAVUS_STATES.get(status.lower()) if isinstance(status, str) else None
    if state is None:
        logger.warning(f"Unknown Tavus status '{status}', treating as processing")
        return VideoState.PROCESSING
    return state

@dataclass
class VideoJob:
    video_id: str
    state: VideoState = VideoState.SUBMITTED
    download_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    provider_status: Optional[str] = None
    attempts: int = 0

    def advance(self, data: Dict) -> "VideoJob":
        """Fold a status payload into the job"""
        new_state = map_tavus_status(data.get("status"))
        if new_state not in TRANSITIONS[self.state]:
            logger.warning(f"Ignoring video {self.video_id} transition {self.state.value} -> {new_state.value}")
            return self
        self.state = new_state
        self.provider_status = data.get("status")
        self.download_url = data.get("download_url") or self.download_url
        self.thumbnail_url = data.get("thumbnail_url") or self.thumbnail_url
        self.duration = data.get("duration") or self.duration
        return self

    def to_dict(self) -> Dict:
        return {
            "video_id": self.video_id,
            "status": self.state.value,
            "provider_status": self.provider_status,
            "download_url": self.download_url,
            "thumbnail_url": self.thumbnail_url,
            "duration": self.duration,
        }

class VideoService:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def _client(self, api_key: Optional[str]) -> httpx.AsyncClient:
        key = api_key or config.TAVUS_API_KEY
        if not key:
            raise VideoServiceError("Tavus API key not configured")
        return httpx.AsyncClient(
            base_url=TAVUS_API_URL,
            transport=self.transport,
            timeout=config.HTTP_TIMEOUT_SECONDS,
            headers={"x-api-key": key, "Content-Type": "application/json"},
        )

    async def list_replicas(self, api_key: Optional[str] = None) -> List[Dict]:
        try:
            async with self._client(api_key) as client:
                response = await client.get("/replicas")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise VideoServiceError(f"Failed to fetch replicas: {e}") from e

        replicas = data.get("data", []) if isinstance(data, dict) else data
        return [
            {
                "id": replica.get("replica_id"),
                "name": replica.get("replica_name") or replica.get("name"),
                "status": replica.get("status"),
                "thumbnail_url": replica.get("thumbnail_video_url") or replica.get("thumbnail_url"),
                "training_progress": replica.get("training_progress"),
            }
            for replica in replicas
        ]

    async def submit(
        self,
        script: str,
        replica_id: Optional[str] = None,
        voice_id: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> VideoJob:
        replica_id = replica_id or config.TAVUS_REPLICA_ID
        if not replica_id:
            raise VideoServiceError("No Tavus replica configured")

        body = {
            "script": script,
            "replica_id": replica_id,
            "video_name": f"TherapAI Response - {datetime.utcnow().isoformat()}",
            "callback_url": f"{config.BACKEND_URL}/api/video/webhook",
        }
        if voice_id:
            body["voice_id"] = voice_id

        try:
            async with self._client(api_key) as client:
                response = await client.post("/videos", json=body)
                response.raise_for_status()
                data = response.json()
            job = VideoJob(video_id=data["video_id"]).advance(data)
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise VideoServiceError(f"Failed to generate video: {e}") from e

        logger.info(f"Submitted video {job.video_id} ({job.state.value})")
        return job

    async def fetch_status(self, video_id: str, api_key: Optional[str] = None) -> Dict:
        try:
            async with self._client(api_key) as client:
                response = await client.get(f"/videos/{video_id}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise VideoServiceError(f"Failed to get video status: {e}") from e
        if not isinstance(data, dict):
            raise VideoServiceError(f"Unexpected video status body for {video_id}")
        return data

    async def create_replica(
        self,
        name: str,
        train_video_url: str,
        api_key: Optional[str] = None,
    ) -> Dict:
        """Start training a replica from a video; Tavus reports progress to the replica webhook"""
        body = {
            "train_video_url": train_video_url,
            "replica_name": name,
            "callback_url": f"{config.BACKEND_URL}/api/video/replica-webhook",
        }
        try:
            async with self._client(api_key) as client:
                response = await client.post("/replicas", json=body)
                response.raise_for_status()
                data = response.json()
            replica = {
                "replica_id": data["replica_id"],
                "status": data.get("status"),
                "name": data.get("replica_name") or data.get("name") or name,
            }
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise VideoServiceError(f"Failed to create replica: {e}") from e

        logger.info(f"Replica {replica['replica_id']} training started ({replica['status']})")
        return replica

    async def get_status(self, video_id: str, api_key: Optional[str] = None) -> VideoJob:
        data = await self.fetch_status(video_id, api_key)
        return VideoJob(video_id=video_id).advance(data)

class VideoPoller:
    """Poll a job until it completes or fails, with a fixed delay between polls"""

    def __init__(
        self,
        service: VideoService,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.service = service
        self.sleep = sleep
        self.interval = config.VIDEO_POLL_INTERVAL_SECONDS if interval is None else interval
        self.max_attempts = config.VIDEO_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts

    async def wait(self, job: VideoJob, api_key: Optional[str] = None) -> VideoJob:
        """Returns the job in a terminal state, or as last seen when attempts run out"""
        while not job.state.is_terminal and job.attempts < self.max_attempts:
            await self.sleep(self.interval)
            job.attempts += 1
            job.advance(await self.service.fetch_status(job.video_id, api_key))
            logger.debug(f"Video {job.video_id} poll {job.attempts}: {job.state.value}")

        if not job.state.is_terminal:
            logger.warning(f"Gave up polling video {job.video_id} after {job.attempts} attempts")
        return job

video_service = VideoService()

def get_video_service() -> VideoService:
    return video_service
