"""
ElevenLabs text-to-speech proxy
"""
import base64
import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from therapai import config

logger = logging.getLogger(__name__)

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"
ELEVENLABS_MODEL_ID = "eleven_monolingual_v1"

# (filename, content, content type) of one uploaded voice sample
VoiceSample = Tuple[str, bytes, str]

class VoiceServiceError(Exception):
    """ElevenLabs failed or is not configured"""

class VoiceService:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=ELEVENLABS_API_URL,
            transport=self.transport,
            timeout=config.HTTP_TIMEOUT_SECONDS,
        )

    @staticmethod
    def _api_key(api_key: Optional[str]) -> str:
        key = api_key or config.ELEVENLABS_API_KEY
        if not key:
            raise VoiceServiceError("ElevenLabs API key not configured")
        return key

    async def list_voices(self, api_key: Optional[str] = None) -> List[Dict]:
        key = self._api_key(api_key)
        try:
            async with self._client() as client:
                response = await client.get("/voices", headers={"xi-api-key": key})
                response.raise_for_status()
                voices = response.json().get("voices", [])
        except (httpx.HTTPError, ValueError) as e:
            raise VoiceServiceError(f"Failed to fetch voices: {e}") from e

        return [
            {
                "id": voice.get("voice_id"),
                "name": voice.get("name"),
                "category": voice.get("category"),
                "description": voice.get("description"),
                "preview_url": voice.get("preview_url"),
            }
            for voice in voices
        ]

    async def synthesize(
        self,
        text: str,
        voice_id: Optional[str] = None,
        stability: float = 0.5,
        similarity_boost: float = 0.8,
        api_key: Optional[str] = None,
    ) -> bytes:
        """Raw MPEG audio for `text`"""
        key = self._api_key(api_key)
        voice_id = voice_id or config.ELEVENLABS_VOICE_ID
        logger.info(f"Generating speech with voice {voice_id} ({len(text)} chars)")
        try:
            async with self._client() as client:
                response = await client.post(
                    f"/text-to-speech/{voice_id}",
                    headers={
                        "Accept": "audio/mpeg",
                        "Content-Type": "application/json",
                        "xi-api-key": key,
                    },
                    json={
                        "text": text,
                        "model_id": ELEVENLABS_MODEL_ID,
                        "voice_settings": {
                            "stability": stability,
                            "similarity_boost": similarity_boost,
                        },
                    },
                )
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise VoiceServiceError(f"Failed to generate speech: {e}") from e

    async def stream_speech(
        self,
        text: str,
        voice_id: Optional[str] = None,
        stability: float = 0.5,
        similarity_boost: float = 0.8,
        api_key: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """MPEG audio chunks as ElevenLabs produces them"""
        key = self._api_key(api_key)
        voice_id = voice_id or config.ELEVENLABS_VOICE_ID
        logger.info(f"Streaming speech with voice {voice_id} ({len(text)} chars)")
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"/text-to-speech/{voice_id}/stream",
                    headers={
                        "Accept": "audio/mpeg",
                        "Content-Type": "application/json",
                        "xi-api-key": key,
                    },
                    json={
                        "text": text,
                        "model_id": ELEVENLABS_MODEL_ID,
                        "voice_settings": {
                            "stability": stability,
                            "similarity_boost": similarity_boost,
                        },
                    },
                ) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes():
                        yield chunk
        except httpx.HTTPError as e:
            raise VoiceServiceError(f"Failed to stream speech: {e}") from e

    async def clone_voice(
        self,
        name: str,
        samples: Sequence[VoiceSample],
        description: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> Dict:
        """Create an instant voice clone from audio samples"""
        if not samples:
            raise ValueError("At least one audio sample is required")
        key = self._api_key(api_key)
        try:
            async with self._client() as client:
                response = await client.post(
                    "/voices/add",
                    headers={"Accept": "application/json", "xi-api-key": key},
                    data={"name": name, "description": description or ""},
                    files=[("files", sample) for sample in samples],
                )
                response.raise_for_status()
                data = response.json()
            voice = {"voice_id": data["voice_id"], "name": data.get("name") or name}
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise VoiceServiceError(f"Failed to clone voice: {e}") from e

        logger.info(f"Cloned voice {voice['voice_id']} from {len(samples)} samples")
        return voice

    async def generate_speech(self, text: str, voice_id: Optional[str] = None, **kwargs) -> Dict:
        """Synthesize and wrap the audio as a base64 data URI"""
        voice_id = voice_id or config.ELEVENLABS_VOICE_ID
        audio = await self.synthesize(text, voice_id=voice_id, **kwargs)
        return {
            "audio": f"data:audio/mpeg;base64,{base64.b64encode(audio).decode('ascii')}",
            "text": text,
            "voice_id": voice_id,
        }

voice_service = VoiceService()

def get_voice_service() -> VoiceService:
    return voice_service
