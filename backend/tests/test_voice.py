import asyncio
import json

import httpx
import pytest

from therapai.main import app
from therapai.voice_service import VoiceService, VoiceServiceError, get_voice_service

from conftest import set_tier

ELEVENLABS_KEY = "sk_" + "e" * 30

def elevenlabs_transport(status_code=200):
    requests = []

    def handler(request):
        requests.append(request)
        if status_code != 200:
            return httpx.Response(status_code, json={"detail": "quota_exceeded"})
        if request.url.path.endswith("/stream"):
            return httpx.Response(200, content=b"ID3chunk-onechunk-two", headers={"Content-Type": "audio/mpeg"})
        if request.url.path.endswith("/voices/add"):
            return httpx.Response(200, json={"voice_id": "cloned_1"})
        return httpx.Response(404)

    return httpx.MockTransport(handler), requests

@pytest.fixture
def voice_requests(client, headers):
    transport, requests = elevenlabs_transport()
    app.dependency_overrides[get_voice_service] = lambda: VoiceService(transport=transport)
    client.put("/api/users/api-keys", json={"elevenlabs": ELEVENLABS_KEY, "use_own_keys": True}, headers=headers)
    yield requests
    app.dependency_overrides.pop(get_voice_service, None)

def test_stream_speech_yields_audio():
    transport, requests = elevenlabs_transport()
    service = VoiceService(transport=transport)

    async def collect():
        return b"".join([chunk async for chunk in service.stream_speech("hi", voice_id="v1", api_key=ELEVENLABS_KEY)])

    assert asyncio.run(collect()) == b"ID3chunk-onechunk-two"
    assert requests[0].url.path == "/v1/text-to-speech/v1/stream"
    assert json.loads(requests[0].content)["model_id"] == "eleven_monolingual_v1"

def test_stream_speech_upstream_error():
    service = VoiceService(transport=elevenlabs_transport(429)[0])

    async def collect():
        return [chunk async for chunk in service.stream_speech("hi", api_key=ELEVENLABS_KEY)]

    with pytest.raises(VoiceServiceError):
        asyncio.run(collect())

def test_stream_endpoint_returns_mpeg(client, headers, voice_requests):
    response = client.post("/api/voice/stream", json={"text": "Take a breath", "voice_id": "v1"}, headers=headers)

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.content == b"ID3chunk-onechunk-two"
    assert voice_requests[0].headers["xi-api-key"] == ELEVENLABS_KEY

def test_stream_endpoint_upstream_failure(client, db, user, headers):
    set_tier(db, user, "premium")
    app.dependency_overrides[get_voice_service] = lambda: VoiceService(transport=elevenlabs_transport(500)[0])
    try:
        client.put("/api/users/api-keys", json={"elevenlabs": ELEVENLABS_KEY, "use_own_keys": True}, headers=headers)
        response = client.post("/api/voice/stream", json={"text": "hello"}, headers=headers)
    finally:
        app.dependency_overrides.pop(get_voice_service, None)

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Failed to stream speech"}

def test_stream_endpoint_forbidden_on_free_tier(client, headers):
    response = client.post("/api/voice/stream", json={"text": "hello"}, headers=headers)
    assert response.status_code == 403

@pytest.mark.parametrize("path", ["/api/voice/generate", "/api/voice/stream"])
def test_blank_text_rejected(client, headers, voice_requests, path):
    response = client.post(path, json={"text": " \t "}, headers=headers)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert voice_requests == []

def test_clone_voice(client, headers, voice_requests):
    response = client.post(
        "/api/voice/clone",
        data={"name": "My voice", "description": "calm"},
        files=[
            ("files", ("one.mp3", b"ID3first", "audio/mpeg")),
            ("files", ("two.mp3", b"ID3second", "audio/mpeg")),
        ],
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"voice_id": "cloned_1", "name": "My voice"}

    sent = voice_requests[0]
    assert sent.url.path == "/v1/voices/add"
    assert sent.headers["content-type"].startswith("multipart/form-data")
    assert b"ID3first" in sent.content
    assert b"ID3second" in sent.content
    assert b"My voice" in sent.content

def test_clone_voice_requires_audio(client, headers, voice_requests):
    response = client.post(
        "/api/voice/clone",
        data={"name": "My voice"},
        files=[("files", ("empty.mp3", b"", "audio/mpeg"))],
        headers=headers,
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Name and audio files are required"}
    assert voice_requests == []

def test_clone_voice_upstream_failure():
    service = VoiceService(transport=elevenlabs_transport(401)[0])
    with pytest.raises(VoiceServiceError):
        asyncio.run(service.clone_voice("x", [("a.mp3", b"ID3", "audio/mpeg")], api_key=ELEVENLABS_KEY))
