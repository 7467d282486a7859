import asyncio
import base64
import json

import httpx
import pytest

from therapai import config
from therapai.main import app
from therapai.routers.video import get_video_poller
from therapai.video_service import (
    VideoJob, VideoPoller, VideoService, VideoServiceError, VideoState, get_video_service, map_tavus_status,
)
from therapai.voice_service import VoiceService, get_voice_service

from conftest import set_tier

TAVUS_KEY = "tavus_" + "k" * 20

def tavus_transport(statuses):
    """Serves a video creation and then the given statuses in order"""
    remaining = list(statuses)
    requests = []

    def handler(request):
        requests.append(request)
        if request.method == "POST" and request.url.path.endswith("/videos"):
            return httpx.Response(200, json={"video_id": "vid_1", "status": "queued"})
        if request.url.path.endswith("/videos/vid_1"):
            status = remaining.pop(0) if remaining else "generating"
            body = {"video_id": "vid_1", "status": status}
            if status == "ready":
                body["download_url"] = "https://cdn.example.com/vid_1.mp4"
            return httpx.Response(200, json=body)
        if request.method == "POST" and request.url.path.endswith("/replicas"):
            return httpx.Response(200, json={"replica_id": "r2", "status": "started"})
        if request.url.path.endswith("/replicas"):
            return httpx.Response(200, json={"data": [{"replica_id": "r1", "replica_name": "Dr. Calm", "status": "ready"}]})
        return httpx.Response(404)

    return httpx.MockTransport(handler), requests

class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)

def test_map_tavus_status():
    assert map_tavus_status("queued") is VideoState.SUBMITTED
    assert map_tavus_status("generating") is VideoState.PROCESSING
    assert map_tavus_status("ready") is VideoState.COMPLETED
    assert map_tavus_status("error") is VideoState.FAILED
    assert map_tavus_status("wibble") is VideoState.PROCESSING
    assert map_tavus_status(5) is VideoState.PROCESSING

def test_terminal_states_do_not_move():
    job = VideoJob("vid_1", state=VideoState.COMPLETED, download_url="https://cdn/x.mp4")
    job.advance({"status": "generating"})
    assert job.state is VideoState.COMPLETED
    assert job.download_url == "https://cdn/x.mp4"

def test_poller_runs_to_completion():
    transport, _ = tavus_transport(["generating", "generating", "ready"])
    service = VideoService(transport=transport)
    sleep = RecordingSleep()
    poller = VideoPoller(service, sleep=sleep, interval=5, max_attempts=10)

    job = asyncio.run(service.submit("Breathe in", replica_id="r1", api_key=TAVUS_KEY))
    assert job.state is VideoState.SUBMITTED

    job = asyncio.run(poller.wait(job, api_key=TAVUS_KEY))

    assert job.state is VideoState.COMPLETED
    assert job.attempts == 3
    assert job.download_url == "https://cdn.example.com/vid_1.mp4"
    assert sleep.delays == [5, 5, 5]

def test_poller_stops_on_failure():
    transport, _ = tavus_transport(["generating", "error", "ready"])
    service = VideoService(transport=transport)
    poller = VideoPoller(service, sleep=RecordingSleep(), interval=1, max_attempts=10)

    job = asyncio.run(poller.wait(VideoJob("vid_1"), api_key=TAVUS_KEY))

    assert job.state is VideoState.FAILED
    assert job.attempts == 2

def test_poller_gives_up_after_max_attempts():
    transport, _ = tavus_transport([])
    service = VideoService(transport=transport)
    sleep = RecordingSleep()
    poller = VideoPoller(service, sleep=sleep, interval=2, max_attempts=4)

    job = asyncio.run(poller.wait(VideoJob("vid_1"), api_key=TAVUS_KEY))

    assert job.state is VideoState.PROCESSING
    assert job.attempts == 4
    assert len(sleep.delays) == 4

def test_submit_requires_replica():
    service = VideoService(transport=tavus_transport([])[0])
    with pytest.raises(VideoServiceError):
        asyncio.run(service.submit("hello", api_key=TAVUS_KEY))

def test_missing_key_is_service_error():
    service = VideoService(transport=tavus_transport([])[0])
    with pytest.raises(VideoServiceError):
        asyncio.run(service.list_replicas())

def test_submit_sends_key_and_script():
    transport, requests = tavus_transport([])
    service = VideoService(transport=transport)
    asyncio.run(service.submit("hello there", replica_id="r1", voice_id="v1", api_key=TAVUS_KEY))

    request = requests[0]
    assert request.headers["x-api-key"] == TAVUS_KEY
    body = json.loads(request.content)
    assert (body["script"], body["replica_id"], body["voice_id"]) == ("hello there", "r1", "v1")

@pytest.fixture
def video_overrides():
    transport, _ = tavus_transport(["ready"])
    service = VideoService(transport=transport)
    app.dependency_overrides[get_video_service] = lambda: service
    app.dependency_overrides[get_video_poller] = lambda: VideoPoller(service, sleep=RecordingSleep(), interval=0, max_attempts=3)
    yield service
    app.dependency_overrides.pop(get_video_service, None)
    app.dependency_overrides.pop(get_video_poller, None)

def test_generate_video_with_own_key_waits(client, headers, video_overrides):
    client.put("/api/users/api-keys", json={"tavus": TAVUS_KEY, "use_own_keys": True}, headers=headers)

    response = client.post(
        "/api/video/generate",
        json={"script": "Let's slow down", "replica_id": "r1", "wait": True},
        headers=headers,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["download_url"] == "https://cdn.example.com/vid_1.mp4"

def test_generate_video_pro_without_server_key_fails(client, db, user, headers, video_overrides):
    set_tier(db, user, "pro")
    response = client.post("/api/video/generate", json={"script": "hi", "replica_id": "r1"}, headers=headers)
    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Failed to generate video"}

def test_video_status_and_replicas(client, headers, video_overrides):
    client.put("/api/users/api-keys", json={"tavus": TAVUS_KEY, "use_own_keys": True}, headers=headers)

    status = client.get("/api/video/status/vid_1", headers=headers).json()["data"]
    assert status["status"] == "completed"

    replicas = client.get("/api/video/replicas", headers=headers).json()["data"]
    assert replicas[0]["id"] == "r1"
    assert replicas[0]["name"] == "Dr. Calm"

def test_video_webhook(client):
    response = client.post("/api/video/webhook", json={"video_id": "vid_1", "status": "ready"})
    assert response.json() == {"success": True}

    response = client.post("/api/video/webhook", content=b"[1, 2]", headers={"Content-Type": "application/json"})
    assert response.status_code == 400

def test_submit_with_unexpected_body_is_service_error():
    for body in ([], {}, {"status": "queued"}):
        service = VideoService(transport=httpx.MockTransport(lambda request, body=body: httpx.Response(200, json=body)))
        with pytest.raises(VideoServiceError):
            asyncio.run(service.submit("hello", replica_id="r1", api_key=TAVUS_KEY))

def test_generate_video_unexpected_body_is_server_error(client, headers):
    service = VideoService(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
    app.dependency_overrides[get_video_service] = lambda: service
    try:
        client.put("/api/users/api-keys", json={"tavus": TAVUS_KEY, "use_own_keys": True}, headers=headers)
        response = client.post("/api/video/generate", json={"script": "hi", "replica_id": "r1"}, headers=headers)
    finally:
        app.dependency_overrides.pop(get_video_service, None)

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Failed to generate video"}

def test_generate_video_blank_script_rejected(client, db, user, headers, video_overrides):
    set_tier(db, user, "pro")
    response = client.post("/api/video/generate", json={"script": "  \n ", "replica_id": "r1"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["success"] is False

def test_create_replica(client, headers, monkeypatch):
    monkeypatch.setattr(config, "BACKEND_URL", "https://api.therapai.test")
    transport, requests = tavus_transport([])
    app.dependency_overrides[get_video_service] = lambda: VideoService(transport=transport)
    try:
        client.put("/api/users/api-keys", json={"tavus": TAVUS_KEY, "use_own_keys": True}, headers=headers)
        response = client.post(
            "/api/video/replica",
            json={"name": "Dr. Calm", "training_video_url": "https://cdn.example.com/train.mp4"},
            headers=headers,
        )
    finally:
        app.dependency_overrides.pop(get_video_service, None)

    assert response.status_code == 200
    assert response.json()["data"] == {"replica_id": "r2", "status": "started", "name": "Dr. Calm"}
    body = json.loads(requests[0].content)
    assert body == {
        "train_video_url": "https://cdn.example.com/train.mp4",
        "replica_name": "Dr. Calm",
        "callback_url": "https://api.therapai.test/api/video/replica-webhook",
    }

def test_create_replica_requires_video_access(client, headers, video_overrides):
    response = client.post(
        "/api/video/replica",
        json={"name": "Dr. Calm", "training_video_url": "https://cdn.example.com/train.mp4"},
        headers=headers,
    )
    assert response.status_code == 403

def test_create_replica_requires_name(client, db, user, headers, video_overrides):
    set_tier(db, user, "pro")
    response = client.post(
        "/api/video/replica",
        json={"name": " ", "training_video_url": "https://cdn.example.com/train.mp4"},
        headers=headers,
    )
    assert response.status_code == 400

def test_replica_webhook(client):
    response = client.post(
        "/api/video/replica-webhook",
        json={"replica_id": "r2", "status": "ready", "training_progress": "100/100"},
    )
    assert response.json() == {"success": True}

    response = client.post("/api/video/replica-webhook", content=b"nope", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Invalid webhook payload"}

def test_generate_speech_returns_data_uri(client, headers):
    def handler(request):
        assert request.headers["xi-api-key"] == "sk_" + "e" * 30
        return httpx.Response(200, content=b"ID3audio")

    service = VoiceService(transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_voice_service] = lambda: service
    try:
        client.put("/api/users/api-keys", json={"elevenlabs": "sk_" + "e" * 30, "use_own_keys": True}, headers=headers)
        response = client.post("/api/voice/generate", json={"text": "You are doing well"}, headers=headers)
    finally:
        app.dependency_overrides.pop(get_voice_service, None)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["audio"] == "data:audio/mpeg;base64," + base64.b64encode(b"ID3audio").decode()
    assert data["text"] == "You are doing well"
