"""
Tests for the Proposal API server.

Verifies:
- POST /api/proposal/evaluate (scoring and input validation)
- POST /api/speech/transcribe (upload validation, provider failures)
- POST /api/speech/generate and GET /api/speech/voices
- GET /api/system/status, GET /health, /downloads and startup pruning
"""
import asyncio
import os
import time

import pytest
from fastapi.testclient import TestClient

from constitution.scoring import DeterministicStrategy, ScoringEngine
from observability.event_store import event_store
from proposal_api import server
from proposal_api.config import ServerConfig
from proposal_api.errors import ProviderError, ProviderErrorCategory, ProviderNotConfigured
from proposal_api.server import _prune_periodically, create_app


class FakeWhisper:
    def __init__(self, text="Implement a transparent and fair voting mechanism", error=None):
        self.text = text
        self.error = error
        self.calls = []
        self.closed = False

    async def transcribe(self, data, filename, content_type, language=None, prompt=None):
        self.calls.append({
            "size": len(data),
            "filename": filename,
            "content_type": content_type,
            "language": language,
        })
        if self.error is not None:
            raise self.error
        return {"text": self.text, "language": language or "en"}

    async def aclose(self):
        self.closed = True


class FakeElevenLabs:
    def __init__(self, error=None):
        self.error = error
        self.requests = []
        self.closed = False

    async def synthesize(self, text, voice_id=None, model_id=None, voice_settings=None):
        self.requests.append({"text": text, "voice_id": voice_id, "model_id": model_id})
        if self.error is not None:
            raise self.error
        return {
            "audio_url": "/downloads/aikira_response_1.mp3",
            "voice_id": voice_id or "voice_1",
            "model_id": model_id or "eleven_multilingual_v2",
        }

    async def list_voices(self):
        if self.error is not None:
            raise self.error
        return [{"name": "Aikira", "voice_id": "voice_1"}, {"name": "Rachel", "voice_id": "voice_2"}]

    async def aclose(self):
        self.closed = True


@pytest.fixture
def config(tmp_path):
    return ServerConfig(
        openai_api_key="test-openai",
        eleven_labs_api_key="test-eleven",
        download_dir=tmp_path / "downloads",
    )


@pytest.fixture
def whisper():
    return FakeWhisper()


@pytest.fixture
def elevenlabs():
    return FakeElevenLabs()


@pytest.fixture
def client(config, whisper, elevenlabs):
    app = create_app(
        config,
        engine=ScoringEngine(DeterministicStrategy()),
        whisper=whisper,
        elevenlabs=elevenlabs,
    )
    return TestClient(app)


@pytest.fixture(autouse=True)
def cleanup():
    yield
    event_store.clear()


# --- Proposal API ---

def test_evaluate_proposal(client):
    response = client.post(
        "/api/proposal/evaluate",
        json={"proposal": "Implement a transparent and fair voting mechanism"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    result = body["result"]
    assert result["approved"] is True
    assert result["highConsensus"] is True
    assert result["scores"]["fairness"] == pytest.approx(0.90)
    assert result["scores"]["total"] == pytest.approx(0.8425)
    assert result["response"].startswith("After constitutional analysis")
    assert result["timestamp"].endswith("Z")


def test_evaluate_emits_event(client):
    client.post("/api/proposal/evaluate", json={"proposal": "Protect user data"})

    events = event_store.query(event_type="proposal.evaluated")
    assert len(events) == 1
    assert events[0]["component"] == "api_server"
    assert events[0]["run_id"].startswith("req_")


@pytest.mark.parametrize("body", [{}, {"proposal": ""}, {"proposal": "   "}, {"proposal": 42}])
def test_evaluate_requires_text(client, body):
    response = client.post("/api/proposal/evaluate", json=body)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Proposal text is required"}


# --- Speech API: transcription ---

def test_transcribe(client, whisper):
    response = client.post(
        "/api/speech/transcribe",
        files={"audio": ("recording.webm", b"x" * 2048, "audio/webm;codecs=opus")},
        data={"language": "en"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "text": "Implement a transparent and fair voting mechanism",
        "language": "en",
    }
    assert whisper.calls == [{
        "size": 2048,
        "filename": "recording.webm",
        "content_type": "audio/webm",
        "language": "en",
    }]


def test_transcribe_without_file(client):
    response = client.post("/api/speech/transcribe", data={"language": "en"})

    assert response.status_code == 400
    assert response.json()["error"] == "No audio file provided"


def test_transcribe_rejects_non_audio(client, whisper):
    response = client.post(
        "/api/speech/transcribe",
        files={"audio": ("notes.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid file type. Only audio files are allowed."
    assert whisper.calls == []


def test_transcribe_rejects_empty_file(client):
    response = client.post(
        "/api/speech/transcribe",
        files={"audio": ("recording.webm", b"", "audio/webm")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Audio file is empty"


def test_transcribe_without_api_key(config, elevenlabs):
    app = create_app(
        config,
        whisper=FakeWhisper(error=ProviderNotConfigured("OpenAI", "OPENAI_API_KEY")),
        elevenlabs=elevenlabs,
    )
    response = TestClient(app).post(
        "/api/speech/transcribe",
        files={"audio": ("recording.webm", b"x" * 2048, "audio/webm")},
    )

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["category"] == ProviderErrorCategory.MISCONFIGURED
    assert "API keys not configured" in body["error"]

    provider_events = event_store.query(event_type="provider.event")
    assert provider_events[0]["operation"] == "transcribe"
    assert provider_events[0]["category"] == ProviderErrorCategory.MISCONFIGURED


# --- Speech API: generation ---

def test_generate_speech(client, elevenlabs):
    response = client.post("/api/speech/generate", json={"text": "Hello", "voice_id": "voice_2"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "audio_url": "/downloads/aikira_response_1.mp3",
        "voice_id": "voice_2",
        "model_id": "eleven_multilingual_v2",
    }
    assert elevenlabs.requests[0]["text"] == "Hello"


@pytest.mark.parametrize("body", [{}, {"text": ""}, {"text": "  "}])
def test_generate_requires_text(client, body):
    response = client.post("/api/speech/generate", json=body)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Text content is required"}


def test_generate_rate_limited(config, whisper):
    app = create_app(
        config,
        whisper=whisper,
        elevenlabs=FakeElevenLabs(error=ProviderError("ElevenLabs API error: 429", "elevenlabs", status=429)),
    )
    response = TestClient(app).post("/api/speech/generate", json={"text": "Hello"})

    assert response.status_code == 500
    assert response.json()["category"] == ProviderErrorCategory.RATE_LIMITED


def test_list_voices(client):
    response = client.get("/api/speech/voices")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "voices": [{"name": "Aikira", "id": "voice_1"}, {"name": "Rachel", "id": "voice_2"}],
    }


# --- System API ---

def test_system_status(client):
    response = client.get("/api/system/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "online"
    assert body["version"] == "1.0.0"
    assert body["voice_services"] == "Available"
    assert body["transcription_services"] == "Available"


def test_system_status_without_keys(tmp_path, whisper, elevenlabs):
    app = create_app(ServerConfig(download_dir=tmp_path), whisper=whisper, elevenlabs=elevenlabs)
    body = TestClient(app).get("/api/system/status").json()

    assert body["voice_services"] == "Unavailable"
    assert body["transcription_services"] == "Unavailable"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "component": "proposal_api"}


# --- Generated audio ---

def test_downloads_served(client, config):
    (config.download_dir / "aikira_response_1.mp3").write_bytes(b"\xff\xfb" * 10)

    response = client.get("/downloads/aikira_response_1.mp3")

    assert response.status_code == 200
    assert response.content == b"\xff\xfb" * 10


def test_startup_prunes_old_audio_and_shutdown_closes_providers(config, whisper, elevenlabs):
    app = create_app(config, whisper=whisper, elevenlabs=elevenlabs)
    old = config.download_dir / "aikira_response_old.mp3"
    fresh = config.download_dir / "aikira_response_new.mp3"
    old.write_bytes(b"old")
    fresh.write_bytes(b"new")
    two_hours_ago = time.time() - 7200
    os.utime(old, (two_hours_ago, two_hours_ago))

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert not old.exists()
        assert fresh.exists()

    assert whisper.closed
    assert elevenlabs.closed


def test_failing_pruner_does_not_block_shutdown(config, whisper, elevenlabs, monkeypatch):
    def prune(download_dir, max_age_s, now=None):
        raise FileNotFoundError("file vanished between iterdir and stat")

    monkeypatch.setattr(server, "prune_downloads", prune)
    app = create_app(config, whisper=whisper, elevenlabs=elevenlabs)

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200

    assert whisper.closed
    assert elevenlabs.closed


@pytest.mark.asyncio
async def test_periodic_pruning_survives_errors(config, monkeypatch):
    calls = []

    def prune(download_dir, max_age_s, now=None):
        calls.append(max_age_s)
        if len(calls) == 1:
            raise PermissionError("locked")
        return 0

    async def sleep(seconds):
        if len(calls) == 3:
            raise asyncio.CancelledError()

    monkeypatch.setattr(server, "prune_downloads", prune)

    with pytest.raises(asyncio.CancelledError):
        await _prune_periodically(config, sleep=sleep)

    assert calls == [config.download_max_age_s] * 3
