"""
Live Transcription Service Integration Tests

Exercises the REST session endpoints, the WebSocket stream, /health and
/metrics against a registry wired to the fake provider server.

Run with: pytest stt_live/tests/test_service.py -v
"""

import base64
import time

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from stt_live.app import create_app
from stt_live.config import TranscriptionConfig
from stt_live.session_registry import TranscriptionSessionRegistry


@pytest.fixture
def registry(config, provider_server, gate_factory):
    return TranscriptionSessionRegistry(config, connect_factory=provider_server, gate_factory=gate_factory)


@pytest.fixture
def client(registry):
    """FastAPI test client fixture (runs the lifespan)"""
    with TestClient(create_app(registry=registry)) as test_client:
        yield test_client


@pytest.fixture
def disabled_client():
    registry = TranscriptionSessionRegistry(TranscriptionConfig())
    with TestClient(create_app(registry=registry)) as test_client:
        yield test_client


def wait_until(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while not predicate():
        if time.time() > deadline:
            pytest.fail("Condition not met before timeout")
        time.sleep(0.01)


def session_state(client, session_id):
    for session in client.get("/api/v1/sessions").json()["sessions"]:
        if session["session_id"] == session_id:
            return session["state"]
    return None


def receive_until(websocket, message_type, limit=100):
    """Read messages until one of `message_type` arrives (heartbeats interleave)."""
    for _ in range(limit):
        message = websocket.receive_json()
        if message["type"] == message_type:
            return message
    pytest.fail(f"No '{message_type}' message received")


class TestHealthEndpoint:
    """Test health check endpoint"""

    def test_health_endpoint(self, client):
        """Test health endpoint returns expected fields"""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "stt_live"
        assert data["provider"] == "assembly"
        assert data["active_sessions"] == 0
        assert data["redis_connected"] is False
        assert data["uptime_seconds"] >= 0
        assert "sessions_started" in data["registry_metrics"]

    def test_health_when_disabled(self, disabled_client):
        assert disabled_client.get("/health").json()["status"] == "disabled"

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "stt_live_" in response.text


class TestSessionEndpoints:
    """REST session control"""

    def test_session_lifecycle(self, client, provider_server, speech_pcm):
        response = client.post("/api/v1/sessions", json={
            "session_id": "rest-1",
            "source_type": "system",
            "source_name": "Speakers",
        })
        assert response.status_code == 200
        assert response.json() == {"session_id": "rest-1"}

        wait_until(lambda: session_state(client, "rest-1") == "active")

        response = client.post("/api/v1/sessions/rest-1/chunks", json={
            "sequence": 0,
            "data": base64.b64encode(speech_pcm).decode(),
        })
        assert response.json() == {"accepted": True}
        assert provider_server.latest.audio == [speech_pcm]

        response = client.delete("/api/v1/sessions/rest-1")
        assert response.status_code == 200
        assert response.json() == {"status": "stopped", "session_id": "rest-1"}

        assert client.delete("/api/v1/sessions/rest-1").status_code == 404
        assert client.get("/api/v1/sessions").json() == {"sessions": []}

    def test_start_without_body(self, client):
        response = client.post("/api/v1/sessions")

        assert response.status_code == 200
        assert response.json()["session_id"]

    def test_duplicate_session(self, client):
        client.post("/api/v1/sessions", json={"session_id": "dup"})

        response = client.post("/api/v1/sessions", json={"session_id": "dup"})

        assert response.status_code == 409

    def test_invalid_source_type(self, client):
        response = client.post("/api/v1/sessions", json={"source_type": "camera"})

        assert response.status_code == 400

    def test_unsupported_provider(self):
        registry = TranscriptionSessionRegistry(TranscriptionConfig(provider="deepgram", api_key="k"))
        with TestClient(create_app(registry=registry)) as deepgram_client:
            response = deepgram_client.post("/api/v1/sessions", json={"source_type": "mic"})

        assert response.status_code == 400

    def test_invalid_streaming_override(self, client, registry):
        response = client.post("/api/v1/sessions", json={"streaming_config": {"targetChunkMs": "fast"}})

        assert response.status_code == 400
        assert "targetChunkMs" in response.json()["detail"]
        assert registry.sessions == {}

    def test_disabled_service(self, disabled_client):
        response = disabled_client.post("/api/v1/sessions", json={"source_type": "mic"})

        assert response.status_code == 503

    def test_chunk_for_unknown_session(self, client):
        response = client.post("/api/v1/sessions/missing/chunks", json={"sequence": 0, "data": ""})

        assert response.status_code == 404


class TestWebSocketEndpoint:
    """Streaming audio over the WebSocket endpoint"""

    def test_stream_and_stop(self, client, provider_server, speech_pcm):
        with client.websocket_connect("/api/v1/transcribe/stream?session_id=ws-1&source_name=Mic") as websocket:
            connected = websocket.receive_json()
            assert connected["type"] == "connected"
            assert connected["session_id"] == "ws-1"

            receive_until(websocket, "session-started")

            websocket.send_bytes(speech_pcm)
            websocket.send_json({"type": "ping"})
            assert receive_until(websocket, "pong")["session_id"] == "ws-1"

            # Provider sockets live on the app loop
            client.portal.call(provider_server.latest.push, {
                "type": "Turn",
                "turn_order": 0,
                "transcript": "Hello.",
                "end_of_turn": True,
                "turn_is_formatted": True,
            })
            update = receive_until(websocket, "session-update")
            assert update["text"] == "Hello."
            assert update["is_final"] is True

            websocket.send_json({"type": "stop"})
            stopped = receive_until(websocket, "session-stopped")
            assert stopped["reason"] == "stopped"

        assert provider_server.latest.audio == [speech_pcm]
        assert provider_server.latest.control == [{"type": "Terminate"}]

    def test_unknown_command(self, client):
        with client.websocket_connect("/api/v1/transcribe/stream?session_id=ws-2") as websocket:
            websocket.receive_json()
            websocket.send_text("not json")
            assert receive_until(websocket, "error")["error"] == "Invalid JSON command"

            websocket.send_json({"type": "rewind"})
            assert "rewind" in receive_until(websocket, "error")["error"]

            websocket.send_json({"type": "stop"})
            receive_until(websocket, "session-stopped")

    def test_client_disconnect_stops_session(self, client, registry):
        with client.websocket_connect("/api/v1/transcribe/stream?session_id=ws-3") as websocket:
            receive_until(websocket, "session-started")

        wait_until(lambda: "ws-3" not in registry.sessions)

    def test_rejected_when_disabled(self, disabled_client):
        with disabled_client.websocket_connect("/api/v1/transcribe/stream") as websocket:
            message = websocket.receive_json()
            assert message["type"] == "error"

            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()
            assert exc_info.value.code == 1008
