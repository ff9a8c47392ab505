"""
Pytest fixtures for live transcription tests.

FakeProviderServer stands in for websockets.connect: every call hands out a
FakeProviderSocket that greets with the provider's handshake ack and answers
the stream-end message the way the provider does.
"""

import asyncio
import base64
import dataclasses
import json

import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from stt_live.config import TranscriptionConfig
from stt_live.vad_gate import VoiceActivityGate

_CLOSE = object()
_DROP = object()

GREETINGS = {
    "assembly": {"type": "Begin", "id": "fake-session", "expires_at": 0},
    "gemini": {"setupComplete": {}},
}

STREAM_END_REPLIES = {
    "assembly": ([{"type": "Termination", "audio_duration_seconds": 1, "session_duration_seconds": 1}], True),
    "gemini": ([{"serverContent": {"turnComplete": True}}], False),
}


class FakeProviderSocket:
    """In-memory provider socket with the websockets client surface used by the client."""

    def __init__(self, provider="assembly", greet=True, greeting=None, ack_stream_end=True):
        self.provider = provider
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.audio = []
        self.control = []
        self.closed = False
        self.close_code = None
        self.ack_stream_end = ack_stream_end
        if greet:
            self.push(greeting or GREETINGS[provider])

    def push(self, message):
        """Queue one provider message for the client."""
        self.incoming.put_nowait(message if isinstance(message, (str, bytes)) else json.dumps(message))

    def drop(self):
        """Simulate an abnormal network close."""
        self.incoming.put_nowait(_DROP)

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        if isinstance(data, bytes):
            self.audio.append(data)
            return

        message = json.loads(data)
        audio = message.get("realtimeInput", {}).get("audio")
        if audio:
            self.audio.append(base64.b64decode(audio["data"]))
            return

        self.control.append(message)
        is_stream_end = message.get("type") == "Terminate" or message.get("realtimeInput", {}).get("audioStreamEnd")
        if is_stream_end and self.ack_stream_end:
            replies, close_after = STREAM_END_REPLIES[self.provider]
            for reply in replies:
                self.push(reply)
            if close_after:
                self.incoming.put_nowait(_CLOSE)

    async def recv(self):
        item = await self.incoming.get()
        if item is _CLOSE:
            raise ConnectionClosedOK(None, None)
        if item is _DROP:
            raise ConnectionClosedError(None, None)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self.recv()
        except ConnectionClosedOK:
            raise StopAsyncIteration

    async def close(self, code=1000, reason=""):
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.incoming.put_nowait(_CLOSE)


class FakeProviderServer:
    """Awaitable connect factory recording every connection attempt."""

    def __init__(self, provider="assembly", **socket_options):
        self.provider = provider
        self.socket_options = socket_options
        self.sockets = []
        self.calls = []
        self.refuse = False

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.refuse:
            raise OSError("connection refused")
        sock = FakeProviderSocket(self.provider, **self.socket_options)
        self.sockets.append(sock)
        return sock

    @property
    def latest(self) -> FakeProviderSocket:
        return self.sockets[-1]


class AlwaysSpeechClassifier:
    """Classifier reporting speech for any non-silent frame."""

    def speech_ratio(self, audio_data: bytes) -> float:
        return 1.0 if any(audio_data) else 0.0


def build_pcm(duration_ms: int = 60, sample_rate: int = 16000, amplitude: int = 10000, frequency: float = 440.0) -> bytes:
    """Sine wave PCM16 mono; amplitude 0 gives digital silence."""
    samples = int(sample_rate * duration_ms / 1000)
    t = np.arange(samples) / sample_rate
    wave = amplitude * np.sin(2 * np.pi * frequency * t)
    return wave.astype("<i2").tobytes()


async def wait_for_condition(predicate, timeout: float = 1.0, interval: float = 0.01):
    """Poll until predicate() is truthy; fail the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def config():
    """Enabled assembly config with fast timers; silence warnings off."""
    return TranscriptionConfig(
        provider="assembly",
        api_key="test-key",
        heartbeat_interval_ms=50,
        silence_notify_ms=0,
        connect_timeout_s=1.0,
        stop_flush_timeout_s=0.5,
        reconnect_backoff_ms=10,
        max_reconnect_backoff_ms=40,
        max_reconnect_attempts=3,
    )


@pytest.fixture
def gemini_config(config):
    return dataclasses.replace(config, provider="gemini")


@pytest.fixture
def provider_server():
    return FakeProviderServer("assembly")


@pytest.fixture
def gemini_server():
    return FakeProviderServer("gemini")


@pytest.fixture
def gate_factory():
    """Gate whose classifier treats any loud frame as speech."""
    return lambda session_config: VoiceActivityGate(session_config, classifier=AlwaysSpeechClassifier())


@pytest.fixture
def speech_pcm():
    return build_pcm(60)


@pytest.fixture
def silent_pcm():
    return build_pcm(60, amplitude=0)


@pytest.fixture
def wait_for():
    return wait_for_condition


@pytest.fixture
def speech_classifier():
    return AlwaysSpeechClassifier()


@pytest.fixture
def pcm_builder():
    return build_pcm
