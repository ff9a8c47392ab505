"""
Live Transcription Microservice (AssemblyAI / Gemini Live)

This package streams captured PCM audio to a real-time speech-to-text
provider over a persistent WebSocket and reconciles the provider's partial
and final results into one coherent running transcript per session.

Architecture:
    - FastAPI application with REST session control and a WebSocket stream
    - PcmFramer pacing and WebRTC VAD gating with synthetic silence fillers
    - Provider protocols normalized once into TurnEvent | LegacyText
    - Turn aggregation with overlap merge and rollback suppression
    - Reconnect with exponential backoff and a hard attempt ceiling
    - Optional Redis Streams publishing of session events

Main Entry Point:
    stt_live.app:app

Components:
    TranscriptionSessionRegistry: Session lifecycle, routing and heartbeat policy
    ProviderStreamClient: One provider socket per session
    LiveTranscriptionSession: Turn aggregator
    VoiceActivityGate: Speech/silence gate with hold timers
    TranscriptionConfig: Service configuration from environment variables
"""

from .config import TranscriptionConfig, VADSettings, AssemblyParams
from .errors import (
    TranscriptionError,
    ConfigError,
    ServiceDisabledError,
    ProviderUnavailableError,
    InvalidOverrideError,
    ConnectError,
    TransientSendFailure,
    ProtocolInconsistency,
    FlushTimeout,
)
from .models import AudioChunk, LegacyText, Session, TranscriptUpdate, Turn, TurnEvent
from .event_channel import SessionEventChannel
from .live_session import LiveTranscriptionSession
from .stream_client import ProviderStreamClient
from .vad_gate import VoiceActivityGate
from .session_registry import TranscriptionSessionRegistry
from .transcript_text import merge_text, resolve_text, is_rollback

__all__ = [
    "TranscriptionConfig",
    "VADSettings",
    "AssemblyParams",
    "TranscriptionError",
    "ConfigError",
    "ServiceDisabledError",
    "ProviderUnavailableError",
    "InvalidOverrideError",
    "ConnectError",
    "TransientSendFailure",
    "ProtocolInconsistency",
    "FlushTimeout",
    "AudioChunk",
    "LegacyText",
    "Session",
    "TranscriptUpdate",
    "Turn",
    "TurnEvent",
    "SessionEventChannel",
    "LiveTranscriptionSession",
    "ProviderStreamClient",
    "VoiceActivityGate",
    "TranscriptionSessionRegistry",
    "merge_text",
    "resolve_text",
    "is_rollback",
]
