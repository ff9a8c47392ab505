"""
Data model for live transcription sessions.

Session, AudioChunk, Turn, the normalized provider events (TurnEvent and
LegacyText) and the TranscriptUpdate emitted by the live session.
"""

import base64
import binascii
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Union


class SourceType:
    MIC = "mic"
    SYSTEM = "system"

    ALL = (MIC, SYSTEM)


class SessionState:
    CONNECTING = "connecting"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"
    ERROR = "error"


class TurnEventType:
    TURN_UPDATE = "turn-update"
    TURN_FORMATTED = "turn-formatted"


@dataclass
class Session:
    """Registry-owned session record (runtime handles live in the registry)."""
    session_id: str
    source_name: str
    source_type: str
    provider: str
    platform: Optional[str] = None
    state: str = SessionState.CONNECTING
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AudioChunk:
    """
    One producer-assigned chunk of captured audio.

    `sequence` is monotonic per session by contract; the transport does not
    guarantee it and the client does not enforce it.
    """
    sequence: int
    data: bytes
    mime_type: str = "audio/pcm;rate=16000"
    capture_timestamp: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Union["AudioChunk", Dict[str, Any]]) -> "AudioChunk":
        """
        Build a chunk from a dict payload.

        Accepts camelCase (mimeType, captureTimestamp) or snake_case keys and
        raw bytes or base64 text for `data`.

        Raises:
            ValueError: If sequence or data is missing or undecodable
        """
        if isinstance(payload, cls):
            return payload

        if not isinstance(payload, dict):
            raise ValueError(f"Unsupported chunk payload: {type(payload).__name__}")

        sequence = payload.get("sequence")
        if sequence is None:
            raise ValueError("Audio chunk is missing 'sequence'")

        data = payload.get("data")
        if isinstance(data, str):
            try:
                data = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"Audio chunk data is not valid base64: {e}") from e
        elif isinstance(data, (bytearray, memoryview)):
            data = bytes(data)

        if not isinstance(data, bytes):
            raise ValueError("Audio chunk is missing 'data'")

        return cls(
            sequence=int(sequence),
            data=data,
            mime_type=payload.get("mime_type") or payload.get("mimeType") or "audio/pcm;rate=16000",
            capture_timestamp=payload.get("capture_timestamp", payload.get("captureTimestamp")),
        )


@dataclass
class Turn:
    """
    One turn slot: OPEN(partial) -> OPEN(refined) -> CLOSED(final).

    Once end_of_turn is set the slot is immutable.
    """
    turn_order: int
    transcript: Optional[str] = None
    utterance: Optional[str] = None
    formatted_transcript: Optional[str] = None
    is_formatted: bool = False
    end_of_turn: bool = False
    end_of_turn_confidence: float = 0.0

    @property
    def text(self) -> str:
        """Highest-priority available field: formatted > utterance > transcript."""
        return self.formatted_transcript or self.utterance or self.transcript or ""

    @property
    def closed(self) -> bool:
        return self.end_of_turn

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TurnEvent:
    """Normalized turn event produced by a provider protocol."""
    turn_order: int
    transcript: Optional[str] = None
    utterance: Optional[str] = None
    formatted_transcript: Optional[str] = None
    is_formatted: bool = False
    end_of_turn: bool = False
    end_of_turn_confidence: float = 0.0
    event_type: str = TurnEventType.TURN_UPDATE
    provider: Optional[str] = None
    # Advisory only: elapsed ms since the most recent local send
    latency_ms: Optional[float] = None


@dataclass
class LegacyText:
    """
    Normalized whole-text (non-turn) provider event.

    `is_delta` marks an incremental fragment to append; otherwise `text` is
    the provider's authoritative text for the in-flight turn. `text` may be
    None for a bare end-of-turn marker.
    """
    text: Optional[str] = None
    is_final: bool = False
    is_delta: bool = False
    provider: Optional[str] = None
    latency_ms: Optional[float] = None


# Tagged variant produced once at the protocol boundary
ProviderEvent = Union[TurnEvent, LegacyText]


@dataclass
class TranscriptUpdate:
    """Canonical update emitted by the live session for one turn event."""
    session_id: str
    text: str
    is_final: bool
    turn: Turn
    delta: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "session_id": self.session_id,
            "text": self.text,
            "is_final": self.is_final,
            "turn_order": self.turn.turn_order,
        }
        if self.delta is not None:
            payload["delta"] = self.delta
        return payload
