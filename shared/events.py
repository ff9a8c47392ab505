"""
Unified Event Schema for the live transcription service.

Defines the session lifecycle events emitted by the registry, in the standard
structure used for Redis Streams publishing.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Any
import time
import json
import uuid

@dataclass
class VoiceEvent:
    """
    Standard event model for all session lifecycle events.
    """
    event_type: str
    session_id: str
    payload: Dict[str, Any]
    source: str
    timestamp: float = field(default_factory=time.time)
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def to_client_dict(self) -> Dict[str, Any]:
        """Flat shape sent to WebSocket clients: {"type", "session_id", **payload}."""
        message = {"type": self.event_type, "session_id": self.session_id}
        message.update(self.payload)
        return message

    def to_redis_dict(self) -> Dict[str, str]:
        """
        Convert to Redis-compatible dictionary (all values must be strings/bytes).
        The payload and metadata are JSON serialized.
        """
        return {
            "event_type": self.event_type,
            "session_id": self.session_id,
            "source": self.source,
            "timestamp": str(self.timestamp),
            "correlation_id": self.correlation_id,
            "payload": json.dumps(self.payload),
            "metadata": json.dumps(self.metadata)
        }

    @classmethod
    def from_redis_dict(cls, data: Dict[Any, Any]) -> 'VoiceEvent':
        """Create VoiceEvent from Redis stream data."""
        # Redis may return bytes keys and values
        def field_value(name, default=None):
            val = data.get(name)
            if val is None:
                val = data.get(name.encode('utf-8'), default)
            return val.decode('utf-8') if isinstance(val, bytes) else val

        return cls(
            event_type=field_value("event_type"),
            session_id=field_value("session_id"),
            source=field_value("source"),
            timestamp=float(field_value("timestamp") or 0.0),
            correlation_id=field_value("correlation_id"),
            payload=json.loads(field_value("payload") or "{}"),
            metadata=json.loads(field_value("metadata") or "{}")
        )

    def validate_payload(self) -> None:
        """Validate payload schema for event types with required fields."""
        required = {
            EventTypes.SESSION_UPDATE: ["text", "is_final"],
            EventTypes.SESSION_WARNING: ["warning"],
            EventTypes.SESSION_ERROR: ["error"],
            EventTypes.SESSION_STOPPED: ["reason"],
        }

        fields = required.get(self.event_type)
        if fields:
            missing = [f for f in fields if f not in self.payload]
            if missing:
                raise ValueError(
                    f"Event {self.event_type} payload missing required fields: {missing}. "
                    f"Payload: {self.payload}"
                )

# Event Type Constants
class EventTypes:
    # Session lifecycle
    SESSION_STARTED = "session-started"
    SESSION_STOPPED = "session-stopped"

    # Transcript
    SESSION_UPDATE = "session-update"

    # Health
    SESSION_HEARTBEAT = "session-heartbeat"
    SESSION_WARNING = "session-warning"
    SESSION_ERROR = "session-error"

    ALL = (
        SESSION_STARTED,
        SESSION_UPDATE,
        SESSION_WARNING,
        SESSION_HEARTBEAT,
        SESSION_ERROR,
        SESSION_STOPPED,
    )


def session_stream_key(session_id: str) -> str:
    """Redis stream carrying one session's events."""
    return f"voice:stt:session:{session_id}"
