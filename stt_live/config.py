"""
Configuration for the live transcription streaming service.

Loads environment variables with TRANSCRIPTION_*, ASSEMBLYAI_* and GEMINI_*
prefixes to drive provider selection, chunk pacing, voice activity gating,
heartbeat/silence policy and reconnection.

Reference: https://www.assemblyai.com/docs/speech-to-text/universal-streaming
"""

import os
import re
import math
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

from .errors import InvalidOverrideError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = {"assembly", "gemini"}
SUPPORTED_SAMPLE_RATES = {8000, 16000, 32000, 48000}
VAD_FRAME_DURATIONS_MS = (10, 20, 30)

# Fields a session may adjust through streaming_config. Credentials, provider
# selection, endpoints and service-level switches stay process-wide.
SESSION_OVERRIDE_FIELDS = frozenset({
    "sample_rate",
    "target_chunk_ms",
    "max_pending_chunk_ms",
    "silence_filler_interval_ms",
    "heartbeat_interval_ms",
    "silence_notify_ms",
    "silence_suppress_ms",
    "silence_energy_threshold",
    "connect_timeout_s",
    "stop_flush_timeout_s",
    "reconnect_backoff_ms",
    "max_reconnect_backoff_ms",
    "max_reconnect_attempts",
})

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def _to_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def _to_int(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer value '%s' - using default %s", value, default)
        return default


def _to_float(value: Optional[str], default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid float value '%s' - using default %s", value, default)
        return default


def _clamp(value, minimum, maximum):
    return min(maximum, max(minimum, value))


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _coerce_override(key: str, value: Any, current: Any) -> Any:
    """
    Coerce a per-session override to the type of the value it replaces.

    Raises:
        InvalidOverrideError: If the value cannot represent that type
    """
    try:
        if isinstance(current, bool):
            if isinstance(value, bool):
                return value
            normalized = str(value).strip().lower()
            if normalized in _TRUE_VALUES:
                return True
            if normalized in _FALSE_VALUES:
                return False
            raise ValueError(normalized)

        if isinstance(value, bool):
            raise TypeError("boolean given for a numeric field")

        number = float(value)
        if not math.isfinite(number):
            raise ValueError(number)
        if isinstance(current, int):
            if not number.is_integer():
                raise ValueError(number)
            return int(number)
        return number
    except (TypeError, ValueError):
        raise InvalidOverrideError(f"Invalid value for streaming override '{key}': {value!r}") from None


@dataclass
class VADSettings:
    """Voice activity gate parameters."""

    enabled: bool = True
    frame_ms: int = 30                  # webrtcvad frame: 10, 20 or 30 ms
    aggressiveness: int = 2             # webrtcvad mode 0-3
    min_speech_ratio: float = 0.2       # Share of speech frames to call a chunk speech
    speech_hold_ms: int = 300           # Hangover after the last speech frame
    silence_hold_ms: int = 200          # Pre-roll forwarded ahead of a speech onset

    def __post_init__(self):
        if self.frame_ms not in VAD_FRAME_DURATIONS_MS:
            logger.warning("VAD frame_ms %s not in %s. Using 30ms.", self.frame_ms, VAD_FRAME_DURATIONS_MS)
            self.frame_ms = 30
        self.aggressiveness = int(_clamp(self.aggressiveness, 0, 3))
        self.min_speech_ratio = _clamp(self.min_speech_ratio, 0.01, 1.0)
        self.speech_hold_ms = max(0, self.speech_hold_ms)
        self.silence_hold_ms = max(0, self.silence_hold_ms)


@dataclass
class AssemblyParams:
    """AssemblyAI universal-streaming turn detection parameters."""

    format_turns: bool = True
    max_turn_silence_ms: int = 1500
    min_end_of_turn_silence_ms: int = 600
    end_of_turn_confidence_threshold: float = 0.55

    def __post_init__(self):
        self.max_turn_silence_ms = int(_clamp(self.max_turn_silence_ms, 250, 6000))
        self.min_end_of_turn_silence_ms = int(_clamp(self.min_end_of_turn_silence_ms, 200, 4000))
        self.end_of_turn_confidence_threshold = _clamp(self.end_of_turn_confidence_threshold, 0.0, 1.0)


@dataclass
class TranscriptionConfig:
    """
    Unified configuration for the live transcription service.

    Durations are milliseconds unless the field name ends in _s.
    """

    # Provider selection and credentials
    provider: str = "assembly"
    api_key: Optional[str] = None
    enabled: Optional[bool] = None      # Defaults to bool(api_key)
    assembly_url: str = "wss://streaming.assemblyai.com/v3/ws"
    gemini_url: str = (
        "wss://generativelanguage.googleapis.com/ws/"
        "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
    )
    gemini_model: str = "gemini-2.0-flash-live-001"

    # Audio and pacing
    sample_rate: int = 16000            # 16-bit mono PCM
    target_chunk_ms: int = 60
    max_pending_chunk_ms: int = 45
    silence_filler_interval_ms: int = 240

    # Heartbeat and silence policy
    heartbeat_interval_ms: int = 250
    silence_notify_ms: int = 600
    silence_suppress_ms: int = 900
    silence_energy_threshold: float = 350.0

    # Connection and reconnection
    connect_timeout_s: float = 10.0
    stop_flush_timeout_s: float = 2.0
    reconnect_backoff_ms: int = 750
    max_reconnect_backoff_ms: int = 8000
    max_reconnect_attempts: int = 6

    vad: VADSettings = field(default_factory=VADSettings)
    assembly: AssemblyParams = field(default_factory=AssemblyParams)

    # Verbosity control (for debugging)
    log_audio_chunks: bool = False
    log_provider_messages: bool = False

    # Publish session events to Redis Streams
    publish_events: bool = False

    @staticmethod
    def from_env() -> "TranscriptionConfig":
        """
        Load configuration from environment variables.

        Returns:
            TranscriptionConfig: Configuration instance loaded from environment
        """
        provider = (os.getenv("TRANSCRIPTION_PROVIDER") or "assembly").strip().lower()
        api_key = os.getenv("TRANSCRIPTION_API_KEY")
        if not api_key:
            fallback = "GEMINI_API_KEY" if provider == "gemini" else "ASSEMBLYAI_API_KEY"
            api_key = os.getenv(fallback)
        api_key = api_key.strip() if api_key and api_key.strip() else None

        enabled_env = os.getenv("TRANSCRIPTION_ENABLED")

        return TranscriptionConfig(
            provider=provider,
            api_key=api_key,
            enabled=_to_bool(enabled_env, bool(api_key)) if enabled_env else None,
            assembly_url=os.getenv("ASSEMBLYAI_STREAMING_URL", "wss://streaming.assemblyai.com/v3/ws"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash-live-001"),

            # Audio and pacing
            sample_rate=_to_int(os.getenv("TRANSCRIPTION_SAMPLE_RATE"), 16000),
            target_chunk_ms=_to_int(os.getenv("TRANSCRIPTION_TARGET_PCM_CHUNK_MS"), 60),
            max_pending_chunk_ms=_to_int(os.getenv("TRANSCRIPTION_MAX_PENDING_CHUNK_MS"), 45),
            silence_filler_interval_ms=_to_int(os.getenv("TRANSCRIPTION_SILENCE_FILLER_INTERVAL_MS"), 240),

            # Heartbeat and silence
            heartbeat_interval_ms=_to_int(os.getenv("TRANSCRIPTION_HEARTBEAT_INTERVAL_MS"), 250),
            silence_notify_ms=_to_int(os.getenv("TRANSCRIPTION_SILENCE_NOTIFY_MS"), 600),
            silence_suppress_ms=_to_int(os.getenv("TRANSCRIPTION_SILENCE_SUPPRESS_MS"), 900),
            silence_energy_threshold=_to_float(os.getenv("TRANSCRIPTION_SILENCE_ENERGY_THRESHOLD"), 350.0),

            # Connection
            connect_timeout_s=_to_float(os.getenv("TRANSCRIPTION_CONNECT_TIMEOUT_S"), 10.0),
            stop_flush_timeout_s=_to_float(os.getenv("TRANSCRIPTION_STOP_FLUSH_TIMEOUT_S"), 2.0),
            reconnect_backoff_ms=_to_int(os.getenv("TRANSCRIPTION_RECONNECT_BACKOFF_MS"), 750),
            max_reconnect_backoff_ms=_to_int(os.getenv("TRANSCRIPTION_RECONNECT_MAX_BACKOFF_MS"), 8000),
            max_reconnect_attempts=_to_int(os.getenv("TRANSCRIPTION_RECONNECT_MAX_ATTEMPTS"), 6),

            vad=VADSettings(
                enabled=_to_bool(os.getenv("TRANSCRIPTION_VAD_ENABLED"), True),
                frame_ms=_to_int(os.getenv("TRANSCRIPTION_VAD_FRAME_MS"), 30),
                aggressiveness=_to_int(os.getenv("TRANSCRIPTION_VAD_AGGRESSIVENESS"), 2),
                min_speech_ratio=_to_float(os.getenv("TRANSCRIPTION_VAD_MIN_SPEECH_RATIO"), 0.2),
                speech_hold_ms=_to_int(os.getenv("TRANSCRIPTION_VAD_SPEECH_HOLD_MS"), 300),
                silence_hold_ms=_to_int(os.getenv("TRANSCRIPTION_VAD_SILENCE_HOLD_MS"), 200),
            ),
            assembly=AssemblyParams(
                format_turns=_to_bool(os.getenv("ASSEMBLYAI_FORMAT_TURNS"), True),
                max_turn_silence_ms=_to_int(os.getenv("ASSEMBLYAI_MAX_TURN_SILENCE_MS"), 1500),
                min_end_of_turn_silence_ms=_to_int(os.getenv("ASSEMBLYAI_MIN_END_OF_TURN_SILENCE_MS"), 600),
                end_of_turn_confidence_threshold=_to_float(os.getenv("ASSEMBLYAI_EOT_CONFIDENCE_THRESHOLD"), 0.55),
            ),

            # Verbosity
            log_audio_chunks=_to_bool(os.getenv("TRANSCRIPTION_LOG_AUDIO_CHUNKS"), False),
            log_provider_messages=_to_bool(os.getenv("TRANSCRIPTION_LOG_PROVIDER_MESSAGES"), False),
            publish_events=_to_bool(os.getenv("TRANSCRIPTION_PUBLISH_EVENTS"), False),
        )

    def __post_init__(self):
        """
        Validate and normalize configuration.
        """
        self.provider = (self.provider or "assembly").strip().lower()
        if self.enabled is None:
            self.enabled = bool(self.api_key)

        if self.sample_rate not in SUPPORTED_SAMPLE_RATES:
            logger.warning("Sample rate %s not supported. Using 16000Hz.", self.sample_rate)
            self.sample_rate = 16000

        self.target_chunk_ms = int(_clamp(self.target_chunk_ms, 20, 160))
        self.max_pending_chunk_ms = int(_clamp(self.max_pending_chunk_ms, 20, 200))
        self.silence_filler_interval_ms = int(_clamp(self.silence_filler_interval_ms, 80, 2000))

        self.heartbeat_interval_ms = max(50, self.heartbeat_interval_ms)
        self.silence_notify_ms = max(0, self.silence_notify_ms)
        self.silence_suppress_ms = max(0, self.silence_suppress_ms)
        self.silence_energy_threshold = max(0.0, self.silence_energy_threshold)

        if self.connect_timeout_s <= 0:
            logger.warning("connect_timeout_s must be positive (%s). Using 10s.", self.connect_timeout_s)
            self.connect_timeout_s = 10.0
        if self.stop_flush_timeout_s <= 0:
            logger.warning("stop_flush_timeout_s must be positive (%s). Using 2s.", self.stop_flush_timeout_s)
            self.stop_flush_timeout_s = 2.0

        self.reconnect_backoff_ms = max(0, self.reconnect_backoff_ms)
        self.max_reconnect_backoff_ms = max(self.reconnect_backoff_ms, self.max_reconnect_backoff_ms)
        self.max_reconnect_attempts = max(0, self.max_reconnect_attempts)

        if isinstance(self.vad, Mapping):
            self.vad = VADSettings(**self.vad)
        if isinstance(self.assembly, Mapping):
            self.assembly = AssemblyParams(**self.assembly)

    @property
    def is_supported_provider(self) -> bool:
        return self.provider in SUPPORTED_PROVIDERS

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "TranscriptionConfig":
        """
        Return a copy with per-session streaming overrides applied.

        Keys may be snake_case or camelCase; `vad` and `assembly` accept
        nested mappings. Only SESSION_OVERRIDE_FIELDS and the nested VAD and
        AssemblyAI turn parameters are adjustable; other keys are logged and
        ignored.

        Raises:
            InvalidOverrideError: If overrides is not a mapping or a value has the wrong type
        """
        if not overrides:
            return self
        if not isinstance(overrides, Mapping):
            raise InvalidOverrideError(f"streaming_config must be an object, got {type(overrides).__name__}")

        changes: Dict[str, Any] = {}

        for raw_key, value in overrides.items():
            key = _snake_case(str(raw_key))
            if key == "vad" and isinstance(value, Mapping):
                changes["vad"] = self._replace_nested(self.vad, value)
            elif key in ("assembly", "assembly_params") and isinstance(value, Mapping):
                changes["assembly"] = self._replace_nested(self.assembly, value)
            elif key in SESSION_OVERRIDE_FIELDS:
                changes[key] = _coerce_override(raw_key, value, getattr(self, key))
            else:
                logger.warning("Ignoring streaming override '%s' (not adjustable per session)", raw_key)

        return replace(self, **changes)

    @staticmethod
    def _replace_nested(current, overrides: Mapping[str, Any]):
        known = {f.name for f in fields(current)}
        changes = {}
        for raw_key, value in overrides.items():
            key = _snake_case(str(raw_key))
            if key in known:
                changes[key] = _coerce_override(raw_key, value, getattr(current, key))
            else:
                logger.warning("Ignoring unknown streaming override '%s'", raw_key)
        return replace(current, **changes)

    def describe(self) -> Dict[str, Any]:
        """Loggable summary without credentials."""
        return {
            "provider": self.provider,
            "enabled": self.enabled,
            "has_api_key": bool(self.api_key),
            "sample_rate": self.sample_rate,
            "target_chunk_ms": self.target_chunk_ms,
            "vad_enabled": self.vad.enabled,
            "vad_aggressiveness": self.vad.aggressiveness,
            "max_reconnect_attempts": self.max_reconnect_attempts,
        }
