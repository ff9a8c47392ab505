"""
Provider wire protocols for live transcription.

Each protocol knows how to address and authenticate the provider socket,
which handshake to perform, how to encode audio and how to normalize raw
provider messages into the TurnEvent | LegacyText variant.

Supported providers:
    assembly: AssemblyAI universal streaming (v3) - native turn events
    gemini:   Gemini Live API input transcription - whole-text fragments

References:
    https://www.assemblyai.com/docs/speech-to-text/universal-streaming
    https://ai.google.dev/gemini-api/docs/live-guide
"""

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode

from .config import TranscriptionConfig
from .errors import ProtocolInconsistency, ProviderUnavailableError
from .models import LegacyText, ProviderEvent, TurnEvent, TurnEventType

logger = logging.getLogger(__name__)


@dataclass
class ProtocolMessage:
    """Result of parsing one raw provider message."""
    events: List[ProviderEvent] = field(default_factory=list)
    ready: bool = False
    terminated: bool = False
    go_away: bool = False
    error: Optional[str] = None


class ProviderProtocol:
    """Base class for provider wire protocols."""

    name = "base"
    # Whether the provider confirms a graceful stream end with a message
    acknowledges_stream_end = False

    def __init__(self, config: TranscriptionConfig):
        self.config = config

    def build_url(self) -> str:
        raise NotImplementedError

    def build_headers(self) -> Dict[str, str]:
        return {}

    def handshake_messages(self) -> List[str]:
        return []

    def encode_audio(self, pcm: bytes) -> Union[bytes, str]:
        raise NotImplementedError

    def stream_end_message(self) -> Optional[str]:
        return None

    def parse(self, message: Dict[str, Any]) -> ProtocolMessage:
        raise NotImplementedError

    @staticmethod
    def decode(raw: Union[str, bytes]) -> Dict[str, Any]:
        """
        Decode one raw socket frame into a dict.

        Raises:
            ProtocolInconsistency: If the frame is not a JSON object
        """
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            message = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolInconsistency(f"Malformed provider payload: {e}") from e
        if not isinstance(message, dict):
            raise ProtocolInconsistency(f"Unexpected provider payload type: {type(message).__name__}")
        return message


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


class AssemblyTurnProtocol(ProviderProtocol):
    """
    AssemblyAI universal streaming.

    Audio is sent as binary PCM16 frames. Messages: Begin (handshake ack),
    Turn (partial/formatted turn updates), Termination (stream end ack).
    """

    name = "assembly"
    acknowledges_stream_end = True

    def build_url(self) -> str:
        params = self.config.assembly
        query = {
            "sample_rate": self.config.sample_rate,
            "encoding": "pcm_s16le",
            "format_turns": str(params.format_turns).lower(),
            "end_of_turn_confidence_threshold": params.end_of_turn_confidence_threshold,
            "min_end_of_turn_silence_when_confident": params.min_end_of_turn_silence_ms,
            "max_turn_silence": params.max_turn_silence_ms,
        }
        return f"{self.config.assembly_url}?{urlencode(query)}"

    def build_headers(self) -> Dict[str, str]:
        return {"Authorization": self.config.api_key or ""}

    def encode_audio(self, pcm: bytes) -> bytes:
        return pcm

    def stream_end_message(self) -> Optional[str]:
        return json.dumps({"type": "Terminate"})

    def parse(self, message: Dict[str, Any]) -> ProtocolMessage:
        msg_type = message.get("type")

        if msg_type == "Begin":
            logger.info(f"AssemblyAI session began | id={message.get('id')} expires_at={message.get('expires_at')}")
            return ProtocolMessage(ready=True)

        if msg_type == "Turn":
            return ProtocolMessage(events=[self.normalize_turn(message)])

        if msg_type == "Termination":
            logger.info(
                f"AssemblyAI session terminated | audio={message.get('audio_duration_seconds')}s "
                f"session={message.get('session_duration_seconds')}s"
            )
            return ProtocolMessage(terminated=True)

        if msg_type == "Error" or "error" in message:
            return ProtocolMessage(error=str(message.get("error") or message.get("message") or message))

        logger.debug(f"Unknown AssemblyAI message type: {msg_type}")
        return ProtocolMessage()

    def normalize_turn(self, message: Dict[str, Any]) -> TurnEvent:
        """
        Map one Turn message onto a TurnEvent.

        Raises:
            ProtocolInconsistency: If turn_order is missing or not an integer
        """
        turn_order = message.get("turn_order")
        if isinstance(turn_order, bool) or not isinstance(turn_order, int):
            raise ProtocolInconsistency(f"Turn message without integer turn_order: {turn_order!r}")

        is_formatted = bool(message.get("turn_is_formatted"))
        transcript = _text_or_none(message.get("transcript"))
        confidence = message.get("end_of_turn_confidence")

        return TurnEvent(
            turn_order=turn_order,
            transcript=transcript,
            utterance=_text_or_none(message.get("utterance")),
            formatted_transcript=transcript if is_formatted else None,
            is_formatted=is_formatted,
            end_of_turn=bool(message.get("end_of_turn")),
            end_of_turn_confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.0,
            event_type=TurnEventType.TURN_FORMATTED if is_formatted else TurnEventType.TURN_UPDATE,
            provider=self.name,
        )


class GeminiLiveProtocol(ProviderProtocol):
    """
    Gemini Live API used for input-audio transcription only.

    A setup message is sent after the socket opens; `setupComplete` is the
    handshake ack. Transcription arrives as incremental inputTranscription
    fragments and `turnComplete` closes the turn.
    """

    name = "gemini"

    def build_url(self) -> str:
        return f"{self.config.gemini_url}?{urlencode({'key': self.config.api_key or ''})}"

    def handshake_messages(self) -> List[str]:
        model = self.config.gemini_model
        if not model.startswith("models/"):
            model = f"models/{model}"
        setup = {
            "setup": {
                "model": model,
                "generationConfig": {"responseModalities": ["TEXT"]},
                "inputAudioTranscription": {},
            }
        }
        return [json.dumps(setup)]

    def encode_audio(self, pcm: bytes) -> str:
        return json.dumps({
            "realtimeInput": {
                "audio": {
                    "data": base64.b64encode(pcm).decode("utf-8"),
                    "mimeType": f"audio/pcm;rate={self.config.sample_rate}",
                }
            }
        })

    def stream_end_message(self) -> Optional[str]:
        return json.dumps({"realtimeInput": {"audioStreamEnd": True}})

    def parse(self, message: Dict[str, Any]) -> ProtocolMessage:
        if "setupComplete" in message:
            logger.info("Gemini Live setup complete")
            return ProtocolMessage(ready=True)

        result = ProtocolMessage()

        server_content = message.get("serverContent")
        if isinstance(server_content, dict):
            transcription = server_content.get("inputTranscription") or {}
            text = _text_or_none(transcription.get("text")) if isinstance(transcription, dict) else None
            if text:
                result.events.append(LegacyText(text=text, is_delta=True, provider=self.name))

            if server_content.get("modelTurn"):
                logger.debug("Ignoring Gemini model turn (transcription only)")

            if server_content.get("turnComplete"):
                result.events.append(LegacyText(text=None, is_final=True, provider=self.name))

        if "goAway" in message:
            logger.warning(f"Gemini sent goAway: {message.get('goAway')}")
            result.go_away = True

        if "error" in message:
            result.error = str(message.get("error"))

        return result


PROTOCOLS = {
    AssemblyTurnProtocol.name: AssemblyTurnProtocol,
    GeminiLiveProtocol.name: GeminiLiveProtocol,
}


def build_protocol(config: TranscriptionConfig) -> ProviderProtocol:
    """
    Instantiate the wire protocol for the configured provider.

    Raises:
        ProviderUnavailableError: If the provider is not supported
    """
    protocol_cls = PROTOCOLS.get(config.provider)
    if protocol_cls is None:
        raise ProviderUnavailableError(
            f"Unsupported transcription provider: '{config.provider}' "
            f"(supported: {', '.join(sorted(PROTOCOLS))})"
        )
    return protocol_cls(config)
