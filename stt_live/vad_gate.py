"""
Voice Activity Gate for Live Transcription Sessions

Classifies captured frames as speech or silence and decides, per frame,
whether to forward real audio, suppress it, or substitute a synthetic
silence filler so the provider's turn-silence timers keep running without
real silence being streamed.

Classification combines WebRTC VAD (10/20/30 ms sub-frames, aggressiveness
0-3) with an RMS energy floor. All hold timers run on audio time (the summed
duration of processed frames), not wall-clock time.
"""

import logging
import warnings
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Tuple

from .audio import bytes_for_duration, pcm_duration_ms, rms_energy, silence_frame
from .config import TranscriptionConfig

with warnings.catch_warnings():
    # webrtcvad imports pkg_resources at import time
    warnings.filterwarnings("ignore", category=UserWarning, module="pkg_resources")
    import webrtcvad

logger = logging.getLogger(__name__)

# Largest filler a single message may carry
MAX_FILLER_MS = 1000


class GateAction:
    FORWARD = "forward"
    SUPPRESS = "suppress"
    FILLER = "filler"


@dataclass
class GateDecision:
    action: str
    payload: bytes = b""
    is_speech: bool = False
    speech_ratio: float = 0.0
    rms: float = 0.0


class WebRtcSpeechClassifier:
    """
    WebRTC VAD wrapper returning the share of speech sub-frames in a buffer.
    """

    def __init__(self, sample_rate: int, frame_ms: int = 30, aggressiveness: int = 2):
        self.sample_rate = sample_rate
        self.frame_ms = frame_ms
        self.frame_bytes = bytes_for_duration(frame_ms, sample_rate)
        self._vad = webrtcvad.Vad(aggressiveness)

    def speech_ratio(self, audio_data: bytes) -> float:
        total = 0
        voiced = 0
        for offset in range(0, len(audio_data) - self.frame_bytes + 1, self.frame_bytes):
            total += 1
            try:
                if self._vad.is_speech(audio_data[offset:offset + self.frame_bytes], self.sample_rate):
                    voiced += 1
            except Exception as e:
                logger.debug(f"VAD frame error (treated as silence): {e}")
        return voiced / total if total else 0.0


class VoiceActivityGate:
    """
    Per-session gate between framing and the provider client.

    - Speech opens the gate; the suppressed pre-roll (up to silence_hold_ms)
      is forwarded ahead of the onset frame.
    - After the last speech frame the gate stays open for speech_hold_ms.
    - While closed, real audio is suppressed and a zero-PCM filler covering
      the elapsed gap is emitted every silence_filler_interval_ms.
    - With VAD disabled every frame is forwarded; is_speech is energy-only.
    """

    def __init__(self, config: TranscriptionConfig, classifier=None):
        self.settings = config.vad
        self.sample_rate = config.sample_rate
        self.energy_threshold = config.silence_energy_threshold
        self.filler_interval_ms = config.silence_filler_interval_ms

        if classifier is None and self.settings.enabled:
            classifier = WebRtcSpeechClassifier(
                sample_rate=config.sample_rate,
                frame_ms=self.settings.frame_ms,
                aggressiveness=self.settings.aggressiveness,
            )
        self.classifier = classifier

        self._audio_clock_ms = 0.0
        self._speaking = False
        self._last_speech_ms: Optional[float] = None
        self._last_emit_ms = 0.0
        self._preroll: Deque[Tuple[bytes, float]] = deque()
        self._preroll_ms = 0.0

        # Metrics
        self.frames_forwarded = 0
        self.frames_suppressed = 0
        self.fillers_emitted = 0

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    @property
    def audio_clock_ms(self) -> float:
        return self._audio_clock_ms

    def classify(self, frame: bytes) -> Tuple[bool, float, float]:
        """Return (is_speech, speech_ratio, rms) for one frame."""
        rms = rms_energy(frame)
        loud_enough = rms >= self.energy_threshold
        if self.classifier is None:
            return loud_enough, 1.0 if loud_enough else 0.0, rms
        ratio = self.classifier.speech_ratio(frame)
        return ratio >= self.settings.min_speech_ratio and loud_enough, ratio, rms

    def process(self, frame: bytes) -> GateDecision:
        """Decide what to do with one paced frame."""
        duration_ms = pcm_duration_ms(frame, self.sample_rate)
        self._audio_clock_ms += duration_ms
        now = self._audio_clock_ms

        is_speech, ratio, rms = self.classify(frame)

        if not self.settings.enabled:
            self._last_emit_ms = now
            self.frames_forwarded += 1
            return GateDecision(GateAction.FORWARD, frame, is_speech, ratio, rms)

        if is_speech:
            self._last_speech_ms = now
            payload = frame
            if not self._speaking:
                self._speaking = True
                payload = self._drain_preroll() + frame
                logger.debug(f"Gate opened at {now:.0f}ms (ratio={ratio:.2f}, rms={rms:.0f})")
            self._last_emit_ms = now
            self.frames_forwarded += 1
            return GateDecision(GateAction.FORWARD, payload, True, ratio, rms)

        if self._speaking and now - self._last_speech_ms <= self.settings.speech_hold_ms:
            self._last_emit_ms = now
            self.frames_forwarded += 1
            return GateDecision(GateAction.FORWARD, frame, False, ratio, rms)

        if self._speaking:
            self._speaking = False
            logger.debug(f"Gate closed at {now:.0f}ms after {self.settings.speech_hold_ms}ms hold")

        self._remember(frame, duration_ms)
        self.frames_suppressed += 1

        gap_ms = now - self._last_emit_ms
        if gap_ms >= self.filler_interval_ms:
            self._last_emit_ms = now
            self.fillers_emitted += 1
            filler = silence_frame(min(gap_ms, MAX_FILLER_MS), self.sample_rate)
            return GateDecision(GateAction.FILLER, filler, False, ratio, rms)

        return GateDecision(GateAction.SUPPRESS, b"", False, ratio, rms)

    def reset(self):
        """Forget speech state and pre-roll (e.g. after a reconnect)."""
        self._speaking = False
        self._last_speech_ms = None
        self._last_emit_ms = self._audio_clock_ms
        self._preroll.clear()
        self._preroll_ms = 0.0

    def get_stats(self) -> dict:
        return {
            "speaking": self._speaking,
            "audio_clock_ms": self._audio_clock_ms,
            "frames_forwarded": self.frames_forwarded,
            "frames_suppressed": self.frames_suppressed,
            "fillers_emitted": self.fillers_emitted,
        }

    def _remember(self, frame: bytes, duration_ms: float):
        hold_ms = self.settings.silence_hold_ms
        if hold_ms <= 0:
            return
        self._preroll.append((frame, duration_ms))
        self._preroll_ms += duration_ms
        while self._preroll and self._preroll_ms - self._preroll[0][1] >= hold_ms:
            _, dropped_ms = self._preroll.popleft()
            self._preroll_ms -= dropped_ms

    def _drain_preroll(self) -> bytes:
        audio = b"".join(frame for frame, _ in self._preroll)
        self._preroll.clear()
        self._preroll_ms = 0.0
        return audio
