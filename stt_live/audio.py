"""
PCM Audio Utilities for the Live Transcription Service

Provides framing, pacing and inspection helpers for 16-bit little-endian
mono PCM.

Functions:
    bytes_for_duration: Byte length of a PCM span
    pcm_duration_ms: Duration of a PCM buffer
    rms_energy: RMS energy of a PCM buffer
    silence_frame: Zero PCM used as a filler frame
    validate_audio_chunk: Validate incoming PCM audio chunks
    PcmFramer: Re-slices captured audio into target-duration frames
"""

import time
import logging
from typing import Any, Callable, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

BYTES_PER_SAMPLE = 2  # 16-bit signed PCM


# ============================================================================
# PCM Helpers
# ============================================================================

def bytes_for_duration(duration_ms: float, sample_rate: int) -> int:
    """Byte length of `duration_ms` of mono PCM16 at `sample_rate`."""
    return int(sample_rate * duration_ms / 1000) * BYTES_PER_SAMPLE


def pcm_duration_ms(audio_data: bytes, sample_rate: int) -> float:
    """Duration in milliseconds of a mono PCM16 buffer."""
    if not audio_data or sample_rate <= 0:
        return 0.0
    return (len(audio_data) // BYTES_PER_SAMPLE) * 1000.0 / sample_rate


def rms_energy(audio_data: bytes) -> float:
    """RMS energy of a PCM16 buffer on the int16 scale (0-32768)."""
    usable = len(audio_data) - (len(audio_data) % BYTES_PER_SAMPLE)
    if usable <= 0:
        return 0.0
    samples = np.frombuffer(audio_data[:usable], dtype="<i2").astype(np.float64)
    return float(np.sqrt(np.mean(samples * samples)))


def silence_frame(duration_ms: float, sample_rate: int) -> bytes:
    """Synthetic silence (zero PCM) used as a filler frame."""
    return bytes(bytes_for_duration(duration_ms, sample_rate))


# ============================================================================
# Audio Validation
# ============================================================================

def validate_audio_chunk(audio_data: bytes, max_size: int = 128 * 1024) -> Dict[str, Any]:
    """
    Validate incoming PCM audio chunks.

    Checks:
    - Presence and type (raw bytes)
    - Size constraint (max 128KB per chunk)
    - Sample alignment (even byte length for PCM16)

    Returns:
        dict: {
            "valid": bool,
            "errors": List[str],
            "warnings": List[str],
            "size_bytes": int
        }
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not audio_data:
        errors.append("Audio data is empty")
        return {"valid": False, "errors": errors, "warnings": warnings, "size_bytes": 0}

    if not isinstance(audio_data, (bytes, bytearray)):
        errors.append(f"Audio data must be bytes, got {type(audio_data).__name__}")
        return {"valid": False, "errors": errors, "warnings": warnings, "size_bytes": 0}

    size_bytes = len(audio_data)
    if size_bytes > max_size:
        errors.append(f"Audio chunk too large: {size_bytes} bytes (max: {max_size})")

    if size_bytes % BYTES_PER_SAMPLE:
        warnings.append("Odd byte length - trailing byte will be carried into the next frame")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "size_bytes": size_bytes,
    }


# ============================================================================
# Framing / Pacing
# ============================================================================

class PcmFramer:
    """
    Re-slices captured PCM into frames of `target_chunk_ms`.

    Producers push whatever their capture callback yields; the framer emits
    whole target-duration frames and keeps the remainder. A remainder that
    has been pending longer than `max_pending_chunk_ms` of wall-clock time is
    flushed as a short frame so audio never stalls behind an under-filled
    buffer.
    """

    def __init__(
        self,
        sample_rate: int,
        target_chunk_ms: int,
        max_pending_chunk_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sample_rate = sample_rate
        self.frame_bytes = bytes_for_duration(target_chunk_ms, sample_rate)
        self.max_pending_s = max_pending_chunk_ms / 1000.0
        self._clock = clock
        self._pending = bytearray()
        self._pending_since: Optional[float] = None

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    def push(self, audio_data: bytes) -> List[bytes]:
        """Add captured audio; return the frames that are ready to send."""
        self._pending.extend(audio_data)
        frames: List[bytes] = []

        while len(self._pending) >= self.frame_bytes:
            frames.append(bytes(self._pending[:self.frame_bytes]))
            del self._pending[:self.frame_bytes]

        now = self._clock()
        if len(self._pending) < BYTES_PER_SAMPLE:
            self._pending_since = None
        elif self._pending_since is None or frames:
            # The remainder is the tail of audio that just arrived
            self._pending_since = now
        elif now - self._pending_since >= self.max_pending_s:
            stale = self._drain()
            if stale:
                frames.append(stale)

        return frames

    def flush(self) -> Optional[bytes]:
        """Drain the remainder (sample-aligned) at end of stream."""
        return self._drain() or None

    def _drain(self) -> bytes:
        usable = len(self._pending) - (len(self._pending) % BYTES_PER_SAMPLE)
        frame = bytes(self._pending[:usable])
        del self._pending[:usable]
        self._pending_since = None if len(self._pending) < BYTES_PER_SAMPLE else self._clock()
        return frame
