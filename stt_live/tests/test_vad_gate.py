"""
Tests for the voice activity gate.

Frames are 60ms of 16kHz PCM16 (1920 bytes). Hold timers run on audio time,
so the sequences below are deterministic.
"""

from stt_live.config import TranscriptionConfig, VADSettings
from stt_live.vad_gate import MAX_FILLER_MS, GateAction, VoiceActivityGate, WebRtcSpeechClassifier

FRAME_BYTES = 1920


def make_gate(classifier, **overrides):
    vad = VADSettings(speech_hold_ms=300, silence_hold_ms=200)
    config = TranscriptionConfig(api_key="k", silence_filler_interval_ms=240, vad=vad)
    if overrides:
        config = config.with_overrides(overrides)
    return VoiceActivityGate(config, classifier=classifier)


class TestVoiceActivityGate:
    """Forward / suppress / filler decisions"""

    def test_speech_is_forwarded(self, speech_classifier, speech_pcm):
        gate = make_gate(speech_classifier)

        decision = gate.process(speech_pcm)

        assert decision.action == GateAction.FORWARD
        assert decision.is_speech is True
        assert decision.payload == speech_pcm
        assert gate.is_speaking is True

    def test_silence_is_suppressed_then_filled(self, speech_classifier, silent_pcm):
        gate = make_gate(speech_classifier)

        actions = [gate.process(silent_pcm).action for _ in range(3)]
        filler = gate.process(silent_pcm)

        assert actions == [GateAction.SUPPRESS] * 3
        assert filler.action == GateAction.FILLER
        # Filler covers the 240ms gap
        assert len(filler.payload) == 4 * FRAME_BYTES
        assert not any(filler.payload)
        assert gate.fillers_emitted == 1

    def test_onset_includes_preroll(self, speech_classifier, speech_pcm, silent_pcm):
        gate = make_gate(speech_classifier)

        for _ in range(4):
            gate.process(silent_pcm)
        onset = gate.process(speech_pcm)

        assert onset.action == GateAction.FORWARD
        assert len(onset.payload) == 5 * FRAME_BYTES
        assert onset.payload.endswith(speech_pcm)

    def test_speech_hold_keeps_gate_open(self, speech_classifier, speech_pcm, silent_pcm):
        gate = make_gate(speech_classifier)

        gate.process(speech_pcm)
        held = [gate.process(silent_pcm).action for _ in range(5)]
        after_hold = gate.process(silent_pcm)

        assert held == [GateAction.FORWARD] * 5
        assert after_hold.action == GateAction.SUPPRESS
        assert gate.is_speaking is False

    def test_quiet_frames_are_not_speech(self, speech_classifier, pcm_builder):
        gate = make_gate(speech_classifier)

        decision = gate.process(pcm_builder(60, amplitude=100))

        assert decision.is_speech is False
        assert decision.action == GateAction.SUPPRESS

    def test_filler_is_capped(self, speech_classifier, silent_pcm):
        gate = make_gate(speech_classifier, silence_filler_interval_ms=1500)

        decisions = [gate.process(silent_pcm) for _ in range(25)]
        fillers = [d for d in decisions if d.action == GateAction.FILLER]

        assert len(fillers) == 1
        assert len(fillers[0].payload) == MAX_FILLER_MS * 16 * 2

    def test_disabled_gate_forwards_everything(self, silent_pcm, speech_pcm):
        gate = make_gate(None, vad={"enabled": False})

        silent = gate.process(silent_pcm)
        loud = gate.process(speech_pcm)

        assert gate.classifier is None
        assert silent.action == GateAction.FORWARD
        assert silent.is_speech is False
        assert loud.action == GateAction.FORWARD
        assert loud.is_speech is True

    def test_reset_forgets_speech_state(self, speech_classifier, speech_pcm, silent_pcm):
        gate = make_gate(speech_classifier)
        gate.process(silent_pcm)
        gate.process(speech_pcm)

        gate.reset()
        decision = gate.process(silent_pcm)

        assert gate.is_speaking is False
        assert decision.action == GateAction.SUPPRESS
        assert gate.get_stats()["audio_clock_ms"] == 180


class TestWebRtcSpeechClassifier:
    """Real WebRTC VAD on digital silence"""

    def test_silence_has_no_speech(self, silent_pcm):
        classifier = WebRtcSpeechClassifier(sample_rate=16000, frame_ms=30, aggressiveness=3)

        assert classifier.speech_ratio(silent_pcm) == 0.0

    def test_short_buffer(self):
        classifier = WebRtcSpeechClassifier(sample_rate=16000, frame_ms=30)

        assert classifier.speech_ratio(b"\x00" * 100) == 0.0
