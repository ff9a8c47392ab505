"""
Tests for TranscriptionConfig loading, validation and per-session overrides.
"""

import pytest

from stt_live.config import AssemblyParams, TranscriptionConfig, VADSettings
from stt_live.errors import ConfigError, InvalidOverrideError

ENV_VARS = (
    "TRANSCRIPTION_PROVIDER",
    "TRANSCRIPTION_API_KEY",
    "ASSEMBLYAI_API_KEY",
    "GEMINI_API_KEY",
    "TRANSCRIPTION_ENABLED",
    "TRANSCRIPTION_TARGET_PCM_CHUNK_MS",
    "TRANSCRIPTION_VAD_ENABLED",
    "TRANSCRIPTION_VAD_AGGRESSIVENESS",
    "TRANSCRIPTION_RECONNECT_MAX_ATTEMPTS",
    "TRANSCRIPTION_PUBLISH_EVENTS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestFromEnv:
    def test_disabled_without_key(self, clean_env):
        config = TranscriptionConfig.from_env()

        assert config.provider == "assembly"
        assert config.api_key is None
        assert config.enabled is False
        assert config.publish_events is False

    def test_assembly_key_fallback(self, clean_env):
        clean_env.setenv("ASSEMBLYAI_API_KEY", "aai-key")

        config = TranscriptionConfig.from_env()

        assert config.api_key == "aai-key"
        assert config.enabled is True

    def test_gemini_key_fallback(self, clean_env):
        clean_env.setenv("TRANSCRIPTION_PROVIDER", "Gemini")
        clean_env.setenv("GEMINI_API_KEY", "g-key")

        config = TranscriptionConfig.from_env()

        assert config.provider == "gemini"
        assert config.api_key == "g-key"

    def test_explicit_disable(self, clean_env):
        clean_env.setenv("TRANSCRIPTION_API_KEY", "key")
        clean_env.setenv("TRANSCRIPTION_ENABLED", "false")

        assert TranscriptionConfig.from_env().enabled is False

    def test_numeric_and_flag_values(self, clean_env):
        clean_env.setenv("TRANSCRIPTION_TARGET_PCM_CHUNK_MS", "80")
        clean_env.setenv("TRANSCRIPTION_VAD_ENABLED", "off")
        clean_env.setenv("TRANSCRIPTION_RECONNECT_MAX_ATTEMPTS", "not-a-number")
        clean_env.setenv("TRANSCRIPTION_PUBLISH_EVENTS", "yes")

        config = TranscriptionConfig.from_env()

        assert config.target_chunk_ms == 80
        assert config.vad.enabled is False
        assert config.max_reconnect_attempts == 6
        assert config.publish_events is True


class TestValidation:
    def test_values_are_clamped(self):
        config = TranscriptionConfig(
            sample_rate=44100,
            target_chunk_ms=5,
            reconnect_backoff_ms=500,
            max_reconnect_backoff_ms=100,
            connect_timeout_s=0,
        )

        assert config.sample_rate == 16000
        assert config.target_chunk_ms == 20
        assert config.max_reconnect_backoff_ms == 500
        assert config.connect_timeout_s == 10.0

    def test_vad_settings_are_normalized(self):
        vad = VADSettings(frame_ms=25, aggressiveness=9, min_speech_ratio=0)

        assert vad.frame_ms == 30
        assert vad.aggressiveness == 3
        assert vad.min_speech_ratio == 0.01

    def test_assembly_params_are_clamped(self):
        params = AssemblyParams(max_turn_silence_ms=10, end_of_turn_confidence_threshold=2.0)

        assert params.max_turn_silence_ms == 250
        assert params.end_of_turn_confidence_threshold == 1.0

    def test_enabled_follows_api_key(self):
        assert TranscriptionConfig(api_key="k").enabled is True
        assert TranscriptionConfig().enabled is False

    def test_describe_hides_key(self):
        summary = TranscriptionConfig(api_key="secret").describe()

        assert summary["has_api_key"] is True
        assert "secret" not in str(summary)


class TestOverrides:
    def test_camel_case_and_nested(self):
        base = TranscriptionConfig(api_key="k")

        config = base.with_overrides({
            "targetChunkMs": 100,
            "vad": {"speechHoldMs": 500},
            "assembly": {"formatTurns": False},
        })

        assert config.target_chunk_ms == 100
        assert config.vad.speech_hold_ms == 500
        assert config.vad.silence_hold_ms == base.vad.silence_hold_ms
        assert config.assembly.format_turns is False
        assert base.target_chunk_ms == 60

    def test_unknown_keys_are_ignored(self):
        base = TranscriptionConfig(api_key="k")

        config = base.with_overrides({"bogus": 1, "vad": {"nope": True}})

        assert config == base

    def test_empty_overrides_return_same_config(self):
        base = TranscriptionConfig(api_key="k")

        assert base.with_overrides(None) is base
        assert base.with_overrides({}) is base

    def test_credentials_and_endpoints_are_not_overridable(self):
        base = TranscriptionConfig(api_key="service-key", publish_events=True)

        config = base.with_overrides({
            "apiKey": "client-key",
            "assemblyUrl": "wss://elsewhere.example/ws",
            "gemini_url": "wss://elsewhere.example/gemini",
            "geminiModel": "other-model",
            "provider": "gemini",
            "enabled": False,
            "publishEvents": False,
            "targetChunkMs": 100,
        })

        assert config.api_key == "service-key"
        assert config.assembly_url == base.assembly_url
        assert config.gemini_url == base.gemini_url
        assert config.gemini_model == base.gemini_model
        assert config.provider == "assembly"
        assert config.enabled is True
        assert config.publish_events is True
        assert config.target_chunk_ms == 100

    def test_string_values_are_coerced(self):
        config = TranscriptionConfig(api_key="k").with_overrides({
            "targetChunkMs": "100",
            "stopFlushTimeoutS": "1.5",
            "vad": {"enabled": "false", "aggressiveness": 3.0},
        })

        assert config.target_chunk_ms == 100
        assert config.stop_flush_timeout_s == 1.5
        assert config.vad.enabled is False
        assert config.vad.aggressiveness == 3

    @pytest.mark.parametrize("overrides", [
        {"targetChunkMs": "fast"},
        {"targetChunkMs": None},
        {"targetChunkMs": 60.5},
        {"targetChunkMs": True},
        {"silenceEnergyThreshold": "nan"},
        {"vad": {"enabled": "maybe"}},
        {"assembly": {"maxTurnSilenceMs": [1500]}},
    ])
    def test_invalid_values_raise(self, overrides):
        with pytest.raises(InvalidOverrideError):
            TranscriptionConfig(api_key="k").with_overrides(overrides)

    def test_non_mapping_is_rejected(self):
        with pytest.raises(ConfigError):
            TranscriptionConfig(api_key="k").with_overrides(["targetChunkMs", 100])
