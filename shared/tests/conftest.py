"""
Pytest fixtures for shared module tests.
"""

import pytest
from unittest.mock import AsyncMock


@pytest.fixture
def mock_redis_client():
    """Create a mock Redis client."""
    client = AsyncMock()

    # Mock stream methods
    client.xadd = AsyncMock(return_value="1234567890-0")
    client.xread = AsyncMock(return_value=[])
    client.ping = AsyncMock(return_value=True)

    return client


@pytest.fixture
def sample_voice_event():
    """Create a sample VoiceEvent for testing."""
    from shared.events import VoiceEvent, EventTypes

    return VoiceEvent(
        event_type=EventTypes.SESSION_UPDATE,
        session_id="test_session_123",
        source="test_service",
        payload={"text": "Hello world", "is_final": True, "turn_order": 0},
        metadata={"provider": "assembly"}
    )


@pytest.fixture
def sample_event_dict():
    """Create a sample event as a Redis-compatible dict."""
    return {
        "event_type": "session-update",
        "session_id": "test_session_123",
        "source": "test_service",
        "timestamp": "1234567890.123",
        "correlation_id": "abc-123-def",
        "payload": '{"text": "Hello world", "is_final": true}',
        "metadata": '{"provider": "assembly"}'
    }
