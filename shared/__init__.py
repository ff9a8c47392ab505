"""
Shared Utilities Module for the live transcription service

This module provides the cross-cutting utilities used by stt_live:
- Session event schema (VoiceEvent, EventTypes)
- Redis client factory, connection pooling and the Redis Streams EventBroker
- Prometheus metrics

Usage:
    from shared import get_event_broker, VoiceEvent, EventTypes

    broker = await get_event_broker()
    await broker.publish_session_event(
        VoiceEvent(EventTypes.SESSION_STARTED, session_id, {}, source="stt_live")
    )
"""

from .redis_client import (
    get_redis_client,
    get_redis_pool,
    get_event_broker,
    close_redis_client,
    ping_redis,
    RedisConfig,
)

from .events import (
    VoiceEvent,
    EventTypes,
    session_stream_key,
)

from .event_broker import (
    EventBroker,
)

from .observability import (
    setup_metrics,
    get_metrics_response,
    record_event,
    record_chunk_sent,
    record_chunk_dropped,
    record_reconnect_attempt,
    record_protocol_inconsistency,
    record_publish_error,
    record_stt_latency,
    set_active_sessions,
    time_connect,
    MetricTimer,
)

__all__ = [
    # Redis client utilities
    "get_redis_client",
    "get_redis_pool",
    "get_event_broker",
    "close_redis_client",
    "ping_redis",
    "RedisConfig",
    # Event utilities
    "VoiceEvent",
    "EventTypes",
    "session_stream_key",
    "EventBroker",
    # Observability utilities
    "setup_metrics",
    "get_metrics_response",
    "record_event",
    "record_chunk_sent",
    "record_chunk_dropped",
    "record_reconnect_attempt",
    "record_protocol_inconsistency",
    "record_publish_error",
    "record_stt_latency",
    "set_active_sessions",
    "time_connect",
    "MetricTimer",
]
