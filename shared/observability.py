"""
Observability Module for the live transcription service

Provides:
- Prometheus metrics for monitoring session health and provider streaming
- Recording helpers used by the session registry
- A timer context manager for latency histograms
"""

import os
import time
import logging
from typing import Dict

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

logger = logging.getLogger(__name__)

_metrics_initialized = False


# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

# Counters
EVENTS_TOTAL = Counter(
    'stt_live_events_total',
    'Total number of session events emitted',
    ['service', 'event_type']
)

CHUNKS_SENT = Counter(
    'stt_live_chunks_sent_total',
    'Audio frames sent to the provider',
    ['service', 'provider', 'kind']
)

CHUNKS_DROPPED = Counter(
    'stt_live_chunks_dropped_total',
    'Audio chunks that could not be delivered',
    ['service', 'reason']
)

RECONNECT_ATTEMPTS = Counter(
    'stt_live_reconnect_attempts_total',
    'Provider reconnect attempts',
    ['service', 'provider']
)

PROTOCOL_INCONSISTENCIES = Counter(
    'stt_live_protocol_inconsistencies_total',
    'Provider events ignored as inconsistent or malformed',
    ['service', 'provider']
)

EVENT_PUBLISH_ERRORS = Counter(
    'stt_live_event_publish_errors_total',
    'Session events that failed to publish to Redis',
    ['service']
)

# Histograms
STT_LATENCY = Histogram(
    'stt_live_stt_latency_seconds',
    'Advisory latency between the last audio send and a provider event',
    ['service', 'provider'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)
)

CONNECT_DURATION = Histogram(
    'stt_live_connect_duration_seconds',
    'Provider socket open plus handshake time',
    ['service', 'provider'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)
)

# Gauges
ACTIVE_SESSIONS = Gauge(
    'stt_live_active_sessions',
    'Number of live transcription sessions',
    ['service']
)

# Service info
SERVICE_INFO = Info(
    'stt_live_service',
    'Service information'
)


def setup_metrics(service_name: str, service_version: str = "1.0.0"):
    """
    Publish service info once per process.

    Args:
        service_name: Name of the service
        service_version: Version string
    """
    global _metrics_initialized

    if _metrics_initialized:
        return

    SERVICE_INFO.info({
        'service': service_name,
        'version': service_version,
        'environment': os.getenv('DEPLOYMENT_ENV', 'development')
    })
    _metrics_initialized = True
    logger.info(f"✅ Prometheus metrics initialized for {service_name}")


def get_metrics_response():
    """
    Get Prometheus metrics as HTTP response content.

    Returns:
        Tuple of (content_bytes, content_type) for HTTP response
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


# =============================================================================
# Metric Recording Utilities
# =============================================================================

def record_event(service: str, event_type: str):
    """Count one emitted session event."""
    EVENTS_TOTAL.labels(service=service, event_type=event_type).inc()


def record_chunk_sent(service: str, provider: str, filler: bool = False):
    CHUNKS_SENT.labels(service=service, provider=provider, kind="filler" if filler else "audio").inc()


def record_chunk_dropped(service: str, reason: str):
    CHUNKS_DROPPED.labels(service=service, reason=reason).inc()


def record_reconnect_attempt(service: str, provider: str):
    RECONNECT_ATTEMPTS.labels(service=service, provider=provider).inc()


def record_protocol_inconsistency(service: str, provider: str):
    PROTOCOL_INCONSISTENCIES.labels(service=service, provider=provider).inc()


def record_publish_error(service: str):
    EVENT_PUBLISH_ERRORS.labels(service=service).inc()


def record_stt_latency(service: str, provider: str, duration_seconds: float):
    """Record advisory STT latency."""
    STT_LATENCY.labels(service=service, provider=provider).observe(duration_seconds)


def set_active_sessions(service: str, count: int):
    """Set the number of active sessions."""
    ACTIVE_SESSIONS.labels(service=service).set(count)


# =============================================================================
# Context Manager for Timing
# =============================================================================

class MetricTimer:
    """Context manager for timing operations and recording to metrics."""

    def __init__(
        self,
        histogram,
        labels: Dict[str, str] = None
    ):
        self.histogram = histogram
        self.labels = labels or {}
        self.start_time = None
        self.duration = None

    def _observe(self):
        if self.start_time:
            self.duration = time.time() - self.start_time
            if self.labels:
                self.histogram.labels(**self.labels).observe(self.duration)
            else:
                self.histogram.observe(self.duration)

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, *args):
        self._observe()

    async def __aenter__(self):
        self.start_time = time.time()
        return self

    async def __aexit__(self, *args):
        self._observe()


def time_connect(service: str, provider: str) -> MetricTimer:
    """Create a timer for one provider connect + handshake."""
    return MetricTimer(CONNECT_DURATION, {"service": service, "provider": provider})
