"""
Redis Streams Event Broker Wrapper.

Provides a simplified async interface for publishing and reading session
events via Redis Streams.
"""

import logging
from typing import Dict, List, Tuple

import redis.asyncio as redis

from .events import VoiceEvent, session_stream_key

logger = logging.getLogger(__name__)

class EventBroker:
    """
    Wrapper around Redis Streams for transcription session events.
    """
    def __init__(self, redis_client: redis.Redis, max_len: int = 10000):
        self.redis = redis_client
        self.max_len = max_len
        self.published = 0
        self.failures = 0

    async def publish(self, stream_key: str, event: VoiceEvent, max_len: int = None) -> str:
        """
        Publish an event to a Redis Stream.

        Args:
            stream_key: The Redis key for the stream (e.g., "voice:stt:session:123")
            event: VoiceEvent object
            max_len: Maximum stream length (older entries are trimmed)

        Returns:
            The message ID of the published event.
        """
        try:
            data = event.to_redis_dict()

            # XADD with approximate trimming
            message_id = await self.redis.xadd(
                stream_key, data, maxlen=max_len or self.max_len, approximate=True
            )
            self.published += 1
            return message_id
        except Exception as e:
            self.failures += 1
            logger.error(f"Failed to publish event to {stream_key}: {e}")
            raise

    async def publish_session_event(self, event: VoiceEvent) -> str:
        """Publish to the event's per-session stream."""
        return await self.publish(session_stream_key(event.session_id), event)

    async def consume(
        self,
        streams: Dict[str, str],
        count: int = 10,
        block: int = 100
    ) -> List[Tuple[str, List[Tuple[str, Dict]]]]:
        """
        Consume events from one or more streams (XREAD).

        Args:
            streams: Dict mapping stream_key -> last_id (e.g. {"voice:stt:session:123": "$"})
            count: Max messages per stream
            block: Block time in ms (0 = infinite)

        Returns:
            List of [stream_key, [(msg_id, data), ...]]
        """
        return await self.redis.xread(streams, count=count, block=block)

    async def read_session_events(
        self,
        session_id: str,
        last_id: str = "0",
        count: int = 100,
        block: int = 100
    ) -> List[Tuple[str, VoiceEvent]]:
        """
        Read one session's events after `last_id`.

        Returns:
            List of (msg_id, VoiceEvent); malformed entries are skipped
        """
        stream_key = session_stream_key(session_id)
        response = await self.consume({stream_key: last_id}, count=count, block=block)

        events: List[Tuple[str, VoiceEvent]] = []
        for _, messages in response or []:
            for msg_id, data in messages:
                try:
                    events.append((msg_id, VoiceEvent.from_redis_dict(data)))
                except (TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed entry {msg_id} on {stream_key}: {e}")
        return events

    def get_stats(self) -> Dict[str, int]:
        return {"published": self.published, "failures": self.failures}
