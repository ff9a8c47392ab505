"""
Async Redis Client Wrapper for the live transcription service

Provides connection pooling and a singleton client/EventBroker used to
publish session events to Redis Streams.

Configuration is read from environment variables (no load_dotenv() calls):
- LEIBNIZ_REDIS_HOST: Redis server host (default: localhost)
- LEIBNIZ_REDIS_PORT: Redis server port (default: 6379)
- LEIBNIZ_REDIS_DB: Redis database number (default: 0)
- LEIBNIZ_REDIS_PASSWORD: Redis password (optional, default: None)
- LEIBNIZ_REDIS_MAX_CONNECTIONS: Connection pool size (default: 50)
- LEIBNIZ_REDIS_SOCKET_TIMEOUT: Socket timeout in seconds (default: 5.0)
- LEIBNIZ_REDIS_SOCKET_CONNECT_TIMEOUT: Connect timeout in seconds (default: 5.0)
- LEIBNIZ_REDIS_URL / REDIS_URL: Connection string (overrides individual settings)

Usage:
    from shared.redis_client import get_redis_client, get_event_broker

    broker = await get_event_broker()
    await broker.publish(session_stream_key(session_id), event)
    await close_redis_client()
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from .event_broker import EventBroker

# Module-level logger
logger = logging.getLogger(__name__)

# Singleton instances
_redis_client: Optional[redis.Redis] = None
_redis_pool: Optional[redis.ConnectionPool] = None
_event_broker: Optional[EventBroker] = None
_lock = asyncio.Lock()


@dataclass
class RedisConfig:
    """Redis connection settings"""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    max_connections: int = 50
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    url: Optional[str] = None

    @staticmethod
    def from_env() -> 'RedisConfig':
        """Load configuration from environment variables"""
        return RedisConfig(
            host=os.getenv("LEIBNIZ_REDIS_HOST", os.getenv("REDIS_HOST", "localhost")),
            port=int(os.getenv("LEIBNIZ_REDIS_PORT", os.getenv("REDIS_PORT", "6379"))),
            db=int(os.getenv("LEIBNIZ_REDIS_DB", "0")),
            password=os.getenv("LEIBNIZ_REDIS_PASSWORD") or None,
            max_connections=int(os.getenv("LEIBNIZ_REDIS_MAX_CONNECTIONS", "50")),
            socket_timeout=float(os.getenv("LEIBNIZ_REDIS_SOCKET_TIMEOUT", "5.0")),
            socket_connect_timeout=float(os.getenv("LEIBNIZ_REDIS_SOCKET_CONNECT_TIMEOUT", "5.0")),
            url=os.getenv("LEIBNIZ_REDIS_URL") or os.getenv("REDIS_URL") or None,
        )

    def get_redis_url(self) -> str:
        """Generate Redis connection URL"""
        if self.url:
            return self.url
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"

    def describe(self) -> str:
        """Connection target without credentials."""
        if self.url:
            return self.url.split("@")[-1]
        return f"{self.host}:{self.port}/{self.db}"


async def get_redis_pool() -> redis.ConnectionPool:
    """
    Get or create the Redis connection pool.

    Returns:
        redis.ConnectionPool: Connection pool instance
    """
    global _redis_pool

    if _redis_pool is None:
        config = RedisConfig.from_env()

        logger.info(
            f"Creating Redis connection pool: {config.describe()} "
            f"(max_connections={config.max_connections})"
        )

        # decode_responses=True: stream entries come back as str
        _redis_pool = redis.ConnectionPool.from_url(
            config.get_redis_url(),
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
            decode_responses=True,
        )

    return _redis_pool


async def get_redis_client() -> redis.Redis:
    """
    Get or create the async Redis client and verify it with PING.

    Returns:
        redis.Redis: Async Redis client instance

    Raises:
        redis.exceptions.ConnectionError: If the server is unreachable
    """
    global _redis_client

    async with _lock:
        if _redis_client is None:
            pool = await get_redis_pool()
            client = redis.Redis(connection_pool=pool)
            await client.ping()
            _redis_client = client
            logger.info("✅ Redis client connected")

        return _redis_client


async def get_event_broker() -> EventBroker:
    """Get or create the EventBroker bound to the singleton client."""
    global _event_broker

    client = await get_redis_client()
    if _event_broker is None or _event_broker.redis is not client:
        _event_broker = EventBroker(client)
    return _event_broker


async def ping_redis(client: Optional[redis.Redis] = None) -> bool:
    """
    Test Redis connectivity with simple PING command.

    Args:
        client: Redis client instance (optional, uses singleton if not provided)

    Returns:
        bool: True if PING successful, False otherwise
    """
    try:
        if client is None:
            client = await get_redis_client()

        result = await client.ping()
        return result is True
    except Exception as e:
        logger.error(f"Redis PING failed: {e}")
        return False


async def close_redis_client():
    """
    Gracefully close the Redis client and connection pool.

    Should be called during application shutdown.
    """
    global _redis_client, _redis_pool, _event_broker

    async with _lock:
        _event_broker = None

        if _redis_client is not None:
            try:
                await _redis_client.aclose()
                logger.info("Redis client closed")
            except Exception as e:
                logger.error(f"Error closing Redis client: {e}")
            finally:
                _redis_client = None

        if _redis_pool is not None:
            try:
                await _redis_pool.disconnect()
                logger.info("Redis connection pool disconnected")
            except Exception as e:
                logger.error(f"Error disconnecting Redis pool: {e}")
            finally:
                _redis_pool = None
