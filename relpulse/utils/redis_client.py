"""
Redis connection handling for RelPulse.

Redis carries the Celery broker traffic and the optional event channel. The
analysis pipeline itself never depends on it, so lookups return None when the
server is down and callers skip publishing.
"""

import time
import logging
import threading
from typing import Dict, Optional
import redis
from redis.exceptions import RedisError

from relpulse import config

logger = logging.getLogger(__name__)


class RedisConnection:
    """One lazily (re)connected client per Redis URL."""

    _connections: Dict[str, "RedisConnection"] = {}
    _registry_lock = threading.Lock()

    @classmethod
    def for_url(cls, url: Optional[str] = None) -> "RedisConnection":
        url = url or config.REDIS_URL
        with cls._registry_lock:
            if url not in cls._connections:
                cls._connections[url] = cls(url)
            return cls._connections[url]

    @classmethod
    def forget_all(cls):
        with cls._registry_lock:
            cls._connections.clear()

    def __init__(self, url: str):
        self.url = url
        self._client: Optional[redis.Redis] = None
        self._lock = threading.Lock()

    def client(self) -> Optional[redis.Redis]:
        """Return a client that answered PING, connecting on first use."""
        with self._lock:
            if self._client is not None:
                return self._client
            candidate = redis.Redis.from_url(
                self.url,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                decode_responses=True,
            )
            try:
                candidate.ping()
            except RedisError as e:
                logger.warning(f"Redis at {self.url} not reachable: {e}")
                return None
            logger.info(f"Connected to Redis at {self.url}")
            self._client = candidate
            return candidate

    def healthy(self) -> bool:
        client = self.client()
        if client is None:
            return False
        try:
            return bool(client.ping())
        except RedisError as e:
            logger.warning(f"Lost Redis connection: {e}")
            with self._lock:
                self._client = None
            return False


def get_redis_client(max_retries: int = 3, backoff_seconds: float = 0.5,
                     url: Optional[str] = None) -> Optional[redis.Redis]:
    """
    Get the shared Redis client.

    The first connect is retried max_retries times, waiting
    backoff_seconds * 2**attempt between tries.

    Returns:
        redis.Redis client or None if unavailable.
    """
    connection = RedisConnection.for_url(url)
    for attempt in range(max_retries + 1):
        if attempt:
            time.sleep(backoff_seconds * (2 ** (attempt - 1)))
        client = connection.client()
        if client is not None:
            return client

    logger.warning("Redis unavailable, continuing without event publishing")
    return None
