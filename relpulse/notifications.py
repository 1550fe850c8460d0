"""
Outbound notifications.

Events (health score swings, breaker opening, guardrail trips, failure
patterns) are logged, kept in a bounded in-memory history and, when
PUBLISH_EVENTS_TO_REDIS is on, published to a Redis channel for whatever
delivers notifications to users.
"""

import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from . import config

logger = logging.getLogger(__name__)

ALERT_EVENTS = {"breaker_opened", "guardrail_tripped", "failure_pattern"}


class Notifier:
    """Fan-out for pipeline events."""

    def __init__(
        self,
        redis_client=None,
        publish: Optional[bool] = None,
        channel: Optional[str] = None,
        history_size: int = 200,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            redis_client: Redis client to publish through (looked up lazily when None)
            publish: Publish to Redis (default from config)
            channel: Redis pub/sub channel (default from config)
            history_size: How many recent events to keep in memory
            clock: Time source for event timestamps
        """
        self.publish = config.PUBLISH_EVENTS_TO_REDIS if publish is None else publish
        self.channel = channel or config.EVENT_CHANNEL
        self.clock = clock or time.time
        self._redis = redis_client
        self._history = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def _client(self):
        if self._redis is None:
            from .utils.redis_client import get_redis_client
            self._redis = get_redis_client(max_retries=1)
        return self._redis

    def emit(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        event = {"type": event_type, "at": self.clock(), **payload}
        with self._lock:
            self._history.append(event)

        if event_type in ALERT_EVENTS:
            logger.warning(f"ALERT {event_type}: {json.dumps(payload, default=str)}")
        else:
            logger.info(f"Event {event_type}: {json.dumps(payload, default=str)}")

        if self.publish:
            client = self._client()
            if client is not None:
                try:
                    client.publish(self.channel, json.dumps(event, default=str))
                except RedisError as e:
                    logger.warning(f"Failed to publish {event_type} to Redis: {e}")
        return event

    def recent(self, event_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            events = [e for e in self._history if event_type is None or e["type"] == event_type]
        return events[-limit:]
