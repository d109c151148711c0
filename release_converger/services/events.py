"""
Run events on a Redis Stream for dashboards following a pipeline run.

Optional: without REDIS_URL, or when Redis is unreachable, publishing is a
no-op. Losing an event never fails a convergence run.
"""
import json as _json
import logging
from datetime import datetime, timezone

import redis

logger = logging.getLogger("events")

STREAM_MAXLEN = 100
CHANNEL = "converge:events"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EventPublisher:
    def __init__(self, redis_url: str = "", client=None):
        self._url = redis_url
        self._client = client
        self._tried = client is not None

    def _get_redis(self):
        """Lazy-init Redis client. Returns None if unavailable."""
        if self._tried:
            return self._client
        self._tried = True
        if not self._url:
            return None
        try:
            self._client = redis.Redis.from_url(self._url, decode_responses=True)
            self._client.ping()
            logger.info(f"Redis connected: {self._url}")
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable (non-fatal): {e}")
            self._client = None
        return self._client

    def publish(self, service: str, event_type: str, message: str, phase: str = ""):
        r = self._get_redis()
        if not r:
            return
        event = {
            "type": event_type,
            "message": message,
            "phase": phase,
            "timestamp": _now(),
            "service": service,
        }
        try:
            r.xadd(f"{CHANNEL}:{service}", event, maxlen=STREAM_MAXLEN)
            r.publish(CHANNEL, _json.dumps(event))
        except redis.RedisError as e:
            logger.debug(f"Redis publish failed (non-fatal): {e}")
