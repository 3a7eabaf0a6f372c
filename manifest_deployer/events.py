"""
Lifecycle events on Redis Streams for dashboards and debugging.

Optional: without REDIS_URL, or with Redis unreachable, publishing is a
no-op and the deployer keeps working.
"""
import json
import logging
from datetime import datetime, timezone

import redis

from manifest_deployer.config import settings

logger = logging.getLogger("events")

STREAM_MAXLEN = 100
CHANNEL = "deployitem:events"

_redis_client = None


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_redis():
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        _redis_client.ping()
        logger.info(f"Redis connected: {settings.REDIS_URL}")
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        _redis_client = None
        return None


def stream_key(namespace: str, name: str) -> str:
    return f"deployitem:events:{namespace}/{name}"


def publish(namespace: str, name: str, event_type: str, message: str, phase: str = ""):
    """Publish a lifecycle event to the item's stream and the global channel."""
    r = get_redis()
    if not r:
        return
    entry = {
        "type": event_type,
        "message": message,
        "phase": phase,
        "timestamp": _now(),
        "deployItem": f"{namespace}/{name}",
    }
    try:
        r.xadd(stream_key(namespace, name), entry, maxlen=STREAM_MAXLEN)
        r.publish(CHANNEL, json.dumps(entry))
    except redis.RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


def read_events(namespace: str, name: str, count: int = 50) -> list[dict]:
    r = get_redis()
    if not r:
        return []
    try:
        return [data for _, data in r.xrange(stream_key(namespace, name), count=count)]
    except redis.RedisError as e:
        logger.debug(f"Redis stream read failed: {e}")
        return []


def drop_events(namespace: str, name: str):
    r = get_redis()
    if not r:
        return
    try:
        r.delete(stream_key(namespace, name))
    except redis.RedisError as e:
        logger.debug(f"Redis stream delete failed: {e}")


def redis_status() -> str:
    """'disabled', 'connected' or 'disconnected', for health reporting."""
    r = get_redis()
    if not r:
        return "disabled"
    try:
        r.ping()
    except redis.RedisError:
        return "disconnected"
    return "connected"
