"""
Optional Redis cache shared by API workers.

Holds short-lived values such as the Daraja OAuth token so every worker
does not fetch its own. Keys are namespaced under REDIS_KEY_PREFIX.
With Redis disabled or unreachable the helpers become no-ops and callers
fall back to their in-process state.
"""

import json
import logging
from typing import Any, Optional

import redis

from campusmarket.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

_client: Optional[redis.Redis] = None


def _key(name: str) -> str:
    return f"{settings.REDIS_KEY_PREFIX}:{name}"


def get_redis_client() -> Optional[redis.Redis]:
    """Connect on first use; None when disabled or the server does not answer."""
    global _client

    if not settings.REDIS_ENABLED:
        return None
    if _client is not None:
        return _client

    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=2)
        client.ping()
    except redis.RedisError as e:
        logger.warning("[REDIS] Unavailable at %s, using in-process state: %s", settings.REDIS_URL, e)
        return None

    logger.info("[REDIS] Connected to %s", settings.REDIS_URL)
    _client = client
    return _client


def cache_status() -> str:
    """'disabled', 'ok' or 'unavailable'; reported by the health check."""
    if not settings.REDIS_ENABLED:
        return "disabled"
    client = get_redis_client()
    if client is None:
        return "unavailable"
    try:
        client.ping()
    except redis.RedisError:
        return "unavailable"
    return "ok"


def cache_set(key: str, value: Any, ttl: int) -> bool:
    client = get_redis_client()
    if client is None:
        return False
    try:
        client.setex(_key(key), ttl, json.dumps(value))
    except redis.RedisError as e:
        logger.warning("[REDIS] SET %s failed: %s", key, e)
        return False
    return True


def cache_get(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None
    try:
        raw = client.get(_key(key))
    except redis.RedisError as e:
        logger.warning("[REDIS] GET %s failed: %s", key, e)
        return None
    return json.loads(raw) if raw else None


def cache_delete(key: str) -> None:
    client = get_redis_client()
    if client is None:
        return
    try:
        client.delete(_key(key))
    except redis.RedisError as e:
        logger.warning("[REDIS] DEL %s failed: %s", key, e)
