"""
Subscription read cache.

Redis-backed with an in-process TTL fallback when REDIS_URL is unset or
unreachable. The store is authoritative; the cache only saves a round-trip
for client reads and is invalidated on every reconciler write.
"""

import json
import logging
import time
from typing import Dict, Optional, Tuple

import redis

from src.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1


class SubscriptionCache:
    """Per-user SubscriptionRecord cache."""

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: int = 300) -> None:
        self._ttl_seconds = ttl_seconds
        self._redis = None
        self._mem: Dict[str, Tuple[float, dict]] = {}

        if redis_url:
            try:
                client = redis.from_url(redis_url, decode_responses=True)
                client.ping()
                self._redis = client
            except (redis.RedisError, ValueError) as e:
                logger.warning("Redis unavailable, using in-memory subscription cache", extra={"error": str(e)})

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    @staticmethod
    def _require_user_id(user_id: str) -> str:
        normalized = str(user_id or "").strip()
        if not normalized:
            raise ValueError("user_id is required")
        return normalized

    @staticmethod
    def _key(user_id: str) -> str:
        return f"subscription:v{CACHE_SCHEMA_VERSION}:{user_id}"

    def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        key = self._key(self._require_user_id(user_id))

        if self._redis is not None:
            try:
                raw = self._redis.get(key)
            except redis.RedisError as e:
                logger.warning("Subscription cache read failed", extra={"user_id": user_id, "error": str(e)})
                return None
            if not raw:
                return None
            return _decode(json.loads(raw))

        entry = self._mem.get(key)
        if not entry:
            return None
        cached_at, payload = entry
        if time.monotonic() - cached_at > self._ttl_seconds:
            self._mem.pop(key, None)
            return None
        return _decode(payload)

    def set(self, record: SubscriptionRecord) -> None:
        key = self._key(self._require_user_id(record.user_id))
        payload = _encode(record)

        if self._redis is not None:
            try:
                self._redis.setex(key, self._ttl_seconds, json.dumps(payload))
            except redis.RedisError as e:
                logger.warning("Subscription cache write failed", extra={"user_id": record.user_id, "error": str(e)})
            return

        self._mem[key] = (time.monotonic(), payload)

    def invalidate(self, user_id: str) -> None:
        key = self._key(self._require_user_id(user_id))
        if self._redis is not None:
            try:
                self._redis.delete(key)
            except redis.RedisError as e:
                logger.error("Subscription cache invalidation failed", extra={"user_id": user_id, "error": str(e)})
        self._mem.pop(key, None)


def _encode(record: SubscriptionRecord) -> dict:
    return {"schema_version": CACHE_SCHEMA_VERSION, **record.to_dict()}


def _decode(raw: dict) -> Optional[SubscriptionRecord]:
    if int(raw.get("schema_version", 0)) != CACHE_SCHEMA_VERSION:
        return None
    return SubscriptionRecord.from_dict(raw)
