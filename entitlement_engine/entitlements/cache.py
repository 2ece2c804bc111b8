from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import redis

from entitlement_engine.billing.errors import CacheTimeout

from .models import EntitlementSnapshot

logger = logging.getLogger(__name__)

# Bump when EntitlementSnapshot's wire form changes; older entries become misses.
SNAPSHOT_SCHEMA_VERSION = 3

DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_TIMEOUT_SECONDS = 0.5


def _require_account_id(account_id: str) -> str:
    normalized = str(account_id or "").strip()
    if not normalized:
        raise ValueError("account_id is required")
    return normalized


def encode_snapshot(snapshot: EntitlementSnapshot, version: int = SNAPSHOT_SCHEMA_VERSION) -> dict:
    return {
        "schema_version": version,
        "cached_at": datetime.now(timezone.utc).isoformat(),
        "snapshot": snapshot.to_dict(),
    }


def decode_snapshot(raw: dict) -> Optional[EntitlementSnapshot]:
    """None when the entry was written under another schema version."""
    if raw.get("schema_version") != SNAPSHOT_SCHEMA_VERSION:
        return None
    return EntitlementSnapshot.from_dict(raw["snapshot"])


class SnapshotCache(ABC):
    """Versioned, TTL-bound snapshot cache. Never the source of truth."""

    ttl_seconds: int = DEFAULT_TTL_SECONDS

    @abstractmethod
    def get(self, account_id: str) -> Optional[EntitlementSnapshot]:
        """Cached snapshot, or None on miss, version mismatch, expiry or timeout."""

    @abstractmethod
    def put(self, account_id: str, snapshot: EntitlementSnapshot, version: int = SNAPSHOT_SCHEMA_VERSION) -> None:
        ...

    @abstractmethod
    def delete(self, account_id: str) -> None:
        ...

    def invalidate(self, account_id: str, replacement: Optional[EntitlementSnapshot] = None) -> None:
        """
        Drop the cached snapshot, or overwrite it synchronously when the caller
        already knows the new value.
        """
        if replacement is not None:
            self.put(account_id, replacement)
        else:
            self.delete(account_id)


class InMemorySnapshotCache(SnapshotCache):
    """Process-local cache for tests and single-process deployments."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._mem: Dict[str, Tuple[float, dict]] = {}

    def get(self, account_id: str) -> Optional[EntitlementSnapshot]:
        key = _require_account_id(account_id)
        data = self._mem.get(key)
        if not data:
            return None
        cached_at, payload = data
        if self._clock() - cached_at > self.ttl_seconds:
            self._mem.pop(key, None)
            return None
        return decode_snapshot(payload)

    def put(self, account_id: str, snapshot: EntitlementSnapshot, version: int = SNAPSHOT_SCHEMA_VERSION) -> None:
        key = _require_account_id(account_id)
        self._mem[key] = (self._clock(), encode_snapshot(snapshot, version))

    def delete(self, account_id: str) -> None:
        self._mem.pop(_require_account_id(account_id), None)


class RedisSnapshotCache(SnapshotCache):
    """
    Redis-backed cache. Every call is bounded by the client socket timeout;
    timeouts and connection errors are reported as misses.
    """

    def __init__(self, client: "redis.Redis", ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._redis = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> "RedisSnapshotCache":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client, ttl_seconds=ttl_seconds)

    @staticmethod
    def _key(account_id: str) -> str:
        return f"entitlement_snapshot:{account_id}"

    def _call(self, operation: str, fn: Callable, *args):
        try:
            return fn(*args)
        except (redis.exceptions.TimeoutError, redis.exceptions.ConnectionError) as e:
            raise CacheTimeout(operation) from e

    def get(self, account_id: str) -> Optional[EntitlementSnapshot]:
        key = self._key(_require_account_id(account_id))
        try:
            raw = self._call("get", self._redis.get, key)
        except CacheTimeout as e:
            logger.warning("Snapshot cache read failed, treating as miss", extra={
                "account_id": account_id,
                "error": e.message,
            })
            return None
        if not raw:
            return None
        try:
            return decode_snapshot(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding undecodable snapshot cache entry", extra={
                "account_id": account_id,
                "error": str(e),
            })
            return None

    def put(self, account_id: str, snapshot: EntitlementSnapshot, version: int = SNAPSHOT_SCHEMA_VERSION) -> None:
        key = self._key(_require_account_id(account_id))
        payload = json.dumps(encode_snapshot(snapshot, version))
        try:
            self._call("put", self._redis.setex, key, self.ttl_seconds, payload)
        except CacheTimeout as e:
            logger.warning("Snapshot cache write failed", extra={"account_id": account_id, "error": e.message})

    def delete(self, account_id: str) -> None:
        key = self._key(_require_account_id(account_id))
        try:
            self._call("delete", self._redis.delete, key)
        except CacheTimeout as e:
            logger.warning("Snapshot cache delete failed", extra={"account_id": account_id, "error": e.message})


def build_snapshot_cache(
    redis_url: Optional[str],
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> SnapshotCache:
    """Redis when configured and reachable, otherwise in-memory."""
    if redis_url:
        cache = RedisSnapshotCache.from_url(redis_url, ttl_seconds=ttl_seconds, timeout_seconds=timeout_seconds)
        try:
            cache._redis.ping()
            return cache
        except redis.exceptions.RedisError as e:
            logger.warning("Redis unavailable, using in-memory snapshot cache", extra={"error": str(e)})
    return InMemorySnapshotCache(ttl_seconds=ttl_seconds)
