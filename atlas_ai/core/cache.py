"""
Result caching for search and generation.

Memoizes expensive results under a deterministic key built from the
operation kind, every structured-query field and the pagination. The cache
is advisory: when the store is unavailable, reads miss and writes are
skipped, but the caller never fails because of it.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis

from .query import QUERY_FIELDS, StructuredQuery

logger = logging.getLogger(__name__)

ANY = "any"

# Operation kinds used as key prefixes
KIND_SEARCH = "search"
KIND_QUESTIONS = "genQuestions"
KIND_CONTENT = "content"
KIND_POPULAR = "popularContent"

DEFAULT_TTL_SECONDS = 24 * 60 * 60

TTL_BY_KIND: Dict[str, int] = {
    KIND_SEARCH: DEFAULT_TTL_SECONDS,
    KIND_QUESTIONS: DEFAULT_TTL_SECONDS,
    KIND_CONTENT: DEFAULT_TTL_SECONDS,
    KIND_POPULAR: DEFAULT_TTL_SECONDS,
}


class CacheUnavailableError(Exception):
    """Raised by a cache store that cannot be reached."""


def _escape_key_part(value: str) -> str:
    return value.replace("%", "%25").replace(":", "%3A")


def build_cache_key(kind: str, query: StructuredQuery, page: int, limit: int) -> str:
    """Build the cache key for a query-shaped operation.

    Format: ``kind:examType:examBoard:subject:topic:requestType:page:limit``
    with ``any`` standing in for absent fields. Colons and percent
    signs inside values are percent-encoded. Depends only on the final field
    values, never on how they were filled in.
    """
    parts = [kind]
    for name in QUERY_FIELDS:
        value = getattr(query, name)
        parts.append(_escape_key_part(value) if value is not None else ANY)
    parts.extend([str(page), str(limit)])
    return ":".join(parts)


class CacheStore(Protocol):
    """Minimal key-value store with expiry."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryCacheStore:
    """Process-local store. Expired entries are dropped on read and on write. Thread-safe."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for k in expired:
                del self._entries[k]
            self._entries[key] = (value, now + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCacheStore:
    """Redis-backed store. Expiry is handled by Redis (``SET ... EX``)."""

    def __init__(self, redis_url: str, timeout_seconds: float = 2.0, client: Optional[redis.Redis] = None):
        self._redis = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=timeout_seconds,
            socket_timeout=timeout_seconds,
        )

    def get(self, key: str) -> Optional[str]:
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            raise CacheUnavailableError(str(e)) from e

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._redis.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            raise CacheUnavailableError(str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except redis.RedisError as e:
            raise CacheUnavailableError(str(e)) from e

    def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            return False


class ResultCache:
    """Advisory JSON cache over a :class:`CacheStore`."""

    def __init__(
        self,
        store: CacheStore,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        ttl_by_kind: Optional[Dict[str, int]] = None,
    ):
        self.store = store
        self.default_ttl = default_ttl
        self.ttl_by_kind = dict(TTL_BY_KIND if ttl_by_kind is None else ttl_by_kind)

    def ttl_for(self, kind: str) -> int:
        """TTL in seconds for an operation kind."""
        return self.ttl_by_kind.get(kind, self.default_ttl)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or store failure."""
        try:
            raw = self.store.get(key)
        except CacheUnavailableError as e:
            logger.warning("Cache unavailable on get %s: %s", key, e)
            return None
        if raw is None:
            logger.debug("Cache miss: %s", key)
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache entry: %s", key)
            return None
        logger.debug("Cache hit: %s", key)
        return value

    def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a JSON-serializable value. Never raises on store failure.

        The value is serialized before the store is touched, so an entry is
        written whole or not at all.
        """
        payload = json.dumps(value, ensure_ascii=False)
        try:
            self.store.set(key, payload, ttl if ttl is not None else self.default_ttl)
        except CacheUnavailableError as e:
            logger.warning("Cache unavailable on put %s: %s", key, e)

    def invalidate(self, key: str) -> None:
        try:
            self.store.delete(key)
        except CacheUnavailableError as e:
            logger.warning("Cache unavailable on invalidate %s: %s", key, e)
