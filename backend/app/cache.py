"""
Shared TTL cache for read-mostly admin queries such as membership plan lists.

Entries live in Redis so every API worker sees the same data and an
invalidation on one worker drops the entry for all of them. Keys are built from
a prefix plus arguments so a mutation can drop every entry sharing that prefix
with `invalidate_prefix()`.

Values are stored as JSON. A Redis outage degrades to uncached reads.
"""

import json
from typing import Any, Callable, Optional

import redis

from .logs import json_log

_MISSING = object()


def cache_key(prefix: str, *args, **kwargs) -> str:
    parts = [prefix, *(str(a) for a in args)]
    parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
    return ":".join(parts)


class QueryCache:
    def __init__(self, client, ttl_seconds: int = 300, namespace: str = "pos-billing"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, **kw) -> "QueryCache":
        # No connection is made until the first command.
        return cls(redis.Redis.from_url(url), **kw)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str, default=None):
        try:
            raw = self.client.get(self._key(key))
        except redis.RedisError as e:
            json_log("warn", "cache.get_failed", key=key, error=str(e))
            return default
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        try:
            self.client.set(self._key(key), json.dumps(value, default=str), ex=int(ttl))
        except redis.RedisError as e:
            json_log("warn", "cache.set_failed", key=key, error=str(e))

    def get_or_set(self, key: str, loader: Callable[[], Any], ttl_seconds: Optional[int] = None):
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self.set(key, value, ttl_seconds)
            # Hits come back through JSON; misses must look the same.
            value = json.loads(json.dumps(value, default=str))
        return value

    def invalidate(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis.RedisError as e:
            json_log("error", "cache.invalidate_failed", key=key, error=str(e))

    def invalidate_prefix(self, prefix: str) -> int:
        # SCAN walks the keyspace incrementally; KEYS would block the server.
        try:
            doomed = list(self.client.scan_iter(match=self._key(prefix) + "*", count=500))
            if doomed:
                self.client.delete(*doomed)
        except redis.RedisError as e:
            json_log("error", "cache.invalidate_failed", prefix=prefix, error=str(e))
            return 0
        return len(doomed)

    def clear(self) -> None:
        self.invalidate_prefix("")
