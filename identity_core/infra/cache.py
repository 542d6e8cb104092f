from __future__ import annotations

import json
import os
import threading
import time
from typing import Any, Protocol

from redis import Redis

from identity_core.infra.redis_state import get_redis

SERVICE_CACHE_BACKEND = os.getenv("SERVICE_CACHE_BACKEND", "memory")
SERVICE_CACHE_TTL_SECONDS = int(os.getenv("SERVICE_CACHE_TTL_SECONDS", "300"))
SERVICE_CACHE_PREFIX = "auth:service:"


class ServiceCache(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None: ...

    def invalidate(self, key: str) -> None: ...


class InMemoryServiceCache:
    def __init__(self, ttl_seconds: int = SERVICE_CACHE_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return dict(value)

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        with self._lock:
            self._entries[key] = (time.monotonic() + ttl, dict(value))

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


class RedisServiceCache:
    def __init__(self, client: Redis, ttl_seconds: int = SERVICE_CACHE_TTL_SECONDS) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds

    def get(self, key: str) -> dict[str, Any] | None:
        raw = self.client.get(f"{SERVICE_CACHE_PREFIX}{key}")
        if raw is None:
            return None
        value = json.loads(raw)
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        self.client.set(f"{SERVICE_CACHE_PREFIX}{key}", json.dumps(value), ex=ttl)

    def invalidate(self, key: str) -> None:
        self.client.delete(f"{SERVICE_CACHE_PREFIX}{key}")


def build_service_cache(backend: str = SERVICE_CACHE_BACKEND) -> ServiceCache:
    if backend == "redis":
        return RedisServiceCache(get_redis())
    return InMemoryServiceCache()
