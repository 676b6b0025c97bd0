"""Frontdesk – Routing Decision cache.

Keys embed the pool snapshot's content fingerprint
(``t{tenant}:route:v{fingerprint}:{channel}:{hash}``), so a rebuild from
edited data makes every older decision unreachable without enumerating it,
and workers sharing one Redis only share decisions made from the same data.
``evict_tenant`` only reclaims memory early.
"""

from __future__ import annotations

import json
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as redis
import structlog

from frontdesk.core.redis_keys import route_decision_pattern

logger = structlog.get_logger()


class DecisionCache(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    async def evict_tenant(self, tenant_id: str) -> int: ...


class MemoryDecisionCache:
    """In-process TTL cache with an LRU bound."""

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: OrderedDict[str, tuple[float, dict[str, Any]]] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> dict[str, Any] | None:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return dict(value)

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, dict(value))
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def evict_tenant(self, tenant_id: str) -> int:
        prefix = route_decision_pattern(tenant_id)[:-1]
        stale = [k for k in self._entries if k.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)


class RedisDecisionCache:
    """Shared cache across gateway workers. Redis errors degrade to a miss."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._client.get(key)
        except redis.RedisError as exc:
            logger.warning("decision_cache.get_failed", error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("decision_cache.corrupt_entry", key=key)
            return None

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self._client.setex(key, ttl_seconds, json.dumps(value))
        except redis.RedisError as exc:
            logger.warning("decision_cache.set_failed", error=str(exc))

    async def evict_tenant(self, tenant_id: str) -> int:
        evicted = 0
        try:
            async for key in self._client.scan_iter(match=route_decision_pattern(tenant_id), count=500):
                evicted += await self._client.delete(key)
        except redis.RedisError as exc:
            logger.warning("decision_cache.evict_failed", tenant_id=tenant_id, error=str(exc))
        return evicted
