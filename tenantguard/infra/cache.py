from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from tenantguard.domain.models import EventEnvelope
from tenantguard.infra import events, redis_state
from tenantguard.infra.events import EventBus

logger = logging.getLogger(__name__)

_FALSY = {"0", "false", "False", ""}

AUTHZ_CACHE_ENABLED = os.getenv("AUTHZ_CACHE_ENABLED", "0") not in _FALSY
AUTHZ_CACHE_SHARED = os.getenv("AUTHZ_CACHE_SHARED", "1") not in _FALSY
AUTHZ_CACHE_TTL_S = float(os.getenv("AUTHZ_CACHE_TTL_S", "30"))

INVALIDATING_EVENTS = frozenset(
    {
        events.TENANT_DELETED,
        events.DEPARTMENT_CREATED,
        events.DEPARTMENT_MOVED,
        events.DEPARTMENT_DELETED,
        events.USER_UPDATED,
        events.USER_DELETED,
        events.ROLE_UPDATED,
        events.ROLE_DELETED,
        events.POLICY_ATTACHED,
        events.POLICY_DETACHED,
        events.ROLE_ASSIGNED,
        events.ROLE_REVOKED,
    }
)

# (epoch, local tenant generation, shared tenant generation)
CacheGeneration = tuple[int, int, int | None]


class RedisGenerations:
    """Per-tenant invalidation counters kept in Redis.

    Every process pointed at the same ``REDIS_URL`` sees a bump made by any
    other process, so a mutation in one worker invalidates principals cached
    in all of them.
    """

    def __init__(self, prefix: str = "tenantguard:authz:generation") -> None:
        self.prefix = prefix

    def _key(self, tenant_id: str) -> str:
        return f"{self.prefix}:{tenant_id}"

    def current(self, tenant_id: str) -> int:
        value = redis_state.get_redis().get(self._key(tenant_id))
        return 0 if value is None else int(value)

    def bump(self, tenant_id: str) -> int:
        return int(redis_state.get_redis().incr(self._key(tenant_id)))


@dataclass(frozen=True)
class _Entry:
    value: Any
    shared_generation: int | None
    expires_at: float | None


class PrincipalCache:
    """Resolved principals keyed by (tenant_id, user_id).

    Invalidation is tenant-wide. In-process subscribers drop entries
    synchronously; with ``shared`` set, each read also compares the entry with
    the tenant's Redis counter, so invalidations published by other processes
    are honoured on the next lookup. ``ttl_s`` bounds the age of any entry.

    ``generation`` is read before a load and passed back to ``store``; a store
    whose generation is stale is dropped, so a load racing an invalidation
    cannot resurrect old data. When Redis cannot be reached nothing is served
    from or written to the cache.
    """

    def __init__(
        self,
        ttl_s: float | None = None,
        shared: RedisGenerations | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], _Entry] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._ttl_s = ttl_s if ttl_s is not None and ttl_s > 0 else None
        self._shared = shared
        self._clock = clock

    def _shared_generation(self, tenant_id: str) -> int | None:
        if self._shared is None:
            return None
        try:
            return self._shared.current(tenant_id)
        except RedisError as exc:
            logger.warning("principal cache cannot read shared generation for tenant %s: %s", tenant_id, exc)
            return None

    def _drop(self, key: tuple[str, str], entry: _Entry) -> None:
        with self._lock:
            if self._entries.get(key) is entry:
                del self._entries[key]

    def generation(self, tenant_id: str) -> CacheGeneration:
        shared = self._shared_generation(tenant_id)
        with self._lock:
            return self._epoch, self._generations.get(tenant_id, 0), shared

    def get(self, tenant_id: str, user_id: str) -> Any | None:
        key = (tenant_id, user_id)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            self._drop(key, entry)
            return None
        if self._shared is not None:
            current = self._shared_generation(tenant_id)
            if current is None or current != entry.shared_generation:
                self._drop(key, entry)
                return None
        return entry.value

    def store(self, tenant_id: str, user_id: str, value: Any, generation: CacheGeneration) -> bool:
        epoch, local, shared = generation
        if self._shared is not None and shared is None:
            return False
        expires_at = None if self._ttl_s is None else self._clock() + self._ttl_s
        with self._lock:
            if (self._epoch, self._generations.get(tenant_id, 0)) != (epoch, local):
                return False
            self._entries[(tenant_id, user_id)] = _Entry(value, shared, expires_at)
            return True

    def invalidate_tenant(self, tenant_id: str) -> None:
        with self._lock:
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            stale = [key for key in self._entries if key[0] == tenant_id]
            for key in stale:
                del self._entries[key]
        if self._shared is not None:
            try:
                self._shared.bump(tenant_id)
            except RedisError as exc:
                logger.warning("principal cache cannot publish invalidation for tenant %s: %s", tenant_id, exc)
        logger.debug("principal cache invalidated for tenant %s (%d entries)", tenant_id, len(stale))

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def handle_event(self, event: EventEnvelope) -> None:
        if event.event_type in INVALIDATING_EVENTS:
            self.invalidate_tenant(event.tenant_id)

    def subscribe(self, bus: EventBus) -> PrincipalCache:
        bus.subscribe("*", self.handle_event)
        return self


def build_principal_cache(bus: EventBus) -> PrincipalCache | None:
    """Cache used by the HTTP service, configured from the environment."""
    if not AUTHZ_CACHE_ENABLED:
        return None
    shared = RedisGenerations() if AUTHZ_CACHE_SHARED else None
    return PrincipalCache(ttl_s=AUTHZ_CACHE_TTL_S, shared=shared).subscribe(bus)
