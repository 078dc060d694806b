"""
Wiggly — Session & Role Caches
===============================
Lightweight cached access to the signed-in user and their roles, so that
every permission check does not turn into a backend round trip.

Both caches follow the same rules:
  1. A value younger than the TTL is returned without touching the backend.
  2. Otherwise, if a lookup is already running, every caller awaits that
     same lookup and receives the identical result object.
  3. Otherwise one lookup is started and its result cached.

Backend failures never propagate: the session cache degrades to "signed
out", the role cache to "no roles, hierarchy 0" (fail closed).

Invalidation is explicit: clear() drops everything, invalidate() only marks
the cached value stale. The host application wires its own signals
(logout, auth-state change, window focus) through an EventBus with
wire_cache_events().

Public API
----------
  SessionCache(provider, ttl, clock)
      get_session_user() / get_user_id() / clear() / invalidate() / subscribe()
  RoleCache(sessions, role_store, ttl, clock, now)
      get_current_user_roles()           → RoleSet
      get_current_user_roles_detailed()  → list[UserRoleDetailed]
      has_role(name) / get_max_hierarchy_level()
      clear() / invalidate() / subscribe()
  EventBus / wire_cache_events(bus, *caches)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from config import (
    ROLE_CACHE_TTL, SESSION_CACHE_TTL,
    CLEAR_USER_DATA_EVENT, FOCUS_EVENT,
)
from models import RoleSet, SessionUser, UserRoleDetailed
from stores import SessionProvider, RoleStore, StoreError

logger = logging.getLogger(__name__)

Clock    = Callable[[], float]
Listener = Callable[[str], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Single-flight TTL slot ────────────────────────────────────────────────────

class _CacheSlot:
    """
    One cached value with its timestamp and the lookup currently running.

    clear() bumps the generation so a lookup that was already running when
    the cache was cleared cannot write its (now unwanted) result back.
    """

    def __init__(self) -> None:
        self.value:      Any                      = None
        self.has_value:  bool                     = False
        self.cached_at:  Optional[float]          = None
        self.in_flight:  Optional[asyncio.Future] = None
        self.generation: int                      = 0

    def is_fresh(self, now: float, ttl: float, allow_none: bool) -> bool:
        if not self.has_value or self.cached_at is None:
            return False
        if self.value is None and not allow_none:
            return False
        return now - self.cached_at < ttl

    def store(self, value: Any, now: float) -> None:
        self.value, self.has_value, self.cached_at = value, True, now

    def clear(self) -> None:
        self.value, self.has_value, self.cached_at = None, False, None
        self.in_flight = None
        self.generation += 1

    def expire(self) -> None:
        self.cached_at = None


class _SingleFlightCache:
    """Shared mechanics for SessionCache and RoleCache."""

    name = 'cache'

    def __init__(self, ttl: float, clock: Clock) -> None:
        self.ttl    = ttl
        self._clock = clock
        self._listeners: list[Listener] = []

    async def _get(self, slot: _CacheSlot, fetch: Callable[[], Awaitable[Any]],
                   allow_none: bool = True) -> Any:
        if slot.is_fresh(self._clock(), self.ttl, allow_none):
            return slot.value
        if slot.in_flight is None:
            slot.in_flight = asyncio.ensure_future(self._run(slot, fetch, slot.generation))
        # shield: one caller being cancelled must not cancel everyone's lookup
        return await asyncio.shield(slot.in_flight)

    async def _run(self, slot: _CacheSlot, fetch: Callable[[], Awaitable[Any]], generation: int) -> Any:
        me = asyncio.current_task()
        try:
            value = await fetch()
            if slot.generation == generation:
                slot.store(value, self._clock())
            return value
        finally:
            if slot.in_flight is me:
                slot.in_flight = None

    # ── invalidation ──────────────────────────────────────────────────────
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener('clear' | 'invalidate') on every invalidation. Returns an unsubscribe."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    def _notify(self, reason: str) -> None:
        logger.debug('[%s] %s', self.name, reason)
        for listener in list(self._listeners):
            listener(reason)


# ── Session user ──────────────────────────────────────────────────────────────

class SessionCache(_SingleFlightCache):
    """
    Cached session user. A signed-out result is not cached as fresh, so the
    next call asks the provider again; a signed-in user is kept for the TTL.
    """

    name = 'auth-cache'

    def __init__(self, provider: SessionProvider, ttl: float = SESSION_CACHE_TTL,
                 clock: Clock = time.monotonic) -> None:
        super().__init__(ttl, clock)
        self.provider = provider
        self._slot    = _CacheSlot()

    async def get_session_user(self) -> Optional[SessionUser]:
        return await self._get(self._slot, self._fetch, allow_none=False)

    async def get_user_id(self) -> Optional[str]:
        user = await self.get_session_user()
        return user.id if user else None

    async def _fetch(self) -> Optional[SessionUser]:
        try:
            return await self.provider.get_session()
        except StoreError as exc:
            logger.warning('Session lookup failed, treating as signed out: %s', exc)
            return None

    def clear(self) -> None:
        self._slot.clear()
        self._notify('clear')

    def invalidate(self) -> None:
        self._slot.expire()
        self._notify('invalidate')


# ── Roles ─────────────────────────────────────────────────────────────────────

class RoleCache(_SingleFlightCache):
    """
    Cached role lookups for the current user.

    Two independent slots share one design: the compact RoleSet
    (names + max hierarchy level) and the detailed per-role list that
    carries each assignment's expiry. Only unexpired assignments
    (expires_at is None or in the future, per `now`) are returned.

    Examples
    --------
    Ten coroutines calling get_current_user_roles() on a cold cache issue a
    single role query and all receive the same RoleSet object. A call made
    after ttl seconds — or after clear() / invalidate() — queries again.
    """

    name = 'roles-cache'

    def __init__(self, sessions: SessionCache, role_store: RoleStore,
                 ttl: float = ROLE_CACHE_TTL, clock: Clock = time.monotonic,
                 now: Callable[[], datetime] = utcnow) -> None:
        super().__init__(ttl, clock)
        self.sessions   = sessions
        self.role_store = role_store
        self._now       = now
        self._compact   = _CacheSlot()
        self._detailed  = _CacheSlot()

    async def get_current_user_roles(self) -> RoleSet:
        return await self._get(self._compact, self._fetch_compact)

    async def get_current_user_roles_detailed(self) -> list[UserRoleDetailed]:
        return await self._get(self._detailed, self._fetch_detailed)

    async def has_role(self, role_name: str) -> bool:
        return role_name in (await self.get_current_user_roles()).roles

    async def get_max_hierarchy_level(self) -> int:
        return (await self.get_current_user_roles()).max_hierarchy_level

    async def _query(self) -> list[UserRoleDetailed]:
        user = await self.sessions.get_session_user()
        if not user:
            return []
        try:
            return await self.role_store.fetch_user_roles(user.id, self._now())
        except StoreError as exc:
            logger.warning('Failed to fetch roles for user %s, using no roles: %s', user.id, exc)
            return []

    async def _fetch_compact(self) -> RoleSet:
        rows = await self._query()
        return RoleSet(
            roles=tuple(r.name for r in rows),
            max_hierarchy_level=max((r.hierarchy_level for r in rows), default=0),
        )

    async def _fetch_detailed(self) -> list[UserRoleDetailed]:
        return list(await self._query())

    def clear(self) -> None:
        """Drop both slots and any running lookups. Bound to the logout broadcast."""
        self._compact.clear()
        self._detailed.clear()
        self._notify('clear')

    def invalidate(self) -> None:
        """Keep the values but mark them stale. Bound to window focus."""
        self._compact.expire()
        self._detailed.expire()
        self._notify('invalidate')


# ── Event wiring ──────────────────────────────────────────────────────────────

class EventBus:
    """Minimal named-event dispatcher standing in for the host's global events."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[[], None]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[[], None]) -> Callable[[], None]:
        self._handlers[event].append(handler)

        def _off() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)
        return _off

    def emit(self, event: str) -> int:
        """Run every handler for `event`; returns how many ran."""
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            handler()
        return len(handlers)


def wire_cache_events(bus: EventBus, *caches: _SingleFlightCache) -> list[Callable[[], None]]:
    """
    Bind the user-data broadcast to clear() and window focus to invalidate()
    for each cache. Returns the unbind callables.
    """
    unbind = []
    for cache in caches:
        unbind.append(bus.on(CLEAR_USER_DATA_EVENT, cache.clear))
        unbind.append(bus.on(FOCUS_EVENT, cache.invalidate))
    return unbind
