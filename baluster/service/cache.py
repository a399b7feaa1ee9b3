"""In-process caches with per-entry absolute expiry.

``TTLCache`` is a plain dict guarded by one lock: every entry carries its own
expiry instant, there is no size bound and no eviction order. Expired entries
are ignored on read (lazy expiry); ``purge_expired`` is an optional sweep for
memory hygiene and runs in a single short critical section.

``threading.Lock`` rather than a reader/writer lock: the critical sections are
a handful of dict operations, so reads never wait long behind writers.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar, Union

from baluster.logging import get_logger
from baluster.storage.models import as_utc, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]
TTL = Union[timedelta, float, int]


def _as_timedelta(ttl: TTL) -> timedelta:
    if isinstance(ttl, timedelta):
        return ttl
    return timedelta(seconds=ttl)


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: datetime


class TTLCache(Generic[T]):
    """Thread-safe key/value cache where each entry expires at its own instant."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._entries: Dict[str, _Entry[T]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def set(self, key: str, value: T, expires_at: datetime) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=as_utc(expires_at))

    def set_with_ttl(self, key: str, value: T, ttl: TTL) -> None:
        self.set(key, value, self._clock() + _as_timedelta(ttl))

    def get(self, key: str) -> Tuple[Optional[T], bool]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            if entry.expires_at <= now:
                del self._entries[key]
                return None, False
            return entry.value, True

    def get_and_delete(self, key: str) -> Tuple[Optional[T], bool]:
        """Atomically read and remove an entry; an expired entry is removed and reported missing."""
        now = self._clock()
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry.expires_at <= now:
            return None, False
        return entry.value, True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class StateCache:
    """Single-use OAuth ``state`` values guarding the login redirect.

    Each state remembers the redirect URI it was issued for, which the code
    exchange has to repeat.
    """

    def __init__(self, ttl_seconds: int = 600, *, clock: Clock = utcnow) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._cache: TTLCache[str] = TTLCache(clock=clock)

    def issue(self, redirect_uri: str = "") -> str:
        state = secrets.token_urlsafe(32)
        self.set(state, redirect_uri)
        return state

    def set(self, state: str, redirect_uri: str = "") -> None:
        self._cache.set_with_ttl(state, redirect_uri, self.ttl)

    def pop(self, state: str) -> Tuple[str, bool]:
        """Remove ``state`` and return its redirect URI and whether it was live."""
        if not state:
            return "", False
        value, found = self._cache.get_and_delete(state)
        if not found:
            return "", False
        return value or "", True

    def consume(self, state: str) -> bool:
        """Return True exactly once for a live state; reuse or expiry yields False."""
        return self.pop(state)[1]

    def purge_expired(self) -> int:
        return self._cache.purge_expired()

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class MembershipCache:
    """Caches organization membership answers keyed by ``"{org_id}:{user_id}"``."""

    def __init__(self, ttl_seconds: int = 300, *, clock: Clock = utcnow) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._cache: TTLCache[bool] = TTLCache(clock=clock)

    @staticmethod
    def key(org_id: str, user_id: str) -> str:
        return f"{org_id}:{user_id}"

    def get(self, org_id: str, user_id: str) -> Tuple[bool, bool]:
        value, found = self._cache.get(self.key(org_id, user_id))
        return bool(value), found

    def set(self, org_id: str, user_id: str, is_member: bool) -> None:
        self._cache.set_with_ttl(self.key(org_id, user_id), is_member, self.ttl)

    def invalidate(self, org_id: str, user_id: str) -> None:
        self._cache.delete(self.key(org_id, user_id))

    def invalidate_organization(self, org_id: str) -> int:
        removed = self._cache.invalidate_prefix(f"{org_id}:")
        logger.debug("membership_cache_invalidated", organization_id=org_id, removed=removed)
        return removed

    def purge_expired(self) -> int:
        return self._cache.purge_expired()

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


__all__ = ["TTLCache", "StateCache", "MembershipCache"]
