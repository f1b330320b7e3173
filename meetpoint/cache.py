"""
TTL cache with request coalescing, sitting in front of every provider call.

Storage is a ``cachetools.TLRUCache`` keyed by semantic keys (``geocode:``,
``matrix:``, ``poi:``): each entry carries its own TTL and the least recently
used live entry is dropped once ``max_entries`` is reached.
``compute_if_absent`` collapses concurrent misses for the same key into one
supplier task shared by all waiters. The cache is confined to the engine's
event loop, so every get/set/compute for a key runs atomically with respect
to the others without a lock.
"""

import asyncio
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar

from cachetools import TLRUCache

from .models import Coordinate

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class _Miss:
    def __repr__(self):
        return 'MISS'

    def __bool__(self):
        return False


MISS: Any = _Miss()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    inserted_at: float
    ttl: float


def _expires_at(key: str, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


class _InFlight:
    __slots__ = ('task', 'waiters')

    def __init__(self, task: 'asyncio.Task'):
        self.task = task
        self.waiters = 0


class TTLCache:
    """In-process cache, 24h TTL by default, capped at ``max_entries`` (LRU).

    An entry is a hit while its age is below its TTL and a miss from then on.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._store = TLRUCache(maxsize=self.max_entries, ttu=_expires_at, timer=clock)
        self._inflight: Dict[str, _InFlight] = {}
        self.hits = 0
        self.misses = 0
        self.coalesced = 0

    def __len__(self) -> int:
        self._store.expire()
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return MISS
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._store[key] = CacheEntry(key, value, self._clock(), ttl)

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def clear(self) -> None:
        self._store.clear()

    def purge_expired(self) -> int:
        before = len(self._store)
        self._store.expire()
        return before - len(self._store)

    async def compute_if_absent(
        self,
        key: str,
        supplier: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> T:
        value = self.get(key)
        if value is not MISS:
            self.hits += 1
            return value

        inflight = self._inflight.get(key)
        if inflight is None:
            self.misses += 1
            task = asyncio.ensure_future(supplier())
            inflight = _InFlight(task)
            self._inflight[key] = inflight
            # Registered before any waiter, so the entry is stored before they resume
            task.add_done_callback(lambda t: self._settle(key, t, ttl))
        else:
            self.coalesced += 1
            logger.debug(f"Coalesced request for {key}")

        inflight.waiters += 1
        try:
            return await asyncio.shield(inflight.task)
        except asyncio.CancelledError:
            if inflight.waiters == 1 and not inflight.task.done():
                # Last interested caller gone; undispatched work is withdrawn
                inflight.task.cancel()
            raise
        finally:
            inflight.waiters -= 1

    def _settle(self, key: str, task: 'asyncio.Task', ttl: Optional[float]) -> None:
        current = self._inflight.get(key)
        if current is not None and current.task is task:
            del self._inflight[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"Not caching failed lookup for {key}: {exc!r}")
            return
        self.set(key, task.result(), ttl)

    def stats(self) -> Dict[str, int]:
        return {
            'size': len(self),
            'hits': self.hits,
            'misses': self.misses,
            'coalesced': self.coalesced,
            'in_flight': len(self._inflight),
        }


# --- Key derivation ---

_WHITESPACE = re.compile(r'\s+')


def normalize_address(address: str) -> str:
    return _WHITESPACE.sub(' ', address).strip().lower()


def _digest(parts: Iterable[str]) -> str:
    return hashlib.sha1('|'.join(parts).encode('utf-8')).hexdigest()[:16]


def coordinate_set_hash(points: Iterable[Coordinate]) -> str:
    """Order-insensitive hash of a set of coordinates."""
    return _digest(sorted({p.key for p in points}))


def geocode_key(address: str) -> str:
    return f"geocode:{normalize_address(address)}"


def matrix_key(origins: Iterable[Coordinate], destinations: Iterable[Coordinate], mode: str) -> str:
    return f"matrix:{coordinate_set_hash(origins)}:{coordinate_set_hash(destinations)}:{mode}"


def poi_key(center: Coordinate, radius_m: int, category: str) -> str:
    # ~11 m grid so nearby centers share an entry
    region = _digest([f"{center.lat:.4f},{center.lng:.4f}"])
    return f"poi:{region}:{int(radius_m)}:{normalize_address(category or 'any')}"
