"""
Caller-facing admission control.

Fixed-window counters keyed by caller identifier and tier. State is split into
shards, each with its own lock and an LRU-ordered map, so concurrent admits
for unrelated keys do not contend on one lock and the number of tracked keys
stays bounded under traffic from many distinct callers.

Not to be confused with ``throttle.OutboundThrottle``: the limiter guards
the service from callers, the throttle guards providers from the service.
"""

import logging
import math
import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from .config import Settings

logger = logging.getLogger(__name__)

ANONYMOUS = 'anonymous'
AUTHENTICATED = 'authenticated'
ELEVATED = 'elevated'


@dataclass(frozen=True)
class TierConfig:
    name: str
    limit: Optional[int]  # None = unlimited
    window_seconds: float


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    limit: Optional[int]
    remaining: Optional[int]
    reset_at: float
    tier: str
    retry_after: int = 0  # whole seconds until reset, set on denial

    def headers(self) -> Dict[str, str]:
        if self.limit is None:
            return {}
        out = {
            'X-RateLimit-Limit': str(self.limit),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            out['Retry-After'] = str(self.retry_after)
        return out


class RateLimitRecord:
    __slots__ = ('count', 'window_start')

    def __init__(self, window_start: float):
        self.count = 0
        self.window_start = window_start


class _Shard:
    __slots__ = ('lock', 'records', 'admits')

    def __init__(self):
        self.lock = threading.Lock()
        self.records: 'OrderedDict[str, RateLimitRecord]' = OrderedDict()
        self.admits = 0


DEFAULT_TIERS = {
    ANONYMOUS: TierConfig(ANONYMOUS, 10, 10.0),
    AUTHENTICATED: TierConfig(AUTHENTICATED, 50, 60.0),
    ELEVATED: TierConfig(ELEVATED, 100, 60.0),
}


class RateLimiter:
    """Process-scoped admission control, one instance per service.

    Args:
        tiers: tier name -> TierConfig. Unknown tier labels fall back to anonymous.
        shards: number of lock stripes.
        max_keys: approximate cap on tracked caller keys across all shards.
        compact_every: admits per shard between sweeps of expired records.
        clock: wall-clock source in epoch seconds (reset times are absolute).
    """

    def __init__(
        self,
        tiers: Optional[Dict[str, TierConfig]] = None,
        shards: int = 16,
        max_keys: int = 10000,
        compact_every: int = 256,
        clock: Callable[[], float] = time.time,
    ):
        self.tiers = dict(tiers or DEFAULT_TIERS)
        if ANONYMOUS not in self.tiers:
            self.tiers[ANONYMOUS] = DEFAULT_TIERS[ANONYMOUS]
        self._shards = [_Shard() for _ in range(max(1, shards))]
        self._max_per_shard = max(1, max_keys // len(self._shards))
        self._compact_every = max(1, compact_every)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> 'RateLimiter':
        tiers = {
            name: TierConfig(name, tier.limit, tier.window_seconds)
            for name, tier in settings.rate_limits.items()
        }
        return cls(tiers=tiers, max_keys=settings.rate_limit_max_keys)

    def resolve_tier(self, tier: Union[str, TierConfig, None]) -> TierConfig:
        if isinstance(tier, TierConfig):
            return tier
        name = (tier or ANONYMOUS).strip().lower()
        return self.tiers.get(name) or self.tiers[ANONYMOUS]

    def admit(self, caller_key: str, tier: Union[str, TierConfig, None] = None) -> AdmissionResult:
        config = self.resolve_tier(tier)
        now = self._clock()
        if config.limit is None:
            return AdmissionResult(True, None, None, now, config.name)

        key = f"{config.name}:{caller_key}"
        shard = self._shard_for(key)
        with shard.lock:
            shard.admits += 1
            if shard.admits % self._compact_every == 0:
                self._compact(shard, now)

            record = shard.records.get(key)
            if record is None or now - record.window_start >= config.window_seconds:
                record = RateLimitRecord(now)
                shard.records[key] = record
                if len(shard.records) > self._max_per_shard:
                    self._evict(shard, now)
            shard.records.move_to_end(key)

            reset_at = record.window_start + config.window_seconds
            if record.count >= config.limit:
                logger.info(f"Rate limit exceeded: tier={config.name} key={caller_key} reset_at={reset_at:.0f}")
                retry_after = max(1, int(math.ceil(reset_at - now)))
                return AdmissionResult(False, config.limit, 0, reset_at, config.name, retry_after)
            record.count += 1
            return AdmissionResult(True, config.limit, config.limit - record.count, reset_at, config.name)

    def tracked_keys(self) -> int:
        return sum(len(s.records) for s in self._shards)

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode('utf-8')) % len(self._shards)]

    def _window_for(self, key: str) -> float:
        tier = self.tiers.get(key.split(':', 1)[0])
        return tier.window_seconds if tier else max(t.window_seconds for t in self.tiers.values())

    def _compact(self, shard: _Shard, now: float) -> int:
        expired = [k for k, r in shard.records.items() if now - r.window_start >= self._window_for(k)]
        for k in expired:
            del shard.records[k]
        return len(expired)

    def _evict(self, shard: _Shard, now: float) -> None:
        # Expired records go first; only then the least recently used live one
        if self._compact(shard, now):
            return
        evicted, _ = shard.records.popitem(last=False)
        logger.debug(f"Rate limiter shard full, evicted {evicted}")
