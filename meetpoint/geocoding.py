"""
Address -> coordinate resolution behind the cache and the geocoding throttle.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from .cache import TTLCache, geocode_key, normalize_address
from .errors import NotFoundError, Outcome, ProviderError
from .models import Location
from .providers import GeocodeCandidate, GeocodingProvider
from .throttle import OutboundThrottle, call_with_retry

logger = logging.getLogger(__name__)


class GeocodingResolver:
    """Resolve free-text addresses to Locations.

    The cached value is the provider's full candidate list (an empty tuple
    when nothing matched), so changing the confidence floor never requires a
    new upstream call.
    """

    def __init__(
        self,
        provider: GeocodingProvider,
        cache: TTLCache,
        throttle: OutboundThrottle,
        min_confidence: Optional[float] = None,
        retry_attempts: int = 2,
        retry_backoff: float = 0.5,
        ttl: Optional[float] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.throttle = throttle
        self.min_confidence = min_confidence
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.ttl = ttl

    async def _lookup(self, address: str) -> Tuple[GeocodeCandidate, ...]:
        async def fetch() -> Tuple[GeocodeCandidate, ...]:
            results = await call_with_retry(
                lambda: self.throttle.submit_detached(self.provider.search, address),
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                label=f"geocode '{address}'",
            )
            return tuple(results)

        return await self.cache.compute_if_absent(geocode_key(address), fetch, self.ttl)

    def _select(self, candidates: Sequence[GeocodeCandidate]) -> Optional[GeocodeCandidate]:
        for candidate in candidates:
            if self.min_confidence is None:
                return candidate
            if candidate.confidence is not None and candidate.confidence >= self.min_confidence:
                return candidate
        return None

    async def resolve(self, address: str) -> Outcome[Location]:
        text = (address or '').strip()
        if not normalize_address(text):
            return Outcome.not_found(NotFoundError("Address is empty", address=address))
        try:
            candidates = await self._lookup(text)
        except ProviderError as e:
            logger.error(f"Geocoding failed for '{text}': {e.message}")
            return Outcome.failure(e)

        best = self._select(candidates)
        if best is None:
            reason = "no geocode match" if not candidates else "no match above the confidence floor"
            logger.warning(f"Failed to geocode address: '{text}' ({reason})")
            return Outcome.not_found(NotFoundError(f"Could not geocode address: {text}", address=text))

        logger.info(f"Geocoded '{text}' -> lat={best.coordinate.lat}, lng={best.coordinate.lng}")
        return Outcome.success(Location(
            address=text,
            coordinate=best.coordinate,
            provider=self.provider.name,
            confidence=best.confidence,
            label=best.label,
        ))

    async def resolve_many(self, addresses: Sequence[str]) -> List[Outcome[Location]]:
        """Resolve concurrently; results keep the input order."""
        return list(await asyncio.gather(*(self.resolve(a) for a in addresses)))
