"""
POI candidate retrieval around a meeting point.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from .cache import TTLCache, poi_key
from .errors import EngineWarning, ErrorCode, ProviderError
from .models import CandidatePOI, Coordinate
from .providers import PlaceResult, PlacesProvider
from .throttle import OutboundThrottle, call_with_retry

logger = logging.getLogger(__name__)


class POISearch:
    """One cached, throttled places query per category, run concurrently."""

    def __init__(
        self,
        provider: PlacesProvider,
        cache: TTLCache,
        throttle: OutboundThrottle,
        retry_attempts: int = 2,
        retry_backoff: float = 0.5,
        ttl: Optional[float] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.throttle = throttle
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.ttl = ttl

    async def _category(self, center: Coordinate, radius_m: int, category: Optional[str]) -> Tuple[PlaceResult, ...]:
        async def fetch() -> Tuple[PlaceResult, ...]:
            places = await call_with_retry(
                lambda: self.throttle.submit_detached(self.provider.search, center, radius_m, category),
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                label=f"places '{category}'",
            )
            return tuple(places)

        return await self.cache.compute_if_absent(poi_key(center, radius_m, category), fetch, self.ttl)

    async def search(
        self,
        center: Coordinate,
        radius_m: int,
        categories: Sequence[Optional[str]],
    ) -> Tuple[List[CandidatePOI], List[EngineWarning]]:
        categories = list(categories) or [None]
        results = await asyncio.gather(
            *(self._category(center, radius_m, c) for c in categories),
            return_exceptions=True,
        )

        pois: List[CandidatePOI] = []
        seen = set()
        failed = []
        for category, result in zip(categories, results):
            if isinstance(result, ProviderError):
                logger.warning(f"Places search failed for category '{category}': {result.message}")
                failed.append(category)
                continue
            if isinstance(result, BaseException):
                raise result
            for place in result:
                if place.id in seen:
                    continue
                seen.add(place.id)
                pois.append(CandidatePOI(
                    id=place.id,
                    name=place.name,
                    coordinate=place.coordinate,
                    category=category,
                    tags=place.tags,
                    rating=place.rating,
                    relevance=len(pois),
                    address=place.address,
                ))

        warnings = []
        if failed:
            warnings.append(EngineWarning(
                code=ErrorCode.PARTIAL_FAILURE.value,
                message=f"{len(failed)} of {len(categories)} place categories could not be searched",
                details={'categories': failed},
            ))
        logger.info(f"Found {len(pois)} candidate places within {radius_m} m")
        return pois, warnings
