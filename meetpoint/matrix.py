"""
Travel-time matrix builder.

Splits an origins x destinations request into provider-sized batches,
fetches them through the cache and the matrix throttle, and reassembles one
dense, directed matrix in input order. A failed batch marks its cells as
errors instead of failing the whole matrix.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .cache import TTLCache, matrix_key
from .errors import ProviderError
from .models import BatchError, CellStatus, Coordinate, MatrixCell, TravelMatrix, TravelMode
from .providers import MatrixProvider, MatrixValue
from .throttle import OutboundThrottle, call_with_retry

logger = logging.getLogger(__name__)

Batch = Tuple[Tuple[int, ...], Tuple[int, ...]]
PairTable = Dict[Tuple[str, str], MatrixValue]


def plan_batches(
    n_origins: int,
    n_destinations: int,
    max_origins: int,
    max_destinations: int,
    max_elements: Optional[int] = None,
    max_coordinates: Optional[int] = None,
) -> List[Batch]:
    """Cover the origins x destinations cross product with batches that
    respect every provider limit. Indices inside a batch stay ascending."""
    if n_origins <= 0 or n_destinations <= 0:
        return []
    o_step = max(1, max_origins)
    if max_elements:
        o_step = min(o_step, max_elements)
    if max_coordinates:
        o_step = min(o_step, max(1, max_coordinates - 1))

    batches: List[Batch] = []
    for o_start in range(0, n_origins, o_step):
        o_idx = tuple(range(o_start, min(o_start + o_step, n_origins)))
        d_step = max(1, max_destinations)
        if max_elements:
            d_step = min(d_step, max(1, max_elements // len(o_idx)))
        if max_coordinates:
            d_step = min(d_step, max(1, max_coordinates - len(o_idx)))
        for d_start in range(0, n_destinations, d_step):
            batches.append((o_idx, tuple(range(d_start, min(d_start + d_step, n_destinations)))))
    return batches


class MatrixBuilder:
    def __init__(
        self,
        provider: MatrixProvider,
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

    def plan(self, n_origins: int, n_destinations: int) -> List[Batch]:
        return plan_batches(
            n_origins, n_destinations,
            self.provider.max_origins,
            self.provider.max_destinations,
            self.provider.max_elements,
            self.provider.max_coordinates,
        )

    async def _fetch_batch(self, origins: Sequence[Coordinate], destinations: Sequence[Coordinate],
                           mode: TravelMode) -> PairTable:
        async def fetch() -> PairTable:
            grid = await call_with_retry(
                lambda: self.throttle.submit_detached(self.provider.matrix, list(origins), list(destinations), mode),
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                label=f"matrix batch {len(origins)}x{len(destinations)}",
            )
            if len(grid) != len(origins) or any(len(row) != len(destinations) for row in grid):
                raise ProviderError(f"{self.provider.name} returned a grid of the wrong shape",
                                    provider=self.provider.name, retryable=False)
            return {
                (o.key, d.key): grid[i][j]
                for i, o in enumerate(origins)
                for j, d in enumerate(destinations)
            }

        return await self.cache.compute_if_absent(matrix_key(origins, destinations, mode.value), fetch, self.ttl)

    async def build(self, origins: Sequence[Coordinate], destinations: Sequence[Coordinate],
                    mode=TravelMode.DRIVING) -> TravelMatrix:
        mode = TravelMode.parse(mode)
        self.provider.check_mode(mode)
        origins = tuple(origins)
        destinations = tuple(destinations)
        cells: List[List[Optional[MatrixCell]]] = [[None] * len(destinations) for _ in origins]
        batches = self.plan(len(origins), len(destinations))

        results = await asyncio.gather(
            *(self._fetch_batch([origins[i] for i in o_idx], [destinations[j] for j in d_idx], mode)
              for o_idx, d_idx in batches),
            return_exceptions=True,
        )

        errors: List[BatchError] = []
        for (o_idx, d_idx), result in zip(batches, results):
            if isinstance(result, ProviderError):
                logger.warning(f"Matrix batch failed ({len(o_idx)}x{len(d_idx)} cells): {result.message}")
                errors.append(BatchError(o_idx, d_idx, result.message))
                for i in o_idx:
                    for j in d_idx:
                        cells[i][j] = MatrixCell(i, j, status=CellStatus.ERROR)
                continue
            if isinstance(result, BaseException):
                raise result
            for i in o_idx:
                for j in d_idx:
                    value = result.get((origins[i].key, destinations[j].key))
                    if value is None:
                        cells[i][j] = MatrixCell(i, j, status=CellStatus.UNREACHABLE)
                    else:
                        cells[i][j] = MatrixCell(i, j, duration_s=value[0], distance_m=value[1])

        if errors:
            logger.info(f"Matrix {len(origins)}x{len(destinations)}: {len(errors)} of {len(batches)} batches failed")
        return TravelMatrix(origins, destinations, cells, errors)
