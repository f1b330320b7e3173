"""
Fairness-weighted ranking of candidate POIs.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from .errors import InputError
from .models import CandidatePOI, ScoredPOI, TravelMatrix

logger = logging.getLogger(__name__)

# --- Module-level constants ---
PLACE_FAIRNESS_WEIGHT = 0.7
PLACE_EFFICIENCY_WEIGHT = 0.3
PLACE_QUALITY_WEIGHT = 0.0
UNREACHABLE_PENALTY_SECONDS = 2 * 3600
MAX_RATING = 5.0


@dataclass(frozen=True)
class RankingWeights:
    fairness: float = PLACE_FAIRNESS_WEIGHT
    efficiency: float = PLACE_EFFICIENCY_WEIGHT
    quality: float = PLACE_QUALITY_WEIGHT

    def __post_init__(self):
        for name in ('fairness', 'efficiency', 'quality'):
            if getattr(self, name) < 0:
                raise InputError(f"{name} weight must be non-negative")


class UnreachablePolicy(str, Enum):
    EXCLUDE = 'exclude'
    PENALIZE = 'penalize'

    @classmethod
    def parse(cls, value) -> 'UnreachablePolicy':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InputError(f"Unknown unreachable policy: {value!r} (expected exclude or penalize)")


class POIRanker:
    """Score = -(w_f * spread + w_e * mean) / 3600 + w_q * quality.

    ``spread`` is the max-minus-min travel time across origins, ``mean`` the
    mean travel time (both seconds, scored in hours) and ``quality`` the
    provider rating scaled to [0, 1]. Higher is better. Ties go to the lower
    mean, then to the provider's own relevance order. Under the penalize
    policy a POI with any missing leg ranks below every fully reachable one,
    whatever its score.
    """

    def __init__(
        self,
        weights: Optional[RankingWeights] = None,
        unreachable_policy=UnreachablePolicy.EXCLUDE,
        penalty_seconds: float = UNREACHABLE_PENALTY_SECONDS,
    ):
        self.weights = weights or RankingWeights()
        self.unreachable_policy = UnreachablePolicy.parse(unreachable_policy)
        self.penalty_seconds = penalty_seconds

    def score(self, spread_s: float, mean_s: float, rating: Optional[float]) -> float:
        quality = min(max((rating or 0.0) / MAX_RATING, 0.0), 1.0)
        w = self.weights
        return -(w.fairness * spread_s + w.efficiency * mean_s) / 3600.0 + w.quality * quality

    def rank(self, pois: Sequence[CandidatePOI], matrix: TravelMatrix) -> List[ScoredPOI]:
        """``pois[j]`` must be the POI behind matrix destination column ``j``."""
        if len(pois) != len(matrix.destinations):
            raise ValueError(f"{len(pois)} POIs for a matrix with {len(matrix.destinations)} destinations")

        scored: List[ScoredPOI] = []
        for j, poi in enumerate(pois):
            column = matrix.column(j)
            poi.cells = {cell.origin_index: cell for cell in column}
            reachable = all(c.reachable for c in column)
            if not column:
                continue
            if not reachable and self.unreachable_policy is UnreachablePolicy.EXCLUDE:
                continue

            durations = tuple(c.duration_s if c.reachable else None for c in column)
            effective = [d if d is not None else self.penalty_seconds for d in durations]
            spread = max(effective) - min(effective)
            mean = sum(effective) / len(effective)
            scored.append(ScoredPOI(
                poi=poi,
                durations=durations,
                spread_s=spread,
                mean_s=mean,
                score=self.score(spread, mean, poi.rating),
                penalized=not reachable,
            ))

        scored.sort(key=lambda s: (s.penalized, -s.score, s.mean_s, s.poi.relevance))
        logger.debug(f"Ranked {len(scored)} of {len(pois)} places")
        return scored
