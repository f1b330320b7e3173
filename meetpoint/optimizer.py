"""
Midpoint optimizer.

Geometry narrows the search, travel times decide it: a geometric median seeds
a few rings of candidate points, one matrix call scores them all, and a
coarse-to-fine pass tightens the rings around the best candidate. The
objective is minimax fairness (smallest max-min travel time across origins),
ties broken by lower total travel time.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence

from . import geometry
from .matrix import MatrixBuilder
from .models import CandidateCoordinate, Coordinate, TravelMatrix, TravelMode

logger = logging.getLogger(__name__)

RING_FRACTIONS = (0.1, 0.25, 0.5)
RING_BEARINGS = 8
MIN_RING_RADIUS_M = 150.0


def evaluate_candidates(points: Sequence[Coordinate], matrix: TravelMatrix, source: str) -> List[CandidateCoordinate]:
    """Score every fully reachable column of ``matrix``; others are dropped."""
    out = []
    for j, point in enumerate(points):
        column = matrix.column(j)
        if not all(c.reachable for c in column):
            continue
        durations = tuple(c.duration_s for c in column)
        out.append(CandidateCoordinate(
            coordinate=point,
            durations=durations,
            unfairness_s=max(durations) - min(durations),
            total_s=sum(durations),
            source=source,
            evaluated=True,
        ))
    return out


class MidpointOptimizer:
    def __init__(
        self,
        matrix_builder: MatrixBuilder,
        ring_fractions: Iterable[float] = RING_FRACTIONS,
        bearings: int = RING_BEARINGS,
        min_ring_radius_m: float = MIN_RING_RADIUS_M,
        refinement_iterations: int = 1,
        window_shrink: float = 0.5,
    ):
        self.matrix_builder = matrix_builder
        self.ring_fractions = tuple(ring_fractions)
        self.bearings = bearings
        self.min_ring_radius_m = min_ring_radius_m
        self.refinement_iterations = refinement_iterations
        self.window_shrink = window_shrink

    def seed(self, origins: Sequence[Coordinate]) -> Coordinate:
        return geometry.geometric_median(origins)

    def sample(self, seed: Coordinate, origins: Sequence[Coordinate]) -> List[Coordinate]:
        """Seed plus rings at fractions of the origin spread."""
        spread = geometry.spread_m(origins, seed)
        points = [seed]
        for k, fraction in enumerate(self.ring_fractions):
            radius = max(self.min_ring_radius_m, spread * fraction)
            # Alternate ring phase so rings do not line up on the same bearings
            phase = (180.0 / self.bearings) * (k % 2)
            points.extend(geometry.ring(seed, radius, self.bearings, phase))
        return geometry.dedupe(points)

    async def _score(self, origins: Sequence[Coordinate], points: List[Coordinate], mode: TravelMode,
                     source: str, report: 'OptimizationReport') -> List[CandidateCoordinate]:
        matrix = await self.matrix_builder.build(origins, points, mode)
        report.sampled += len(points)
        report.failed_batches += len(matrix.errors)
        report.failed_cells += matrix.failed_cell_count
        return evaluate_candidates(points, matrix, source)

    async def search(self, origins: Sequence[Coordinate], mode=TravelMode.DRIVING) -> 'OptimizationReport':
        """Run the two-phase search and report what was sampled and what failed."""
        report = OptimizationReport()
        if not origins:
            return report
        if len(origins) == 1:
            report.candidates = [CandidateCoordinate(coordinate=origins[0], durations=(0.0,), unfairness_s=0.0,
                                                     total_s=0.0, source='origin', evaluated=True)]
            return report

        mode = TravelMode.parse(mode)
        seed = self.seed(origins)
        report.seed = seed
        spread = geometry.spread_m(origins, seed)
        logger.info(f"Midpoint seed lat={seed.lat:.6f}, lng={seed.lng:.6f} (spread {spread:.0f} m)")

        samples = self.sample(seed, origins)
        evaluated = await self._score(origins, samples, mode, 'grid', report)
        evaluated = [replace(c, source='seed') if c.coordinate == seed else c for c in evaluated]

        radius = max(self.min_ring_radius_m, spread * min(self.ring_fractions or (0.1,)))
        best = _best(evaluated)
        for iteration in range(self.refinement_iterations):
            if best is None:
                break
            radius *= self.window_shrink
            if radius < self.min_ring_radius_m / 4:
                break
            points = geometry.ring(best.coordinate, radius, self.bearings, 180.0 / self.bearings)
            evaluated.extend(await self._score(origins, points, mode, 'refined', report))
            best = _best(evaluated)
            logger.debug(f"Refinement {iteration + 1}: best time difference {best.unfairness_s:.0f}s")

        if not evaluated:
            logger.warning("No candidate midpoint could be scored; using the geometric estimate")
            report.candidates = [CandidateCoordinate(coordinate=seed, source='geometric')]
            return report

        report.candidates = sorted(evaluated, key=lambda c: c.objective)
        top = report.candidates[0]
        logger.info(f"Best midpoint lat={top.coordinate.lat:.6f}, lng={top.coordinate.lng:.6f} "
                    f"time_difference={top.unfairness_s:.0f}s total={top.total_s:.0f}s")
        return report

    async def optimize(self, origins: Sequence[Coordinate], mode=TravelMode.DRIVING) -> List[CandidateCoordinate]:
        """Candidate meeting points ordered best first.

        A single origin is its own midpoint. When no candidate could be scored
        the result holds only the unevaluated geometric seed.
        """
        return (await self.search(origins, mode)).candidates


@dataclass
class OptimizationReport:
    candidates: List[CandidateCoordinate] = field(default_factory=list)
    seed: Optional[Coordinate] = None
    sampled: int = 0
    failed_batches: int = 0
    failed_cells: int = 0

    @property
    def estimated(self) -> bool:
        """True when the best candidate is geometric only."""
        return bool(self.candidates) and not self.candidates[0].evaluated


def _best(candidates: Sequence[CandidateCoordinate]) -> Optional[CandidateCoordinate]:
    return min(candidates, key=lambda c: c.objective, default=None)
