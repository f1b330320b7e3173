"""Unit tests for the midpoint optimizer and its geometry helpers."""

import asyncio

import pytest

from conftest import BROOKLYN_BRIDGE, TIMES_SQUARE, StubMatrix

from meetpoint import geometry
from meetpoint.cache import TTLCache
from meetpoint.matrix import MatrixBuilder
from meetpoint.models import Coordinate
from meetpoint.optimizer import MidpointOptimizer
from meetpoint.throttle import OutboundThrottle


def make_optimizer(provider, **kwargs) -> MidpointOptimizer:
    builder = MatrixBuilder(provider, TTLCache(), OutboundThrottle('matrix', min_interval=0.0), retry_backoff=0.0)
    return MidpointOptimizer(builder, **kwargs)


class TestGeometry:
    def test_centroid_of_two_points_is_between_them(self) -> None:
        mid = geometry.centroid([TIMES_SQUARE, BROOKLYN_BRIDGE])
        assert BROOKLYN_BRIDGE.lat < mid.lat < TIMES_SQUARE.lat
        assert BROOKLYN_BRIDGE.lng < mid.lng < TIMES_SQUARE.lng
        assert geometry.distance_m(mid, TIMES_SQUARE) == pytest.approx(geometry.distance_m(mid, BROOKLYN_BRIDGE),
                                                                      rel=1e-3)

    def test_geometric_median_sits_on_dominant_point(self) -> None:
        a = Coordinate(40.70, -74.00)
        points = [a, a, a, Coordinate(40.75, -73.95)]
        median = geometry.geometric_median(points)
        assert geometry.distance_m(median, a) < 5.0

    def test_ring_points_are_at_radius(self) -> None:
        points = geometry.ring(TIMES_SQUARE, 500.0, bearings=6)
        assert len(points) == 6
        for p in points:
            assert geometry.distance_m(TIMES_SQUARE, p) == pytest.approx(500.0, abs=0.5)

    def test_dedupe_drops_near_duplicates(self) -> None:
        near = geometry.destination(TIMES_SQUARE, 90.0, 0.2)
        assert geometry.dedupe([TIMES_SQUARE, near, BROOKLYN_BRIDGE]) == [TIMES_SQUARE, BROOKLYN_BRIDGE]


class TestOptimize:
    def test_single_origin_is_returned_unchanged(self) -> None:
        provider = StubMatrix()
        candidates = asyncio.run(make_optimizer(provider).optimize([TIMES_SQUARE]))
        assert len(candidates) == 1
        assert candidates[0].coordinate == TIMES_SQUARE
        assert candidates[0].unfairness_s == 0.0
        assert provider.calls == []

    def test_best_candidate_is_minimax_optimal_over_samples(self) -> None:
        origins = [TIMES_SQUARE, BROOKLYN_BRIDGE, Coordinate(40.7306, -73.9352)]
        candidates = asyncio.run(make_optimizer(StubMatrix()).optimize(origins))

        best = candidates[0]
        assert best.evaluated
        assert len(candidates) > 1
        for other in candidates[1:]:
            assert best.objective <= other.objective

    def test_unfairness_is_max_minus_min(self) -> None:
        candidates = asyncio.run(make_optimizer(StubMatrix()).optimize([TIMES_SQUARE, BROOKLYN_BRIDGE]))
        for c in candidates:
            assert c.unfairness_s == pytest.approx(max(c.durations) - min(c.durations))
            assert c.total_s == pytest.approx(sum(c.durations))

    def test_two_origin_midpoint_lies_between_them(self) -> None:
        candidates = asyncio.run(make_optimizer(StubMatrix()).optimize([TIMES_SQUARE, BROOKLYN_BRIDGE]))
        best = candidates[0].coordinate
        assert BROOKLYN_BRIDGE.lat < best.lat < TIMES_SQUARE.lat
        assert BROOKLYN_BRIDGE.lng < best.lng < TIMES_SQUARE.lng

    def test_candidates_with_missing_cells_are_excluded(self) -> None:
        origins = [TIMES_SQUARE, BROOKLYN_BRIDGE]
        optimizer = make_optimizer(StubMatrix())
        seed = optimizer.seed(origins)
        blocked = optimizer.sample(seed, origins)[3]

        optimizer = make_optimizer(StubMatrix(unreachable=[blocked]))
        candidates = asyncio.run(optimizer.optimize(origins))
        assert all(c.coordinate != blocked for c in candidates)

    def test_refinement_adds_candidates(self) -> None:
        origins = [TIMES_SQUARE, BROOKLYN_BRIDGE]
        coarse = asyncio.run(make_optimizer(StubMatrix(), refinement_iterations=0).search(origins))
        refined = asyncio.run(make_optimizer(StubMatrix(), refinement_iterations=1).search(origins))
        assert refined.sampled > coarse.sampled
        assert any(c.source == 'refined' for c in refined.candidates)
        assert refined.candidates[0].objective <= coarse.candidates[0].objective

    def test_all_batches_failing_falls_back_to_geometric_seed(self) -> None:
        provider = StubMatrix(fail_when=lambda origins, dests: True)
        report = asyncio.run(make_optimizer(provider).search([TIMES_SQUARE, BROOKLYN_BRIDGE]))

        assert report.estimated
        assert len(report.candidates) == 1
        assert report.candidates[0].coordinate == report.seed
        assert not report.candidates[0].evaluated
        assert report.failed_cells > 0
        assert report.failed_batches >= 1
