"""Unit tests for batch planning and matrix assembly."""

import asyncio
import itertools

import pytest

from conftest import StubMatrix

from meetpoint import geometry
from meetpoint.cache import TTLCache
from meetpoint.errors import InputError
from meetpoint.matrix import MatrixBuilder, plan_batches
from meetpoint.models import CellStatus, Coordinate, MatrixCell, TravelMode
from meetpoint.throttle import OutboundThrottle

ORIGINS = [Coordinate(40.70 + i * 0.01, -74.00 + i * 0.005) for i in range(5)]
DESTINATIONS = [Coordinate(40.72 + j * 0.004, -73.99 - j * 0.003) for j in range(7)]


def make_builder(provider, cache=None) -> MatrixBuilder:
    return MatrixBuilder(provider, cache or TTLCache(), OutboundThrottle('matrix', min_interval=0.0),
                         retry_backoff=0.0)


class TestPlanBatches:
    @pytest.mark.parametrize('limits', [
        dict(max_origins=25, max_destinations=25, max_elements=100),
        dict(max_origins=2, max_destinations=3, max_elements=None),
        dict(max_origins=4, max_destinations=4, max_elements=6),
        dict(max_origins=25, max_destinations=75, max_elements=None, max_coordinates=10),
    ])
    def test_batches_cover_every_cell_once_within_limits(self, limits) -> None:
        batches = plan_batches(9, 30, **limits)
        covered = []
        for o_idx, d_idx in batches:
            assert len(o_idx) <= limits['max_origins']
            assert len(d_idx) <= limits['max_destinations']
            if limits.get('max_elements'):
                assert len(o_idx) * len(d_idx) <= limits['max_elements']
            if limits.get('max_coordinates'):
                assert len(o_idx) + len(d_idx) <= limits['max_coordinates']
            covered.extend(itertools.product(o_idx, d_idx))
        assert sorted(covered) == sorted(itertools.product(range(9), range(30)))

    def test_empty_input_plans_nothing(self) -> None:
        assert plan_batches(0, 5, 25, 25) == []
        assert plan_batches(3, 0, 25, 25) == []

    def test_small_request_is_one_batch(self) -> None:
        assert plan_batches(2, 3, 25, 25, 100) == [((0, 1), (0, 1, 2))]


class TestBuild:
    def test_cells_follow_input_order(self) -> None:
        matrix = asyncio.run(make_builder(StubMatrix()).build(ORIGINS, DESTINATIONS, 'driving'))
        assert matrix.shape == (5, 7)
        assert matrix.complete
        cell = matrix.cell(3, 4)
        assert cell.origin_index == 3
        assert cell.destination_index == 4
        assert cell.duration_s == pytest.approx(geometry.distance_m(ORIGINS[3], DESTINATIONS[4]) / 10.0)

    def test_chunked_equals_unchunked(self) -> None:
        small = StubMatrix(max_origins=2, max_destinations=3, max_elements=4)
        whole = asyncio.run(make_builder(StubMatrix()).build(ORIGINS, DESTINATIONS))
        chunked = asyncio.run(make_builder(small).build(ORIGINS, DESTINATIONS))

        assert len(small.calls) > 1
        assert chunked.cells == whole.cells

    def test_directed(self) -> None:
        matrix = asyncio.run(make_builder(StubMatrix()).build(ORIGINS[:2], DESTINATIONS[:3]))
        assert matrix.shape == (2, 3)
        assert len(matrix.column(2)) == 2

    def test_unreachable_cells_carry_no_values(self) -> None:
        provider = StubMatrix(unreachable=[DESTINATIONS[1]])
        matrix = asyncio.run(make_builder(provider).build(ORIGINS, DESTINATIONS))
        for cell in matrix.column(1):
            assert cell.status is CellStatus.UNREACHABLE
            assert cell.duration_s is None
            assert cell.distance_m is None
        assert not matrix.column_complete(1)
        assert matrix.column_complete(0)
        assert matrix.complete

    def test_failed_batch_degrades_to_error_cells(self) -> None:
        provider = StubMatrix(max_origins=5, max_destinations=3, max_elements=None,
                              fail_when=lambda origins, dests: DESTINATIONS[4] in dests)
        matrix = asyncio.run(make_builder(provider).build(ORIGINS, DESTINATIONS))

        assert len(matrix.errors) == 1
        failed = matrix.errors[0]
        assert failed.destination_indices == (3, 4, 5)
        assert failed.cell_count == 15
        assert matrix.failed_cell_count == 15
        assert all(matrix.cell(i, 4).status is CellStatus.ERROR for i in range(5))
        assert all(matrix.cell(i, 0).reachable for i in range(5))
        assert all(matrix.cell(i, 6).reachable for i in range(5))

    def test_reordered_request_hits_the_cache(self) -> None:
        provider = StubMatrix()
        builder = make_builder(provider)

        async def scenario():
            first = await builder.build(ORIGINS[:2], DESTINATIONS[:3])
            second = await builder.build(list(reversed(ORIGINS[:2])), list(reversed(DESTINATIONS[:3])))
            return first, second

        first, second = asyncio.run(scenario())
        assert len(provider.calls) == 1
        assert second.cell(0, 0).duration_s == first.cell(1, 2).duration_s

    def test_mode_is_part_of_the_cache_key(self) -> None:
        provider = StubMatrix()
        builder = make_builder(provider)

        async def scenario():
            await builder.build(ORIGINS[:1], DESTINATIONS[:1], TravelMode.DRIVING)
            await builder.build(ORIGINS[:1], DESTINATIONS[:1], TravelMode.WALKING)

        asyncio.run(scenario())
        assert len(provider.calls) == 2

    def test_unsupported_mode_is_an_input_error(self) -> None:
        provider = StubMatrix(modes=[TravelMode.DRIVING])
        with pytest.raises(InputError):
            asyncio.run(make_builder(provider).build(ORIGINS, DESTINATIONS, 'transit'))

    def test_unknown_mode_is_an_input_error(self) -> None:
        with pytest.raises(InputError):
            asyncio.run(make_builder(StubMatrix()).build(ORIGINS, DESTINATIONS, 'teleport'))


class TestMatrixCell:
    def test_negative_duration_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            MatrixCell(0, 0, duration_s=-1.0)

    def test_error_cell_cannot_carry_values(self) -> None:
        with pytest.raises(ValueError):
            MatrixCell(0, 0, duration_s=0.0, status=CellStatus.ERROR)
