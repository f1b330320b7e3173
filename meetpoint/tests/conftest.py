"""Shared stubs and fixtures for the engine tests.

Providers are in-memory stubs that record every call, so tests can assert on
upstream traffic. Travel times are geodesic distance over a constant speed,
which makes the fairness arithmetic predictable without any network.
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence

import pytest

from meetpoint import geometry
from meetpoint.cache import TTLCache, normalize_address
from meetpoint.config import Settings
from meetpoint.engine import MeetingPointEngine
from meetpoint.errors import ProviderError
from meetpoint.geocoding import GeocodingResolver
from meetpoint.matrix import MatrixBuilder
from meetpoint.models import Coordinate, TravelMode
from meetpoint.pois import POISearch
from meetpoint.providers import (GeocodeCandidate, GeocodingProvider, MatrixProvider, MatrixValue, PlaceResult,
                                 PlacesProvider)
from meetpoint.throttle import OutboundThrottle

TIMES_SQUARE = Coordinate(40.7580, -73.9855)
BROOKLYN_BRIDGE = Coordinate(40.7061, -73.9969)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubGeocoder(GeocodingProvider):
    name = 'stub-geocoder'

    def __init__(self, places: Optional[Dict[str, Coordinate]] = None, failing: Iterable[str] = (),
                 confidence: Optional[float] = 1.0, retryable: bool = False):
        self.places = {normalize_address(k): v for k, v in (places or {}).items()}
        self.failing = {normalize_address(a) for a in failing}
        self.confidence = confidence
        self.retryable = retryable
        self.calls: List[str] = []

    def search(self, text: str) -> List[GeocodeCandidate]:
        self.calls.append(text)
        key = normalize_address(text)
        if key in self.failing:
            raise ProviderError("stub geocoder unavailable", provider=self.name, retryable=self.retryable)
        coordinate = self.places.get(key)
        if coordinate is None:
            return []
        return [GeocodeCandidate(coordinate, self.confidence, text.strip().title())]


class StubMatrix(MatrixProvider):
    """Durations are geodesic meters / ``speed_mps``."""

    name = 'stub-matrix'

    def __init__(self, speed_mps: float = 10.0, max_origins: int = 25, max_destinations: int = 25,
                 max_elements: Optional[int] = 100, unreachable: Iterable[Coordinate] = (),
                 fail_when: Optional[Callable[[Sequence[Coordinate], Sequence[Coordinate]], bool]] = None,
                 modes: Iterable[TravelMode] = tuple(TravelMode)):
        self.speed_mps = speed_mps
        self.max_origins = max_origins
        self.max_destinations = max_destinations
        self.max_elements = max_elements
        self.unreachable = {c.key for c in unreachable}
        self.fail_when = fail_when
        self.supported_modes = frozenset(modes)
        self.calls: List[tuple] = []

    def matrix(self, origins, destinations, mode) -> List[List[MatrixValue]]:
        self.calls.append((len(origins), len(destinations)))
        if self.fail_when is not None and self.fail_when(origins, destinations):
            raise ProviderError("stub matrix unavailable", provider=self.name, retryable=False)
        grid = []
        for o in origins:
            row = []
            for d in destinations:
                if d.key in self.unreachable:
                    row.append(None)
                else:
                    meters = geometry.distance_m(o, d)
                    row.append((meters / self.speed_mps, meters))
            grid.append(row)
        return grid


class StubPlaces(PlacesProvider):
    name = 'stub-places'

    def __init__(self, by_category: Optional[Dict[Optional[str], List[PlaceResult]]] = None,
                 failing: Iterable[Optional[str]] = ()):
        self.by_category = by_category or {}
        self.failing = set(failing)
        self.calls: List[Optional[str]] = []

    def search(self, center, radius_m, category) -> List[PlaceResult]:
        self.calls.append(category)
        if category in self.failing:
            raise ProviderError(f"stub places unavailable for {category}", provider=self.name, retryable=False)
        return list(self.by_category.get(category, []))


def place(id: str, coordinate: Coordinate, rating: Optional[float] = None, name: Optional[str] = None) -> PlaceResult:
    return PlaceResult(id=id, name=name or id.title(), coordinate=coordinate, tags=('point_of_interest',),
                       rating=rating)


def build_engine(geocoder: GeocodingProvider, matrix: MatrixProvider, places: PlacesProvider,
                 settings: Optional[Settings] = None, cache: Optional[TTLCache] = None,
                 min_interval: float = 0.0) -> MeetingPointEngine:
    settings = settings or Settings(retry_backoff=0.0, categories=('cafe',))
    cache = cache or TTLCache()

    def throttle(name: str) -> OutboundThrottle:
        return OutboundThrottle(name, min_interval=min_interval, call_timeout=5.0)

    return MeetingPointEngine(
        geocoder=GeocodingResolver(geocoder, cache, throttle('geocoding'), retry_attempts=settings.retry_attempts,
                                   retry_backoff=settings.retry_backoff),
        matrix_builder=MatrixBuilder(matrix, cache, throttle('matrix'), retry_attempts=settings.retry_attempts,
                                     retry_backoff=settings.retry_backoff),
        poi_search=POISearch(places, cache, throttle('places'), retry_attempts=settings.retry_attempts,
                             retry_backoff=settings.retry_backoff),
        settings=settings,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def nyc_geocoder() -> StubGeocoder:
    return StubGeocoder({
        'Times Square, New York, NY': TIMES_SQUARE,
        'Brooklyn Bridge, New York, NY': BROOKLYN_BRIDGE,
    })
