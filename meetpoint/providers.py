"""
Upstream provider contracts and their Google Maps / OSRM implementations.

Provider methods are plain blocking calls; the engine runs them through an
``OutboundThrottle`` on a worker thread. Every adapter normalizes the raw
response into the small types below and reports failures as ``ProviderError``.
A geocode with no match returns an empty list, it is not an error.
"""

import datetime as _dt
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Sequence, Tuple

import googlemaps
import requests
from googlemaps import exceptions as gm_exceptions

from .errors import InputError, ProviderError
from .models import Coordinate, TravelMode

logger = logging.getLogger(__name__)

# (duration seconds, distance meters); None = no route
MatrixValue = Optional[Tuple[float, Optional[float]]]

GOOGLE_DISTANCE_MATRIX_MAX_ORIGINS = 25
GOOGLE_DISTANCE_MATRIX_MAX_DEST = 25
GOOGLE_DISTANCE_MATRIX_MAX_ELEMENTS = 100
OSRM_TABLE_MAX_COORDINATES = 100

LOCATION_TYPE_CONFIDENCE = {
    'ROOFTOP': 1.0,
    'RANGE_INTERPOLATED': 0.8,
    'GEOMETRIC_CENTER': 0.6,
    'APPROXIMATE': 0.4,
}


@dataclass(frozen=True)
class GeocodeCandidate:
    coordinate: Coordinate
    confidence: Optional[float]
    label: str


@dataclass(frozen=True)
class PlaceResult:
    id: str
    name: str
    coordinate: Coordinate
    tags: Tuple[str, ...] = ()
    rating: Optional[float] = None
    address: Optional[str] = None


class GeocodingProvider(ABC):
    name = 'geocoder'

    @abstractmethod
    def search(self, text: str) -> List[GeocodeCandidate]:
        """Return candidates best first; empty list when nothing matches."""


class MatrixProvider(ABC):
    name = 'matrix'
    max_origins: int = GOOGLE_DISTANCE_MATRIX_MAX_ORIGINS
    max_destinations: int = GOOGLE_DISTANCE_MATRIX_MAX_DEST
    max_elements: Optional[int] = GOOGLE_DISTANCE_MATRIX_MAX_ELEMENTS
    max_coordinates: Optional[int] = None
    supported_modes: FrozenSet[TravelMode] = frozenset(TravelMode)

    @abstractmethod
    def matrix(self, origins: Sequence[Coordinate], destinations: Sequence[Coordinate],
               mode: TravelMode) -> List[List[MatrixValue]]:
        """Return a len(origins) x len(destinations) grid in input order."""

    def check_mode(self, mode: TravelMode) -> None:
        if mode not in self.supported_modes:
            allowed = ', '.join(sorted(m.value for m in self.supported_modes))
            raise InputError(f"{self.name} does not support {mode.value} routing (supported: {allowed})",
                             mode=mode.value)


class PlacesProvider(ABC):
    name = 'places'

    @abstractmethod
    def search(self, center: Coordinate, radius_m: int, category: Optional[str]) -> List[PlaceResult]:
        """Places near ``center`` in provider relevance order."""


def _non_negative(value, what: str, provider: str) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    if value < 0:
        raise ProviderError(f"{provider} returned negative {what}: {value}", provider=provider, retryable=False)
    return value


# --- Google Maps ---

def create_google_client(api_key: str, timeout: float = 10.0) -> googlemaps.Client:
    if not api_key or api_key == "your_api_key_here":
        raise ValueError("Valid Google Maps API key is required")
    # Spacing is enforced by our throttles; the client's own retry loop stays short
    return googlemaps.Client(key=api_key, timeout=timeout, retry_timeout=timeout)


def _google_error(e: Exception, provider: str) -> ProviderError:
    if isinstance(e, gm_exceptions.Timeout):
        return ProviderError(f"{provider} request timed out", provider=provider, timeout=True)
    if isinstance(e, gm_exceptions.ApiError):
        quota = e.status in ('OVER_QUERY_LIMIT', 'OVER_DAILY_LIMIT')
        return ProviderError(
            f"{provider} API error: {e.status}" + (f" ({e.message})" if e.message else ''),
            provider=provider, retryable=not quota and e.status == 'UNKNOWN_ERROR',
            status=e.status)
    if isinstance(e, gm_exceptions.HTTPError):
        code = getattr(e, 'status_code', None)
        return ProviderError(f"{provider} HTTP error {code}", provider=provider,
                             retryable=code is None or code >= 500, status=code)
    if isinstance(e, gm_exceptions.TransportError):
        return ProviderError(f"{provider} transport error: {e}", provider=provider)
    return ProviderError(f"{provider} error: {e}", provider=provider)


_GOOGLE_ERRORS = (gm_exceptions.ApiError, gm_exceptions.HTTPError, gm_exceptions.Timeout,
                  gm_exceptions.TransportError)


class GoogleGeocodingProvider(GeocodingProvider):
    name = 'google-geocoding'

    def __init__(self, client: googlemaps.Client):
        self.client = client

    def search(self, text: str) -> List[GeocodeCandidate]:
        try:
            results = self.client.geocode(text)
        except _GOOGLE_ERRORS as e:
            raise _google_error(e, self.name)
        candidates = []
        for item in results or []:
            try:
                loc = item['geometry']['location']
                coordinate = Coordinate(loc['lat'], loc['lng'])
            except (KeyError, TypeError, InputError) as e:
                logger.warning(f"Skipping malformed geocode result for '{text}': {e}")
                continue
            confidence = LOCATION_TYPE_CONFIDENCE.get(item['geometry'].get('location_type'))
            if confidence is not None and item.get('partial_match'):
                confidence = round(max(0.0, confidence - 0.2), 2)
            candidates.append(GeocodeCandidate(coordinate, confidence, item.get('formatted_address', text)))
        return candidates


class GoogleDistanceMatrixProvider(MatrixProvider):
    name = 'google-distance-matrix'
    supported_modes = frozenset(TravelMode)

    GOOGLE_MODES = {
        TravelMode.DRIVING: 'driving',
        TravelMode.WALKING: 'walking',
        TravelMode.CYCLING: 'bicycling',
        TravelMode.TRANSIT: 'transit',
    }

    def __init__(self, client: googlemaps.Client):
        self.client = client

    def matrix(self, origins: Sequence[Coordinate], destinations: Sequence[Coordinate],
               mode: TravelMode) -> List[List[MatrixValue]]:
        try:
            dm = self.client.distance_matrix(
                origins=[o.as_tuple() for o in origins],
                destinations=[d.as_tuple() for d in destinations],
                mode=self.GOOGLE_MODES[mode],
                departure_time=_dt.datetime.now() if mode is TravelMode.TRANSIT else None,
            )
        except _GOOGLE_ERRORS as e:
            raise _google_error(e, self.name)

        rows = dm.get('rows') if isinstance(dm, dict) else None
        if not rows or len(rows) != len(origins):
            raise ProviderError(f"{self.name} returned {len(rows or [])} rows for {len(origins)} origins",
                                provider=self.name)
        grid: List[List[MatrixValue]] = []
        for row in rows:
            elements = row.get('elements', [])
            if len(elements) != len(destinations):
                raise ProviderError(f"{self.name} returned a ragged row", provider=self.name)
            out_row: List[MatrixValue] = []
            for el in elements:
                dur = el.get('duration', {}).get('value') if el else None
                if el and el.get('status') == 'OK' and dur is not None:
                    dist = el.get('distance', {}).get('value')
                    out_row.append((_non_negative(dur, 'duration', self.name),
                                    _non_negative(dist, 'distance', self.name)))
                else:
                    out_row.append(None)
            grid.append(out_row)
        return grid


class GooglePlacesProvider(PlacesProvider):
    name = 'google-places'
    max_results = 20

    def __init__(self, client: googlemaps.Client):
        self.client = client

    def search(self, center: Coordinate, radius_m: int, category: Optional[str]) -> List[PlaceResult]:
        try:
            places_result = self.client.places_nearby(
                location=center.as_tuple(),
                radius=radius_m,
                type=category or 'point_of_interest',
            )
        except _GOOGLE_ERRORS as e:
            raise _google_error(e, self.name)

        places = []
        for place in (places_result or {}).get('results', [])[:self.max_results]:
            try:
                loc = place['geometry']['location']
                coordinate = Coordinate(loc['lat'], loc['lng'])
                place_id = place['place_id']
            except (KeyError, TypeError, InputError):
                continue
            places.append(PlaceResult(
                id=place_id,
                name=place.get('name', ''),
                coordinate=coordinate,
                tags=tuple(place.get('types', [])),
                rating=place.get('rating'),
                address=place.get('vicinity'),
            ))
        return places


# --- OSRM ---

class OSRMMatrixProvider(MatrixProvider):
    """OSRM table service. Sources and destinations share one coordinate list."""

    name = 'osrm-table'
    max_origins = 25
    max_destinations = 75
    max_elements = None
    max_coordinates = OSRM_TABLE_MAX_COORDINATES
    supported_modes = frozenset({TravelMode.DRIVING, TravelMode.WALKING, TravelMode.CYCLING})

    OSRM_PROFILES = {
        TravelMode.DRIVING: 'driving',
        TravelMode.WALKING: 'foot',
        TravelMode.CYCLING: 'bike',
    }

    def __init__(self, base_url: str = 'https://router.project-osrm.org', timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault('User-Agent', 'Meet-in-the-Middle/1.0')

    def matrix(self, origins: Sequence[Coordinate], destinations: Sequence[Coordinate],
               mode: TravelMode) -> List[List[MatrixValue]]:
        self.check_mode(mode)
        points = list(origins) + list(destinations)
        coords = ';'.join(f"{p.lng},{p.lat}" for p in points)
        n = len(origins)
        url = f"{self.base_url}/table/v1/{self.OSRM_PROFILES[mode]}/{coords}"
        params = {
            'sources': ';'.join(str(i) for i in range(n)),
            'destinations': ';'.join(str(n + j) for j in range(len(destinations))),
            'annotations': 'duration,distance',
        }
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout:
            raise ProviderError(f"{self.name} request timed out", provider=self.name, timeout=True)
        except requests.RequestException as e:
            raise ProviderError(f"{self.name} transport error: {e}", provider=self.name)

        if response.status_code == 429:
            raise ProviderError(f"{self.name} quota exhausted", provider=self.name, retryable=False, status=429)
        if response.status_code >= 400:
            raise ProviderError(f"{self.name} HTTP error {response.status_code}", provider=self.name,
                                retryable=response.status_code >= 500, status=response.status_code)
        try:
            data = response.json()
        except ValueError:
            raise ProviderError(f"{self.name} returned a non-JSON body", provider=self.name)
        if data.get('code') != 'Ok':
            raise ProviderError(f"{self.name} error: {data.get('message') or data.get('code')}",
                                provider=self.name, retryable=False)

        durations = data.get('durations') or []
        distances = data.get('distances') or [[None] * len(destinations) for _ in origins]
        if len(durations) != n or any(len(r) != len(destinations) for r in durations):
            raise ProviderError(f"{self.name} returned a malformed table", provider=self.name)
        grid: List[List[MatrixValue]] = []
        for i in range(n):
            row: List[MatrixValue] = []
            for j in range(len(destinations)):
                dur = durations[i][j]
                if dur is None:
                    row.append(None)
                else:
                    row.append((_non_negative(dur, 'duration', self.name),
                                _non_negative(distances[i][j], 'distance', self.name)))
            grid.append(row)
        return grid
