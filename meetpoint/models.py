"""
Data model shared by the engine components.

Coordinates travel as frozen value objects; the public payloads keep the
``{'lat': ..., 'lng': ...}`` shape the API has always returned.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InputError

# Six decimals is ~0.1 m, finer than any provider resolves
COORDINATE_PRECISION = 6


class TravelMode(str, Enum):
    DRIVING = 'driving'
    WALKING = 'walking'
    CYCLING = 'cycling'
    TRANSIT = 'transit'

    @classmethod
    def parse(cls, value: Any) -> 'TravelMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ', '.join(m.value for m in cls)
            raise InputError(f"Unsupported travel mode: {value!r} (expected one of {allowed})", mode=value)


@dataclass(frozen=True)
class Coordinate:
    """WGS84 point in decimal degrees."""

    lat: float
    lng: float

    def __post_init__(self):
        try:
            lat = float(self.lat)
            lng = float(self.lng)
        except (TypeError, ValueError):
            raise InputError(f"Coordinate values must be numeric, got ({self.lat!r}, {self.lng!r})")
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise InputError("Coordinate values must be finite")
        if not -90.0 <= lat <= 90.0:
            raise InputError(f"Latitude {lat} outside [-90, 90]", lat=lat)
        if not -180.0 <= lng <= 180.0:
            raise InputError(f"Longitude {lng} outside [-180, 180]", lng=lng)
        object.__setattr__(self, 'lat', lat)
        object.__setattr__(self, 'lng', lng)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Coordinate':
        if not isinstance(data, Mapping):
            raise InputError("Coordinate must be an object with lat and lng properties")
        lng = data.get('lng', data.get('lon'))
        if 'lat' not in data or lng is None:
            raise InputError("Coordinate must have lat and lng properties")
        return cls(data['lat'], lng)

    @property
    def key(self) -> str:
        return f"{self.lat:.{COORDINATE_PRECISION}f},{self.lng:.{COORDINATE_PRECISION}f}"

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    def to_dict(self) -> Dict[str, float]:
        return {'lat': self.lat, 'lng': self.lng}


@dataclass(frozen=True)
class Location:
    """User input plus its resolution. Immutable once resolved."""

    address: Optional[str]
    coordinate: Optional[Coordinate] = None
    provider: Optional[str] = None
    confidence: Optional[float] = None
    label: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.coordinate is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'input': self.address,
            'geocoded': {
                **self.coordinate.to_dict(),
                'formatted_address': self.label,
                'provider': self.provider,
                'confidence': self.confidence,
            } if self.coordinate else None,
        }


class CellStatus(str, Enum):
    OK = 'ok'
    UNREACHABLE = 'unreachable'
    ERROR = 'error'


@dataclass(frozen=True)
class MatrixCell:
    """Directed travel time/distance from one origin to one destination.

    ``duration_s`` and ``distance_m`` are None unless the status is OK.
    """

    origin_index: int
    destination_index: int
    duration_s: Optional[float] = None
    distance_m: Optional[float] = None
    status: CellStatus = CellStatus.OK

    def __post_init__(self):
        if self.status is CellStatus.OK:
            if self.duration_s is None or self.duration_s < 0:
                raise ValueError(f"Reachable cell needs a non-negative duration, got {self.duration_s}")
            if self.distance_m is not None and self.distance_m < 0:
                raise ValueError(f"Distance must be non-negative, got {self.distance_m}")
        elif self.duration_s is not None or self.distance_m is not None:
            raise ValueError(f"{self.status.value} cell must not carry travel values")

    @property
    def reachable(self) -> bool:
        return self.status is CellStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            'origin_index': self.origin_index,
            'destination_index': self.destination_index,
            'duration_seconds': self.duration_s,
            'duration_minutes': round(self.duration_s / 60, 1) if self.duration_s is not None else None,
            'distance_meters': self.distance_m,
            'status': self.status.value,
        }


@dataclass(frozen=True)
class BatchError:
    """A matrix batch that could not be fetched."""

    origin_indices: Tuple[int, ...]
    destination_indices: Tuple[int, ...]
    message: str

    @property
    def cell_count(self) -> int:
        return len(self.origin_indices) * len(self.destination_indices)


@dataclass
class TravelMatrix:
    """Dense origins x destinations table owned by a single request."""

    origins: Tuple[Coordinate, ...]
    destinations: Tuple[Coordinate, ...]
    cells: List[List[MatrixCell]]
    errors: List[BatchError] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.origins), len(self.destinations)

    def cell(self, origin_index: int, destination_index: int) -> MatrixCell:
        return self.cells[origin_index][destination_index]

    def column(self, destination_index: int) -> List[MatrixCell]:
        return [row[destination_index] for row in self.cells]

    def durations(self, destination_index: int) -> List[Optional[float]]:
        return [c.duration_s for c in self.column(destination_index)]

    def column_complete(self, destination_index: int) -> bool:
        return all(c.reachable for c in self.column(destination_index))

    @property
    def failed_cell_count(self) -> int:
        return sum(1 for row in self.cells for c in row if c.status is CellStatus.ERROR)

    @property
    def complete(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class CandidateCoordinate:
    """A possible meeting point with its travel-time evaluation."""

    coordinate: Coordinate
    durations: Tuple[Optional[float], ...] = ()
    unfairness_s: Optional[float] = None
    total_s: Optional[float] = None
    source: str = 'grid'
    evaluated: bool = False

    @property
    def objective(self) -> Tuple[float, float]:
        if not self.evaluated:
            return (math.inf, math.inf)
        return (self.unfairness_s, self.total_s)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            **self.coordinate.to_dict(),
            'source': self.source,
            'evaluated': self.evaluated,
        }
        if self.evaluated:
            payload.update({
                'travel_times_seconds': list(self.durations),
                'time_difference_seconds': self.unfairness_s,
                'time_difference_minutes': round(self.unfairness_s / 60, 1),
                'total_travel_time_seconds': self.total_s,
                'total_travel_time_minutes': round(self.total_s / 60, 1),
            })
        return payload


@dataclass
class CandidatePOI:
    """A place returned by the places provider, joined to matrix columns by index."""

    id: str
    name: str
    coordinate: Coordinate
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    rating: Optional[float] = None
    relevance: int = 0
    address: Optional[str] = None
    cells: Dict[int, MatrixCell] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'place_id': self.id,
            'name': self.name,
            **self.coordinate.to_dict(),
            'formatted_address': self.address,
            'category': self.category,
            'types': list(self.tags),
            'rating': self.rating,
        }


@dataclass(frozen=True)
class ScoredPOI:
    poi: CandidatePOI
    durations: Tuple[Optional[float], ...]
    spread_s: float
    mean_s: float
    score: float
    penalized: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.poi.to_dict(),
            'travel_times_seconds': list(self.durations),
            'travel_times_minutes': [round(d / 60, 1) if d is not None else None for d in self.durations],
            'time_difference_seconds': self.spread_s,
            'time_difference_minutes': round(self.spread_s / 60, 1),
            'mean_travel_time_seconds': self.mean_s,
            'mean_travel_time_minutes': round(self.mean_s / 60, 1),
            'composite_score': self.score,
            'penalized': self.penalized,
        }
