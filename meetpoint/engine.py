"""
Meeting-point orchestration.

``MeetingPointEngine`` wires the resolver, optimizer, POI search, matrix
builder and ranker into one request pipeline. It is fully async and must run
on a single event loop, the one owned by ``BackgroundLoop``. Flask handlers
go through ``MeetingPointService``, which submits coroutines to that loop from
the request threads and returns ``{'success', 'error', 'data'}`` envelopes.
"""

import asyncio
import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .cache import TTLCache
from .config import Settings
from .errors import (EngineWarning, ErrorCode, InputError, MeetingPointError, NotFoundError, OutcomeStatus,
                     ProviderError)
from .geocoding import GeocodingResolver
from .matrix import MatrixBuilder
from .models import CandidateCoordinate, Coordinate, Location, TravelMatrix, TravelMode
from .optimizer import MidpointOptimizer
from .pois import POISearch
from .providers import (GoogleDistanceMatrixProvider, GoogleGeocodingProvider, GooglePlacesProvider,
                        OSRMMatrixProvider, create_google_client)
from .ranking import POIRanker, RankingWeights, UnreachablePolicy
from .storage import InMemorySearchStore, SearchRecord, SearchStore
from .throttle import OutboundThrottle

logger = logging.getLogger(__name__)

MIN_SEARCH_RADIUS_M = 100
MAX_SEARCH_RADIUS_M = 10000
MAX_MATRIX_DESTINATIONS = 100
CANDIDATES_IN_RESPONSE = 5


@dataclass(frozen=True)
class MeetingPointOptions:
    """Per-request knobs. ``None`` falls back to the engine's settings."""

    mode: Optional[Any] = None
    search_radius: Optional[Any] = None
    categories: Optional[Tuple[str, ...]] = None
    max_results: Optional[int] = None
    weights: Optional[RankingWeights] = None
    unreachable_policy: Optional[Any] = None
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'MeetingPointOptions':
        categories = data.get('categories')
        if categories is not None:
            if isinstance(categories, str):
                categories = categories.split(',')
            if not isinstance(categories, (list, tuple)) or not all(isinstance(c, str) for c in categories):
                raise InputError("categories must be a list of strings")
            categories = tuple(c.strip() for c in categories if c.strip())

        weights = data.get('weights')
        if weights is not None:
            if not isinstance(weights, Mapping):
                raise InputError("weights must be an object with fairness, efficiency and quality")
            try:
                weights = RankingWeights(**{k: float(v) for k, v in weights.items()
                                            if k in ('fairness', 'efficiency', 'quality')})
            except (TypeError, ValueError):
                raise InputError("weights must be numeric")

        max_results = data.get('max_results')
        if max_results is not None and (isinstance(max_results, bool) or not isinstance(max_results, int)
                                        or max_results < 1):
            raise InputError("max_results must be a positive integer")

        return cls(
            mode=data.get('mode'),
            search_radius=data.get('search_radius'),
            categories=categories,
            max_results=max_results,
            weights=weights,
            unreachable_policy=data.get('unreachable_policy'),
        )


@dataclass
class MeetingPointResult:
    origins: List[Location]
    midpoint: CandidateCoordinate
    candidates: List[CandidateCoordinate]
    ranked_pois: list
    mode: TravelMode
    search_radius: int
    warnings: List[EngineWarning] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        top = self.ranked_pois[0] if self.ranked_pois else None
        return {
            'origins': [loc.to_dict() for loc in self.origins],
            'mode': self.mode.value,
            'search_radius': self.search_radius,
            'midpoint': self.midpoint.to_dict(),
            'midpoint_estimated': not self.midpoint.evaluated,
            'candidate_midpoints': [c.to_dict() for c in self.candidates[:CANDIDATES_IN_RESPONSE]],
            'optimal_meeting_point': top.to_dict() if top else None,
            'ranked_pois': [p.to_dict() for p in self.ranked_pois],
            'warnings': [w.to_dict() for w in self.warnings],
        }


class MeetingPointEngine:
    def __init__(
        self,
        geocoder: GeocodingResolver,
        matrix_builder: MatrixBuilder,
        poi_search: POISearch,
        optimizer: Optional[MidpointOptimizer] = None,
        ranker: Optional[POIRanker] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.geocoder = geocoder
        self.matrix_builder = matrix_builder
        self.poi_search = poi_search
        self.optimizer = optimizer or MidpointOptimizer(matrix_builder)
        self.ranker = ranker or POIRanker(RankingWeights(
            self.settings.fairness_weight,
            self.settings.efficiency_weight,
            self.settings.quality_weight,
        ))
        self.executor: Optional[concurrent.futures.Executor] = None

    @classmethod
    def from_settings(cls, settings: Settings,
                      executor: Optional[concurrent.futures.ThreadPoolExecutor] = None) -> 'MeetingPointEngine':
        """Build the Google (and optionally OSRM) backed engine.

        Raises ValueError when the Google Maps API key is missing or the
        matrix provider name is unknown.
        """
        client = create_google_client(settings.google_maps_api_key, settings.provider_timeout)
        if settings.matrix_provider == 'osrm':
            matrix_provider = OSRMMatrixProvider(settings.osrm_base_url, settings.provider_timeout)
        elif settings.matrix_provider == 'google':
            matrix_provider = GoogleDistanceMatrixProvider(client)
        else:
            raise ValueError(f"Unknown MATRIX_PROVIDER: {settings.matrix_provider!r} (expected google or osrm)")

        owns_executor = executor is None
        if executor is None:
            executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=settings.executor_workers, thread_name_prefix='meetpoint-provider')
        cache = TTLCache(settings.cache_ttl, settings.cache_max_entries)
        retry = {'retry_attempts': settings.retry_attempts, 'retry_backoff': settings.retry_backoff}

        def throttle(name: str, interval: float) -> OutboundThrottle:
            return OutboundThrottle(name, interval, settings.provider_timeout, executor)

        matrix_builder = MatrixBuilder(matrix_provider, cache, throttle('matrix', settings.matrix_min_interval),
                                       **retry)
        engine = cls(
            geocoder=GeocodingResolver(
                GoogleGeocodingProvider(client), cache, throttle('geocoding', settings.geocode_min_interval),
                min_confidence=settings.geocode_min_confidence, **retry),
            matrix_builder=matrix_builder,
            poi_search=POISearch(GooglePlacesProvider(client), cache,
                                 throttle('places', settings.places_min_interval), **retry),
            settings=settings,
        )
        if owns_executor:
            engine.executor = executor
        logger.info(f"Meeting point engine ready (matrix provider: {matrix_provider.name})")
        return engine

    def close(self):
        """Release the provider thread pool if the engine created it."""
        if self.executor is not None:
            self.executor.shutdown(wait=False)
            self.executor = None

    @property
    def cache(self) -> TTLCache:
        return self.geocoder.cache

    @property
    def max_origins(self) -> int:
        return min(self.settings.max_origins, self.matrix_builder.provider.max_origins)

    # --- Validation ---

    def _parse_mode(self, value) -> TravelMode:
        mode = TravelMode.parse(value if value is not None else self.settings.default_mode)
        self.matrix_builder.provider.check_mode(mode)
        return mode

    def _parse_radius(self, value) -> int:
        if value is None:
            value = self.settings.search_radius
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value != int(value):
            raise InputError("search_radius must be an integer number of meters", search_radius=value)
        if not MIN_SEARCH_RADIUS_M <= value <= MAX_SEARCH_RADIUS_M:
            raise InputError(f"search_radius must be between {MIN_SEARCH_RADIUS_M} and {MAX_SEARCH_RADIUS_M} meters",
                             search_radius=value)
        return int(value)

    def _check_origins(self, origins: Sequence[Any]) -> None:
        if isinstance(origins, (str, bytes)) or not isinstance(origins, Sequence):
            raise InputError("origins must be a list of addresses or coordinates")
        if not origins:
            raise InputError("At least one origin is required")
        if len(origins) > self.max_origins:
            raise InputError(f"At most {self.max_origins} origins are supported, got {len(origins)}",
                             max_origins=self.max_origins)

    def _ranker_for(self, options: MeetingPointOptions) -> POIRanker:
        if options.weights is None and options.unreachable_policy is None:
            return self.ranker
        return POIRanker(
            options.weights or self.ranker.weights,
            UnreachablePolicy.parse(options.unreachable_policy or self.ranker.unreachable_policy),
            self.ranker.penalty_seconds,
        )

    # --- Resolution ---

    async def resolve_locations(self, items: Sequence[Any], label: str = 'origin') -> List[Location]:
        """Turn addresses and coordinates into resolved Locations, input order kept.

        Addresses are geocoded concurrently. The first failure in input order
        is raised: NotFoundError for an address without a match, ProviderError
        when the geocoder itself failed.
        """
        locations: List[Optional[Location]] = [None] * len(items)
        pending: List[Tuple[int, str]] = []
        for i, item in enumerate(items):
            if isinstance(item, Coordinate):
                locations[i] = Location(address=None, coordinate=item, provider='input')
            elif isinstance(item, Mapping) and 'lat' in item:
                locations[i] = Location(address=item.get('address'), coordinate=Coordinate.from_dict(item),
                                        provider='input')
            elif isinstance(item, Mapping) and 'address' in item:
                pending.append((i, self._address(item['address'], label, i)))
            elif isinstance(item, str):
                pending.append((i, self._address(item, label, i)))
            else:
                raise InputError(f"{label.capitalize()} {i + 1} must be an address or a coordinate", index=i)

        outcomes = await self.geocoder.resolve_many([address for _, address in pending])
        for (i, address), outcome in zip(pending, outcomes):
            if outcome.ok:
                locations[i] = outcome.value
            elif outcome.status is OutcomeStatus.NOT_FOUND:
                raise NotFoundError(f"Could not geocode address: {address}", address=address, index=i)
            else:
                error = outcome.error
                raise ProviderError(
                    f"Geocoding failed for address {address!r}: {error.message if error else 'unknown error'}",
                    provider=getattr(error, 'provider', None),
                    retryable=False,
                    timeout=outcome.status is OutcomeStatus.TIMEOUT,
                    address=address,
                    index=i,
                )
        return locations

    @staticmethod
    def _address(value: Any, label: str, index: int) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InputError(f"{label.capitalize()} {index + 1} is blank", index=index)
        return value.strip()

    # --- Operations ---

    async def geocode(self, address: str) -> Location:
        return (await self.resolve_locations([self._address(address, 'address', 0)], 'address'))[0]

    async def travel_matrix(self, origins: Sequence[Any], destinations: Sequence[Any],
                            mode=None) -> Tuple[List[Location], List[Location], TravelMatrix]:
        self._check_origins(origins)
        if isinstance(destinations, (str, bytes)) or not isinstance(destinations, Sequence) or not destinations:
            raise InputError("At least one destination is required")
        if len(destinations) > MAX_MATRIX_DESTINATIONS:
            raise InputError(f"At most {MAX_MATRIX_DESTINATIONS} destinations are supported")
        mode = self._parse_mode(mode)

        origin_locations, destination_locations = await asyncio.gather(
            self.resolve_locations(origins, 'origin'),
            self.resolve_locations(destinations, 'destination'),
        )
        matrix = await self.matrix_builder.build(
            [loc.coordinate for loc in origin_locations],
            [loc.coordinate for loc in destination_locations],
            mode,
        )
        return origin_locations, destination_locations, matrix

    async def compute_meeting_point(self, origins: Sequence[Any],
                                    options: Optional[MeetingPointOptions] = None) -> MeetingPointResult:
        """Validate, then run the whole pipeline under the request timeout.

        Expiry cancels everything still outstanding and raises a timeout
        ProviderError.
        """
        options = options or MeetingPointOptions()
        self._check_origins(origins)
        mode = self._parse_mode(options.mode)
        radius = self._parse_radius(options.search_radius)
        timeout = options.timeout or self.settings.request_timeout

        try:
            return await asyncio.wait_for(self._compute(list(origins), mode, radius, options), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Meeting point computation exceeded {timeout}s")
            raise ProviderError(f"Meeting point computation timed out after {timeout}s",
                                retryable=False, timeout=True)

    async def _compute(self, origins: List[Any], mode: TravelMode, radius: int,
                       options: MeetingPointOptions) -> MeetingPointResult:
        locations = await self.resolve_locations(origins)
        coordinates = [loc.coordinate for loc in locations]
        warnings: List[EngineWarning] = []

        report = await self.optimizer.search(coordinates, mode)
        if report.failed_cells:
            warnings.append(EngineWarning(
                code=ErrorCode.PARTIAL_FAILURE.value,
                message=f"{report.failed_cells} of {report.sampled * len(coordinates)} travel times to candidate "
                        f"midpoints could not be fetched",
                details={'failed_batches': report.failed_batches},
            ))
        if report.estimated:
            warnings.append(EngineWarning(
                code=ErrorCode.PARTIAL_FAILURE.value,
                message="No candidate midpoint could be scored by travel time; using the geometric estimate",
                details={'source': 'geometric'},
            ))
        midpoint = report.candidates[0]

        categories = options.categories if options.categories is not None else self.settings.categories
        pois, poi_warnings = await self.poi_search.search(midpoint.coordinate, radius, categories)
        warnings.extend(poi_warnings)

        ranked = []
        if not pois:
            warnings.append(EngineWarning(
                code=ErrorCode.NOT_FOUND.value,
                message=f"No places found within {radius} m of the midpoint",
                details={'search_radius': radius},
            ))
        else:
            matrix = await self.matrix_builder.build(coordinates, [p.coordinate for p in pois], mode)
            scored = self._ranker_for(options).rank(pois, matrix)
            excluded = len(pois) - len(scored)
            penalized = sum(1 for s in scored if s.penalized)
            details = {'failed_batches': len(matrix.errors)}
            if excluded:
                warnings.append(EngineWarning(
                    code=ErrorCode.PARTIAL_FAILURE.value,
                    message=f"{excluded} of {len(pois)} candidate POIs could not be scored",
                    details={**details, 'excluded': excluded},
                ))
            if penalized:
                warnings.append(EngineWarning(
                    code=ErrorCode.PARTIAL_FAILURE.value,
                    message=f"{penalized} of {len(pois)} candidate POIs were ranked with an unreachable penalty",
                    details={**details, 'penalized': penalized},
                ))
            ranked = scored[:options.max_results or self.settings.max_results]

        if warnings:
            logger.warning(f"Meeting point computed with {len(warnings)} warning(s)")
        return MeetingPointResult(
            origins=locations,
            midpoint=midpoint,
            candidates=report.candidates,
            ranked_pois=ranked,
            mode=mode,
            search_radius=radius,
            warnings=warnings,
        )


class BackgroundLoop:
    """A process-scoped asyncio loop running on a daemon thread."""

    def __init__(self, name: str = 'meetpoint-loop'):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> 'BackgroundLoop':
        if self.running:
            return self
        self._ready.clear()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._serve, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait()
        return self

    def _serve(self):
        loop = self._loop
        asyncio.set_event_loop(loop)
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    def run(self, coro, timeout: Optional[float] = None):
        """Run ``coro`` on the loop and block the calling thread for its result."""
        if not self.running:
            coro.close()
            raise RuntimeError("Background loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def stop(self, timeout: float = 5.0):
        if not self.running:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        self._thread = None


class MeetingPointService:
    """Synchronous facade over the engine for the HTTP adapter."""

    def __init__(self, engine: MeetingPointEngine, store: Optional[SearchStore] = None,
                 loop: Optional[BackgroundLoop] = None):
        self.engine = engine
        self.store = store if store is not None else InMemorySearchStore()
        self.loop = loop or BackgroundLoop()
        self.loop.start()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      store: Optional[SearchStore] = None) -> 'MeetingPointService':
        return cls(MeetingPointEngine.from_settings(settings or Settings.from_env()), store)

    def close(self):
        self.loop.stop()
        self.engine.close()

    @property
    def _backstop_timeout(self) -> float:
        # The engine enforces the request timeout itself; this only guards a wedged loop
        return self.engine.settings.request_timeout + 5.0

    def _envelope(self, coro) -> Tuple[Dict[str, Any], Any]:
        result = {
            'success': False,
            'error': None,
            'data': {}
        }
        try:
            value = self.loop.run(coro, self._backstop_timeout)
        except MeetingPointError as e:
            logger.warning(f"Request failed ({e.code.value}): {e.message}")
            result['error'] = e.message
            result['error_code'] = e.code.value
            if e.details:
                result['details'] = e.details
            return result, None
        except concurrent.futures.TimeoutError:
            logger.error("Engine did not answer within the backstop timeout")
            result['error'] = "Request timed out"
            result['error_code'] = ErrorCode.TIMEOUT.value
            return result, None
        result['success'] = True
        return result, value

    def find_meeting_point(self, origins: Sequence[Any],
                           options: Optional[MeetingPointOptions] = None) -> Dict[str, Any]:
        result, value = self._envelope(self.engine.compute_meeting_point(origins, options))
        if value is None:
            return result
        result['data'] = value.to_dict()
        result['data']['search_id'] = self._save(value)
        return result

    def geocode(self, address: str) -> Dict[str, Any]:
        result, location = self._envelope(self.engine.geocode(address))
        if location is not None:
            result['data'] = {'input': address, **location.to_dict()['geocoded']}
        return result

    def travel_matrix(self, origins: Sequence[Any], destinations: Sequence[Any], mode=None) -> Dict[str, Any]:
        result, value = self._envelope(self.engine.travel_matrix(origins, destinations, mode))
        if value is None:
            return result
        origin_locations, destination_locations, matrix = value
        result['data'] = {
            'origins': [loc.to_dict() for loc in origin_locations],
            'destinations': [loc.to_dict() for loc in destination_locations],
            'rows': [[cell.to_dict() for cell in row] for row in matrix.cells],
            'complete': matrix.complete,
            'warnings': [
                EngineWarning(
                    code=ErrorCode.PARTIAL_FAILURE.value,
                    message=f"{error.cell_count} cells could not be fetched: {error.message}",
                    details={'origins': list(error.origin_indices), 'destinations': list(error.destination_indices)},
                ).to_dict()
                for error in matrix.errors
            ],
        }
        return result

    def recent_searches(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.store.recent_searches(limit)]

    def stats(self) -> Dict[str, Any]:
        async def snapshot():
            return {'cache': self.engine.cache.stats()}

        return self.loop.run(snapshot(), self._backstop_timeout)

    def _save(self, value: MeetingPointResult) -> Optional[str]:
        record = SearchRecord.create(
            origins=[{'address': loc.address, **loc.coordinate.to_dict()} for loc in value.origins],
            midpoint=value.midpoint.coordinate.to_dict(),
            poi_ids=[s.poi.id for s in value.ranked_pois],
        )
        try:
            self.store.save_search(record)
        except Exception as e:
            logger.error(f"Failed to save search {record.id}: {e}", exc_info=True)
            return None
        return record.id
