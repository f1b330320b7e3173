"""
Runtime settings read from the environment (and ``.env`` via python-dotenv).
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PLACEHOLDER_API_KEY = 'your_api_key_here'
DEFAULT_CATEGORIES = ('restaurant', 'cafe', 'bar', 'park', 'library')


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {name}: {raw!r} (using {default})")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    if raw.strip().lower() in ('none', 'unlimited'):
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {name}: {raw!r} (using {default})")
        return default


@dataclass(frozen=True)
class TierSettings:
    limit: Optional[int]
    window_seconds: float


@dataclass(frozen=True)
class Settings:
    google_maps_api_key: Optional[str] = None
    matrix_provider: str = 'google'
    osrm_base_url: str = 'https://router.project-osrm.org'
    default_mode: str = 'driving'

    geocode_min_interval: float = 0.5
    matrix_min_interval: float = 0.5
    places_min_interval: float = 0.5
    provider_timeout: float = 10.0
    request_timeout: float = 30.0
    retry_attempts: int = 2
    retry_backoff: float = 0.5
    executor_workers: int = 10

    cache_ttl: float = 24 * 60 * 60
    cache_max_entries: int = 5000

    geocode_min_confidence: Optional[float] = None
    max_origins: int = 10
    search_radius: int = 1500
    max_results: int = 10
    categories: tuple = DEFAULT_CATEGORIES

    fairness_weight: float = 0.7
    efficiency_weight: float = 0.3
    quality_weight: float = 0.0

    rate_limits: Dict[str, TierSettings] = field(default_factory=lambda: {
        'anonymous': TierSettings(10, 10.0),
        'authenticated': TierSettings(50, 60.0),
        'elevated': TierSettings(100, 60.0),
    })
    rate_limit_max_keys: int = 10000
    # Only behind an auth proxy that sets X-Caller-Tier itself
    trust_caller_tier_header: bool = False

    @property
    def has_google_key(self) -> bool:
        return bool(self.google_maps_api_key) and self.google_maps_api_key != PLACEHOLDER_API_KEY

    @classmethod
    def from_env(cls, dotenv: bool = True) -> 'Settings':
        if dotenv:
            load_dotenv()
        min_conf = _env_str('GEOCODE_MIN_CONFIDENCE')
        categories = tuple(c.strip() for c in (_env_str('POI_CATEGORIES') or '').split(',') if c.strip())
        return cls(
            google_maps_api_key=_env_str('GOOGLE_MAPS_API_KEY'),
            matrix_provider=(_env_str('MATRIX_PROVIDER', 'google') or 'google').lower(),
            osrm_base_url=_env_str('OSRM_BASE_URL', cls.osrm_base_url),
            default_mode=(_env_str('DEFAULT_TRAVEL_MODE', 'driving') or 'driving').lower(),
            geocode_min_interval=_env_float('GEOCODE_MIN_INTERVAL_SECONDS', 0.5),
            matrix_min_interval=_env_float('MATRIX_MIN_INTERVAL_SECONDS', 0.5),
            places_min_interval=_env_float('PLACES_MIN_INTERVAL_SECONDS', 0.5),
            provider_timeout=_env_float('PROVIDER_TIMEOUT_SECONDS', 10.0),
            request_timeout=_env_float('REQUEST_TIMEOUT_SECONDS', 30.0),
            retry_attempts=_env_int('PROVIDER_RETRY_ATTEMPTS', 2) or 1,
            retry_backoff=_env_float('PROVIDER_RETRY_BACKOFF_SECONDS', 0.5),
            executor_workers=_env_int('EXECUTOR_WORKERS', 10) or 10,
            cache_ttl=_env_float('CACHE_TTL_SECONDS', 24 * 60 * 60),
            cache_max_entries=_env_int('CACHE_MAX_ENTRIES', 5000) or 5000,
            geocode_min_confidence=float(min_conf) if min_conf else None,
            max_origins=_env_int('MAX_ORIGINS', 10) or 10,
            search_radius=_env_int('DEFAULT_SEARCH_RADIUS', 1500) or 1500,
            max_results=_env_int('MAX_RESULTS', 10) or 10,
            categories=categories or DEFAULT_CATEGORIES,
            fairness_weight=_env_float('PLACE_FAIRNESS_WEIGHT', 0.7),
            efficiency_weight=_env_float('PLACE_EFFICIENCY_WEIGHT', 0.3),
            quality_weight=_env_float('PLACE_QUALITY_WEIGHT', 0.0),
            rate_limits={
                'anonymous': TierSettings(
                    _env_int('RATE_LIMIT_REQUESTS', 10), _env_float('RATE_LIMIT_WINDOW', 10.0)),
                'authenticated': TierSettings(
                    _env_int('RATE_LIMIT_REQUESTS_AUTH', 50), _env_float('RATE_LIMIT_WINDOW_AUTH', 60.0)),
                'elevated': TierSettings(
                    _env_int('RATE_LIMIT_REQUESTS_ELEVATED', 100), _env_float('RATE_LIMIT_WINDOW_ELEVATED', 60.0)),
            },
            rate_limit_max_keys=_env_int('RATE_LIMIT_MAX_KEYS', 10000) or 10000,
            trust_caller_tier_header=_env_bool('TRUST_CALLER_TIER_HEADER', False),
        )
