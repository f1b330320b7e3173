"""
Error taxonomy and tagged outcomes for the meeting-point engine.

Every external call made by the engine is turned into an ``Outcome`` that the
caller inspects. Exceptions derived from ``MeetingPointError`` are used for
request-level failures and map one-to-one onto HTTP status codes in the API.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar('T')


class ErrorCode(str, Enum):
    INPUT_ERROR = 'INPUT_ERROR'
    NOT_FOUND = 'NOT_FOUND'
    PROVIDER_ERROR = 'PROVIDER_ERROR'
    QUOTA_EXCEEDED = 'QUOTA_EXCEEDED'
    PARTIAL_FAILURE = 'PARTIAL_FAILURE'
    TIMEOUT = 'TIMEOUT'


HTTP_STATUS = {
    ErrorCode.INPUT_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PROVIDER_ERROR: 502,
    ErrorCode.QUOTA_EXCEEDED: 429,
    ErrorCode.PARTIAL_FAILURE: 200,
    ErrorCode.TIMEOUT: 504,
}


class MeetingPointError(Exception):
    """Base class for request-level failures"""

    code = ErrorCode.PROVIDER_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.code]

    def to_dict(self) -> Dict[str, Any]:
        payload = {'code': self.code.value, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class InputError(MeetingPointError):
    """Malformed request: empty origin list, bad coordinate, unsupported mode..."""

    code = ErrorCode.INPUT_ERROR


class NotFoundError(MeetingPointError):
    """An address has no geocode match."""

    code = ErrorCode.NOT_FOUND


class ProviderError(MeetingPointError):
    """Upstream failure: non-2xx, malformed response, transport error or timeout.

    ``retryable`` marks failures worth one more attempt (5xx, transport,
    timeouts). Quota exhaustion reported by the provider is not retryable.
    """

    code = ErrorCode.PROVIDER_ERROR

    def __init__(self, message: str, provider: Optional[str] = None, retryable: bool = True,
                 timeout: bool = False, **details: Any):
        super().__init__(message, provider=provider, **details)
        self.provider = provider
        self.retryable = retryable
        self.timeout = timeout
        if timeout:
            self.code = ErrorCode.TIMEOUT


class QuotaExceeded(MeetingPointError):
    """Admission denied by the rate limiter; never retried by the engine."""

    code = ErrorCode.QUOTA_EXCEEDED

    def __init__(self, message: str, reset_at: Optional[float] = None, **details: Any):
        super().__init__(message, reset_at=reset_at, **details)
        self.reset_at = reset_at


class OutcomeStatus(str, Enum):
    OK = 'ok'
    NOT_FOUND = 'not_found'
    PROVIDER_ERROR = 'provider_error'
    TIMEOUT = 'timeout'


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Tagged result of an external lookup."""

    status: OutcomeStatus
    value: Optional[T] = None
    error: Optional[MeetingPointError] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK

    @classmethod
    def success(cls, value: T) -> 'Outcome[T]':
        return cls(OutcomeStatus.OK, value=value)

    @classmethod
    def not_found(cls, error: Optional[MeetingPointError] = None) -> 'Outcome[T]':
        return cls(OutcomeStatus.NOT_FOUND, error=error)

    @classmethod
    def failure(cls, error: ProviderError) -> 'Outcome[T]':
        status = OutcomeStatus.TIMEOUT if error.timeout else OutcomeStatus.PROVIDER_ERROR
        return cls(status, error=error)


@dataclass(frozen=True)
class EngineWarning:
    """A degradation notice attached to a best-effort response."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': self.message, 'details': dict(self.details)}
