"""Unit tests for caller admission control."""

import threading

from conftest import FakeClock

from meetpoint.config import Settings, TierSettings
from meetpoint.rate_limit import ANONYMOUS, AUTHENTICATED, ELEVATED, RateLimiter, TierConfig


def make_limiter(clock, **kwargs) -> RateLimiter:
    return RateLimiter(clock=clock, **kwargs)


class TestFixedWindow:
    """Counting inside and across windows."""

    def test_limit_plus_one_is_denied_with_future_reset(self, clock) -> None:
        limiter = make_limiter(clock)
        results = [limiter.admit('10.0.0.1', ANONYMOUS) for _ in range(11)]

        assert all(r.allowed for r in results[:10])
        denied = results[10]
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.reset_at > clock.now
        assert denied.retry_after >= 1

    def test_remaining_counts_down(self, clock) -> None:
        limiter = make_limiter(clock)
        assert limiter.admit('a', ANONYMOUS).remaining == 9
        assert limiter.admit('a', ANONYMOUS).remaining == 8

    def test_window_reset_admits_again(self, clock) -> None:
        limiter = make_limiter(clock)
        for _ in range(10):
            limiter.admit('a', ANONYMOUS)
        assert not limiter.admit('a', ANONYMOUS).allowed

        clock.advance(10.0)
        result = limiter.admit('a', ANONYMOUS)
        assert result.allowed
        assert result.remaining == 9

    def test_denial_does_not_move_the_window(self, clock) -> None:
        limiter = make_limiter(clock)
        for _ in range(10):
            limiter.admit('a', ANONYMOUS)
        first = limiter.admit('a', ANONYMOUS)
        clock.advance(5.0)
        second = limiter.admit('a', ANONYMOUS)
        assert first.reset_at == second.reset_at
        assert second.retry_after == 5

    def test_callers_are_independent(self, clock) -> None:
        limiter = make_limiter(clock)
        for _ in range(10):
            limiter.admit('a', ANONYMOUS)
        assert not limiter.admit('a', ANONYMOUS).allowed
        assert limiter.admit('b', ANONYMOUS).allowed


class TestTiers:
    """Tier selection and limits."""

    def test_default_tier_limits(self, clock) -> None:
        limiter = make_limiter(clock)
        assert limiter.admit('x', ANONYMOUS).limit == 10
        assert limiter.admit('x', AUTHENTICATED).limit == 50
        assert limiter.admit('x', ELEVATED).limit == 100

    def test_unknown_tier_falls_back_to_anonymous(self, clock) -> None:
        limiter = make_limiter(clock)
        assert limiter.admit('x', 'platinum').tier == ANONYMOUS
        assert limiter.admit('y', None).tier == ANONYMOUS

    def test_tiers_count_separately(self, clock) -> None:
        limiter = make_limiter(clock)
        for _ in range(10):
            limiter.admit('user-1', ANONYMOUS)
        assert not limiter.admit('user-1', ANONYMOUS).allowed
        assert limiter.admit('user-1', AUTHENTICATED).allowed

    def test_unlimited_tier_always_admits(self, clock) -> None:
        limiter = make_limiter(clock, tiers={
            ANONYMOUS: TierConfig(ANONYMOUS, 1, 10.0),
            ELEVATED: TierConfig(ELEVATED, None, 60.0),
        })
        assert all(limiter.admit('svc', ELEVATED).allowed for _ in range(500))
        assert limiter.admit('svc', ELEVATED).headers() == {}

    def test_from_settings(self) -> None:
        settings = Settings(rate_limits={
            ANONYMOUS: TierSettings(3, 5.0),
            AUTHENTICATED: TierSettings(7, 30.0),
        })
        limiter = RateLimiter.from_settings(settings)
        assert limiter.resolve_tier(ANONYMOUS).limit == 3
        assert limiter.resolve_tier(AUTHENTICATED).window_seconds == 30.0


class TestHeaders:
    def test_allowed_headers(self, clock) -> None:
        result = make_limiter(clock).admit('a', ANONYMOUS)
        headers = result.headers()
        assert headers['X-RateLimit-Limit'] == '10'
        assert headers['X-RateLimit-Remaining'] == '9'
        assert int(headers['X-RateLimit-Reset']) == int(clock.now + 10)
        assert 'Retry-After' not in headers

    def test_denied_headers_carry_retry_after(self, clock) -> None:
        limiter = make_limiter(clock)
        for _ in range(10):
            limiter.admit('a', ANONYMOUS)
        headers = limiter.admit('a', ANONYMOUS).headers()
        assert headers['Retry-After'] == '10'
        assert headers['X-RateLimit-Remaining'] == '0'


class TestBoundedState:
    """Tracked keys stay bounded under many distinct callers."""

    def test_eviction_caps_tracked_keys(self, clock) -> None:
        limiter = make_limiter(clock, shards=4, max_keys=40)
        for i in range(1000):
            limiter.admit(f'caller-{i}', ANONYMOUS)
        assert limiter.tracked_keys() <= 40 + 4

    def test_expired_records_are_compacted(self, clock) -> None:
        limiter = make_limiter(clock, shards=1, compact_every=10)
        for i in range(9):
            limiter.admit(f'caller-{i}', ANONYMOUS)
        assert limiter.tracked_keys() == 9

        clock.advance(11.0)
        limiter.admit('fresh', ANONYMOUS)
        assert limiter.tracked_keys() == 1

    def test_concurrent_admits_never_exceed_limit(self) -> None:
        limiter = RateLimiter(clock=FakeClock())
        allowed = []
        lock = threading.Lock()

        def hammer():
            for _ in range(20):
                result = limiter.admit('shared', AUTHENTICATED)
                with lock:
                    allowed.append(result.allowed)

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(allowed) == 50
        assert len(allowed) == 160
