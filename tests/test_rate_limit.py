import pytest

from snaglink.rate_limit import RateLimitAction, RateLimiter, RateLimitSweeper

LIMITS = {"token_lookup": (20, 60), "pin_attempt": (5, 300), "api_call": (100, 60)}


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, LIMITS, clock=clock)


def test_limit_plus_one_is_rejected(limiter, clock):
    for i in range(20):
        result = limiter.check("ip:1.2.3.4", RateLimitAction.TOKEN_LOOKUP)
        assert result.allowed
        assert result.remaining == 19 - i
        assert result.limit == 20
        assert result.reset_at == clock.now + 60

    clock.advance(10)
    result = limiter.check("ip:1.2.3.4", RateLimitAction.TOKEN_LOOKUP)
    assert not result.allowed
    assert result.remaining == 0
    assert result.retry_after == 50
    assert result.reset_at == clock.now + 50


def test_fresh_window_after_expiry(limiter, clock):
    for _ in range(5):
        assert limiter.check("ip:1.2.3.4", RateLimitAction.PIN_ATTEMPT).allowed
    assert not limiter.check("ip:1.2.3.4", RateLimitAction.PIN_ATTEMPT).allowed

    clock.advance(300)
    result = limiter.check("ip:1.2.3.4", RateLimitAction.PIN_ATTEMPT)
    assert result.allowed
    assert result.remaining == 4


def test_rejections_do_not_extend_window(limiter, clock):
    for _ in range(5):
        limiter.check("k", RateLimitAction.PIN_ATTEMPT)
    for _ in range(10):
        clock.advance(20)
        assert not limiter.check("k", RateLimitAction.PIN_ATTEMPT).allowed
    clock.advance(100)
    assert limiter.check("k", RateLimitAction.PIN_ATTEMPT).allowed


def test_keys_and_actions_are_independent(limiter):
    for _ in range(5):
        limiter.check("ip:a", RateLimitAction.PIN_ATTEMPT)
    assert not limiter.check("ip:a", RateLimitAction.PIN_ATTEMPT).allowed
    assert limiter.check("ip:b", RateLimitAction.PIN_ATTEMPT).allowed
    assert limiter.check("ip:a", RateLimitAction.TOKEN_LOOKUP).allowed


def test_sweep_removes_dead_counters(limiter, store, clock):
    limiter.check("ip:a", RateLimitAction.TOKEN_LOOKUP)
    limiter.check("ip:b", RateLimitAction.PIN_ATTEMPT)
    assert limiter.sweep() == 0

    clock.advance(60)
    assert limiter.sweep() == 1
    clock.advance(240)
    assert limiter.sweep() == 1
    assert store.stats()["rate_limit_entries_count"] == 0


def test_missing_action_limit_rejected(store):
    with pytest.raises(ValueError):
        RateLimiter(store, {"token_lookup": (20, 60)})


def test_sweeper_disabled_with_zero_interval(limiter):
    sweeper = RateLimitSweeper(limiter, 0)
    sweeper.start()
    assert sweeper._thread is None
    sweeper.stop()
