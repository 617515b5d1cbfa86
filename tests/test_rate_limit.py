import threading

import pytest

from rideauth.config import EndpointClass, Settings
from rideauth.service.errors import RateLimited
from rideauth.service.rate_limit import InMemoryRateLimitBackend, RateLimiter

WINDOW_MS = 15 * 60 * 1000


@pytest.fixture
def limiter(settings, clock):
    return RateLimiter(InMemoryRateLimitBackend(), settings=settings, clock=clock)


def test_eleventh_request_in_window_is_rejected(limiter, clock):
    decisions = [limiter.allow("auth:10.0.0.1", WINDOW_MS, 10) for _ in range(10)]

    assert all(d.permitted for d in decisions)
    assert [d.remaining for d in decisions] == list(range(9, -1, -1))

    clock.advance(minutes=5)
    rejected = limiter.allow("auth:10.0.0.1", WINDOW_MS, 10)
    assert rejected.permitted is False
    assert rejected.retry_after_ms == 10 * 60 * 1000


def test_window_resets_after_it_elapses(limiter, clock):
    for _ in range(11):
        limiter.allow("auth:10.0.0.1", WINDOW_MS, 10)

    clock.advance(minutes=15)

    decision = limiter.allow("auth:10.0.0.1", WINDOW_MS, 10)
    assert decision.permitted is True
    assert decision.remaining == 9


def test_keys_are_counted_separately(limiter):
    for _ in range(10):
        limiter.allow("auth:10.0.0.1", WINDOW_MS, 10)

    assert limiter.allow("auth:10.0.0.2", WINDOW_MS, 10).permitted is True
    assert limiter.allow("verification:10.0.0.1", WINDOW_MS, 10).permitted is True


def test_retry_after_is_at_least_one_millisecond(limiter, clock):
    limiter.allow("k", 1000, 1)
    clock.advance(microseconds=999_999)

    assert limiter.allow("k", 1000, 1).retry_after_ms == 1


def test_refund_returns_a_slot(limiter):
    for _ in range(3):
        limiter.allow("k", WINDOW_MS, 3)

    limiter.refund("k")

    assert limiter.allow("k", WINDOW_MS, 3).permitted is True
    assert limiter.allow("k", WINDOW_MS, 3).permitted is False


def test_refund_after_window_is_a_no_op(limiter, clock):
    limiter.allow("k", WINDOW_MS, 3)
    clock.advance(minutes=16)

    limiter.refund("k")

    assert limiter.allow("k", WINDOW_MS, 3).remaining == 2


def test_enforce_uses_endpoint_policy(limiter, clock):
    for _ in range(3):
        limiter.enforce("10.0.0.1", EndpointClass.VERIFICATION)

    with pytest.raises(RateLimited) as excinfo:
        limiter.enforce("10.0.0.1", EndpointClass.VERIFICATION)

    assert excinfo.value.retry_after_ms == 60_000
    clock.advance(minutes=1)
    limiter.enforce("10.0.0.1", EndpointClass.VERIFICATION)


def test_skip_successful_only_for_configured_classes(limiter):
    limiter.enforce("10.0.0.1", EndpointClass.VERIFICATION)
    limiter.enforce("10.0.0.1", EndpointClass.AUTH)

    assert limiter.refund_if_skippable("10.0.0.1", EndpointClass.VERIFICATION) is True
    assert limiter.refund_if_skippable("10.0.0.1", EndpointClass.AUTH) is False
    assert limiter.check("10.0.0.1", EndpointClass.VERIFICATION).remaining == 2


def test_general_policy_defaults():
    policy = Settings(jwt_secret="x" * 40).rate_limit_policy("general")

    assert policy.window_ms == WINDOW_MS
    assert policy.max_requests == 100
    assert policy.skip_successful_requests is False


def test_zero_max_requests_disables_limit(limiter):
    for _ in range(50):
        assert limiter.allow("k", WINDOW_MS, 0).permitted is True


def test_purge_drops_elapsed_windows(limiter, clock):
    backend = limiter.backend
    limiter.allow("a", 1000, 5)
    limiter.allow("b", WINDOW_MS, 5)
    clock.advance(seconds=2)

    assert limiter.purge_expired() == 1
    assert len(backend) == 1


def test_concurrent_requests_never_exceed_limit(settings):
    limiter = RateLimiter(InMemoryRateLimitBackend(), settings=settings)
    permitted = []
    lock = threading.Lock()

    def hit():
        decision = limiter.allow("auth:shared", WINDOW_MS, 10)
        with lock:
            permitted.append(decision.permitted)

    threads = [threading.Thread(target=hit) for _ in range(40)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert permitted.count(True) == 10
