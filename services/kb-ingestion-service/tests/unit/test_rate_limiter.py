from kb_ingest.services.security import FixedWindowRateLimiter, RateLimitConfig, client_identifier


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_fixed_window_allows_max_requests_then_rejects_with_retry_after():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(sweep_interval_seconds=300, clock=clock)
    config = RateLimitConfig(max_requests=5, window_seconds=1)

    results = [limiter.check("ingest:alice", config) for _ in range(5)]
    assert all(result.allowed for result in results)
    assert [result.remaining for result in results] == [4, 3, 2, 1, 0]

    clock.now += 0.25
    rejected = limiter.check("ingest:alice", config)
    assert rejected.allowed is False
    assert rejected.remaining == 0
    assert rejected.retry_after_ms == 750


def test_window_expiry_starts_a_fresh_window():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(sweep_interval_seconds=300, clock=clock)
    config = RateLimitConfig(max_requests=1, window_seconds=1)

    assert limiter.check("k", config).allowed is True
    assert limiter.check("k", config).allowed is False
    clock.now += 1.0
    fresh = limiter.check("k", config)
    assert fresh.allowed is True
    assert fresh.remaining == 0
    assert fresh.reset_at == clock.now + 1


def test_window_is_not_extended_by_requests_inside_it():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(sweep_interval_seconds=300, clock=clock)
    config = RateLimitConfig(max_requests=10, window_seconds=60)

    first = limiter.check("k", config)
    clock.now += 30
    assert limiter.check("k", config).reset_at == first.reset_at


def test_identities_are_counted_independently():
    limiter = FixedWindowRateLimiter(sweep_interval_seconds=300, clock=FakeClock())
    config = RateLimitConfig(max_requests=1, window_seconds=60)
    assert limiter.check("ingest:alice", config).allowed is True
    assert limiter.check("ingest:bob", config).allowed is True
    assert limiter.check("ingest:alice", config).allowed is False


def test_sweep_drops_only_expired_windows():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(sweep_interval_seconds=300, clock=clock)
    limiter.check("short", RateLimitConfig(max_requests=5, window_seconds=10))
    limiter.check("long", RateLimitConfig(max_requests=5, window_seconds=3600))
    assert len(limiter) == 2

    clock.now += 301
    limiter.check("other", RateLimitConfig(max_requests=5, window_seconds=10))
    assert len(limiter) == 2
    assert limiter.check("long", RateLimitConfig(max_requests=5, window_seconds=3600)).remaining == 3


def test_client_identifier_prefers_caller_then_forwarded_ip():
    assert client_identifier({"x-caller-id": "ops@acme.test", "x-forwarded-for": "1.2.3.4"}) == "caller:ops@acme.test"
    assert client_identifier({"x-forwarded-for": "1.2.3.4, 10.0.0.1"}) == "ip:1.2.3.4"
    assert client_identifier({"x-real-ip": "5.6.7.8"}) == "ip:5.6.7.8"
    assert client_identifier({}, "9.9.9.9") == "ip:9.9.9.9"
    assert client_identifier({}) == "ip:unknown"
