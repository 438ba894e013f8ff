from relay.ratelimit import InMemoryRateLimitStore, RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_window_allows_limit_then_blocks():
    clock = FakeClock()
    limiter = RateLimiter(window_seconds=60, max_requests=2, clock=clock)

    first = limiter.check("caller")
    clock.now = 10
    second = limiter.check("caller")
    clock.now = 20
    third = limiter.check("caller")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert not third.allowed
    assert third.retry_after_seconds == 40


def test_old_hits_leave_the_window():
    clock = FakeClock()
    limiter = RateLimiter(window_seconds=60, max_requests=2, clock=clock)
    limiter.check("caller")
    clock.now = 10
    limiter.check("caller")

    clock.now = 61

    assert limiter.check("caller").allowed
    assert not limiter.check("caller").allowed


def test_keys_are_independent_and_limit_can_be_overridden():
    limiter = RateLimiter(window_seconds=60, max_requests=5, clock=FakeClock())

    assert limiter.check("a", limit=1).allowed
    assert not limiter.check("a", limit=1).allowed
    assert limiter.check("b", limit=1).allowed


def test_reset():
    limiter = RateLimiter(window_seconds=60, max_requests=1, clock=FakeClock())
    limiter.check("a")
    limiter.check("b")

    limiter.reset("a")
    assert limiter.check("a").allowed
    assert not limiter.check("b").allowed

    limiter.reset()
    assert limiter.check("b").allowed


def test_store_forgets_keys_whose_window_emptied():
    store = InMemoryRateLimitStore()
    store.record("caller", 0.0)

    assert store.hit("caller", 30.0, 60.0) == [0.0]
    assert store.hit("caller", 61.0, 60.0) == []
    assert store.hit("never-seen", 61.0, 60.0) == []
    assert "caller" not in store._hits
    assert "never-seen" not in store._hits

    store.record("caller", 62.0)
    assert store.hit("caller", 63.0, 60.0) == [62.0]
