from socialsync.services.rate_limiter import RateLimiter, RateLimitOptions


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def test_blocks_after_max_and_recovers_after_window():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    opts = RateLimitOptions(max=3, window_ms=1000)

    results = [limiter.check("tiktok:videos", opts) for _ in range(3)]
    assert [r.allowed for r in results] == [True, True, True]
    assert [r.remaining for r in results] == [2, 1, 0]

    clock.now = 500
    fourth = limiter.check("tiktok:videos", opts)
    assert fourth.allowed is False
    assert fourth.retry_after_ms > 0

    clock.now = 1001
    assert limiter.check("tiktok:videos", opts).allowed is True


def test_block_ms_overrides_window_remainder():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    opts = RateLimitOptions(max=1, window_ms=1000, block_ms=5000)

    limiter.check("k", opts)
    blocked = limiter.check("k", opts)
    assert blocked.allowed is False
    assert blocked.retry_after_ms == 5000

    # window elapsed but the block has not
    clock.now = 2000
    still = limiter.check("k", opts)
    assert still.allowed is False
    assert still.retry_after_ms == 3000

    clock.now = 5001
    assert limiter.check("k", opts).allowed is True


def test_keys_are_independent():
    limiter = RateLimiter(clock=FakeClock())
    opts = RateLimitOptions(max=1, window_ms=1000)
    assert limiter.check("a", opts).allowed
    assert not limiter.check("a", opts).allowed
    assert limiter.check("b", opts).allowed


def test_prune_evicts_stale_unblocked_buckets_only():
    clock = FakeClock()
    limiter = RateLimiter(max_buckets=2, clock=clock)
    opts = RateLimitOptions(max=1, window_ms=1000, block_ms=10 * 60 * 60 * 1000)

    limiter.check("stale", opts)
    limiter.check("blocked", opts)
    limiter.check("blocked", opts)

    clock.now = 2 * 60 * 60 * 1000
    limiter.check("fresh", opts)

    assert len(limiter) == 2
    assert not limiter.check("blocked", opts).allowed


def test_reset_clears_buckets():
    limiter = RateLimiter(clock=FakeClock())
    opts = RateLimitOptions(max=1, window_ms=1000)
    limiter.check("a", opts)
    limiter.check("a", opts)
    limiter.reset("a")
    assert limiter.check("a", opts).allowed
    limiter.reset()
    assert len(limiter) == 0
