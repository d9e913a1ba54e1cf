import pytest

from catalog_crawler.throttle import RateLimiter


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t
        self.slept = []

    def __call__(self) -> float:
        return self.t

    async def sleep(self, s: float) -> None:
        self.slept.append(s)
        self.t += s


def _limiter(clock: FakeClock, delay_ms=500, **kw) -> RateLimiter:
    return RateLimiter(delay_ms, 0, sleep=clock.sleep, clock=clock, **kw)


@pytest.mark.asyncio
async def test_first_request_does_not_wait():
    clock = FakeClock()
    lim = _limiter(clock)
    assert await lim.wait() == 0.0
    assert clock.slept == []


@pytest.mark.asyncio
async def test_enforces_minimum_spacing():
    clock = FakeClock()
    lim = _limiter(clock, delay_ms=500)
    await lim.wait()
    clock.t += 0.2
    slept = await lim.wait()
    assert slept == pytest.approx(0.3)
    # enough time passed: no wait
    clock.t += 1.0
    assert await lim.wait() == 0.0
    assert lim.total_slept_s == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_jitter_stays_within_bounds():
    import random

    clock = FakeClock()
    lim = RateLimiter(100, 50, sleep=clock.sleep, clock=clock, rng=random.Random(1))
    await lim.wait()
    for _ in range(20):
        slept = await lim.wait()
        assert 0.1 <= slept <= 0.15 + 1e-9


@pytest.mark.asyncio
async def test_penalty_grows_caps_and_decays():
    clock = FakeClock()
    lim = _limiter(clock, delay_ms=0, penalty_initial_ms=1000, penalty_max_ms=2000, penalty_decay_mult=0.5)

    lim.penalize()
    assert lim.penalty_ms == 1000
    lim.penalize()
    assert lim.penalty_ms == 1500
    lim.penalize()
    assert lim.penalty_ms == 2000

    assert await lim.wait() == pytest.approx(2.0)

    lim.relax()
    assert lim.penalty_ms == 1000
    for _ in range(10):
        lim.relax()
    assert lim.penalty_ms == 0.0


def test_retry_after_wins_but_is_capped():
    clock = FakeClock()
    lim = _limiter(clock, penalty_initial_ms=1000, retry_after_max_s=30)
    lim.penalize(retry_after_s=10)
    assert lim.penalty_ms == 10000
    lim.penalize(retry_after_s=3600)
    assert lim.penalty_ms == 30000


def test_timeout_penalty_is_gentler():
    clock = FakeClock()
    lim = _limiter(clock, penalty_max_ms=60000)
    lim.penalize_timeout()
    assert lim.penalty_ms == pytest.approx(625.0)


@pytest.mark.asyncio
async def test_spacing_counts_from_when_the_request_finished():
    clock = FakeClock()
    lim = _limiter(clock, delay_ms=500)
    await lim.wait()
    clock.t += 3.0          # slow response
    lim.mark_done()
    assert await lim.wait() == pytest.approx(0.5)
