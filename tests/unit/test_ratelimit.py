import asyncio

import pytest

import cryptomon.utils.ratelimit as rl_mod
from cryptomon.utils.ratelimit import RateLimiter


class _Clock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


@pytest.fixture
def fake_sleep(monkeypatch):
    """Record requested sleeps and advance the fake clock instead of waiting."""
    slept = []
    clock = _Clock()

    async def _sleep(delay):
        slept.append(delay)
        clock.t += delay

    monkeypatch.setattr(rl_mod.asyncio, "sleep", _sleep)
    return clock, slept


@pytest.mark.asyncio
async def test_burst_is_free_then_spaced(fake_sleep):
    clock, slept = fake_sleep
    rl = RateLimiter(rate_per_sec=2.0, burst=3, clock=clock)
    for _ in range(3):
        await rl.acquire()
    assert slept == []
    await rl.acquire()
    assert slept == [pytest.approx(0.5)]
    await rl.acquire()
    assert slept[-1] == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_tokens_refill_over_time(fake_sleep):
    clock, slept = fake_sleep
    rl = RateLimiter(rate_per_sec=1.0, burst=1, clock=clock)
    await rl.acquire()
    clock.t += 5.0  # idle long enough to refill, capped at burst
    await rl.acquire()
    assert slept == []
    await rl.acquire()
    assert slept == [pytest.approx(1.0)]


def test_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        RateLimiter(rate_per_sec=0)


@pytest.mark.asyncio
async def test_concurrent_acquires_are_serialized(fake_sleep):
    clock, slept = fake_sleep
    rl = RateLimiter(rate_per_sec=10.0, burst=1, clock=clock)
    await asyncio.gather(*(rl.acquire() for _ in range(4)))
    assert len(slept) == 3
    assert clock.t == pytest.approx(0.3)
