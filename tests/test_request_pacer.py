"""
Tests for the request pacer.
"""

import pytest

from mission_indexer.services.request_pacer import RequestPacer
from tests.factories import FakeClock


class FakeSleep:
    """Records sleeps and moves the clock forward."""

    def __init__(self, clock):
        self.clock = clock
        self.sleeps = []

    async def __call__(self, seconds):
        self.sleeps.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def pacer_parts():
    clock = FakeClock(0)
    sleep = FakeSleep(clock)
    return RequestPacer(clock=clock, sleep=sleep), clock, sleep


@pytest.mark.asyncio
async def test_disengaged_pacer_never_waits(pacer_parts):
    pacer, _, sleep = pacer_parts

    for _ in range(5):
        await pacer.wait_turn()

    assert sleep.sleeps == []
    assert not pacer.engaged


@pytest.mark.asyncio
async def test_calls_spread_over_budget(pacer_parts):
    pacer, _, sleep = pacer_parts
    pacer.engage(4, 2.0)

    for _ in range(4):
        await pacer.wait_turn()

    assert pacer.interval == pytest.approx(0.5)
    assert sleep.sleeps == [pytest.approx(0.5)] * 3
    assert pacer.issued == 4


@pytest.mark.asyncio
async def test_slow_callers_are_not_delayed(pacer_parts):
    pacer, clock, sleep = pacer_parts
    pacer.engage(2, 1.0)

    await pacer.wait_turn()
    clock.advance(5)
    await pacer.wait_turn()

    assert sleep.sleeps == []


@pytest.mark.asyncio
async def test_reserve_tightens_spacing(pacer_parts):
    pacer, _, _ = pacer_parts
    pacer.engage(4, 2.0)

    pacer.reserve(4)

    assert pacer.interval == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_disengage_resets(pacer_parts):
    pacer, _, sleep = pacer_parts
    pacer.engage(2, 10.0)
    await pacer.wait_turn()

    pacer.disengage()
    await pacer.wait_turn()

    assert not pacer.engaged
    assert sleep.sleeps == []


def test_zero_plan_does_not_engage(pacer_parts):
    pacer, _, _ = pacer_parts

    pacer.engage(0, 10.0)

    assert not pacer.engaged
