from __future__ import annotations

import asyncio

import pytest

from dealsync.services.rate_governor import (
    HeaderBinding,
    RateGovernor,
    RateGovernorRegistry,
    build_pipedrive_governor,
    build_xero_governor,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        # Timed wait: advance the clock instead of polling.
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_admit_blocks_until_window_reset() -> None:
    clock = FakeClock()
    governor = RateGovernor("test", {"window": (3, 10.0)}, clock=clock, sleep=clock.sleep)

    for _ in range(3):
        await governor.admit()
    assert clock.sleeps == []
    assert governor.budget("window").used == 3
    reset_at = governor.budget("window").window_reset_at

    await governor.admit()

    assert clock.sleeps == [pytest.approx(10.0)]
    assert clock.now == pytest.approx(reset_at)
    assert governor.budget("window").used == 1


@pytest.mark.asyncio
async def test_used_is_zero_after_reset() -> None:
    clock = FakeClock()
    governor = RateGovernor("test", {"window": (2, 5.0)}, clock=clock, sleep=clock.sleep)
    await governor.admit()
    await governor.admit()

    clock.now += 5.0

    assert governor.budget("window").used == 0


@pytest.mark.asyncio
async def test_admit_waits_for_longest_exhausted_window() -> None:
    clock = FakeClock()
    governor = RateGovernor(
        "test",
        {"short": (1, 2.0), "long": (1, 30.0)},
        clock=clock,
        sleep=clock.sleep,
    )
    await governor.admit()

    await governor.admit()

    assert clock.sleeps == [pytest.approx(30.0)]


@pytest.mark.asyncio
async def test_concurrent_admits_never_oversubscribe() -> None:
    clock = FakeClock()
    waits: list[float] = []

    async def record_sleep(seconds: float) -> None:
        waits.append(seconds)
        wake_at = clock.now + seconds
        await asyncio.sleep(0)
        clock.now = max(clock.now, wake_at)

    governor = RateGovernor("test", {"window": (5, 60.0)}, clock=clock, sleep=record_sleep)

    await asyncio.gather(*(governor.admit() for _ in range(8)))

    # Exactly the three callers beyond the limit had to wait for the next window.
    assert len(waits) == 3
    assert governor.budget("window").used == 3


@pytest.mark.asyncio
async def test_headers_override_local_estimate() -> None:
    clock = FakeClock()
    governor = build_xero_governor(clock=clock, sleep=clock.sleep)
    await governor.admit()

    await governor.update_from_headers({"X-MinLimit-Remaining": "2", "X-DayLimit-Remaining": "4000"})

    assert governor.budget("minute").used == 58
    assert governor.budget("day").used == 1000


@pytest.mark.asyncio
async def test_headers_never_lower_usage_within_the_same_window() -> None:
    clock = FakeClock()
    governor = RateGovernor(
        "test",
        {"window": (10, 60.0)},
        header_bindings=(HeaderBinding(window="window", remaining="remaining"),),
        clock=clock,
        sleep=clock.sleep,
    )
    for _ in range(4):
        await governor.admit()

    await governor.update_from_headers({"remaining": "9"})

    assert governor.budget("window").used == 4


@pytest.mark.asyncio
async def test_pipedrive_reset_header_starts_new_window() -> None:
    clock = FakeClock()
    governor = build_pipedrive_governor(clock=clock, sleep=clock.sleep)
    for _ in range(10):
        await governor.admit()

    await governor.update_from_headers(
        {"x-ratelimit-remaining": "78", "x-ratelimit-limit": "80", "x-ratelimit-reset": "5"}
    )

    budget = governor.budget("window")
    assert budget.used == 2
    assert budget.window_reset_at == pytest.approx(clock.now + 5)


@pytest.mark.asyncio
async def test_record_usage_counts_against_budget() -> None:
    clock = FakeClock()
    governor = RateGovernor("test", {"window": (2, 10.0)}, clock=clock, sleep=clock.sleep)
    await governor.record_usage(2)

    await governor.admit()

    assert clock.sleeps == [pytest.approx(10.0)]


def test_registry_isolates_tenants() -> None:
    registry = RateGovernorRegistry()

    first = registry.get("xero", "tenant-a")

    assert registry.get("xero", "tenant-a") is first
    assert registry.get("xero", "tenant-b") is not first
    assert registry.get("pipedrive", "tenant-a").platform == "pipedrive"
    with pytest.raises(ValueError):
        registry.get("hubspot", "tenant-a")
