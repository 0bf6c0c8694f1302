from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
import time
from typing import Awaitable, Callable, Mapping

from dealsync.core.config import get_settings
from dealsync.domain.records import RateBudget


logger = logging.getLogger(__name__)

XERO = "xero"
PIPEDRIVE = "pipedrive"


@dataclass(frozen=True)
class HeaderBinding:
    """Maps a platform's quota headers onto one named window."""

    window: str
    remaining: str
    limit: str | None = None
    # Header carrying seconds until the platform's window resets.
    reset: str | None = None


def _header_int(headers: Mapping[str, str], name: str | None) -> int | None:
    if not name:
        return None
    raw = headers.get(name)
    if raw is None:
        # httpx headers are case-insensitive; plain dicts are not.
        raw = headers.get(name.lower())
    if raw is None:
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


class RateGovernor:
    """Fixed-window admission control for one platform and tenant.

    Every outbound call awaits ``admit()``; the check-and-increment happens
    under a lock so two concurrent callers cannot both take the last slot.
    When a window is exhausted the caller sleeps until the window resets and
    re-checks, since a boundary may pass while it waits.
    """

    def __init__(
        self,
        platform: str,
        windows: Mapping[str, tuple[int, float]],
        *,
        header_bindings: tuple[HeaderBinding, ...] = (),
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if not windows:
            raise ValueError("RateGovernor requires at least one window")
        self._platform = platform
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._budgets: dict[str, RateBudget] = {
            name: RateBudget(window_seconds=float(seconds), limit=int(limit))
            for name, (limit, seconds) in windows.items()
        }
        self._bindings = header_bindings
        self._lock = asyncio.Lock()

    @property
    def platform(self) -> str:
        return self._platform

    def _roll(self, now: float) -> None:
        # Start a fresh window once the previous one has reached its reset time.
        for budget in self._budgets.values():
            if now >= budget.window_reset_at:
                budget.used = 0
                budget.window_reset_at = now + budget.window_seconds

    def _wait_seconds(self, now: float) -> float:
        # Longest wait across every exhausted window.
        waits = [
            budget.window_reset_at - now
            for budget in self._budgets.values()
            if budget.used >= budget.limit
        ]
        return max(waits, default=0.0)

    async def admit(self) -> None:
        while True:
            async with self._lock:
                now = self._clock()
                self._roll(now)
                wait_s = self._wait_seconds(now)
                if wait_s <= 0:
                    for budget in self._budgets.values():
                        budget.used += 1
                    return
            logger.info("rate_governor_wait platform=%s wait_s=%.3f", self._platform, wait_s)
            await self._sleep(wait_s)

    async def record_usage(self, n: int = 1) -> None:
        # Account for calls made outside admit(), e.g. token refreshes.
        async with self._lock:
            self._roll(self._clock())
            for budget in self._budgets.values():
                budget.used += max(int(n), 0)

    async def update_from_headers(self, headers: Mapping[str, str]) -> None:
        # Platform-reported quota wins over the local estimate.
        async with self._lock:
            now = self._clock()
            self._roll(now)
            for binding in self._bindings:
                budget = self._budgets.get(binding.window)
                if budget is None:
                    continue
                limit = _header_int(headers, binding.limit)
                if limit is not None and limit > 0:
                    budget.limit = limit
                remaining = _header_int(headers, binding.remaining)
                reset_in = _header_int(headers, binding.reset)
                if remaining is None:
                    continue
                reported_used = max(budget.limit - remaining, 0)
                if reset_in is not None and now + reset_in > budget.window_reset_at:
                    # The platform has rolled into a window we have not seen yet.
                    budget.window_reset_at = now + reset_in
                    budget.used = reported_used
                else:
                    budget.used = max(budget.used, reported_used)

    def budget(self, window: str) -> RateBudget:
        # Snapshot copy; callers never see the live counter.
        self._roll(self._clock())
        return replace(self._budgets[window])


def build_xero_governor(**kwargs) -> RateGovernor:
    settings = get_settings()
    return RateGovernor(
        XERO,
        {"minute": (settings.xero_minute_limit, 60.0), "day": (settings.xero_day_limit, 86400.0)},
        header_bindings=(
            HeaderBinding(window="minute", remaining="X-MinLimit-Remaining"),
            HeaderBinding(window="day", remaining="X-DayLimit-Remaining"),
        ),
        **kwargs,
    )


def build_pipedrive_governor(**kwargs) -> RateGovernor:
    settings = get_settings()
    return RateGovernor(
        PIPEDRIVE,
        {"window": (settings.pipedrive_window_limit, settings.pipedrive_window_seconds)},
        header_bindings=(
            HeaderBinding(
                window="window",
                remaining="x-ratelimit-remaining",
                limit="x-ratelimit-limit",
                reset="x-ratelimit-reset",
            ),
        ),
        **kwargs,
    )


class RateGovernorRegistry:
    """One governor per (platform, tenant); tenants never share a budget."""

    def __init__(self) -> None:
        self._governors: dict[tuple[str, str], RateGovernor] = {}

    def get(self, platform: str, tenant_id: str) -> RateGovernor:
        key = (platform, tenant_id)
        governor = self._governors.get(key)
        if governor is None:
            if platform == XERO:
                governor = build_xero_governor()
            elif platform == PIPEDRIVE:
                governor = build_pipedrive_governor()
            else:
                raise ValueError(f"Unknown platform: {platform}")
            self._governors[key] = governor
        return governor
