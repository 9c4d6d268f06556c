"""Watchdogs that restart a stalled or underperforming miner."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from meta_miner.config.models import WatchdogConfig


@dataclass
class MinerActivity:
    """Timestamps (monotonic) and samples the watchdogs look at."""

    algo_changed_at: float = 0.0
    miner_started_at: float = 0.0
    last_submit_at: float = 0.0
    last_hashrate: Optional[float] = None
    last_hashrate_at: float = 0.0

    @property
    def grace_start(self) -> float:
        return max(self.algo_changed_at, self.miner_started_at)

    def record_submit(self, now: Optional[float] = None) -> None:
        self.last_submit_at = time.monotonic() if now is None else now

    def record_hashrate(self, hashrate: float, now: Optional[float] = None) -> None:
        self.last_hashrate = hashrate
        self.last_hashrate_at = time.monotonic() if now is None else now

    def miner_started(self, now: Optional[float] = None) -> None:
        self.miner_started_at = time.monotonic() if now is None else now
        self.last_hashrate = None


class Watchdog:
    """Base class: periodic check with a grace window after every change."""

    name = "watchdog"

    def __init__(
        self,
        activity: MinerActivity,
        config: WatchdogConfig,
        on_trigger: Callable[[str], None],
        is_active: Callable[[], bool] = lambda: True,
    ):
        """
        Initialize the watchdog.

        Args:
            activity: Shared miner activity record.
            config: Thresholds and timing.
            on_trigger: Called with a reason when the miner must be restarted.
            is_active: False while there is nothing to watch (no pool or miner).
        """
        self.activity = activity
        self.config = config
        self._on_trigger = on_trigger
        self._is_active = is_active

    @property
    def enabled(self) -> bool:
        return True

    def in_grace(self, now: float) -> bool:
        return now - self.activity.grace_start < self.config.grace_period

    def problem(self, now: float) -> Optional[str]:
        """Return a reason if the miner looks unhealthy."""
        raise NotImplementedError

    def check(self, now: Optional[float] = None) -> bool:
        """
        Run one check.

        Returns:
            True if the miner restart was triggered.
        """
        now = time.monotonic() if now is None else now
        if not self.enabled or not self._is_active() or self.in_grace(now):
            return False
        reason = self.problem(now)
        if reason is None:
            return False
        logger.warning(f"{self.name.capitalize()} watchdog: {reason}, restarting miner")
        self._on_trigger(self.name)
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Check every ``check_interval`` seconds until stopped."""
        if not self.enabled:
            return
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.check_interval)
                return
            except asyncio.TimeoutError:
                self.check()


class IdleSubmitWatchdog(Watchdog):
    """No share submitted for ``idle_submit_timeout`` seconds."""

    name = "idle submit"

    @property
    def enabled(self) -> bool:
        return self.config.idle_submit_timeout > 0

    def problem(self, now: float) -> Optional[str]:
        reference = max(self.activity.last_submit_at, self.activity.grace_start)
        idle = now - reference
        if idle < self.config.idle_submit_timeout:
            return None
        return f"no share submitted for {idle:.0f} seconds"


class HashrateWatchdog(Watchdog):
    """Latest hashrate below ``hashrate_percent`` percent of the benchmarked one."""

    name = "hashrate"

    def __init__(
        self,
        activity: MinerActivity,
        config: WatchdogConfig,
        on_trigger: Callable[[str], None],
        expected_hashrate: Callable[[], float],
        is_active: Callable[[], bool] = lambda: True,
    ):
        super().__init__(activity, config, on_trigger, is_active)
        self._expected_hashrate = expected_hashrate

    @property
    def enabled(self) -> bool:
        return self.config.hashrate_percent > 0

    def problem(self, now: float) -> Optional[str]:
        hashrate = self.activity.last_hashrate
        # Samples taken during the grace window describe the warm-up
        if hashrate is None or self.activity.last_hashrate_at < self.activity.grace_start + self.config.grace_period:
            return None
        expected = self._expected_hashrate()
        if not expected:
            return None
        threshold = expected * self.config.hashrate_percent / 100
        if hashrate >= threshold:
            return None
        return f"hashrate {hashrate:g} is below {self.config.hashrate_percent:g}% of {expected:g}"
