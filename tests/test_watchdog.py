"""Tests for the miner watchdogs."""

import asyncio

from meta_miner.config.models import WatchdogConfig
from meta_miner.proxy.watchdog import HashrateWatchdog, IdleSubmitWatchdog, MinerActivity


def idle_watchdog(triggers, **config):
    activity = MinerActivity()
    activity.miner_started(now=1000.0)
    watchdog = IdleSubmitWatchdog(activity, WatchdogConfig(**config), triggers.append)
    return watchdog, activity


def hashrate_watchdog(triggers, expected=1000.0, **config):
    activity = MinerActivity()
    activity.miner_started(now=1000.0)
    watchdog = HashrateWatchdog(activity, WatchdogConfig(**config), triggers.append, lambda: expected)
    return watchdog, activity


class TestIdleSubmit:
    def test_quiet_during_grace(self):
        triggers = []
        watchdog, _ = idle_watchdog(triggers, idle_submit_timeout=60, grace_period=120)
        assert not watchdog.check(now=1100.0)
        assert triggers == []

    def test_triggers_after_timeout(self, log_messages):
        triggers = []
        watchdog, activity = idle_watchdog(triggers, idle_submit_timeout=60, grace_period=10)
        activity.record_submit(now=1050.0)
        assert not watchdog.check(now=1100.0)
        assert watchdog.check(now=1111.0)
        assert triggers == ["idle submit"]
        assert any("no share submitted" in m for m in log_messages)

    def test_algo_change_restarts_grace(self):
        triggers = []
        watchdog, activity = idle_watchdog(triggers, idle_submit_timeout=60, grace_period=30)
        activity.algo_changed_at = 2000.0
        assert not watchdog.check(now=2020.0)
        assert not watchdog.check(now=2059.0)
        assert watchdog.check(now=2061.0)

    def test_disabled(self):
        triggers = []
        watchdog, _ = idle_watchdog(triggers, idle_submit_timeout=0, grace_period=0)
        assert not watchdog.enabled
        assert not watchdog.check(now=99999.0)

    def test_inactive_without_session(self):
        triggers = []
        activity = MinerActivity()
        watchdog = IdleSubmitWatchdog(
            activity, WatchdogConfig(idle_submit_timeout=1, grace_period=0), triggers.append, lambda: False
        )
        assert not watchdog.check(now=99999.0)


class TestHashrate:
    def test_low_hashrate_triggers(self):
        triggers = []
        watchdog, activity = hashrate_watchdog(triggers, hashrate_percent=50, grace_period=60)
        activity.record_hashrate(400.0, now=1100.0)
        assert watchdog.check(now=1101.0)
        assert triggers == ["hashrate"]

    def test_healthy_hashrate(self):
        triggers = []
        watchdog, activity = hashrate_watchdog(triggers, hashrate_percent=50, grace_period=60)
        activity.record_hashrate(900.0, now=1100.0)
        assert not watchdog.check(now=1101.0)

    def test_warmup_samples_ignored(self):
        triggers = []
        watchdog, activity = hashrate_watchdog(triggers, hashrate_percent=50, grace_period=60)
        activity.record_hashrate(10.0, now=1030.0)
        assert not watchdog.check(now=1200.0)

    def test_no_benchmark_no_trigger(self):
        triggers = []
        watchdog, activity = hashrate_watchdog(triggers, expected=0.0, hashrate_percent=50, grace_period=0)
        activity.record_hashrate(1.0, now=1100.0)
        assert not watchdog.check(now=1101.0)

    def test_new_miner_clears_sample(self):
        activity = MinerActivity()
        activity.record_hashrate(5.0, now=10.0)
        activity.miner_started(now=20.0)
        assert activity.last_hashrate is None
        assert activity.grace_start == 20.0


async def test_run_checks_periodically():
    triggers = []
    activity = MinerActivity()
    watchdog = IdleSubmitWatchdog(
        activity, WatchdogConfig(idle_submit_timeout=0.01, grace_period=0, check_interval=0.02), triggers.append
    )
    stop = asyncio.Event()
    task = asyncio.create_task(watchdog.run(stop))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert triggers
