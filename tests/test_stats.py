"""Tests for relay statistics."""

import asyncio

from meta_miner.proxy.stats import RelayStats, normalize_rejection_reason, run_stats_logger


def test_normalize_rejection_reason():
    assert normalize_rejection_reason("Low difficulty share (12345.67)") == "low difficulty share"
    assert normalize_rejection_reason("Duplicate share") == "duplicate share"
    assert normalize_rejection_reason("Block expired deadbeef") == "block expired X"
    assert normalize_rejection_reason("") == "unknown"


def test_singleton_and_reset():
    stats = RelayStats.get_instance()
    assert RelayStats.get_instance() is stats
    RelayStats.reset()
    assert RelayStats.get_instance() is not stats


def test_share_accounting():
    stats = RelayStats.get_instance()
    stats.record_pool_connect("a:1")
    stats.record_share_submitted()
    stats.record_share_submitted()
    stats.record_share_accepted("a:1")
    stats.record_share_rejected("a:1", "Stale job (123)")
    pool = stats.pool("a:1")
    assert stats.submitted_shares == 2
    assert pool.total_shares == 2
    assert pool.accept_rate == 50.0
    assert pool.rejection_reasons == {"stale job": 1}
    assert stats.active_pool == "a:1"


def test_log_stats(log_messages):
    stats = RelayStats.get_instance()
    stats.record_algo_switch("cn/r")
    stats.record_algo_switch("rx/0")
    stats.record_watchdog_restart("hashrate")
    stats.record_share_accepted("a:1")
    stats.log_stats()
    assert any("1 switches" in m for m in log_messages)
    assert any("hashrate: 1" in m for m in log_messages)
    assert any(m.startswith("Pool: a:1") for m in log_messages)


async def test_stats_logger_stops(log_messages):
    stop = asyncio.Event()
    task = asyncio.create_task(run_stats_logger(stop, 0.01))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert any("RELAY STATISTICS" in m for m in log_messages)
