"""In-memory statistics for the relay."""

from __future__ import annotations

import asyncio
import re
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from loguru import logger

# Maximum number of distinct rejection reason categories kept per pool
MAX_REJECTION_REASONS = 50


def normalize_rejection_reason(reason: str) -> str:
    """
    Normalize a pool rejection message to a category for aggregated stats.

    "Low difficulty share (12345.67)" and "low difficulty share" end up in
    the same bucket.

    Args:
        reason: The rejection message sent by the pool.

    Returns:
        Normalized category string.
    """
    if not reason:
        return "unknown"

    reason_lower = reason.lower()
    for keyword, category in (
        ("duplicate", "duplicate share"),
        ("stale", "stale job"),
        ("low difficulty", "low difficulty share"),
        ("job not found", "job not found"),
        ("unauthenticated", "unauthenticated"),
        ("invalid", "invalid share"),
    ):
        if keyword in reason_lower:
            return category

    cleaned = re.sub(r"\s*\([^)]*\)\s*$", "", reason[:200]).strip()
    if not cleaned:
        return "unknown"
    cleaned = re.sub(r"[0-9a-fA-F]{4,}", "X", cleaned.lower())[:50]
    return cleaned.encode("ascii", errors="replace").decode("ascii")


@dataclass
class PoolStats:
    """Statistics for a single pool endpoint."""

    name: str
    connections: int = 0
    failures: int = 0
    accepted_shares: int = 0
    rejected_shares: int = 0
    rejection_reasons: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    @property
    def total_shares(self) -> int:
        return self.accepted_shares + self.rejected_shares

    @property
    def accept_rate(self) -> float:
        """Acceptance rate as percentage."""
        if self.total_shares == 0:
            return 0.0
        return (self.accepted_shares / self.total_shares) * 100


class RelayStats:
    """
    Global statistics tracker for the relay.

    Every mutation happens on the event loop thread, so the record methods are
    plain synchronous calls.
    """

    _instance: Optional[RelayStats] = None
    _instance_lock = threading.Lock()

    def __init__(self):
        self.submitted_shares: int = 0
        self.algo_switches: int = 0
        self.miner_starts: int = 0
        self.miner_respawns: int = 0
        self.watchdog_restarts: Dict[str, int] = defaultdict(int)
        self.miner_connections: int = 0
        self.failovers: int = 0

        self._pool_stats: Dict[str, PoolStats] = {}
        self.active_pool: Optional[str] = None
        self.current_algo: Optional[str] = None
        self.start_time = datetime.now(timezone.utc).astimezone()

    @classmethod
    def get_instance(cls) -> RelayStats:
        """Get or create the singleton stats instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = RelayStats()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the stats instance (mainly for testing)."""
        with cls._instance_lock:
            cls._instance = None

    def pool(self, name: str) -> PoolStats:
        """Get or create stats for a pool."""
        if name not in self._pool_stats:
            self._pool_stats[name] = PoolStats(name=name)
        return self._pool_stats[name]

    def record_pool_connect(self, name: str) -> None:
        self.pool(name).connections += 1
        self.active_pool = name

    def record_pool_failure(self, name: str) -> None:
        self.pool(name).failures += 1

    def record_failover(self) -> None:
        self.failovers += 1

    def record_algo_switch(self, algo: str) -> None:
        if self.current_algo is not None:
            self.algo_switches += 1
        self.current_algo = algo

    def record_miner_start(self) -> None:
        self.miner_starts += 1

    def record_miner_respawn(self) -> None:
        self.miner_respawns += 1

    def record_watchdog_restart(self, watchdog: str) -> None:
        self.watchdog_restarts[watchdog] += 1

    def record_miner_connect(self) -> None:
        self.miner_connections += 1

    def record_share_submitted(self) -> None:
        self.submitted_shares += 1

    def record_share_accepted(self, pool: str) -> None:
        self.pool(pool).accepted_shares += 1

    def record_share_rejected(self, pool: str, reason: str = "unknown") -> None:
        """Record a rejected share with normalized reason category."""
        stats = self.pool(pool)
        stats.rejected_shares += 1
        normalized = normalize_rejection_reason(reason)
        if normalized in stats.rejection_reasons or len(stats.rejection_reasons) < MAX_REJECTION_REASONS:
            stats.rejection_reasons[normalized] += 1
        else:
            stats.rejection_reasons["other"] += 1

    def get_uptime(self) -> str:
        """Get formatted uptime string."""
        delta = datetime.now(timezone.utc).astimezone() - self.start_time
        hours, remainder = divmod(delta.seconds, 3600)
        minutes, _ = divmod(remainder, 60)

        parts = []
        if delta.days > 0:
            parts.append(f"{delta.days}d")
        if hours > 0 or delta.days > 0:
            parts.append(f"{hours}h")
        parts.append(f"{minutes}m")
        return " ".join(parts)

    def log_stats(self) -> None:
        """Log current statistics."""
        logger.info("=" * 60)
        logger.info(f"RELAY STATISTICS (uptime: {self.get_uptime()})")
        logger.info("=" * 60)
        logger.info(
            f"Algo: {self.current_algo or 'none'} | {self.algo_switches} switches | "
            f"Active pool: {self.active_pool or 'none'} | {self.failovers} failovers"
        )
        restarts = ", ".join(f"{name}: {count}" for name, count in self.watchdog_restarts.items()) or "none"
        logger.info(
            f"Miner: {self.miner_starts} starts | {self.miner_respawns} respawns | "
            f"{self.miner_connections} connections | watchdog restarts: {restarts}"
        )
        logger.info(f"Shares submitted: {self.submitted_shares}")

        for name, stats in self._pool_stats.items():
            logger.info("-" * 40)
            active_indicator = " (active)" if name == self.active_pool else ""
            logger.info(f"Pool: {name}{active_indicator}")
            logger.info(f"  Connections: {stats.connections} | Failures: {stats.failures}")
            if stats.total_shares > 0:
                logger.info(
                    f"  Shares: {stats.accepted_shares} accepted / {stats.rejected_shares} rejected "
                    f"({stats.accept_rate:.1f}% accepted)"
                )
                if stats.rejection_reasons:
                    reasons_str = ", ".join(
                        f'"{reason}": {count}'
                        for reason, count in sorted(stats.rejection_reasons.items(), key=lambda x: -x[1])
                    )
                    logger.info(f"  Rejection reasons: {reasons_str}")

        logger.info("=" * 60)


async def run_stats_logger(stop_event: asyncio.Event, interval: float) -> None:
    """
    Log statistics every ``interval`` seconds until ``stop_event`` is set.

    Args:
        stop_event: Event to signal shutdown.
        interval: Seconds between reports.
    """
    stats = RelayStats.get_instance()
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            stats.log_stats()
