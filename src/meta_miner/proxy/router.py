"""Routing of pool jobs to miner commands by algorithm."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from loguru import logger

from meta_miner.proxy.stats import RelayStats

if TYPE_CHECKING:
    from meta_miner.proxy.supervisor import MinerSupervisor
    from meta_miner.stratum.messages import Job


@dataclass(frozen=True)
class RouteDecision:
    """Outcome of routing one job."""

    algo: str
    command: str
    algo_changed: bool
    swap_requested: bool


class AlgoRouter:
    """
    Maps each job's algorithm to a miner command and requests swaps.

    The router never touches sockets: the caller clears the miner link when a
    swap was requested and caches the job.
    """

    def __init__(self, algos: Dict[str, str], default_algo: str, supervisor: MinerSupervisor):
        """
        Initialize the router.

        Args:
            algos: Algorithm to miner command table (shared, may grow during probing).
            default_algo: Algorithm assumed for jobs without an ``algo`` field.
            supervisor: Supervisor that owns the miner process.
        """
        self.algos = algos
        self.default_algo = default_algo
        self.supervisor = supervisor
        self.current_algo: Optional[str] = None
        # Monotonic time of the last algorithm change (watchdog grace)
        self.algo_changed_at: float = 0.0

    def resolve(self, job: Job) -> Optional[str]:
        """
        Return the job's algorithm if it has a configured miner.

        Unknown algorithms are logged and yield None.
        """
        algo = job.algo or self.default_algo
        if algo not in self.algos:
            logger.error(f"Ignoring job with unknown algo {algo} sent by the pool")
            return None
        return algo

    def route(self, job: Job) -> Optional[RouteDecision]:
        """
        Select the job's algorithm and swap miners if its command differs.

        Args:
            job: Job received from the pool.

        Returns:
            The decision, or None if the job has to be discarded.
        """
        algo = self.resolve(job)
        if algo is None:
            return None

        algo_changed = algo != self.current_algo
        if algo_changed:
            if self.current_algo is not None:
                logger.info(f"Pool switched algo from {self.current_algo} to {algo}")
            self.current_algo = algo
            self.algo_changed_at = time.monotonic()
            RelayStats.get_instance().record_algo_switch(algo)

        command = self.algos[algo]
        supervisor = self.supervisor
        # A miner that exited without a respawn is started again
        stopped = supervisor.current is None and not supervisor.swap_in_flight
        swap_requested = command != supervisor.target_command or stopped
        if swap_requested:
            supervisor.request(command)

        return RouteDecision(algo=algo, command=command, algo_changed=algo_changed, swap_requested=swap_requested)
