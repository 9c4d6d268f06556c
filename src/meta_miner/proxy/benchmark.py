"""Startup miner probing and benchmarking, run one task at a time."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional

from loguru import logger

from meta_miner.proxy.algos import benchmark_targets, fill_derived_perf, parse_hashrate, register_algo, set_perf
from meta_miner.proxy.dialects import JobContext
from meta_miner.stratum.messages import Job

if TYPE_CHECKING:
    from meta_miner.proxy.relay import MetaMinerRelay
    from meta_miner.proxy.server import MinerLink

# Synthetic job handed to a miner while its hashrate is measured
BENCHMARK_BLOB = (
    "ff05feeaa0db054f15eca39c843cb82c15e5c5a7743e06536cb541d4e96e90ffd31120b770"
    "3aa90000000076a6f6e34a9977c982629d8fe6c8b45024cafca109eef92198784891e0df41bc03"
)
BENCHMARK_TARGET = "10000000"
BENCHMARK_JOB_ID = "benchmark1"
BENCHMARK_SESSION_ID = "benchmark"


def benchmark_context(algo: str) -> JobContext:
    """Pool state presented to a miner under benchmark."""
    job = Job.from_params({
        "blob": BENCHMARK_BLOB,
        "algo": algo,
        "job_id": BENCHMARK_JOB_ID,
        "target": BENCHMARK_TARGET,
        "id": BENCHMARK_SESSION_ID,
    })
    return JobContext(
        login_result={"id": BENCHMARK_SESSION_ID, "status": "OK"},
        last_job=job,
        miner_session_id=BENCHMARK_SESSION_ID,
    )


class ProbeTask:
    """
    Start one miner against the relay's listener and wait for a result.

    The miner process tree is always killed before the task returns.
    """

    def __init__(self, relay: MetaMinerRelay, command: str, timeout: float):
        self.relay = relay
        self.command = command
        self.timeout = timeout
        self._done: Optional[asyncio.Future] = None

    @property
    def description(self) -> str:
        return f"Checking '{self.command}' miner"

    def context(self) -> Optional[JobContext]:
        return None

    def finish(self, ok: bool = True) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(ok)

    async def on_login(self, link: MinerLink, request: dict) -> None:
        raise NotImplementedError

    def on_output(self, line: str) -> None:
        pass

    def on_timeout(self) -> None:
        logger.warning(f"Miner '{self.command}' was not connected and will be ignored")

    async def _handle_login(self, link: MinerLink, request: dict) -> None:
        self.relay.adopt_credentials(request)
        await self.on_login(link, request)

    async def run(self) -> bool:
        """
        Run the task to completion.

        Returns:
            True if the task produced its result before the timeout.
        """
        relay = self.relay
        self._done = asyncio.get_running_loop().create_future()
        relay.login_hook = self._handle_login
        relay.output_hook = self.on_output
        relay.probe_context = self.context()
        try:
            relay.supervisor.request(self.command)
            await relay.supervisor.wait_idle()
            miner = relay.supervisor.current
            if miner is None:
                logger.warning(f"Miner '{self.command}' could not be started and will be ignored")
                return False

            waiters = {self._done}
            if miner.exit_task is not None:
                waiters.add(miner.exit_task)
            done, _ = await asyncio.wait(waiters, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED)
            if self._done in done:
                return self._done.result()
            if done:
                logger.warning(f"Miner '{self.command}' exited before it could be checked")
            else:
                self.on_timeout()
            return False
        finally:
            relay.server.detach()
            await relay.supervisor.shutdown()
            relay.login_hook = None
            relay.output_hook = None
            relay.probe_context = None


class SmartMinerProbe(ProbeTask):
    """A miner that lists its supported algorithms in its login."""

    async def on_login(self, link: MinerLink, request: dict) -> None:
        params = request.get("params")
        algos = params.get("algo") if isinstance(params, dict) else None
        if not isinstance(algos, list):
            logger.error(f"Miner '{self.command}' does not report any algo and will be ignored")
            self.finish(False)
            return
        for algo in algos:
            if isinstance(algo, str):
                register_algo(self.relay.algos, algo, self.command)
        self.finish(True)


class PinnedMinerProbe(ProbeTask):
    """A miner configured for one algorithm that it can't report itself."""

    def __init__(self, relay: MetaMinerRelay, algo: str, command: str, timeout: float):
        super().__init__(relay, command, timeout)
        self.algo = algo

    async def on_login(self, link: MinerLink, request: dict) -> None:
        register_algo(self.relay.algos, self.algo, self.command)
        self.finish(True)


class BenchmarkRun(ProbeTask):
    """Measure a miner's hashrate for one algorithm on a synthetic job."""

    def __init__(self, relay: MetaMinerRelay, algo: str, timeout: float, samples: int):
        super().__init__(relay, relay.algos[algo], timeout)
        self.algo = algo
        self.samples = samples
        self._seen = 0

    @property
    def description(self) -> str:
        return f"Checking miner performance for {self.algo} algo"

    def context(self) -> Optional[JobContext]:
        return benchmark_context(self.algo)

    async def on_login(self, link: MinerLink, request: dict) -> None:
        await link.send_many(link.dialect.login_reply(request, self.relay.probe_context))

    def on_output(self, line: str) -> None:
        hashrate = parse_hashrate(line)
        if hashrate is None:
            return
        self._seen += 1
        if self._seen < self.samples:
            logger.debug(f"Ignoring early hashrate sample {hashrate:g} for {self.algo} algo")
            return
        logger.info(f"Setting performance for {self.algo} algo to {hashrate:g}")
        updated = set_perf(self.relay.perf, self.relay.algos, self.algo, hashrate)
        derived = [name for name in updated if name != self.algo]
        if derived:
            logger.info(f"Derived performance for {', '.join(derived)} algos")
        self.finish(True)

    def on_timeout(self) -> None:
        logger.warning(f"Can't find performance data in '{self.command}' miner output")


class ProbeRunner:
    """Runs an ordered task list strictly one task after another."""

    def __init__(self, tasks: List[ProbeTask]):
        self.tasks = list(tasks)

    async def run(self) -> int:
        """
        Run every task.

        Returns:
            Number of tasks that succeeded.
        """
        succeeded = 0
        for task in self.tasks:
            logger.info(task.description)
            if await task.run():
                succeeded += 1
        return succeeded


def build_probe_tasks(relay: MetaMinerRelay) -> List[ProbeTask]:
    """One task per smart miner, then one per pinned miner."""
    timeout = relay.config.probe.miner_timeout
    tasks: List[ProbeTask] = [SmartMinerProbe(relay, command, timeout) for command in relay.config.smart_miners]
    tasks.extend(
        PinnedMinerProbe(relay, algo, command, timeout) for algo, command in relay.config.algo_miners.items()
    )
    return tasks


def build_benchmark_tasks(relay: MetaMinerRelay) -> List[ProbeTask]:
    """One benchmark per representative algorithm still without a hashrate."""
    probe = relay.config.probe
    return [
        BenchmarkRun(relay, algo, probe.benchmark_timeout, probe.benchmark_samples)
        for algo in benchmark_targets(relay.algos, relay.perf)
    ]


async def run_startup_checks(relay: MetaMinerRelay) -> None:
    """Probe configured miners, then benchmark algorithms without a hashrate."""
    probes = build_probe_tasks(relay)
    if probes:
        logger.info(
            f"Checking miner configurations (make sure they all configured to connect to "
            f"localhost:{relay.server.port} pool)"
        )
        await ProbeRunner(probes).run()

    for algo in fill_derived_perf(relay.perf, relay.algos):
        logger.info(f"Derived performance for {algo} algo: {relay.perf[algo]:g}")

    benchmarks = build_benchmark_tasks(relay)
    if benchmarks:
        await ProbeRunner(benchmarks).run()
