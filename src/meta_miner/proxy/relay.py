"""The relay: one state object tying the pool, the miner and its process together."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from loguru import logger

from meta_miner.proxy.algos import lookup_perf, parse_hashrate
from meta_miner.proxy.constants import AGENT, POOL_LOGIN_ID, STATS_LOG_INTERVAL
from meta_miner.proxy.dialects import subscribe_reply
from meta_miner.proxy.router import AlgoRouter
from meta_miner.proxy.server import MinerHandler, MinerServer
from meta_miner.proxy.stats import RelayStats, run_stats_logger
from meta_miner.proxy.supervisor import MinerSupervisor
from meta_miner.proxy.upstream import PoolConnection, PoolConnectionManager, PoolListener
from meta_miner.proxy.utils import cancel_task, fire_and_forget, get_error_message
from meta_miner.proxy.watchdog import HashrateWatchdog, IdleSubmitWatchdog, MinerActivity
from meta_miner.stratum.messages import (
    KEEPALIVE_METHODS,
    SUBMIT_METHODS,
    KeepaliveAck,
    LoginReply,
    Reply,
    StratumMethods,
    TargetNotify,
    is_job_message,
)
from meta_miner.stratum.protocol import build_request

if TYPE_CHECKING:
    from meta_miner.config.models import Config
    from meta_miner.proxy.dialects import JobContext
    from meta_miner.proxy.server import MinerLink
    from meta_miner.proxy.supervisor import ProcessTreeTerminator
    from meta_miner.stratum.messages import PoolMessage

LoginHook = Callable[["MinerLink", dict], Awaitable[None]]
OutputHook = Callable[[str], None]


class MetaMinerRelay(PoolListener, MinerHandler):
    """
    Owns all relay state and exposes its transitions as methods.

    Pool events arrive through the ``on_pool_*`` methods, miner events
    through the ``on_miner_*`` methods, and process events through the
    supervisor callbacks. Everything runs on one event loop.
    """

    def __init__(
        self,
        config: Config,
        connection_factory: Callable[..., PoolConnection] = PoolConnection,
        terminator: Optional[ProcessTreeTerminator] = None,
    ):
        """
        Initialize the relay.

        Args:
            config: Resolved configuration; its algo and perf tables are updated in place.
            connection_factory: Pool connection class (replaceable in tests).
            terminator: Process tree terminator (platform default if None).
        """
        self.config = config
        self.algos = config.algos
        self.perf = config.algo_perf

        self.supervisor = MinerSupervisor(
            on_output=self._on_miner_output,
            on_started=self._on_miner_started,
            should_respawn=self._should_respawn,
            terminator=terminator,
        )
        self.router = AlgoRouter(self.algos, config.default_algo, self.supervisor)
        self.server = MinerServer(config.proxy.bind_host, config.proxy.bind_port, self, quiet=config.logging.quiet)
        self.pools = PoolConnectionManager(
            config.endpoints,
            config.pool,
            self,
            self.login_request,
            proxy_config=config.proxy,
            connection_factory=connection_factory,
        )

        self.activity = MinerActivity()
        self.watchdogs = [
            IdleSubmitWatchdog(self.activity, config.watchdog, self.restart_miner, self._is_mining),
            HashrateWatchdog(
                self.activity, config.watchdog, self.restart_miner, self._expected_hashrate, self._is_mining
            ),
        ]

        # Startup probing takes over miner logins and output
        self.login_hook: Optional[LoginHook] = None
        self.output_hook: Optional[OutputHook] = None
        self.probe_context: Optional[JobContext] = None

        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._shut_down = False

    # -- state views

    @property
    def current_algo(self) -> Optional[str]:
        # A benchmark presents its own algo to the miner under test
        if self.probe_context is not None and self.probe_context.last_job is not None:
            return self.probe_context.last_job.algo
        return self.router.current_algo

    @property
    def probing(self) -> bool:
        return self.login_hook is not None

    @property
    def job_context(self) -> Optional[JobContext]:
        if self.probe_context is not None:
            return self.probe_context
        return self.pools.current

    @property
    def linked_miner(self) -> Optional[MinerLink]:
        """The current miner link once it has logged in."""
        link = self.server.link
        if link is None or not link.logged_in or link.closed:
            return None
        return link

    def _is_mining(self) -> bool:
        return self.pools.current is not None and self.supervisor.current is not None

    def _expected_hashrate(self) -> float:
        return lookup_perf(self.perf, self.current_algo)

    def _should_respawn(self) -> bool:
        return self.pools.current is not None and not self.probing

    def login_request(self) -> dict:
        """The login request sent to every pool on connect."""
        params = {
            "login": self.config.user or "",
            "pass": self.config.password or "",
            "agent": AGENT,
            "algo": list(self.algos.keys()),
            "algo-perf": dict(self.perf),
        }
        if self.config.algo_min_time > 0:
            params["algo-min-time"] = self.config.algo_min_time
        return build_request(POOL_LOGIN_ID, StratumMethods.LOGIN, params)

    def adopt_credentials(self, request: dict) -> None:
        """Take unset pool user/pass from a miner login."""
        params = request.get("params")
        if isinstance(params, dict):
            user, password = params.get("login"), params.get("pass")
        elif isinstance(params, list):
            user = params[0] if len(params) > 0 else None
            password = params[1] if len(params) > 1 else None
        else:
            return
        if self.config.user is None and isinstance(user, str):
            self.config.user = user
            logger.info(f"Setting pool user to '{user}'")
        if self.config.password is None and isinstance(password, str):
            self.config.password = password
            logger.info(f"Setting pool pass to '{password}'")

    # -- lifecycle

    async def start_server(self) -> None:
        """Start the miner-facing listener (needed before probing)."""
        await self.server.start()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Connect to the pools and relay until ``stop_event`` is set.

        Args:
            stop_event: Shutdown signal (an internal one if None).
        """
        if stop_event is not None:
            self._stop_event = stop_event
        if not self.server.serving:
            await self.start_server()

        self.pools.start()
        for watchdog in self.watchdogs:
            self._tasks.append(fire_and_forget(watchdog.run(self._stop_event), f"{watchdog.name} watchdog"))
        self._tasks.append(
            fire_and_forget(run_stats_logger(self._stop_event, STATS_LOG_INTERVAL), "Stats logger")
        )
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Close the pools, kill the miner tree and stop listening."""
        if self._shut_down:
            return
        self._shut_down = True
        self._stop_event.set()
        for task in self._tasks:
            await cancel_task(task)
        self._tasks.clear()
        await self.pools.stop()
        await self.supervisor.shutdown()
        await self.server.stop()
        RelayStats.get_instance().log_stats()

    def restart_miner(self, reason: str = "manual") -> None:
        """Stop and start the current miner, dropping its link."""
        RelayStats.get_instance().record_watchdog_restart(reason)
        self.server.detach()
        self.supervisor.restart()

    # -- process events

    def _on_miner_started(self, command: str) -> None:
        self.activity.miner_started()

    def _on_miner_output(self, line: str) -> None:
        if not (self.probing and self.config.logging.quiet):
            logger.info(line)
        if self.output_hook is not None:
            self.output_hook(line)
            return
        hashrate = parse_hashrate(line)
        if hashrate is not None:
            self.activity.record_hashrate(hashrate)

    # -- pool events

    def on_pool_started(self, conn: PoolConnection) -> None:
        if self.linked_miner is not None:
            logger.info("Pool <-> miner link was established due to new pool connection")

    def on_pool_lost(self, conn: PoolConnection) -> None:
        if self.linked_miner is not None:
            logger.error("Pool <-> miner link was broken due to pool socket error")

    def on_pool_message(self, conn: PoolConnection, msg: PoolMessage) -> None:
        if isinstance(msg, KeepaliveAck):
            conn.keepalive_ids.discard(msg.raw.get("id"))
            return

        if isinstance(msg, TargetNotify):
            conn.last_target = msg.raw
        elif is_job_message(msg):
            if not self._accept_job(conn, msg):
                return
        elif isinstance(msg, Reply):
            self._forward_reply(conn, msg)
            return

        link = self.linked_miner
        if link is not None:
            link.post(link.dialect.job_messages(msg, conn))

    def _accept_job(self, conn: PoolConnection, msg: PoolMessage) -> bool:
        """Route a job-carrying message; False if it has to be discarded."""
        decision = self.router.route(msg.job)
        if decision is None:
            return False
        if decision.algo_changed:
            self.activity.algo_changed_at = self.router.algo_changed_at
        if decision.swap_requested:
            # The new miner logs in again before it gets traffic
            self.server.detach()

        if isinstance(msg, LoginReply):
            conn.login_result = dict(msg.result)
        if msg.job.session_id is not None:
            conn.miner_session_id = msg.job.session_id
        elif isinstance(msg, LoginReply) and msg.result.get("id") is not None:
            conn.miner_session_id = msg.result["id"]
        conn.last_job = msg.job
        return True

    def _forward_reply(self, conn: PoolConnection, msg: Reply) -> None:
        # Replies answer requests the miner sent, logged in or not (mining.subscribe)
        link = self.server.link
        if link is None or link.closed or link.dialect is None:
            if msg.is_error:
                logger.error(f"Pool {conn.name} error: {get_error_message(msg.raw.get('error'))}")
            return
        if link.dialect.take_submit(msg.id):
            stats = RelayStats.get_instance()
            if msg.is_error:
                reason = get_error_message(msg.raw.get("error"))
                logger.warning(f"Share rejected by {conn.name} pool: {reason}")
                stats.record_share_rejected(conn.name, reason)
            else:
                stats.record_share_accepted(conn.name)
            out = link.dialect.submit_ack(msg.raw)
        else:
            out = link.dialect.from_pool(msg.raw)
        if out is not None:
            link.post([out])

    # -- miner events

    async def on_miner_login(self, link: MinerLink, request: dict) -> None:
        if self.login_hook is not None:
            await self.login_hook(link, request)
            return

        self.adopt_credentials(request)
        RelayStats.get_instance().record_miner_connect()
        conn = self.pools.current
        if conn is not None:
            logger.info("Pool <-> miner link was established due to new miner connection")
        await link.send_many(link.dialect.login_reply(request, conn))

    async def on_miner_relogin(self, link: MinerLink, request: dict) -> None:
        if self.probing:
            return
        logger.warning("Miner logged in again on the same connection, replacing the miner process")
        self.server.detach()
        self.supervisor.restart()

    async def on_miner_request(self, link: MinerLink, request: dict) -> None:
        method = request.get("method")
        if self.probing:
            if method == StratumMethods.MINING_SUBSCRIBE:
                await link.send(subscribe_reply(request))
            else:
                logger.debug(f"Ignoring {method} miner message during miner checks")
            return

        conn = self.pools.current
        if conn is None:
            if method not in KEEPALIVE_METHODS:
                logger.error("Can't write miner reply to the pool since its socket is closed")
            return

        if method in SUBMIT_METHODS:
            self.activity.record_submit(time.monotonic())
            RelayStats.get_instance().record_share_submitted()
        await self.pools.send(link.dialect.to_pool(request, conn))

    def on_miner_disconnect(self, link: MinerLink, reason: str) -> None:
        if self.pools.current is not None and link.logged_in and not self.probing:
            logger.error(f"Pool <-> miner link was broken due to {reason}")
