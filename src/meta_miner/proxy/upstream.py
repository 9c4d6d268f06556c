"""Pool connection management with ordered failover."""

from __future__ import annotations

import asyncio
import errno
import ssl
from typing import TYPE_CHECKING, Callable, List, Optional, Set

from loguru import logger

from meta_miner.proxy.constants import SOCKET_CLOSE_TIMEOUT, SOCKET_READ_BUFFER_SIZE
from meta_miner.proxy.keepalive import enable_tcp_keepalive
from meta_miner.proxy.stats import RelayStats
from meta_miner.proxy.utils import cancel_task, fire_and_forget, format_message
from meta_miner.stratum.messages import PoolMessage, StratumMethods, classify_pool_message, proves_session
from meta_miner.stratum.protocol import StratumProtocol, StratumProtocolError, build_request

if TYPE_CHECKING:
    from meta_miner.config.models import PoolConfig, PoolEndpoint, ProxyConfig
    from meta_miner.stratum.messages import Job


class PoolConnectionError(Exception):
    """The pool socket failed or was closed by the pool."""

    pass


class PoolListener:
    """Receiver of pool session events (implemented by the relay)."""

    def on_pool_started(self, conn: PoolConnection) -> None:
        """A connection was proven good and became the current session."""

    def on_pool_lost(self, conn: PoolConnection) -> None:
        """The current session failed or was replaced."""

    def on_pool_message(self, conn: PoolConnection, msg: PoolMessage) -> None:
        """A message arrived on the current session."""


class PoolConnection:
    """
    One connection attempt to one pool endpoint (the pool session).

    Session fields are cleared when the connection fails.
    """

    def __init__(
        self,
        index: int,
        endpoint: PoolEndpoint,
        proxy_config: Optional[ProxyConfig] = None,
        connect_timeout: float = 30,
        probe: bool = False,
    ):
        """
        Initialize the connection.

        Args:
            index: Endpoint index in the pool list (0 is primary).
            endpoint: Address to connect to.
            proxy_config: TCP keepalive settings for the socket.
            connect_timeout: Seconds to wait for TCP/TLS connect.
            probe: True for a background attempt on the primary while a backup is current.
        """
        self.index = index
        self.endpoint = endpoint
        self.name = str(endpoint)
        self.proxy_config = proxy_config
        self.connect_timeout = connect_timeout
        self.probe = probe
        # Set when the manager closes the connection on purpose
        self.retired = False

        self._reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._protocol = StratumProtocol(f"pool {self.name}")

        self.is_authenticated = False
        self.login_result: Optional[dict] = None
        self.last_job: Optional[Job] = None
        self.last_target: Optional[dict] = None
        self.miner_session_id: Optional[str] = None

        self._keepalive_counter = 0
        self.keepalive_ids: Set[str] = set()

    @property
    def connected(self) -> bool:
        return self.writer is not None

    async def connect(self) -> None:
        """
        Open the TCP or TLS connection.

        Raises:
            OSError: Connect failure (including ``ssl.SSLError``).
            asyncio.TimeoutError: Connect timed out.
        """
        ssl_context = None
        server_hostname = None
        if self.endpoint.use_tls:
            # Mining pools commonly use self-signed certificates
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            server_hostname = self.endpoint.address

        logger.info(f"Connecting to {self.name} pool")
        self._reader, self.writer = await asyncio.wait_for(
            asyncio.open_connection(
                self.endpoint.address,
                self.endpoint.port,
                ssl=ssl_context,
                server_hostname=server_hostname,
            ),
            timeout=self.connect_timeout,
        )
        self._protocol.reset_buffer()
        if self.proxy_config is not None:
            enable_tcp_keepalive(self.writer, self.proxy_config, f"pool:{self.name}")

    async def send(self, obj: dict) -> None:
        """
        Send one JSON message.

        Raises:
            PoolConnectionError: If not connected or the write fails.
        """
        if self.writer is None:
            raise PoolConnectionError(f"Pool {self.name} is not connected")
        logger.debug(f"To pool {self.name}: {format_message(obj)}")
        try:
            self.writer.write(StratumProtocol.encode(obj))
            await self.writer.drain()
        except (OSError, ConnectionError) as e:
            raise PoolConnectionError(f"Send error: {e}") from e

    async def read_messages(self) -> List[dict]:
        """
        Wait for the next chunk of data and return its decoded messages.

        Raises:
            PoolConnectionError: If the pool closed the socket.
        """
        if self._reader is None:
            raise PoolConnectionError(f"Pool {self.name} is not connected")
        data = await self._reader.read(SOCKET_READ_BUFFER_SIZE)
        if not data:
            raise PoolConnectionError("connection closed by the pool")
        try:
            return self._protocol.feed_data(data)
        except StratumProtocolError as e:
            logger.error(f"Pool {self.name} protocol error: {e}")
            return []

    def classify(self, obj: dict) -> PoolMessage:
        return classify_pool_message(obj, self.keepalive_ids)

    def keepalive_request(self) -> dict:
        """Build the next ``keepalived`` request and remember its id."""
        self._keepalive_counter += 1
        request_id = f"keepalive{self._keepalive_counter}"
        self.keepalive_ids.add(request_id)
        return build_request(request_id, StratumMethods.KEEPALIVED, {"id": self.miner_session_id})

    def clear(self) -> None:
        """Drop every piece of session state."""
        self.is_authenticated = False
        self.login_result = None
        self.last_job = None
        self.last_target = None
        self.miner_session_id = None
        self.keepalive_ids.clear()

    async def close(self) -> None:
        """Close the socket."""
        writer, self.writer, self._reader = self.writer, None, None
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=SOCKET_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"Timeout waiting for {self.name} pool socket to close")
        except (OSError, ConnectionError) as e:
            logger.debug(f"Error closing {self.name} pool socket: {e}")


ConnectionFactory = Callable[..., PoolConnection]


def describe_connect_error(e: BaseException) -> str:
    """Human readable reason for a failed pool connection."""
    if isinstance(e, asyncio.TimeoutError):
        return "connection timed out"
    if isinstance(e, ssl.SSLError):
        return f"TLS error: {e}"
    if isinstance(e, OSError):
        if e.errno == errno.ECONNREFUSED:
            return "connection refused (is the pool server running?)"
        if e.errno == errno.EHOSTUNREACH:
            return "host unreachable (check network connectivity)"
        if e.errno == errno.ENETUNREACH:
            return "network unreachable (check network configuration)"
    return str(e) or type(e).__name__


class PoolConnectionManager:
    """
    Keeps exactly one current pool session across an ordered endpoint list.

    Failover walks the list one index at a time and waits the cooldown after
    the last endpoint before starting over at the primary. While a backup is
    current, the primary is retried in the background and promoted once it
    proves itself.
    """

    def __init__(
        self,
        endpoints: List[PoolEndpoint],
        pool_config: PoolConfig,
        listener: PoolListener,
        login_request: Callable[[], dict],
        proxy_config: Optional[ProxyConfig] = None,
        connection_factory: ConnectionFactory = PoolConnection,
    ):
        """
        Initialize the manager.

        Args:
            endpoints: Pool endpoints, index 0 is primary.
            pool_config: Failover timing.
            listener: Receiver of session events.
            login_request: Builds the login request sent on every connect.
            proxy_config: TCP keepalive settings for pool sockets.
            connection_factory: Creates connections (replaceable in tests).
        """
        self.endpoints = endpoints
        self.config = pool_config
        self.listener = listener
        self._login_request = login_request
        self._proxy_config = proxy_config
        self._factory = connection_factory

        self.index = 0
        self.current: Optional[PoolConnection] = None
        self._attempt: Optional[PoolConnection] = None
        self._probe: Optional[PoolConnection] = None
        self._tasks: dict = {}
        self._cooldown_handle: Optional[asyncio.TimerHandle] = None
        self._primary_retry_handle: Optional[asyncio.TimerHandle] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def primary_retry_armed(self) -> bool:
        return self._primary_retry_handle is not None

    @property
    def cooling_down(self) -> bool:
        return self._cooldown_handle is not None

    def start(self) -> None:
        """Connect to the primary pool."""
        self._stopped = False
        self._connect(0)

    async def stop(self) -> None:
        """Cancel timers and close every connection."""
        self._stopped = True
        self._cancel_cooldown()
        self._cancel_primary_retry()
        await cancel_task(self._keepalive_task)
        self._keepalive_task = None
        for conn in (self.current, self._attempt, self._probe):
            if conn is not None:
                conn.retired = True
        tasks = list(self._tasks.values())
        for task in tasks:
            await cancel_task(task)
        self.current = self._attempt = self._probe = None

    async def send(self, obj: dict) -> bool:
        """
        Send a message on the current session.

        Returns:
            False if there is no current session or the write failed.
        """
        conn = self.current
        if conn is None:
            return False
        try:
            await conn.send(obj)
            return True
        except PoolConnectionError as e:
            # The read loop notices the broken socket and fails over
            logger.error(f"Can't write to {conn.name} pool: {e}")
            return False

    def _connect(self, index: int, probe: bool = False) -> None:
        conn = self._factory(
            index,
            self.endpoints[index],
            proxy_config=self._proxy_config,
            connect_timeout=self.config.connect_timeout,
            probe=probe,
        )
        if probe:
            self._probe = conn
        else:
            self.index = index
            self._attempt = conn
        task = fire_and_forget(self._run_connection(conn), f"Pool {conn.name} connection")
        if task is not None:
            self._tasks[id(conn)] = task
            task.add_done_callback(lambda _t, key=id(conn): self._tasks.pop(key, None))

    async def _run_connection(self, conn: PoolConnection) -> None:
        error: Optional[BaseException] = None
        try:
            await conn.connect()
            await conn.send(self._login_request())
            while True:
                for obj in await conn.read_messages():
                    if conn.retired:
                        return
                    self._dispatch(conn, obj)
        except (OSError, asyncio.TimeoutError, PoolConnectionError) as e:
            error = e
        finally:
            await conn.close()

        if conn.retired or self._stopped:
            return
        logger.error(f"Pool {conn.name} socket error: {describe_connect_error(error)}")
        self._on_failure(conn)

    def _dispatch(self, conn: PoolConnection, obj: dict) -> None:
        logger.debug(f"Pool {conn.name} message: {format_message(obj)}")
        msg = conn.classify(obj)
        if not conn.is_authenticated:
            if not proves_session(msg):
                logger.error(f"Ignoring pool message that does not contain job: {format_message(obj)}")
                return
            conn.is_authenticated = True
            self._on_proven(conn)
        self.listener.on_pool_message(conn, msg)

    def _on_proven(self, conn: PoolConnection) -> None:
        old = self.current
        if conn.probe:
            logger.info(f"Main pool {conn.name} is back, switching to it")
            conn.probe = False
            self._probe = None
            self._cancel_cooldown()
            # An attempt on a lower priority pool in progress is abandoned too
            for other in (old, self._attempt):
                if other is not None and other is not conn:
                    other.retired = True
                    fire_and_forget(other.close(), f"Pool {other.name} close")
            if old is not None:
                logger.info(f"Closing {old.name} pool socket")
                self.listener.on_pool_lost(old)
            self.index = 0
        elif old is not None and old is not conn:
            logger.error(
                f"Internal error: pool {conn.name} was proven while {old.name} is still current"
            )
            old.retired = True
            fire_and_forget(old.close(), f"Pool {old.name} close")
            self.listener.on_pool_lost(old)

        if conn.index == 0:
            if self._primary_retry_handle is not None:
                logger.info("Stopped main pool connection attempts since its connection was established")
            self._cancel_primary_retry()
        else:
            self._arm_primary_retry()

        self._attempt = None
        self.current = conn
        logger.info(f"Connected to {conn.name} pool")
        RelayStats.get_instance().record_pool_connect(conn.name)
        self._restart_keepalive(conn)
        self.listener.on_pool_started(conn)

    def _on_failure(self, conn: PoolConnection) -> None:
        RelayStats.get_instance().record_pool_failure(conn.name)
        if conn is self.current:
            self.current = None
            self.listener.on_pool_lost(conn)
        conn.clear()

        if conn.probe:
            # Background primary probe, the backup session is unaffected
            self._probe = None
            self._arm_primary_retry()
            return

        if conn.index != self.index:
            logger.error(
                f"Internal error: failed pool index {conn.index} does not match current pool index {self.index}"
            )
        if self._attempt is conn:
            self._attempt = None

        next_index = self.index + 1
        RelayStats.get_instance().record_failover()
        if next_index >= len(self.endpoints):
            self._cancel_primary_retry()
            self.index = 0
            logger.info(
                f"Waiting {self.config.cooldown:g} seconds before trying to connect to the same pools once again"
            )
            loop = asyncio.get_running_loop()
            self._cooldown_handle = loop.call_later(self.config.cooldown, self._on_cooldown_done)
        else:
            self._connect(next_index)

    def _on_cooldown_done(self) -> None:
        self._cooldown_handle = None
        if not self._stopped:
            self._connect(0)

    def _arm_primary_retry(self) -> None:
        if self._primary_retry_handle is not None or self._stopped:
            return
        interval = self.config.primary_retry_interval
        logger.info(f"Will retry connection attempt to the main pool in {interval:g} seconds")
        loop = asyncio.get_running_loop()
        self._primary_retry_handle = loop.call_later(interval, self._on_primary_retry)

    def _on_primary_retry(self) -> None:
        self._primary_retry_handle = None
        if self._stopped or self._probe is not None:
            return
        if self.current is None or self.current.index == 0:
            return
        self._connect(0, probe=True)

    def _cancel_primary_retry(self) -> None:
        if self._primary_retry_handle is not None:
            self._primary_retry_handle.cancel()
            self._primary_retry_handle = None

    def _cancel_cooldown(self) -> None:
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None

    def _restart_keepalive(self, conn: PoolConnection) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        if self.config.keepalive_interval > 0:
            self._keepalive_task = fire_and_forget(self._keepalive_loop(conn), "Pool keepalive")

    async def _keepalive_loop(self, conn: PoolConnection) -> None:
        while conn is self.current:
            await asyncio.sleep(self.config.keepalive_interval)
            if conn is not self.current:
                return
            try:
                await conn.send(conn.keepalive_request())
            except PoolConnectionError as e:
                logger.warning(f"Can't send keepalive to {conn.name} pool: {e}")
                return
