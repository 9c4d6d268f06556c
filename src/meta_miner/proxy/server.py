"""Miner-facing server accepting a single local miner connection."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Iterable, Optional

from loguru import logger

from meta_miner.proxy.constants import SOCKET_CLOSE_TIMEOUT, SOCKET_READ_BUFFER_SIZE
from meta_miner.proxy.dialects import select_dialect
from meta_miner.proxy.utils import fire_and_forget, format_message
from meta_miner.stratum.messages import LOGIN_METHODS
from meta_miner.stratum.protocol import StratumProtocol, StratumProtocolError

if TYPE_CHECKING:
    from meta_miner.proxy.dialects import JobContext, MinerDialect


class MinerLink:
    """The accepted miner connection and the dialect bound to it."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.protocol = StratumProtocol("miner")
        self.dialect: Optional[MinerDialect] = None
        self.logged_in = False
        self.closed = False

    async def send(self, obj: dict) -> None:
        """Send one message to the miner; write errors close the link."""
        if self.closed:
            return
        logger.debug(f"To miner: {format_message(obj)}")
        try:
            self.writer.write(StratumProtocol.encode(obj))
            await self.writer.drain()
        except (OSError, ConnectionError) as e:
            logger.error(f"Can't write to the miner socket: {e}")
            await self.close()

    async def send_many(self, messages: Iterable[dict]) -> None:
        for obj in messages:
            await self.send(obj)

    def post(self, messages: Iterable[dict]) -> None:
        """Queue messages for the miner without waiting, keeping their order."""
        for obj in messages:
            if self.closed:
                return
            logger.debug(f"To miner: {format_message(obj)}")
            try:
                self.writer.write(StratumProtocol.encode(obj))
            except (OSError, ConnectionError, RuntimeError) as e:
                logger.error(f"Can't write to the miner socket: {e}")
                fire_and_forget(self.close(), "Miner link close")
                return

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=SOCKET_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Timeout waiting for the miner socket to close")
        except (OSError, ConnectionError) as e:
            logger.debug(f"Error closing the miner socket: {e}")


class MinerHandler:
    """Receiver of miner events (implemented by the relay)."""

    current_algo: Optional[str] = None

    @property
    def job_context(self) -> Optional[JobContext]:
        return None

    async def on_miner_login(self, link: MinerLink, request: dict) -> None:
        """First login/authorize on a link."""

    async def on_miner_relogin(self, link: MinerLink, request: dict) -> None:
        """Login repeated on a link that is already logged in."""

    async def on_miner_request(self, link: MinerLink, request: dict) -> None:
        """Any other miner message that the dialect does not answer itself."""

    def on_miner_disconnect(self, link: MinerLink, reason: str) -> None:
        """The current link went away."""


class MinerServer:
    """
    Listens for the local miner.

    Only one connection is served at a time; a second one is logged and
    closed while the first is alive.
    """

    def __init__(self, host: str, port: int, handler: MinerHandler, quiet: bool = False):
        """
        Initialize the server.

        Args:
            host: Address to bind to.
            port: Port to listen on (0 picks a free one).
            handler: Receiver of miner events.
            quiet: Log miner connects at debug level only.
        """
        self.host = host
        self.port = port
        self.handler = handler
        self.quiet = quiet
        self.link: Optional[MinerLink] = None
        self._server: Optional[asyncio.Server] = None

    @property
    def serving(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """
        Start listening.

        Raises:
            OSError: If the address can't be bound.
        """
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Local miner server on {self.host}:{self.port} started")

    async def stop(self) -> None:
        """Stop listening and drop the current link."""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        link, self.link = self.link, None
        if link is not None:
            await link.close()

    def detach(self) -> None:
        """Close and forget the current link so a replacement miner can connect."""
        link, self.link = self.link, None
        if link is not None:
            logger.debug(f"Detaching miner link from {link.peer}")
            fire_and_forget(link.close(), "Miner link close")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.link is not None:
            logger.error(f"Miner server on {self.port} port is already connected")
            writer.close()
            return

        link = MinerLink(reader, writer)
        self.link = link
        logger.log("DEBUG" if self.quiet else "INFO", f"Miner server on {self.port} port connected from {link.peer}")

        reason = "closed miner socket"
        try:
            while not link.closed:
                data = await reader.read(SOCKET_READ_BUFFER_SIZE)
                if not data:
                    break
                try:
                    messages = link.protocol.feed_data(data)
                except StratumProtocolError as e:
                    logger.error(f"Miner protocol error: {e}")
                    continue
                for obj in messages:
                    if link.closed or link is not self.link:
                        break
                    await self._dispatch(link, obj)
        except (OSError, ConnectionError) as e:
            reason = "miner socket error"
            logger.error(f"Miner socket error: {e}")
        finally:
            detached = link is not self.link
            await link.close()
            if not detached:
                self.link = None
                logger.info("Miner socket was closed")
                self.handler.on_miner_disconnect(link, reason)

    async def _dispatch(self, link: MinerLink, obj: dict) -> None:
        logger.debug(f"Miner message: {format_message(obj)}")
        if link.dialect is None:
            link.dialect = select_dialect(obj, self.handler.current_algo)
            logger.debug(f"Miner speaks {link.dialect.name} dialect")

        method = obj.get("method")
        if method in LOGIN_METHODS:
            if link.logged_in:
                await self.handler.on_miner_relogin(link, obj)
                return
            link.logged_in = True
            await self.handler.on_miner_login(link, obj)
            return

        local = link.dialect.handle_locally(obj, self.handler.job_context)
        if local is not None:
            await link.send_many(local)
            return
        await self.handler.on_miner_request(link, obj)
