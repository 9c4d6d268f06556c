"""Foreground runtime: signal handling, startup checks and the relay loop."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

if TYPE_CHECKING:
    from meta_miner.config.models import Config
    from meta_miner.proxy.relay import MetaMinerRelay


class DaemonError(Exception):
    """Runtime management error."""

    pass


class MisconfigurationError(DaemonError):
    """Nothing to mine with: no pools, or no usable miner after probing."""

    pass


class DaemonManager:
    """
    Runs the relay in the foreground until a shutdown signal.

    Handles:
    - Signal handling for graceful shutdown
    - Startup miner probing and benchmarking
    - Writing the augmented configuration back
    """

    def __init__(self, config: Config, config_path: Optional[str] = None):
        """
        Initialize the daemon manager.

        Args:
            config: Application configuration (algo and perf tables get augmented).
            config_path: Where the configuration is saved after startup checks.
        """
        self.config = config
        self._config_path = Path(config_path) if config_path else None
        self._stop_event = asyncio.Event()
        self._signal_received = False

    def run_foreground(self) -> None:
        """
        Run the relay in the foreground (blocking).

        Raises:
            MisconfigurationError: If there is nothing to mine with.
        """
        asyncio.run(self._run_main_loop())

    def stop(self) -> None:
        """Ask a running main loop to shut down."""
        self._stop_event.set()

    def _setup_signals(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._stop_event.set)
            return

        # Windows has no add_signal_handler; the handler only flags the signal
        def sync_signal_handler(signum: int, frame: Any) -> None:
            self._signal_received = True
            try:
                loop.call_soon_threadsafe(self._stop_event.set)
            except RuntimeError:
                self._stop_event.set()

        signal.signal(signal.SIGINT, sync_signal_handler)
        signal.signal(signal.SIGTERM, sync_signal_handler)
        asyncio.create_task(self._windows_signal_watcher())

    async def _windows_signal_watcher(self) -> None:
        """
        Periodically check for signals on Windows.

        Signal handlers only run when Python executes bytecode, so the loop
        has to wake up regularly while it waits on sockets.
        """
        while not self._stop_event.is_set():
            if self._signal_received:
                logger.info("Received shutdown signal (Ctrl+C)")
                self._stop_event.set()
                break
            await asyncio.sleep(0.1)

    def _save_config(self) -> None:
        from meta_miner.config.loader import ConfigError, save_config

        if self.config.no_config_save or self._config_path is None:
            return
        try:
            save_config(self.config, self._config_path)
            logger.info(f"Saved configuration to {self._config_path}")
        except ConfigError as e:
            logger.error(str(e))

    async def prepare(self, relay: MetaMinerRelay) -> None:
        """
        Bind the miner listener, probe miners and benchmark algorithms.

        Raises:
            MisconfigurationError: If no pool is configured, the listener
                can't be bound, or no algorithm has a usable miner.
        """
        from meta_miner.config.loader import dump_config
        from meta_miner.proxy import run_startup_checks

        if not self.config.pools:
            raise MisconfigurationError("No pools specified, exiting")

        try:
            await relay.start_server()
        except OSError as e:
            raise MisconfigurationError(
                f"Can't start miner server on {self.config.proxy.bind_host}:"
                f"{self.config.proxy.bind_port} port: {e}"
            ) from e

        await run_startup_checks(relay)

        if not self.config.algos:
            raise MisconfigurationError("No usable miners found, exiting")

        logger.info("SETUP COMPLETE")
        for line in dump_config(self.config).splitlines():
            logger.info(line)
        self._save_config()

    async def _run_main_loop(self) -> None:
        """Main application loop."""
        from meta_miner.proxy import MetaMinerRelay

        self._setup_signals()

        logger.info("Starting meta miner")
        logger.info(f"Configured pools: {', '.join(self.config.pools) or 'none'}")

        relay = MetaMinerRelay(self.config)
        try:
            prepare = asyncio.ensure_future(self.prepare(relay))
            stopped = asyncio.ensure_future(self._stop_event.wait())
            done, _ = await asyncio.wait({prepare, stopped}, return_when=asyncio.FIRST_COMPLETED)
            if prepare not in done:
                logger.info("Shutdown requested during startup checks")
                prepare.cancel()
                await asyncio.gather(prepare, return_exceptions=True)
                return
            stopped.cancel()
            # Re-raises MisconfigurationError
            prepare.result()

            await relay.run(self._stop_event)
        finally:
            await relay.shutdown()

        logger.info("Meta miner shutdown complete")
