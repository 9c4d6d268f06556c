"""Miner process supervision: spawn, output capture, tree kill and swaps."""

from __future__ import annotations

import asyncio
import os
import shlex
import signal
import subprocess
import sys
from typing import Callable, List, Optional

import psutil
from loguru import logger

from meta_miner.proxy.constants import PROCESS_EXIT_TIMEOUT
from meta_miner.proxy.stats import RelayStats
from meta_miner.proxy.utils import fire_and_forget, strip_ansi


def split_command(command: str) -> List[str]:
    """
    Split a miner command line into executable and arguments.

    Single and double quoted arguments are kept together.

    Args:
        command: Command line as configured.

    Returns:
        Argument vector.

    Raises:
        ValueError: If the command is empty or has unbalanced quotes.
    """
    if sys.platform == "win32":
        args = [arg.strip("\"'") for arg in shlex.split(command, posix=False)]
    else:
        args = shlex.split(command)
    if not args:
        raise ValueError("Empty miner command")
    return args


class ProcessTreeTerminator:
    """Platform hooks for starting a miner detached and killing its whole tree."""

    def spawn_kwargs(self) -> dict:
        """Extra keyword arguments for process creation."""
        return {}

    def terminate(self, pid: int) -> None:
        raise NotImplementedError

    @staticmethod
    def _collect(pid: int) -> List[psutil.Process]:
        """The process and all of its descendants, children first."""
        try:
            parent = psutil.Process(pid)
            return parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return []

    @staticmethod
    def _kill_all(procs: List[psutil.Process]) -> None:
        for proc in procs:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logger.warning(f"Can't kill process {proc.pid}: {e}")


class PsutilTreeTerminator(ProcessTreeTerminator):
    """Windows: new process group and a transitive descendant kill."""

    def spawn_kwargs(self) -> dict:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}

    def terminate(self, pid: int) -> None:
        self._kill_all(self._collect(pid))


class PosixProcessGroupTerminator(ProcessTreeTerminator):
    """POSIX: own session, ``killpg`` plus a sweep of escaped descendants."""

    def spawn_kwargs(self) -> dict:
        return {"start_new_session": True}

    def terminate(self, pid: int) -> None:
        # Descendants that called setsid() themselves are outside the group
        procs = self._collect(pid)
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"killpg({pid}) failed: {e}")
        self._kill_all(procs)


def get_tree_terminator() -> ProcessTreeTerminator:
    """Return the terminator for the running platform."""
    if sys.platform == "win32":
        return PsutilTreeTerminator()
    return PosixProcessGroupTerminator()


class MinerProcess:
    """A running miner and the tasks that watch it."""

    def __init__(self, command: str, process: asyncio.subprocess.Process):
        self.command = command
        self.process = process
        self.killed = False
        self.output_task: Optional[asyncio.Task] = None
        self.exit_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode


class MinerSupervisor:
    """
    Owns the single active miner process.

    All transitions run on the event loop. A swap is one stop-then-start
    sequence; requests that arrive while it is in flight only overwrite the
    pending command, so at most one process is started for the latest target.
    """

    def __init__(
        self,
        on_output: Optional[Callable[[str], None]] = None,
        on_started: Optional[Callable[[str], None]] = None,
        should_respawn: Optional[Callable[[], bool]] = None,
        terminator: Optional[ProcessTreeTerminator] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            on_output: Called with every line of miner output (colours stripped).
            on_started: Called with the command after every successful spawn.
            should_respawn: Decides whether an unintended exit is respawned.
            terminator: Platform tree-kill implementation.
        """
        self._on_output = on_output
        self._on_started = on_started
        self._should_respawn = should_respawn or (lambda: False)
        self._terminator = terminator or get_tree_terminator()

        self.current: Optional[MinerProcess] = None
        self._target: Optional[str] = None
        self._pending: Optional[str] = None
        self._swap_task: Optional[asyncio.Task] = None

    @property
    def command(self) -> Optional[str]:
        """Command of the running miner."""
        return self.current.command if self.current else None

    @property
    def target_command(self) -> Optional[str]:
        """Command that is running or about to run once the swap completes."""
        return self._target

    @property
    def swap_in_flight(self) -> bool:
        return self._swap_task is not None and not self._swap_task.done()

    def request(self, command: str) -> None:
        """
        Make ``command`` the active miner, stopping the current one first.

        Args:
            command: Miner command line.
        """
        self._target = command
        if self.swap_in_flight:
            if self._pending is not None and self._pending != command:
                logger.info(f"Replacing pending '{self._pending}' miner start with '{command}'")
            self._pending = command
            return
        self._pending = command
        self._swap_task = fire_and_forget(self._run_swaps(), "Miner swap")

    def restart(self) -> None:
        """Stop and start the target miner again."""
        if self._target is None or self.swap_in_flight:
            return
        logger.info(f"Restarting '{self._target}' miner")
        self.request(self._target)

    async def shutdown(self) -> None:
        """Kill the miner tree without respawning it."""
        self._target = None
        self._pending = None
        await self.wait_idle()
        await self._stop()

    async def wait_idle(self) -> None:
        """Wait until no swap is in flight."""
        while self.swap_in_flight:
            await asyncio.wait({self._swap_task})

    async def _run_swaps(self) -> None:
        while self._pending is not None:
            await self._stop()
            # Only the latest requested target survives the kill
            command, self._pending = self._pending, None
            if command is not None:
                await self._start(command)

    async def _start(self, command: str) -> None:
        try:
            args = split_command(command)
        except ValueError as e:
            logger.error(f"Can't parse '{command}' miner command: {e}")
            return

        logger.info(f"Starting miner: {command}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **self._terminator.spawn_kwargs(),
            )
        except OSError as e:
            logger.error(f"Failed to start '{command}' miner: {e}")
            return

        miner = MinerProcess(command, process)
        self.current = miner
        miner.output_task = fire_and_forget(self._read_output(miner), f"Miner '{command}' output reader")
        miner.exit_task = fire_and_forget(self._wait_exit(miner), f"Miner '{command}' exit watcher")
        RelayStats.get_instance().record_miner_start()
        if self._on_started:
            self._on_started(command)

    async def _stop(self) -> None:
        miner = self.current
        if miner is None:
            return
        self.current = None
        miner.killed = True
        if miner.returncode is None:
            logger.info(f"Stopping '{miner.command}' miner")
            try:
                self._terminator.terminate(miner.pid)
            except OSError as e:
                logger.error(f"Can't kill '{miner.command}' miner tree: {e}")
        try:
            await asyncio.wait_for(miner.process.wait(), timeout=PROCESS_EXIT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(f"Miner '{miner.command}' (pid {miner.pid}) did not exit after kill")

    async def _read_output(self, miner: MinerProcess) -> None:
        stream = miner.process.stdout
        while True:
            try:
                data = await stream.readline()
            except ValueError:
                # Line longer than the stream limit, drop what is buffered
                data = await stream.read(65536)
            if not data:
                return
            line = strip_ansi(data.decode("utf-8", errors="replace")).rstrip()
            if line and self._on_output:
                self._on_output(line)

    async def _wait_exit(self, miner: MinerProcess) -> None:
        code = await miner.process.wait()
        if miner.killed or miner is not self.current:
            return

        self.current = None
        if code:
            logger.error(f"Miner '{miner.command}' exited with nonzero code {code}")
        else:
            logger.info(f"Miner '{miner.command}' exited with zero code")

        if self.swap_in_flight or not self._should_respawn():
            return
        logger.warning(f"Respawning '{miner.command}' miner after unexpected exit")
        RelayStats.get_instance().record_miner_respawn()
        self.request(miner.command)
