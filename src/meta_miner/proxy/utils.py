"""Shared utility functions for the proxy module."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Coroutine, Optional

from loguru import logger

from meta_miner.proxy.constants import MAX_BACKGROUND_ERROR_LENGTH, MAX_LOGGED_MESSAGE_LENGTH

# ANSI colour / cursor sequences printed by most miners
_ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def fire_and_forget(coro: Coroutine[Any, Any, Any], name: str = "Background task") -> Optional[asyncio.Task]:
    """
    Create a task that logs exceptions instead of silently dropping them.

    Args:
        coro: Coroutine to run as a task.
        name: Task description used in the error log.

    Returns:
        The created task, or None if no event loop is running.
    """
    try:
        task = asyncio.create_task(coro)
    except RuntimeError as e:
        # No running event loop - close the coroutine to avoid warning
        coro.close()
        logger.debug(f"Cannot create background task (no event loop): {e}")
        return None

    log_task_exception(task, name)
    return task


def log_task_exception(task: asyncio.Task, task_name: str) -> None:
    """Add exception logging callback to a task."""
    def _callback(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc:
            exc_str = str(exc)
            if len(exc_str) > MAX_BACKGROUND_ERROR_LENGTH:
                exc_str = exc_str[:MAX_BACKGROUND_ERROR_LENGTH] + "... (truncated)"
            logger.opt(exception=exc).error(f"{task_name} failed: {exc_str}")
    task.add_done_callback(_callback)


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel a task and wait for it to finish."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def strip_ansi(text: str) -> str:
    """Remove terminal colour codes from miner output."""
    return _ANSI_ESCAPE_RE.sub("", text)


def format_message(obj: Any) -> str:
    """Render a JSON message for debug logs, truncated."""
    text = json.dumps(obj, separators=(",", ":"), default=str)
    if len(text) > MAX_LOGGED_MESSAGE_LENGTH:
        return text[:MAX_LOGGED_MESSAGE_LENGTH] + "..."
    return text


def get_error_message(error: Any) -> str:
    """
    Extract error message from various error formats.

    Pools return errors as ``{"code": N, "message": "..."}`` objects or as
    stratum-style ``[code, "message", traceback]`` lists.
    """
    if error is None:
        return "unknown"
    if isinstance(error, dict):
        return str(error.get("message", error.get("code", "unknown")))
    if isinstance(error, (list, tuple)) and len(error) >= 2:
        return str(error[1])
    return str(error)
