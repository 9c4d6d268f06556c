"""TCP socket options for the pool connection."""

from __future__ import annotations

import socket
import sys
from typing import TYPE_CHECKING, List, Tuple

from loguru import logger

if TYPE_CHECKING:
    import asyncio
    from meta_miner.config.models import ProxyConfig


def keepalive_options(config: ProxyConfig, platform: str = sys.platform) -> List[Tuple[int, int, int]]:
    """
    ``setsockopt`` triples that tune keepalive timing on ``platform``.

    Windows is tuned through an ioctl instead and gets no triples.
    """
    if platform == "linux":
        return [
            (socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, config.keepalive_idle),
            (socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, config.keepalive_interval),
            (socket.IPPROTO_TCP, socket.TCP_KEEPCNT, config.keepalive_count),
        ]
    if platform == "darwin":
        # Idle time only
        return [(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, config.keepalive_idle)]
    return []


def enable_tcp_keepalive(writer: asyncio.StreamWriter, config: ProxyConfig, name: str = "pool") -> bool:
    """
    Enable TCP_NODELAY and, if configured, TCP keepalive on a pool socket.

    Args:
        writer: Stream writer of the connection.
        config: Keepalive settings.
        name: Connection name for log messages.

    Returns:
        True if the options were applied.
    """
    sock = writer.get_extra_info("socket")
    if sock is None:
        logger.debug(f"[{name}] No socket to tune")
        return False

    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except (OSError, AttributeError) as e:
        logger.debug(f"[{name}] TCP_NODELAY not available: {e}")

    if not config.tcp_keepalive:
        return True

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        for level, option, value in keepalive_options(config):
            sock.setsockopt(level, option, value)
        if sys.platform == "win32":
            sock.ioctl(
                socket.SIO_KEEPALIVE_VALS,
                (1, config.keepalive_idle * 1000, config.keepalive_interval * 1000),
            )
    except (OSError, AttributeError) as e:
        logger.warning(f"[{name}] Failed to enable TCP keepalive: {e}")
        return False

    logger.debug(f"[{name}] TCP keepalive enabled: idle={config.keepalive_idle}s")
    return True
