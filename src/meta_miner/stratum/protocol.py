"""Newline-delimited JSON framing shared by the pool and miner sockets."""

from __future__ import annotations

import json
from typing import Any, Optional, Union

from loguru import logger


class StratumProtocolError(Exception):
    """Error in stratum protocol handling."""

    pass


class StratumProtocol:
    """
    Line framer for stratum-style JSON messages.

    Each socket owns its own instance so that an incomplete trailing line
    from one stream is never mixed with data from another.
    """

    ENCODING = "utf-8"
    DELIMITER = b"\n"
    MAX_BUFFER_SIZE = 1024 * 1024  # 1MB max buffer to prevent DoS

    def __init__(self, name: str = "socket"):
        """
        Initialize the framer.

        Args:
            name: Connection name used in log messages.
        """
        self.name = name
        self._buffer = b""

    def feed(self, data: bytes) -> list[str]:
        """
        Feed raw bytes and return every complete, non-empty line.

        Args:
            data: Raw bytes received from the socket.

        Returns:
            Complete lines (without the delimiter), in arrival order.

        Raises:
            StratumProtocolError: If the buffer would exceed MAX_BUFFER_SIZE.
        """
        if len(self._buffer) + len(data) > self.MAX_BUFFER_SIZE:
            self._buffer = b""
            raise StratumProtocolError(
                f"Buffer would exceed max size ({self.MAX_BUFFER_SIZE} bytes), dropping data"
            )

        self._buffer += data
        if self.DELIMITER not in self._buffer:
            return []

        *complete, self._buffer = self._buffer.split(self.DELIMITER)

        lines = []
        for raw in complete:
            text = raw.decode(self.ENCODING, errors="replace").strip()
            if text:
                lines.append(text)
        return lines

    def feed_data(self, data: bytes) -> list[dict]:
        """
        Feed raw bytes and return the parsed JSON objects.

        Lines that fail to parse are logged and skipped; they never abort
        the stream or hide the lines that follow them.

        Args:
            data: Raw bytes received from the socket.

        Returns:
            List of decoded JSON objects.
        """
        messages = []
        for line in self.feed(data):
            try:
                messages.append(self.parse_message(line))
            except StratumProtocolError as e:
                logger.error(f"Can't parse message from the {self.name}: {e}")
        return messages

    @staticmethod
    def parse_message(line: Union[str, bytes]) -> dict:
        """
        Parse a single JSON line.

        Args:
            line: One line of text (without newline).

        Returns:
            Decoded JSON object.

        Raises:
            StratumProtocolError: If the line is not a JSON object.
        """
        try:
            obj = json.loads(line)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StratumProtocolError(f"Invalid JSON: {line!r} ({e})") from e

        if not isinstance(obj, dict):
            raise StratumProtocolError(f"Expected JSON object, got {type(obj).__name__}")

        return obj

    @classmethod
    def encode(cls, obj: dict) -> bytes:
        """
        Encode a message to JSON bytes with newline.

        Raises:
            StratumProtocolError: If encoding fails.
        """
        try:
            return json.dumps(obj, separators=(",", ":")).encode(cls.ENCODING) + cls.DELIMITER
        except (TypeError, ValueError) as e:
            raise StratumProtocolError(f"Failed to encode message: {e}") from e

    def reset_buffer(self) -> None:
        """Clear the internal buffer."""
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        """Incomplete trailing fragment carried over to the next read."""
        return self._buffer


def build_request(id: Any, method: str, params: Any = None) -> dict:
    """Build a JSON-RPC 2.0 request object."""
    return {"id": id, "jsonrpc": "2.0", "method": method, "params": params if params is not None else {}}


def build_response(id: Any, result: Any, error: Optional[Any] = None) -> dict:
    """Build a JSON-RPC 2.0 response object."""
    return {"id": id, "jsonrpc": "2.0", "error": error, "result": result}
