# src/vigil/socket_client.py

"""Unix socket client for talking to the daemon."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from vigil.duration import DurationUpdate
from vigil.errors import DaemonError
from vigil.protocol import (
    MSG_ERROR,
    MSG_STATUS,
    Status,
    decode,
    encode,
    status_request,
    update_request,
)


class SocketClient:
    """Unix domain socket client for the daemon control protocol.

    Simple and stateless: connects or throws. Callers handle reconnection.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        """Whether client is connected."""
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Connect to the daemon socket.

        Raises:
            FileNotFoundError: If socket doesn't exist (daemon not running)
            ConnectionRefusedError: If the socket exists but nobody listens
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")

        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))

    async def disconnect(self) -> None:
        """Disconnect from the daemon socket."""
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
            self._reader = None

    async def read_message(self, timeout: float | None = 1.0) -> dict[str, Any]:
        """Read next message from socket with timeout.

        Args:
            timeout: Max seconds to wait for data, None to wait indefinitely

        Returns:
            Parsed JSON message from daemon

        Raises:
            ConnectionError: If connection is lost
            TimeoutError: If no data received within timeout
            ValueError: If message is invalid JSON
        """
        if not self._reader:
            raise ConnectionError("Not connected")

        line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        if not line:
            raise ConnectionError("Connection closed by server")

        return decode(line)

    async def send_message(self, msg: dict[str, Any]) -> None:
        """Send a message to the daemon.

        Raises:
            ConnectionError: If not connected or write fails
        """
        if not self._writer or self._writer.is_closing():
            raise ConnectionError("Not connected")

        try:
            self._writer.write(encode(msg))
            await self._writer.drain()
        except OSError as e:
            raise ConnectionError(f"Send failed: {e}") from e

    async def request(self, msg: dict[str, Any], timeout: float | None = 5.0) -> dict[str, Any]:
        """Send a request and return the reply.

        Raises:
            DaemonError: If the daemon replied with an error
        """
        await self.send_message(msg)
        reply = await self.read_message(timeout=timeout)
        if reply["type"] == MSG_ERROR:
            raise DaemonError(reply.get("message", "unknown error"))
        return reply


def parse_status_message(msg: dict[str, Any]) -> Status:
    """Extract the Status from a status or status_changed message.

    Raises:
        DaemonError: If the message is an error reply
        ValueError: If the message carries no valid status
    """
    if msg["type"] == MSG_ERROR:
        raise DaemonError(msg.get("message", "unknown error"))
    status = msg.get("status")
    if not isinstance(status, dict):
        raise ValueError(f"Expected a status message, got {msg['type']!r}")
    return Status.from_dict(status)


async def send_update(socket_path: Path, update: DurationUpdate, timeout: float = 5.0) -> None:
    """Send one duration update to the daemon."""
    client = SocketClient(socket_path)
    await client.connect()
    try:
        await client.request(update_request(update), timeout=timeout)
    finally:
        await client.disconnect()


async def fetch_status(socket_path: Path, timeout: float = 5.0) -> Status:
    """Fetch the daemon's current status once."""
    client = SocketClient(socket_path)
    await client.connect()
    try:
        reply = await client.request(status_request(), timeout=timeout)
    finally:
        await client.disconnect()
    if reply["type"] != MSG_STATUS:
        raise ValueError(f"Expected a status reply, got {reply['type']!r}")
    return parse_status_message(reply)
