# src/vigil/socket_server.py
"""Unix socket server exposing the daemon to control clients.

Protocol: newline-delimited JSON messages (see vigil.protocol).

Status replies are written from inside the daemon's event loop step that
computed them (via ``on_answer``), and change notifications are broadcast
from the same loop, so each connection sees statuses in the order the daemon
produced them.
"""

from __future__ import annotations

import asyncio
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from vigil.duration import DurationUpdate
from vigil.errors import DaemonAlreadyRunning
from vigil.protocol import (
    MSG_STATUS,
    MSG_SUBSCRIBE,
    MSG_UPDATE,
    Status,
    decode,
    encode,
    error_reply,
    ok_reply,
    status_changed,
    status_reply,
)

if TYPE_CHECKING:
    from vigil.daemon import Daemon

log = structlog.get_logger()

# Unsent bytes a subscriber may fall behind by before it is disconnected
MAX_SUBSCRIBER_BUFFER = 64 * 1024


async def _socket_alive(socket_path: Path) -> bool:
    """Whether something is accepting connections on the socket."""
    try:
        _, writer = await asyncio.open_unix_connection(str(socket_path))
    except OSError:
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class SocketServer:
    """Unix domain socket server for daemon control and status streaming.

    Message Types:
    - update: apply a duration update, replies ok/error
    - status: reply with the current status
    - subscribe: reply with the current status, then push status_changed
      on every transition
    """

    def __init__(
        self,
        socket_path: Path,
        daemon: Daemon,
        max_buffer: int = MAX_SUBSCRIBER_BUFFER,
    ) -> None:
        self.socket_path = socket_path
        self.daemon = daemon
        self.max_buffer = max_buffer
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._subscribers: set[asyncio.StreamWriter] = set()

    @property
    def has_subscribers(self) -> bool:
        return len(self._subscribers) > 0

    async def start(self) -> None:
        """Start the socket server.

        Raises:
            DaemonAlreadyRunning: If another daemon is listening on the socket
        """
        if self.socket_path.exists():
            if await _socket_alive(self.socket_path):
                raise DaemonAlreadyRunning(f"Another daemon is listening on {self.socket_path}")
            # Stale socket file left by a daemon that died
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )

        # Only the owning user may control the daemon
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)

        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server."""
        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()
        self._subscribers.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    async def broadcast(self, status: Status) -> None:
        """Push a status change to every subscriber, dropping any that fail.

        Runs inside the daemon loop, so it never waits on a socket. A
        subscriber whose unsent backlog passes ``max_buffer`` is not reading
        and gets disconnected.
        """
        if not self._subscribers:
            return

        data = encode(status_changed(status))
        for writer in list(self._subscribers):
            try:
                writer.write(data)
            except (ConnectionError, OSError):
                self._subscribers.discard(writer)
                continue
            if writer.transport.get_write_buffer_size() > self.max_buffer:
                log.warning(
                    "subscriber_dropped",
                    reason="not reading",
                    buffered=writer.transport.get_write_buffer_size(),
                )
                self._subscribers.discard(writer)
                writer.transport.abort()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve requests from one connection until it closes."""
        self._clients.add(writer)
        log.debug("socket_client_connected", count=len(self._clients))

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                reply = await self._dispatch(line, writer)
                if reply is not None:
                    writer.write(encode(reply))
                await writer.drain()
        except (ConnectionError, OSError):
            pass  # Client went away, or the daemon stopped mid-request
        finally:
            self._clients.discard(writer)
            self._subscribers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log.debug("socket_client_disconnected", count=len(self._clients))

    async def _dispatch(
        self, line: bytes, writer: asyncio.StreamWriter
    ) -> dict[str, Any] | None:
        """Handle one request. Returns the reply, or None if already written."""
        try:
            msg = decode(line)
        except ValueError as e:
            log.warning("invalid_client_message", error=str(e))
            return error_reply(str(e))

        msg_type = msg["type"]
        try:
            if msg_type == MSG_UPDATE:
                update = DurationUpdate.from_dict(msg.get("update"))
                await self.daemon.submit(update)
                return ok_reply()

            if msg_type == MSG_STATUS:
                await self.daemon.query_status(on_answer=self._writer_for(writer))
                return None

            if msg_type == MSG_SUBSCRIBE:
                await self.daemon.query_status(
                    on_answer=self._writer_for(writer, subscribe=True)
                )
                return None

        except ValueError as e:
            log.warning("invalid_client_message", type=msg_type, error=str(e))
            return error_reply(str(e))
        # ConnectionError from a stopping daemon propagates and closes the
        # connection, so clients treat it like any other transport failure

        log.warning("invalid_client_message", type=msg_type, error="unknown type")
        return error_reply(f"Unknown message type: {msg_type!r}")

    def _writer_for(self, writer: asyncio.StreamWriter, subscribe: bool = False):
        """Build the on_answer callback that writes a status reply in order."""

        def on_answer(status: Status) -> None:
            if writer.is_closing():
                return
            writer.write(encode(status_reply(status)))
            if subscribe:
                self._subscribers.add(writer)

        return on_answer
