"""Status watcher: streams the daemon's status as JSON lines.

Output is meant for status bars. A report is re-rendered on every pushed
change and, while active, again at each whole minute of remaining time so the
``"<n>m"`` message stays current without a notification.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

import click
import structlog

from vigil import logging as console
from vigil.protocol import (
    MSG_ERROR,
    MSG_STATUS,
    MSG_STATUS_CHANGED,
    Status,
    status_request,
    subscribe_request,
)
from vigil.socket_client import SocketClient, parse_status_message

log = structlog.get_logger()

DEFAULT_RETRY_DELAY = 5.0


@dataclass(frozen=True)
class StatusReport:
    """What the watcher prints for one status."""

    active: bool
    remaining_seconds: int | None
    message: str

    @classmethod
    def from_status(cls, status: Status, now: float | None = None) -> StatusReport:
        if now is None:
            now = time.time()
        remaining = max(status.wake_until - now, 0.0)
        if not status.active:
            return cls(active=False, remaining_seconds=None, message="")
        return cls(
            active=True,
            remaining_seconds=int(remaining),
            message=f"{math.ceil(remaining / 60)}m",
        )

    def next_check_delay(self) -> float | None:
        """Seconds until the minute display changes, None to wait for a push."""
        if self.remaining_seconds is None:
            return None
        return float(self.remaining_seconds % 60 or 60)

    def to_json(self) -> str:
        return json.dumps(asdict(self))


def print_report(report: StatusReport) -> None:
    click.echo(report.to_json())


async def watch_status(
    socket_path: Path,
    emit: Callable[[StatusReport], None] = print_report,
    clock: Callable[[], float] = time.time,
) -> None:
    """Subscribe to the daemon and emit a report for every status seen.

    Raises:
        FileNotFoundError: If the daemon socket does not exist
        ConnectionError: If the connection fails or drops
        DaemonError: If the daemon answers with an error
    """
    client = SocketClient(socket_path)
    await client.connect()
    try:
        await client.send_message(subscribe_request())
        first = await client.read_message(timeout=None)
        report = StatusReport.from_status(parse_status_message(first), clock())
        emit(report)

        while True:
            try:
                msg = await client.read_message(timeout=report.next_check_delay())
            except asyncio.TimeoutError:
                # The reply arrives on this same stream, possibly after a push
                await client.send_message(status_request())
                continue

            if msg["type"] == MSG_ERROR:
                parse_status_message(msg)  # raises DaemonError
            if msg["type"] not in (MSG_STATUS, MSG_STATUS_CHANGED):
                log.debug("monitor_unexpected_message", type=msg["type"])
                continue

            report = StatusReport.from_status(parse_status_message(msg), clock())
            emit(report)
    finally:
        await client.disconnect()


async def monitor_forever(
    socket_path: Path,
    emit: Callable[[StatusReport], None] = print_report,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> None:
    """Run the watcher, reconnecting after transport failures."""
    while True:
        try:
            await watch_status(socket_path, emit)
        except FileNotFoundError as e:
            console.monitor_disconnected(str(e), retry_delay)
        except ConnectionError as e:
            console.monitor_disconnected(str(e) or type(e).__name__, retry_delay)
        await asyncio.sleep(retry_delay)
