"""Background daemon for vigil.

The daemon owns the single deadline. Every change to it, and every status
read, goes through one serialized event stream consumed by ``Daemon.run()``,
so the deadline needs no lock.
"""

import asyncio
import math
import os
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

import psutil
import structlog

from vigil.config import Config
from vigil.duration import NANOS_PER_SECOND, DurationUpdate, next_deadline
from vigil.errors import DaemonAlreadyRunning, InhibitError, InvariantError
from vigil.events import (
    DeadlineEvent,
    DurationUpdateEvent,
    EventStream,
    ExitEvent,
    StatusRequestEvent,
    TransportClosedEvent,
)
from vigil.inhibitor import InhibitMode, Inhibitor, select_inhibitor
from vigil.logging import configure
from vigil.protocol import Status
from vigil.socket_server import SocketServer

log = structlog.get_logger()

StatusListener = Callable[[Status], Awaitable[None]]


@dataclass
class DaemonState:
    """Runtime counters of the daemon."""

    running: bool = False
    updates_applied: int = 0
    notifications_sent: int = 0
    last_transition: datetime | None = None

    def record_notification(self) -> None:
        self.notifications_sent += 1
        self.last_transition = datetime.now()


class Daemon:
    """Deadline state machine driving an inhibitor.

    States are Idle (no deadline, inhibitor released) and Active (deadline
    set, inhibitor held). A status change notification is published once per
    scheduling tick in which ``(active, deadline)`` actually changed.
    """

    def __init__(
        self,
        config: Config,
        inhibitor: Inhibitor,
        *,
        clock: Callable[[], int] = time.monotonic_ns,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.inhibitor = inhibitor
        self.state = DaemonState()
        self.events = EventStream(maxsize=config.daemon.inbox_size, clock=clock)

        self._clock = clock
        self._wall_clock = wall_clock
        self._deadline: int | None = None
        self._published: tuple[bool, int | None] = (False, None)
        self._listeners: list[StatusListener] = []

        self._socket_server: SocketServer | None = None
        self._pid_file_written = False

    @property
    def deadline(self) -> int | None:
        """Current deadline in monotonic ns, or None when idle."""
        return self._deadline

    def add_listener(self, listener: StatusListener) -> None:
        """Register a coroutine called with the new Status on every change."""
        self._listeners.append(listener)

    # ─────────────────────────────────────────────────────────────────────
    # Caller API (safe from any task)
    # ─────────────────────────────────────────────────────────────────────

    async def submit(self, update: DurationUpdate) -> None:
        """Queue a deadline update, waiting while the inbox is full.

        Raises:
            ConnectionError: If the daemon has stopped accepting messages
        """
        await self.events.put(DurationUpdateEvent(update))

    async def query_status(self, on_answer: Callable[[Status], None] | None = None) -> Status:
        """Ask the event loop for the current status.

        The answer reflects every update queued before this request.
        ``on_answer`` runs inside the event loop step that computed it.

        Raises:
            ConnectionError: If the daemon stops before answering
        """
        reply: asyncio.Future[Status] = asyncio.get_running_loop().create_future()
        await self.events.put(StatusRequestEvent(reply, on_answer))
        return await reply

    def request_exit(self, reason: str = "exit") -> None:
        self.events.request_exit(reason)

    # ─────────────────────────────────────────────────────────────────────
    # State machine
    # ─────────────────────────────────────────────────────────────────────

    def status(self) -> Status:
        """Project the deadline to a Status. Computed fresh on every call."""
        mode = self.inhibitor.mode.value
        if self._deadline is None:
            return Status(active=False, wake_until=0, mode=mode)

        remaining = max(self._deadline - self._clock(), 0) / NANOS_PER_SECOND
        wake_until = math.floor(self._wall_clock() + remaining)
        if wake_until <= 0:
            raise InvariantError(f"Active deadline projected to epoch {wake_until}")
        return Status(active=True, wake_until=wake_until, mode=mode)

    async def run(self) -> None:
        """Consume events until exit is requested or the transport closes."""
        self.state.running = True
        log.info("event_loop_started", mode=self.inhibitor.mode.value)

        try:
            while True:
                event = await self.events.next_event(self._deadline)

                if isinstance(event, ExitEvent):
                    log.info("event_loop_exit", reason=event.reason)
                    break
                if isinstance(event, TransportClosedEvent):
                    log.info("event_loop_exit", reason="transport_closed")
                    break

                await self._handle(event)

                # Publish once per tick: coalesce messages that are already waiting
                if not self.events.pending:
                    await self._publish()
        finally:
            self.state.running = False
            await self.events.aclose()
            await self._release_on_exit()

    async def _handle(
        self, event: DurationUpdateEvent | StatusRequestEvent | DeadlineEvent
    ) -> None:
        if isinstance(event, StatusRequestEvent):
            try:
                status = self.status()
            except InvariantError:
                # Already dequeued, so aclose() cannot fail it for us
                if not event.reply.done():
                    event.reply.set_exception(ConnectionError("Daemon stopped"))
                raise
            if event.on_answer is not None:
                event.on_answer(status)
            if not event.reply.done():
                event.reply.set_result(status)
            return

        now = self._clock()

        if isinstance(event, DurationUpdateEvent):
            previous = self._deadline
            self._deadline = next_deadline(self._deadline, event.update, now)
            self.state.updates_applied += 1
            log.info(
                "deadline_updated",
                update=str(event.update),
                was_active=previous is not None,
                active=self._deadline is not None,
                remaining_s=self._remaining_seconds(now),
            )
        elif isinstance(event, DeadlineEvent):
            if self._deadline is None or self._deadline > now:
                # A newer update superseded the deadline this timer was armed for
                return
            self._deadline = None
            log.info("deadline_reached")

        await self._sync_inhibitor()

    def _remaining_seconds(self, now: int) -> float:
        if self._deadline is None:
            return 0.0
        return round((self._deadline - now) / NANOS_PER_SECOND, 3)

    async def _sync_inhibitor(self) -> None:
        """Make the inhibitor match the deadline. Failures are retried next transition."""
        mode = self.inhibitor.mode.value

        if self._deadline is not None and not self.inhibitor.active:
            try:
                await self.inhibitor.inhibit()
            except InhibitError as e:
                log.error("inhibit_failed", mode=mode, error=str(e))
                return
            log.info("inhibitor_acquired", mode=mode)

        elif self._deadline is None and self.inhibitor.active:
            try:
                await self.inhibitor.release()
            except InhibitError as e:
                log.error("release_failed", mode=mode, error=str(e))
                return
            log.info("inhibitor_released", mode=mode)

    async def _publish(self) -> None:
        key = (self._deadline is not None, self._deadline)
        if key == self._published:
            return
        self._published = key

        status = self.status()
        self.state.record_notification()
        log.debug("status_changed", active=status.active, wake_until=status.wake_until)
        for listener in list(self._listeners):
            await listener(status)

    async def _release_on_exit(self) -> None:
        # Cookies and logind leases outlive the process unless handed back
        if not self.inhibitor.active:
            return
        try:
            await self.inhibitor.release()
            log.info("inhibitor_released", mode=self.inhibitor.mode.value, reason="shutdown")
        except InhibitError as e:
            log.warning("release_on_exit_failed", mode=self.inhibitor.mode.value, error=str(e))

    # ─────────────────────────────────────────────────────────────────────
    # Process lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the control server and run the event loop until shutdown.

        Raises:
            DaemonAlreadyRunning: If another daemon owns the PID file or socket
        """
        from importlib.metadata import PackageNotFoundError, version

        try:
            pkg_version = version("vigil")
        except PackageNotFoundError:
            pkg_version = "unknown"
        log.info("daemon_starting", version=pkg_version, mode=self.inhibitor.mode.value)

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        # Check for existing instance
        if self._check_already_running():
            log.error("daemon_already_running")
            raise DaemonAlreadyRunning("Daemon is already running")

        self._socket_server = SocketServer(self.config.socket_path, self)
        await self._socket_server.start()
        self.add_listener(self._socket_server.broadcast)

        self._write_pid_file()
        log.info("daemon_started", socket=str(self.config.socket_path))

        await self.run()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None

        # run() releases on exit; this covers a start() that failed before run()
        await self._release_on_exit()

        self._remove_pid_file()
        log.info("daemon_stopped")

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        self.request_exit(sig.name)

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._pid_file_written = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove the PID file, but only if this process wrote it."""
        if self._pid_file_written and self.config.pid_path.exists():
            self.config.pid_path.unlink()
            self._pid_file_written = False
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if a daemon is already running.

        Verifies not just that a process with the PID exists, but that it's
        actually a vigil daemon, so a PID reused after reboot is not mistaken
        for one.
        """
        pid_path = self.config.pid_path
        if not pid_path.exists():
            return False

        try:
            pid = int(pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            pid_path.unlink()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "vigil" in cmdline_str:
                log.info("daemon_already_running_verified", pid=pid)
                return True

            # Process exists but it's not the daemon - stale PID file
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            pid_path.unlink()
            return False

        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            pid_path.unlink()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True


async def run_daemon(config: Config | None = None, mode: str | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        mode: Inhibit mode name overriding the configured one

    Raises:
        NoInhibitorAvailable: If no usable inhibit mechanism exists
        DaemonAlreadyRunning: If another daemon is running
    """
    if config is None:
        config = Config.load()

    # Setup dual logging: console (human-readable) + file (JSON Lines)
    configure(config)

    inhibit_mode = InhibitMode(mode or config.daemon.mode)
    inhibitor = await select_inhibitor(inhibit_mode, config.inhibitor)
    daemon = Daemon(config, inhibitor)

    try:
        await daemon.start()
    except DaemonAlreadyRunning:
        raise
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
