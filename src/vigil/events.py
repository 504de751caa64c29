"""Merged event stream consumed by the daemon state machine.

Four sources feed the stream: inbound control messages, the deadline timer,
the exit signal and transport closure. ``next_event()`` waits on all of them
and returns exactly one tagged event per call. The caller passes the current
deadline on every call, so the timer is always armed from current state.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Union

from vigil.duration import NANOS_PER_SECOND, DurationUpdate
from vigil.errors import InvariantError

if TYPE_CHECKING:
    from vigil.protocol import Status


@dataclass(frozen=True)
class DurationUpdateEvent:
    """A caller asked to change the deadline."""

    update: DurationUpdate


@dataclass(frozen=True)
class StatusRequestEvent:
    """A caller asked for the current status.

    ``on_answer`` runs synchronously with the answer, before any later event
    is handled.
    """

    reply: asyncio.Future
    on_answer: Callable[[Status], None] | None = field(default=None, compare=False)


@dataclass(frozen=True)
class DeadlineEvent:
    """The timer armed for ``deadline`` fired."""

    deadline: int


@dataclass(frozen=True)
class ExitEvent:
    """Shutdown was requested (signal or explicit call)."""

    reason: str


@dataclass(frozen=True)
class TransportClosedEvent:
    """The control transport closed; no more messages will arrive."""


Message = Union[DurationUpdateEvent, StatusRequestEvent]
Event = Union[
    DurationUpdateEvent,
    StatusRequestEvent,
    DeadlineEvent,
    ExitEvent,
    TransportClosedEvent,
]


class EventStream:
    """Single-consumer multiplexer over the daemon's event sources.

    Inbound messages go through a bounded queue: ``put()`` waits while the
    queue is full, so callers are slowed down rather than dropped.
    """

    def __init__(self, maxsize: int = 1, clock: Callable[[], int] = time.monotonic_ns):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self._inbox: asyncio.Queue[Message] = asyncio.Queue(maxsize=maxsize)
        self._clock = clock
        self._exit = asyncio.Event()
        self._exit_reason = ""
        self._closed = asyncio.Event()
        # Survives across next_event() calls so a read that won the race is never lost
        self._inbox_task: asyncio.Task[Message] | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> bool:
        """Whether a message is ready without waiting."""
        if self._inbox_task is not None and self._inbox_task.done():
            return True
        return not self._inbox.empty()

    async def put(self, message: Message) -> None:
        """Queue a message, waiting while the inbox is full.

        Raises:
            ConnectionError: If the stream is closed
        """
        if self._closed.is_set():
            raise ConnectionError("Daemon is not accepting messages")
        await self._inbox.put(message)
        if self._closed.is_set():
            # Closed while we waited for room; nobody will consume this
            self._drain()
            raise ConnectionError("Daemon is not accepting messages")

    def request_exit(self, reason: str = "exit") -> None:
        if not self._exit.is_set():
            self._exit_reason = reason
            self._exit.set()

    def close(self) -> None:
        """Mark the transport closed; the consumer receives TransportClosedEvent."""
        self._closed.set()

    async def next_event(self, deadline: int | None) -> Event:
        """Wait for the first ready source and return its event.

        Args:
            deadline: Current deadline (monotonic ns), or None for no timer
        """
        if self._exit.is_set():
            return ExitEvent(self._exit_reason)
        if self._closed.is_set():
            return TransportClosedEvent()

        if self._inbox_task is None:
            self._inbox_task = asyncio.create_task(self._inbox.get())
        timer = asyncio.create_task(self._sleep_until(deadline))
        exit_wait = asyncio.create_task(self._exit.wait())
        closed_wait = asyncio.create_task(self._closed.wait())

        try:
            done, _ = await asyncio.wait(
                {self._inbox_task, timer, exit_wait, closed_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (timer, exit_wait, closed_wait):
                task.cancel()

        if exit_wait in done:
            return ExitEvent(self._exit_reason)
        if closed_wait in done:
            return TransportClosedEvent()
        if self._inbox_task in done:
            task, self._inbox_task = self._inbox_task, None
            return task.result()
        if deadline is None:
            raise InvariantError("Deadline timer fired while no deadline was set")
        return DeadlineEvent(deadline)

    async def _sleep_until(self, deadline: int | None) -> None:
        if deadline is None:
            # No deadline: wait on a future nobody completes, not a zero-length loop
            await asyncio.get_running_loop().create_future()
            return
        delay = (deadline - self._clock()) / NANOS_PER_SECOND
        if delay > 0:
            await asyncio.sleep(delay)

    async def aclose(self) -> None:
        """Stop waiting and fail every status request that will not be answered."""
        self._closed.set()

        task, self._inbox_task = self._inbox_task, None
        if task is not None:
            if task.done():
                if not task.cancelled():
                    self._reject(task.result())
            else:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._drain()

    def _drain(self) -> None:
        while not self._inbox.empty():
            self._reject(self._inbox.get_nowait())

    @staticmethod
    def _reject(message: Message) -> None:
        if isinstance(message, StatusRequestEvent) and not message.reply.done():
            message.reply.set_exception(ConnectionError("Daemon stopped"))
