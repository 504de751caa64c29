"""Inhibit mechanisms that keep the machine awake.

Every mechanism implements the same four-operation contract:

- ``available()``: best-effort probe, never raises
- ``inhibit()``: acquire the resource; a second call while held does nothing
- ``release()``: drop the resource; a call while not held does nothing
- ``active``: whether the resource is currently held

``inhibit()`` and ``release()`` raise InhibitError on failure. The daemon logs
it and retries on the next transition, so a broken mechanism never stops
deadline tracking.
"""

from __future__ import annotations

import asyncio
import math
import re
import shutil
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from vigil.errors import InhibitError, NoInhibitorAvailable

if TYPE_CHECKING:
    from vigil.config import InhibitorConfig

log = structlog.get_logger()


class InhibitMode(Enum):
    """Inhibit mechanism selectable at daemon startup."""

    AUTO = "auto"
    XSET = "xset"
    LOGIND = "logind"
    CAFFEINATE = "caffeinate"
    XFCE4 = "xfce4"
    XFCE4_SCREENSAVER = "xfce4-screensaver"
    SCREENSAVER = "screensaver"
    MOUSE_JITTER = "mouse-jitter"

    @property
    def description(self) -> str:
        return _MODE_DESCRIPTIONS[self]


_MODE_DESCRIPTIONS = {
    InhibitMode.AUTO: "Pick the first available mechanism",
    InhibitMode.XSET: "Reset the X screensaver timer with `xset s reset`",
    InhibitMode.LOGIND: "Hold a logind sleep/idle lock via `systemd-inhibit`",
    InhibitMode.CAFFEINATE: "Hold a macOS power assertion via `caffeinate`",
    InhibitMode.XFCE4: "Inhibit sleep from xfce4-power-manager",
    InhibitMode.XFCE4_SCREENSAVER: "Inhibit xfce4-screensaver",
    InhibitMode.SCREENSAVER: "Inhibit the freedesktop.org screensaver service",
    InhibitMode.MOUSE_JITTER: "Nudge the pointer when it has been still for a while",
}

# Order tried by InhibitMode.AUTO. Lease and cookie mechanisms come first
# because they block sleep outright instead of resetting a timer.
AUTO_PREFERENCE = [
    InhibitMode.LOGIND,
    InhibitMode.CAFFEINATE,
    InhibitMode.XFCE4,
    InhibitMode.SCREENSAVER,
    InhibitMode.XFCE4_SCREENSAVER,
    InhibitMode.XSET,
    InhibitMode.MOUSE_JITTER,
]


async def run_command(*argv: str, timeout: float) -> tuple[int, str, str]:
    """Run a short-lived command and collect its output.

    Returns:
        (returncode, stdout, stderr)

    Raises:
        InhibitError: If the command cannot be started or times out
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise InhibitError(f"Failed to run {argv[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass  # Exited between the timeout and the kill
        await proc.wait()
        raise InhibitError(f"{argv[0]} timed out after {timeout}s") from None

    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class Inhibitor(ABC):
    """Keeps the machine awake while active."""

    mode: InhibitMode

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether the inhibit resource is currently held."""

    @abstractmethod
    async def available(self) -> bool:
        """Probe whether this mechanism works here. Never raises."""

    @abstractmethod
    async def inhibit(self) -> None:
        """Acquire the inhibit resource. No-op while already held."""

    @abstractmethod
    async def release(self) -> None:
        """Release the inhibit resource. No-op while not held."""


# =============================================================================
# Periodic task mechanisms
# =============================================================================


class PeriodicInhibitor(Inhibitor):
    """Mechanism backed by a background task that runs while inhibiting."""

    def __init__(self, interval: float):
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def inhibit(self) -> None:
        if self.active:
            return
        # A task that stopped on its own is no longer holding anything
        await self.release()
        self._prepare()
        self._task = asyncio.create_task(self._run(), name=f"vigil-{self.mode.value}")
        log.debug("inhibit_task_started", mode=self.mode.value)

    async def release(self) -> None:
        """Cancel the background task and wait until it has stopped."""
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # The task died before we cancelled it; it holds nothing now
            log.warning("inhibit_task_failed", mode=self.mode.value, error=str(e))
        log.debug("inhibit_task_stopped", mode=self.mode.value)

    def _prepare(self) -> None:
        """Hook run before the task starts; raise InhibitError to refuse."""

    @abstractmethod
    async def _run(self) -> None:
        """Body of the background task. Runs until cancelled."""


class XSetInhibitor(PeriodicInhibitor):
    """Reset the X screensaver idle timer on a fixed interval."""

    mode = InhibitMode.XSET

    def __init__(self, interval: float = 60.0, timeout: float = 5.0):
        super().__init__(interval)
        self.timeout = timeout

    async def available(self) -> bool:
        if shutil.which("xset") is None:
            return False
        try:
            returncode, _, _ = await run_command("xset", "q", timeout=self.timeout)
        except InhibitError:
            return False
        return returncode == 0

    async def _run(self) -> None:
        while True:
            await self._reset()
            await asyncio.sleep(self.interval)

    async def _reset(self) -> None:
        """Fire-and-forget `xset s reset`; failures are logged, not raised."""
        try:
            returncode, _, stderr = await run_command(
                "xset", "s", "reset", timeout=self.timeout
            )
        except InhibitError as e:
            log.warning("xset_reset_failed", error=str(e))
            return
        if returncode != 0:
            log.warning("xset_reset_failed", returncode=returncode, stderr=stderr.strip())


class MouseJitterInhibitor(PeriodicInhibitor):
    """Nudge the pointer by one unit once it has been still for a window.

    The pointer is sampled every ``interval`` seconds. When every sample in the
    trailing ``window`` is identical, the pointer moves one unit and is put
    back at its original absolute position, which resets the platform idle
    timer without visibly displacing it.

    ``pointer`` is any object with ``position()``, ``moveRel(dx, dy)`` and
    ``moveTo(x, y)``; pyautogui is used when none is given.
    """

    mode = InhibitMode.MOUSE_JITTER

    def __init__(self, interval: float = 5.0, window: float = 60.0, pointer: Any = None):
        super().__init__(interval)
        self.window = window
        self.history_len = math.ceil(window / interval) + 1
        self._pointer = pointer
        # Executor call that may outlive a cancelled task
        self._pending: asyncio.Future | None = None

    def _load_pointer(self) -> Any:
        if self._pointer is None:
            import pyautogui

            self._pointer = pyautogui
        return self._pointer

    async def available(self) -> bool:
        try:
            pointer = self._load_pointer()
            await self._call(pointer.position)
        except Exception:
            # pyautogui raises a variety of errors without a usable display
            return False
        return True

    def _prepare(self) -> None:
        try:
            self._load_pointer()
        except Exception as e:
            raise InhibitError(f"Pointer control unavailable: {e}") from e

    async def release(self) -> None:
        """Stop the task and wait for any pointer call still in the executor."""
        await super().release()
        pending, self._pending = self._pending, None
        if pending is None or pending.done():
            return
        try:
            await pending
        except Exception as e:
            log.warning("pointer_call_failed", error=str(e))

    async def _call(self, func: Any, *args: Any) -> Any:
        # pyautogui calls block (and pause after moves), keep them off the loop.
        # Shielded so cancelling the task leaves the future for release() to await.
        loop = asyncio.get_running_loop()
        self._pending = loop.run_in_executor(None, func, *args)
        return await asyncio.shield(self._pending)

    @staticmethod
    def _nudge(pointer: Any, x: int, y: int) -> None:
        pointer.moveRel(0, 1)
        pointer.moveTo(x, y)

    async def _run(self) -> None:
        pointer = self._load_pointer()
        history: deque[tuple[int, int]] = deque(maxlen=self.history_len)

        while True:
            await asyncio.sleep(self.interval)

            try:
                x, y = await self._call(pointer.position)
            except Exception as e:
                log.warning("pointer_position_failed", error=str(e))
                return
            pos = (int(x), int(y))
            history.append(pos)

            if len(history) < self.history_len or any(p != pos for p in history):
                continue

            try:
                await self._call(self._nudge, pointer, pos[0], pos[1])
            except Exception as e:
                log.warning("pointer_jitter_failed", error=str(e))
                continue
            log.debug("pointer_jittered", x=pos[0], y=pos[1])


# =============================================================================
# Lease mechanisms
# =============================================================================


class LeaseInhibitor(Inhibitor):
    """Hold an inhibition for as long as a child process lives.

    ``systemd-inhibit`` keeps the logind lock fd open for the lifetime of the
    command it wraps; ``caffeinate`` holds its power assertion until killed.
    Terminating the child releases the lease.
    """

    def __init__(
        self,
        mode: InhibitMode,
        argv: list[str],
        timeout: float = 5.0,
        requires: Path | None = None,
    ):
        self.mode = mode
        self.argv = argv
        self.timeout = timeout
        self.requires = requires
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def active(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def available(self) -> bool:
        if shutil.which(self.argv[0]) is None:
            return False
        return self.requires is None or self.requires.exists()

    async def inhibit(self) -> None:
        if self.active:
            return
        if self._proc is not None:
            log.warning("lease_lost", mode=self.mode.value, returncode=self._proc.returncode)
            self._proc = None

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise InhibitError(f"Failed to start {self.argv[0]}: {e}") from e
        log.debug("lease_acquired", mode=self.mode.value, pid=self._proc.pid)

    async def release(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return

        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self.timeout)
        except ProcessLookupError:
            pass  # Process already exited
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
        log.debug("lease_released", mode=self.mode.value)


def logind_inhibitor(config: InhibitorConfig) -> LeaseInhibitor:
    return LeaseInhibitor(
        InhibitMode.LOGIND,
        [
            "systemd-inhibit",
            "--what=sleep:idle",
            f"--who={config.app_name}",
            f"--why={config.reason}",
            "--mode=block",
            "sleep",
            "infinity",
        ],
        timeout=config.command_timeout,
        # Present only when the system was booted with systemd
        requires=Path("/run/systemd/system"),
    )


def caffeinate_inhibitor(config: InhibitorConfig) -> LeaseInhibitor:
    return LeaseInhibitor(
        InhibitMode.CAFFEINATE,
        ["/usr/bin/caffeinate", "-d", "-i"],  # Prevent display and idle sleep
        timeout=config.command_timeout,
    )


# =============================================================================
# Cookie mechanisms
# =============================================================================


@dataclass(frozen=True)
class CookieService:
    """A session-bus service handing out inhibit cookies."""

    bus_name: str
    object_path: str
    interface: str


XFCE_POWER_MANAGER = CookieService(
    "org.xfce.PowerManager",
    "/org/freedesktop/PowerManagement/Inhibit",
    "org.freedesktop.PowerManagement.Inhibit",
)
XFCE_SCREENSAVER = CookieService("org.xfce.ScreenSaver", "/", "org.xfce.ScreenSaver")
FREEDESKTOP_SCREENSAVER = CookieService(
    "org.freedesktop.ScreenSaver",
    "/org/freedesktop/ScreenSaver",
    "org.freedesktop.ScreenSaver",
)

_UINT32_PATTERN = re.compile(r"uint32\s+(\d+)")


class CookieInhibitor(Inhibitor):
    """Inhibit through a desktop service that returns an integer cookie.

    The cookie must be handed back with ``UnInhibit`` to end the inhibition;
    a held cookie is always returned before another one is requested.
    """

    def __init__(
        self,
        mode: InhibitMode,
        service: CookieService,
        app_name: str = "vigil",
        reason: str = "user request",
        timeout: float = 5.0,
    ):
        self.mode = mode
        self.service = service
        self.app_name = app_name
        self.reason = reason
        self.timeout = timeout
        self._cookie: int | None = None

    @property
    def active(self) -> bool:
        return self._cookie is not None

    @property
    def cookie(self) -> int | None:
        return self._cookie

    async def _call(self, dest: str, path: str, method: str, *args: str) -> str:
        """Call a session-bus method through dbus-send and return the reply text."""
        returncode, stdout, stderr = await run_command(
            "dbus-send",
            "--session",
            "--print-reply",
            f"--dest={dest}",
            path,
            method,
            *args,
            timeout=self.timeout,
        )
        if returncode != 0:
            raise InhibitError(f"{method} failed: {stderr.strip() or f'exit {returncode}'}")
        return stdout

    async def available(self) -> bool:
        if shutil.which("dbus-send") is None:
            return False
        try:
            reply = await self._call(
                "org.freedesktop.DBus",
                "/org/freedesktop/DBus",
                "org.freedesktop.DBus.NameHasOwner",
                f"string:{self.service.bus_name}",
            )
        except InhibitError:
            return False
        return "boolean true" in reply

    async def inhibit(self) -> None:
        if self._cookie is not None:
            return

        reply = await self._call(
            self.service.bus_name,
            self.service.object_path,
            f"{self.service.interface}.Inhibit",
            f"string:{self.app_name}",
            f"string:{self.reason}",
        )
        match = _UINT32_PATTERN.search(reply)
        if not match:
            raise InhibitError(f"No cookie in Inhibit reply from {self.service.bus_name}")

        self._cookie = int(match.group(1))
        log.debug("cookie_acquired", mode=self.mode.value, cookie=self._cookie)

    async def release(self) -> None:
        if self._cookie is None:
            return

        await self._call(
            self.service.bus_name,
            self.service.object_path,
            f"{self.service.interface}.UnInhibit",
            f"uint32:{self._cookie}",
        )
        log.debug("cookie_released", mode=self.mode.value, cookie=self._cookie)
        self._cookie = None


# =============================================================================
# Selection
# =============================================================================


def create_inhibitor(mode: InhibitMode, config: InhibitorConfig) -> Inhibitor:
    """Build the inhibitor for a concrete mode.

    Raises:
        ValueError: For InhibitMode.AUTO, which select_inhibitor() resolves
    """
    if mode is InhibitMode.XSET:
        return XSetInhibitor(config.reset_interval, timeout=config.command_timeout)
    if mode is InhibitMode.LOGIND:
        return logind_inhibitor(config)
    if mode is InhibitMode.CAFFEINATE:
        return caffeinate_inhibitor(config)
    if mode is InhibitMode.MOUSE_JITTER:
        return MouseJitterInhibitor(config.jitter_interval, config.jitter_window)

    services = {
        InhibitMode.XFCE4: XFCE_POWER_MANAGER,
        InhibitMode.XFCE4_SCREENSAVER: XFCE_SCREENSAVER,
        InhibitMode.SCREENSAVER: FREEDESKTOP_SCREENSAVER,
    }
    if mode in services:
        return CookieInhibitor(
            mode,
            services[mode],
            app_name=config.app_name,
            reason=config.reason,
            timeout=config.command_timeout,
        )

    raise ValueError(f"No inhibitor for mode {mode.value!r}; resolve it with select_inhibitor()")


async def select_inhibitor(mode: InhibitMode, config: InhibitorConfig) -> Inhibitor:
    """Resolve a mode to a working inhibitor, once, at daemon startup.

    Raises:
        NoInhibitorAvailable: If the requested mode (or, for AUTO, every mode)
            is unavailable
    """
    if mode is not InhibitMode.AUTO:
        inhibitor = create_inhibitor(mode, config)
        if not await inhibitor.available():
            raise NoInhibitorAvailable(f"Inhibit mode {mode.value!r} is not available here")
        return inhibitor

    for candidate in AUTO_PREFERENCE:
        inhibitor = create_inhibitor(candidate, config)
        if await inhibitor.available():
            log.info("inhibitor_selected", mode=candidate.value)
            return inhibitor
        log.debug("inhibitor_unavailable", mode=candidate.value)

    raise NoInhibitorAvailable("No inhibit mechanism is available on this system")
