"""Shared test fixtures for vigil."""

import asyncio
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from vigil.config import Config
from vigil.daemon import Daemon
from vigil.errors import InhibitError
from vigil.inhibitor import InhibitMode, Inhibitor


class FakeInhibitor(Inhibitor):
    """Inhibitor that records calls instead of touching the OS."""

    mode = InhibitMode.XSET

    def __init__(self, fail_inhibit: bool = False, fail_release: bool = False):
        self.held = False
        self.inhibit_calls = 0
        self.release_calls = 0
        self.fail_inhibit = fail_inhibit
        self.fail_release = fail_release

    @property
    def active(self) -> bool:
        return self.held

    async def available(self) -> bool:
        return True

    async def inhibit(self) -> None:
        self.inhibit_calls += 1
        if self.fail_inhibit:
            raise InhibitError("inhibit refused")
        self.held = True

    async def release(self) -> None:
        self.release_calls += 1
        if self.fail_release:
            raise InhibitError("release refused")
        self.held = False


class FakeClock:
    """Monotonic nanosecond clock advanced by hand."""

    def __init__(self, start: int = 1_000_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1_000_000_000)


@pytest.fixture
def short_tmp_path():
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to roughly 100 characters and pytest's
    tmp_path is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="vg_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(short_tmp_path: Path, tmp_path: Path, monkeypatch) -> Config:
    """Config whose runtime and state files live in temporary directories."""
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(short_tmp_path))
    monkeypatch.setenv("HOME", str(tmp_path))
    return Config()


@pytest.fixture
def inhibitor() -> FakeInhibitor:
    return FakeInhibitor()


@pytest.fixture
def make_inhibitor():
    """Factory for FakeInhibitor with failure switches."""
    return FakeInhibitor


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def running():
    """Async context manager running a daemon's event loop in the background."""

    @asynccontextmanager
    async def _running(daemon: Daemon):
        task = asyncio.create_task(daemon.run())
        try:
            yield daemon
        finally:
            daemon.request_exit("test")
            await asyncio.wait_for(task, timeout=2.0)

    return _running


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def until():
    return wait_until
