"""Tests for the inhibit mechanisms."""

import asyncio
import signal
import threading
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from vigil.config import InhibitorConfig
from vigil.errors import InhibitError, NoInhibitorAvailable
from vigil.inhibitor import (
    AUTO_PREFERENCE,
    FREEDESKTOP_SCREENSAVER,
    XFCE_POWER_MANAGER,
    CookieInhibitor,
    InhibitMode,
    LeaseInhibitor,
    MouseJitterInhibitor,
    XSetInhibitor,
    caffeinate_inhibitor,
    create_inhibitor,
    logind_inhibitor,
    run_command,
    select_inhibitor,
)


class FakePointer:
    """Stands in for pyautogui."""

    def __init__(self, positions=None):
        self._positions = positions
        self.pos = (10, 20)
        self.moves = []

    def position(self):
        if self._positions is not None:
            self.pos = next(self._positions)
        return self.pos

    def moveRel(self, dx, dy):  # noqa: N802
        self.moves.append(("rel", dx, dy))

    def moveTo(self, x, y):  # noqa: N802
        self.moves.append(("to", x, y))


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_collects_output(self) -> None:
        assert await run_command("sh", "-c", "echo out; echo err >&2; exit 3", timeout=5) == (
            3,
            "out\n",
            "err\n",
        )

    @pytest.mark.asyncio
    async def test_missing_binary(self) -> None:
        with pytest.raises(InhibitError):
            await run_command("/nonexistent/vigil-test-binary", timeout=1)

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        with pytest.raises(InhibitError, match="timed out"):
            await run_command("sleep", "5", timeout=0.1)


class TestXSetInhibitor:
    @pytest.mark.asyncio
    async def test_inhibit_is_idempotent(self) -> None:
        inhibitor = XSetInhibitor(interval=60.0)
        run = AsyncMock(return_value=(0, "", ""))
        with patch("vigil.inhibitor.run_command", run):
            await inhibitor.inhibit()
            task = inhibitor._task
            await inhibitor.inhibit()
            assert inhibitor._task is task
            assert inhibitor.active

            await asyncio.sleep(0.01)
            run.assert_awaited_with("xset", "s", "reset", timeout=5.0)

            await inhibitor.release()
            assert not inhibitor.active
            assert task.done()

            # Second release is a no-op
            await inhibitor.release()

    @pytest.mark.asyncio
    async def test_resets_periodically(self) -> None:
        inhibitor = XSetInhibitor(interval=0.01)
        run = AsyncMock(return_value=(0, "", ""))
        with patch("vigil.inhibitor.run_command", run):
            await inhibitor.inhibit()
            await asyncio.sleep(0.1)
            await inhibitor.release()
        assert run.await_count >= 3

    @pytest.mark.asyncio
    async def test_reset_failure_keeps_running(self) -> None:
        inhibitor = XSetInhibitor(interval=0.01)
        run = AsyncMock(side_effect=InhibitError("no display"))
        with patch("vigil.inhibitor.run_command", run):
            await inhibitor.inhibit()
            await asyncio.sleep(0.05)
            assert inhibitor.active
            await inhibitor.release()

    @pytest.mark.asyncio
    async def test_available(self) -> None:
        inhibitor = XSetInhibitor()
        with patch("vigil.inhibitor.shutil.which", return_value=None):
            assert await inhibitor.available() is False

        with (
            patch("vigil.inhibitor.shutil.which", return_value="/usr/bin/xset"),
            patch("vigil.inhibitor.run_command", AsyncMock(return_value=(0, "", ""))),
        ):
            assert await inhibitor.available() is True

        with (
            patch("vigil.inhibitor.shutil.which", return_value="/usr/bin/xset"),
            patch("vigil.inhibitor.run_command", AsyncMock(return_value=(1, "", "no display"))),
        ):
            assert await inhibitor.available() is False


class TestMouseJitterInhibitor:
    def test_history_covers_window(self) -> None:
        inhibitor = MouseJitterInhibitor(interval=5.0, window=60.0, pointer=FakePointer())
        assert inhibitor.history_len == 13

    @pytest.mark.asyncio
    async def test_still_pointer_is_jittered_back_in_place(self, until) -> None:
        pointer = FakePointer()
        inhibitor = MouseJitterInhibitor(interval=0.01, window=0.02, pointer=pointer)

        await inhibitor.inhibit()
        try:
            await until(lambda: len(pointer.moves) >= 2, timeout=2.0)
        finally:
            await inhibitor.release()

        assert pointer.moves[:2] == [("rel", 0, 1), ("to", 10, 20)]

    @pytest.mark.asyncio
    async def test_moving_pointer_is_left_alone(self) -> None:
        positions = iter((i, i) for i in range(10_000))
        pointer = FakePointer(positions)
        inhibitor = MouseJitterInhibitor(interval=0.01, window=0.02, pointer=pointer)

        await inhibitor.inhibit()
        await asyncio.sleep(0.1)
        await inhibitor.release()

        assert pointer.moves == []

    @pytest.mark.asyncio
    async def test_inhibit_is_idempotent(self) -> None:
        inhibitor = MouseJitterInhibitor(interval=10.0, pointer=FakePointer())
        await inhibitor.inhibit()
        task = inhibitor._task
        await inhibitor.inhibit()
        assert inhibitor._task is task
        await inhibitor.release()
        assert not inhibitor.active

    @pytest.mark.asyncio
    async def test_available_false_when_pointer_fails(self) -> None:
        pointer = MagicMock()
        pointer.position.side_effect = OSError("no display")
        assert await MouseJitterInhibitor(pointer=pointer).available() is False
        assert await MouseJitterInhibitor(pointer=FakePointer()).available() is True

    @pytest.mark.asyncio
    async def test_release_waits_for_pointer_call_in_flight(self, until) -> None:
        started = threading.Event()

        class SlowPointer(FakePointer):
            def moveRel(self, dx, dy):  # noqa: N802
                started.set()
                time.sleep(0.2)
                super().moveRel(dx, dy)

        pointer = SlowPointer()
        inhibitor = MouseJitterInhibitor(interval=0.01, window=0.02, pointer=pointer)

        await inhibitor.inhibit()
        await until(started.is_set, timeout=2.0)
        await inhibitor.release()

        assert pointer.moves == [("rel", 0, 1), ("to", 10, 20)]
        assert not inhibitor.active


class TestLeaseInhibitor:
    @pytest.mark.asyncio
    async def test_one_child_per_lease(self) -> None:
        inhibitor = LeaseInhibitor(InhibitMode.LOGIND, ["sleep", "60"], timeout=2.0)

        await inhibitor.inhibit()
        proc = inhibitor._proc
        await inhibitor.inhibit()
        assert inhibitor._proc is proc
        assert inhibitor.active

        await inhibitor.release()
        assert not inhibitor.active
        assert proc.returncode is not None

        await inhibitor.release()

    @pytest.mark.asyncio
    async def test_lost_lease_is_reacquired(self) -> None:
        inhibitor = LeaseInhibitor(InhibitMode.LOGIND, ["sleep", "60"], timeout=2.0)
        await inhibitor.inhibit()
        first = inhibitor._proc
        first.send_signal(signal.SIGKILL)
        await first.wait()
        assert not inhibitor.active

        await inhibitor.inhibit()
        try:
            assert inhibitor.active
            assert inhibitor._proc is not first
        finally:
            await inhibitor.release()

    @pytest.mark.asyncio
    async def test_unstartable_child_raises(self) -> None:
        inhibitor = LeaseInhibitor(InhibitMode.CAFFEINATE, ["/nonexistent/vigil-test-binary"])
        with pytest.raises(InhibitError):
            await inhibitor.inhibit()
        assert not inhibitor.active

    @pytest.mark.asyncio
    async def test_available_needs_binary_and_marker(self, tmp_path: Path) -> None:
        assert await LeaseInhibitor(InhibitMode.LOGIND, ["sleep"]).available() is True
        missing = LeaseInhibitor(InhibitMode.LOGIND, ["sleep"], requires=tmp_path / "nope")
        assert await missing.available() is False
        assert await LeaseInhibitor(InhibitMode.LOGIND, ["vigil-no-such-cmd"]).available() is False

    def test_logind_command(self) -> None:
        inhibitor = logind_inhibitor(InhibitorConfig(app_name="vigil", reason="testing"))
        assert inhibitor.mode is InhibitMode.LOGIND
        assert inhibitor.argv[:5] == [
            "systemd-inhibit",
            "--what=sleep:idle",
            "--who=vigil",
            "--why=testing",
            "--mode=block",
        ]
        assert inhibitor.requires == Path("/run/systemd/system")

    def test_caffeinate_command(self) -> None:
        inhibitor = caffeinate_inhibitor(InhibitorConfig())
        assert inhibitor.mode is InhibitMode.CAFFEINATE
        assert inhibitor.argv[0] == "/usr/bin/caffeinate"


INHIBIT_REPLY = 'method return time=1.0 sender=:1.5 -> destination=:1.9\n   uint32 17\n'


class TestCookieInhibitor:
    def make(self) -> CookieInhibitor:
        return CookieInhibitor(InhibitMode.SCREENSAVER, FREEDESKTOP_SCREENSAVER, reason="testing")

    @pytest.mark.asyncio
    async def test_one_cookie_per_inhibition(self) -> None:
        inhibitor = self.make()
        run = AsyncMock(return_value=(0, INHIBIT_REPLY, ""))
        with patch("vigil.inhibitor.run_command", run):
            await inhibitor.inhibit()
            await inhibitor.inhibit()

        assert run.await_count == 1
        assert inhibitor.cookie == 17
        argv = run.await_args.args
        assert argv[:3] == ("dbus-send", "--session", "--print-reply")
        assert "org.freedesktop.ScreenSaver.Inhibit" in argv
        assert argv[-2:] == ("string:vigil", "string:testing")

    @pytest.mark.asyncio
    async def test_release_returns_cookie(self) -> None:
        inhibitor = self.make()
        with patch("vigil.inhibitor.run_command", AsyncMock(return_value=(0, INHIBIT_REPLY, ""))):
            await inhibitor.inhibit()

        run = AsyncMock(return_value=(0, "method return\n", ""))
        with patch("vigil.inhibitor.run_command", run):
            await inhibitor.release()
            await inhibitor.release()

        assert run.await_count == 1
        argv = run.await_args.args
        assert "org.freedesktop.ScreenSaver.UnInhibit" in argv
        assert argv[-1] == "uint32:17"
        assert not inhibitor.active

    @pytest.mark.asyncio
    async def test_failed_release_keeps_cookie(self) -> None:
        inhibitor = self.make()
        with patch("vigil.inhibitor.run_command", AsyncMock(return_value=(0, INHIBIT_REPLY, ""))):
            await inhibitor.inhibit()

        failing = AsyncMock(return_value=(1, "", "org.freedesktop.DBus.Error.ServiceUnknown"))
        with patch("vigil.inhibitor.run_command", failing):
            with pytest.raises(InhibitError, match="ServiceUnknown"):
                await inhibitor.release()

        assert inhibitor.cookie == 17

    @pytest.mark.asyncio
    async def test_reply_without_cookie_raises(self) -> None:
        inhibitor = self.make()
        with patch("vigil.inhibitor.run_command", AsyncMock(return_value=(0, "garbage", ""))):
            with pytest.raises(InhibitError):
                await inhibitor.inhibit()
        assert not inhibitor.active

    @pytest.mark.asyncio
    async def test_available_checks_bus_name(self) -> None:
        inhibitor = CookieInhibitor(InhibitMode.XFCE4, XFCE_POWER_MANAGER)
        owned = AsyncMock(return_value=(0, "method return\n   boolean true\n", ""))
        unowned = AsyncMock(return_value=(0, "method return\n   boolean false\n", ""))

        with patch("vigil.inhibitor.shutil.which", return_value="/usr/bin/dbus-send"):
            with patch("vigil.inhibitor.run_command", owned):
                assert await inhibitor.available() is True
            assert owned.await_args.args[-1] == "string:org.xfce.PowerManager"

            with patch("vigil.inhibitor.run_command", unowned):
                assert await inhibitor.available() is False

            with patch("vigil.inhibitor.run_command", AsyncMock(side_effect=InhibitError("x"))):
                assert await inhibitor.available() is False


class TestSelection:
    @pytest.mark.parametrize(
        "mode,cls",
        [
            (InhibitMode.XSET, XSetInhibitor),
            (InhibitMode.LOGIND, LeaseInhibitor),
            (InhibitMode.CAFFEINATE, LeaseInhibitor),
            (InhibitMode.XFCE4, CookieInhibitor),
            (InhibitMode.XFCE4_SCREENSAVER, CookieInhibitor),
            (InhibitMode.SCREENSAVER, CookieInhibitor),
            (InhibitMode.MOUSE_JITTER, MouseJitterInhibitor),
        ],
    )
    def test_create_maps_mode_to_mechanism(self, mode, cls) -> None:
        inhibitor = create_inhibitor(mode, InhibitorConfig())
        assert isinstance(inhibitor, cls)
        assert inhibitor.mode is mode

    def test_create_rejects_auto(self) -> None:
        with pytest.raises(ValueError):
            create_inhibitor(InhibitMode.AUTO, InhibitorConfig())

    def test_every_mode_has_a_description(self) -> None:
        for mode in InhibitMode:
            assert mode.description

    def test_auto_preference_covers_every_mechanism(self) -> None:
        assert set(AUTO_PREFERENCE) == set(InhibitMode) - {InhibitMode.AUTO}

    @pytest.mark.asyncio
    async def test_explicit_unavailable_mode_raises(self) -> None:
        with patch.object(XSetInhibitor, "available", AsyncMock(return_value=False)):
            with pytest.raises(NoInhibitorAvailable):
                await select_inhibitor(InhibitMode.XSET, InhibitorConfig())

    @pytest.mark.asyncio
    async def test_explicit_available_mode(self) -> None:
        with patch.object(XSetInhibitor, "available", AsyncMock(return_value=True)):
            inhibitor = await select_inhibitor(InhibitMode.XSET, InhibitorConfig())
        assert inhibitor.mode is InhibitMode.XSET

    @pytest.mark.asyncio
    async def test_auto_picks_first_available(self) -> None:
        def fake_create(mode, config):
            inhibitor = MagicMock()
            inhibitor.mode = mode
            inhibitor.available = AsyncMock(return_value=mode is InhibitMode.SCREENSAVER)
            return inhibitor

        with patch("vigil.inhibitor.create_inhibitor", side_effect=fake_create):
            inhibitor = await select_inhibitor(InhibitMode.AUTO, InhibitorConfig())
        assert inhibitor.mode is InhibitMode.SCREENSAVER

    @pytest.mark.asyncio
    async def test_auto_with_nothing_available_raises(self) -> None:
        def fake_create(mode, config):
            inhibitor = MagicMock()
            inhibitor.available = AsyncMock(return_value=False)
            return inhibitor

        with patch("vigil.inhibitor.create_inhibitor", side_effect=fake_create):
            with pytest.raises(NoInhibitorAvailable):
                await select_inhibitor(InhibitMode.AUTO, InhibitorConfig())
