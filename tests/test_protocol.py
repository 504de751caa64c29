"""Tests for the control protocol encoding."""

from datetime import timedelta

import pytest

from vigil.duration import DurationUpdate
from vigil.protocol import (
    INACTIVE,
    Status,
    decode,
    encode,
    error_reply,
    status_changed,
    update_request,
)


def test_encode_is_one_json_line() -> None:
    data = encode(status_changed(Status(active=True, wake_until=1_700_000_000, mode="xset")))
    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert decode(data) == {
        "type": "status_changed",
        "status": {"active": True, "wake_until": 1_700_000_000, "mode": "xset"},
    }


def test_update_request_carries_microseconds() -> None:
    msg = update_request(DurationUpdate.set(timedelta(seconds=2)))
    assert msg == {"type": "update", "update": {"kind": "set", "microseconds": 2_000_000}}


def test_error_reply() -> None:
    assert error_reply("nope") == {"type": "error", "message": "nope"}


@pytest.mark.parametrize("line", [b"", b"{", b"\xff\n", b"[]\n", b'{"type": 3}\n', b"{}\n"])
def test_decode_rejects_malformed(line: bytes) -> None:
    with pytest.raises(ValueError):
        decode(line)


class TestStatus:
    def test_inactive_constant(self) -> None:
        assert INACTIVE == Status(active=False, wake_until=0)

    def test_from_dict_without_mode(self) -> None:
        assert Status.from_dict({"active": True, "wake_until": 5}) == Status(True, 5)

    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"active": 1, "wake_until": 5},
            {"active": True, "wake_until": -1},
            {"active": True, "wake_until": 1.5},
            {"active": True, "wake_until": True},
        ],
    )
    def test_from_dict_rejects_invalid(self, data) -> None:
        with pytest.raises(ValueError):
            Status.from_dict(data)
