"""Control protocol shared by the daemon socket server and its clients.

Messages are newline-delimited JSON objects with a ``type`` field.

Requests:
- ``{"type": "update", "update": {"kind": "add", "microseconds": 1800000000}}``
- ``{"type": "status"}``
- ``{"type": "subscribe"}``

Replies and pushes:
- ``{"type": "ok"}``
- ``{"type": "error", "message": "..."}``
- ``{"type": "status", "status": {...}}``
- ``{"type": "status_changed", "status": {...}}`` (pushed to subscribers)
"""

import json
from dataclasses import asdict, dataclass
from typing import Any

from vigil.duration import DurationUpdate

MSG_UPDATE = "update"
MSG_STATUS = "status"
MSG_SUBSCRIBE = "subscribe"
MSG_OK = "ok"
MSG_ERROR = "error"
MSG_STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class Status:
    """Read-only projection of the daemon deadline.

    ``wake_until`` is UNIX-epoch seconds, 0 when inactive.
    """

    active: bool
    wake_until: int
    mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Status":
        """Parse a status object.

        Raises:
            ValueError: If required fields are missing or mistyped
        """
        active = data.get("active")
        wake_until = data.get("wake_until")
        if not isinstance(active, bool):
            raise ValueError(f"status.active must be a boolean, got {active!r}")
        if not isinstance(wake_until, int) or isinstance(wake_until, bool) or wake_until < 0:
            raise ValueError(
                f"status.wake_until must be a non-negative integer, got {wake_until!r}"
            )
        mode = data.get("mode")
        return cls(
            active=active,
            wake_until=wake_until,
            mode=mode if isinstance(mode, str) else None,
        )


INACTIVE = Status(active=False, wake_until=0)


def encode(msg: dict[str, Any]) -> bytes:
    """Encode one message as a JSON line."""
    return json.dumps(msg).encode() + b"\n"


def decode(line: bytes) -> dict[str, Any]:
    """Decode one JSON line.

    Raises:
        ValueError: If the line is not a JSON object with a string ``type``
    """
    try:
        msg = json.loads(line.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid JSON message: {e}") from e
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        raise ValueError("Message must be an object with a string 'type'")
    return msg


def update_request(update: DurationUpdate) -> dict[str, Any]:
    return {"type": MSG_UPDATE, "update": update.to_dict()}


def status_request() -> dict[str, Any]:
    return {"type": MSG_STATUS}


def subscribe_request() -> dict[str, Any]:
    return {"type": MSG_SUBSCRIBE}


def ok_reply() -> dict[str, Any]:
    return {"type": MSG_OK}


def error_reply(message: str) -> dict[str, Any]:
    return {"type": MSG_ERROR, "message": message}


def status_reply(status: Status) -> dict[str, Any]:
    return {"type": MSG_STATUS, "status": status.to_dict()}


def status_changed(status: Status) -> dict[str, Any]:
    return {"type": MSG_STATUS_CHANGED, "status": status.to_dict()}
