"""Deadline update algebra and duration syntax.

Deadlines live on the monotonic clock as integer nanoseconds so that an
update and its inverse land on exactly the same value. Durations are
``timedelta`` values (microsecond resolution).
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum

NANOS_PER_MICRO = 1_000
NANOS_PER_SECOND = 1_000_000_000


class UpdateKind(Enum):
    """How a duration update combines with the current deadline."""

    ADD = "add"
    SUB = "sub"
    SET = "set"


@dataclass(frozen=True)
class DurationUpdate:
    """A relative or absolute adjustment to the deadline."""

    kind: UpdateKind
    duration: timedelta

    def __post_init__(self) -> None:
        if self.duration < timedelta(0):
            raise ValueError(f"Duration must not be negative, got {self.duration}")

    @classmethod
    def add(cls, duration: timedelta) -> "DurationUpdate":
        return cls(UpdateKind.ADD, duration)

    @classmethod
    def sub(cls, duration: timedelta) -> "DurationUpdate":
        return cls(UpdateKind.SUB, duration)

    @classmethod
    def set(cls, duration: timedelta) -> "DurationUpdate":
        return cls(UpdateKind.SET, duration)

    @property
    def nanoseconds(self) -> int:
        """Duration as integer nanoseconds."""
        return to_nanoseconds(self.duration)

    def to_dict(self) -> dict:
        """Wire form: kind name plus whole microseconds."""
        return {
            "kind": self.kind.value,
            "microseconds": self.duration // timedelta(microseconds=1),
        }

    @classmethod
    def from_dict(cls, data: object) -> "DurationUpdate":
        """Parse the wire form.

        Raises:
            ValueError: If the kind is unknown or the duration is not a
                non-negative integer microsecond count.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Update must be an object, got {type(data).__name__}")

        try:
            kind = UpdateKind(data.get("kind"))
        except ValueError:
            valid = [k.value for k in UpdateKind]
            raise ValueError(
                f"Unknown update kind: {data.get('kind')!r}. Valid kinds: {valid}"
            ) from None

        micros = data.get("microseconds")
        # bool is an int subclass, reject it explicitly
        if not isinstance(micros, int) or isinstance(micros, bool):
            raise ValueError(f"microseconds must be an integer, got {micros!r}")
        if micros < 0:
            raise ValueError(f"microseconds must be >= 0, got {micros}")

        return cls(kind, _from_microseconds(micros))

    def __str__(self) -> str:
        prefix = {UpdateKind.ADD: "+", UpdateKind.SUB: "-", UpdateKind.SET: ""}[self.kind]
        return f"{prefix}{format_duration(self.duration)}"


_MAX_MICROSECONDS = timedelta.max // timedelta(microseconds=1)


def _from_microseconds(micros: int) -> timedelta:
    if micros > _MAX_MICROSECONDS:
        raise ValueError(
            f"Duration too large: {micros} microseconds (max {timedelta.max.days} days)"
        )
    return timedelta(microseconds=micros)


def to_nanoseconds(duration: timedelta) -> int:
    """Convert a timedelta to integer nanoseconds without float rounding."""
    return (duration // timedelta(microseconds=1)) * NANOS_PER_MICRO


# =============================================================================
# Algebra
# =============================================================================


def apply_update(current: int | None, update: DurationUpdate, now: int) -> int:
    """Combine the current deadline with an update.

    The result may be at or before ``now``; use resolve_deadline() to collapse
    it. Subtracting while idle yields ``now`` (already expired).

    Args:
        current: Current deadline (monotonic ns) or None when idle
        update: Adjustment to apply
        now: Current monotonic time in ns

    Returns:
        Candidate deadline in monotonic ns
    """
    delta = update.nanoseconds

    if update.kind is UpdateKind.SET:
        return now + delta

    if current is None:
        if update.kind is UpdateKind.ADD:
            return now + delta
        return now

    if update.kind is UpdateKind.ADD:
        return current + delta
    return current - delta


def resolve_deadline(candidate: int, now: int) -> int | None:
    """Collapse a deadline that is not in the future to None."""
    if candidate <= now:
        return None
    return candidate


def next_deadline(current: int | None, update: DurationUpdate, now: int) -> int | None:
    """Apply an update and normalize the result."""
    return resolve_deadline(apply_update(current, update, now), now)


# =============================================================================
# Duration syntax
# =============================================================================

# Nanoseconds per unit
_UNITS = {
    "ns": 1,
    "us": 1_000,
    "ms": 1_000_000,
    "s": NANOS_PER_SECOND,
    "m": 60 * NANOS_PER_SECOND,
    "h": 3600 * NANOS_PER_SECOND,
    "d": 86400 * NANOS_PER_SECOND,
    "w": 7 * 86400 * NANOS_PER_SECOND,
    "y": 365 * 86400 * NANOS_PER_SECOND,
}

# Longest unit names first so "ms" wins over "m"
_PART_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ns|us|ms|s|m|h|d|w|y)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``30m``, ``1h30m`` or ``1.5d``.

    A bare ``0`` is accepted and means zero.

    Raises:
        ValueError: If the text is not a valid duration
    """
    text = text.strip()
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError("Empty duration")

    total = Decimal(0)
    pos = 0
    while pos < len(text):
        match = _PART_PATTERN.match(text, pos)
        if not match:
            raise ValueError(
                f"Invalid duration: {text!r} (expected e.g. '30m', '1h30m', '2d')"
            )
        number, unit = match.groups()
        try:
            total += Decimal(number) * _UNITS[unit]
        except InvalidOperation as e:
            raise ValueError(f"Invalid duration: {text!r}") from e
        pos = match.end()

    return _from_microseconds(int(total) // NANOS_PER_MICRO)


def parse_duration_update(text: str) -> DurationUpdate:
    """Parse ``+DURATION``, ``-DURATION`` or ``DURATION`` into an update.

    ``+`` extends, ``-`` shortens, anything else (including ``0``) replaces.

    Raises:
        ValueError: If the text is empty or the duration is invalid
    """
    text = text.strip()
    if not text:
        raise ValueError("Empty duration update")

    if text[0] == "+":
        return DurationUpdate.add(parse_duration(text[1:]))
    if text[0] == "-":
        return DurationUpdate.sub(parse_duration(text[1:]))
    return DurationUpdate.set(parse_duration(text))


def format_duration(duration: timedelta) -> str:
    """Format a duration compactly, e.g. ``1h30m`` or ``45s``."""
    total = int(duration.total_seconds())
    if total <= 0:
        return "0s"

    parts = []
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        count, total = divmod(total, size)
        if count:
            parts.append(f"{count}{unit}")
    return "".join(parts)
