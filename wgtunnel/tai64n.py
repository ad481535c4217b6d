"""TAI64N timestamps with the low bits of the nanoseconds masked off."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

TIMESTAMP_SIZE = 12

_BASE = 0x400000000000000A
_WHITENER_MASK = 0x1000000 - 1
_NANOS_PER_SECOND = 1_000_000_000
_LAYOUT = struct.Struct(">QI")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Timestamp:
    """A 12-byte TAI64N label: big-endian seconds then nanoseconds."""

    data: bytes = bytes(TIMESTAMP_SIZE)

    def __post_init__(self) -> None:
        data = bytes(self.data)
        if len(data) != TIMESTAMP_SIZE:
            raise ValueError(f"timestamp must be {TIMESTAMP_SIZE} bytes, got {len(data)}")
        object.__setattr__(self, "data", data)

    def after(self, other: "Timestamp") -> bool:
        """Report whether this timestamp is strictly later than ``other``."""
        return self.data > other.data

    def __bytes__(self) -> bytes:
        return self.data

    def __str__(self) -> str:
        secs, nanos = _LAYOUT.unpack(self.data)
        secs = (secs - _BASE) & 0xFFFFFFFFFFFFFFFF
        if secs >= 1 << 63:
            secs -= 1 << 64
        carry, nanos = divmod(nanos, _NANOS_PER_SECOND)
        moment = _EPOCH + timedelta(seconds=secs + carry)
        fraction = f".{nanos:09d}".rstrip("0") if nanos else ""
        return (
            f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d} "
            f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
            f"{fraction} +0000 UTC"
        )


def stamp(unix_nanos: int) -> Timestamp:
    """Build the timestamp for a Unix time given in nanoseconds."""
    secs, nanos = divmod(unix_nanos, _NANOS_PER_SECOND)
    secs = (_BASE + secs) & 0xFFFFFFFFFFFFFFFF
    nanos &= ~_WHITENER_MASK & 0xFFFFFFFF
    return Timestamp(_LAYOUT.pack(secs, nanos))


def now() -> Timestamp:
    """The timestamp for the current time."""
    return stamp(time.time_ns())