"""Index key encoders for task state and time fields."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ratus.models import TaskState

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT64_MIN = -(1 << 63)
_UINT64_MASK = (1 << 64) - 1


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _unix_millis(value: datetime) -> int:
    """Milliseconds since the Unix epoch, naive values taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def _encode_int64(value: int) -> bytes:
    """Encode a signed 64-bit integer so that byte order matches numeric order."""
    if not _INT64_MIN <= value < -_INT64_MIN:
        raise OverflowError(f"{value} does not fit in 64 bits")
    return ((value ^ _INT64_MIN) & _UINT64_MASK).to_bytes(8, "big")


@dataclass(frozen=True)
class StateFieldIndex:
    """Encodes a task state field, keeping only tasks in one state."""

    field: str
    filter: int = TaskState.PENDING

    def _encode(self, value: int) -> bytes:
        return bytes([int(value) & 0xFF])

    def from_object(self, obj: Any) -> tuple[bool, bytes | None]:
        """Return whether the object is indexed and its key."""
        value = getattr(obj, self.field, None)
        if value is None:
            return False, None
        if not _is_int(value):
            raise TypeError(
                f"field {self.field!r} is of type {type(value).__name__}; want a TaskState"
            )
        if value != self.filter:
            return False, None
        return True, self._encode(value)

    def from_args(self, *args: Any) -> bytes:
        """Return the key for a single state argument."""
        if len(args) != 1:
            raise ValueError("must provide only a single argument")
        value = args[0]
        if value is None:
            raise ValueError(f"{value!r} is invalid")
        if not _is_int(value):
            raise TypeError(f"arg is of type {type(value).__name__}; want a TaskState")
        if value != self.filter:
            raise ValueError(f"state {int(value)} is not included in the index")
        return self._encode(value)


@dataclass(frozen=True)
class TimeFieldIndex:
    """Encodes a time field as order-preserving milliseconds since the epoch."""

    field: str

    def from_object(self, obj: Any) -> tuple[bool, bytes | None]:
        """Return whether the object is indexed and its key."""
        value = getattr(obj, self.field, None)
        if value is None:
            return False, None
        if not isinstance(value, datetime):
            raise TypeError(
                f"field {self.field!r} is of type {type(value).__name__}; want a datetime"
            )
        return True, _encode_int64(_unix_millis(value))

    def from_args(self, *args: Any) -> bytes:
        """Return the key for a single time argument."""
        if len(args) != 1:
            raise ValueError("must provide only a single argument")
        value = args[0]
        if value is None:
            raise ValueError(f"{value!r} is invalid")
        if not isinstance(value, datetime):
            raise TypeError(f"arg is of type {type(value).__name__}; want a datetime")
        return _encode_int64(_unix_millis(value))