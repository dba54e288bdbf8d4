"""Node metadata with type-converting accessors and timestamped updates."""

from __future__ import annotations

import math
import re
import struct
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping

from .hlc import Timestamp, now

__all__ = ["Metadata", "ZERO_TIME"]

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
"""Returned by :meth:`Metadata.get_time` when no time can be produced."""

_INT32_MIN, _INT32_MAX = -(1 << 31), (1 << 31) - 1
_INT64_MIN, _INT64_MAX = -(1 << 63), (1 << 63) - 1
_UINT32_MAX = (1 << 32) - 1
_UINT64_MAX = (1 << 64) - 1

_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_INT_RE = re.compile(r"[+-]?[0-9]+")
_UINT_RE = re.compile(r"[0-9]+")
_DEC_FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_HEX_FLOAT_RE = re.compile(
    r"[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+"
)
_INF_RE = re.compile(r"[+-]?(?:inf|infinity)", re.IGNORECASE)
_NAN_RE = re.compile(r"nan", re.IGNORECASE)

_TRUE_STRINGS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_STRINGS = {"0", "f", "F", "FALSE", "false", "False"}

_RFC3339_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})"
)
_RFC1123_RE = re.compile(
    r"([A-Za-z]{3}), (\d{2}) ([A-Za-z]{3}) (\d{4}) (\d{2}):(\d{2}):(\d{2}) ([A-Za-z]+)"
)
_DATETIME_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2}) (\d{2}):(\d{2}):(\d{2})(\.\d+)?")
_DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")

_MONTHS = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
_DAYS = {"mon", "tue", "wed", "thu", "fri", "sat", "sun"}


class _Float32(float):
    """A float value stored with single precision."""

    __slots__ = ()


def _to_float32(value: float) -> float:
    try:
        return struct.unpack("<f", struct.pack("<f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _wrap_int64(value: int) -> int:
    return ((value - _INT64_MIN) & _UINT64_MAX) + _INT64_MIN


def _wrap_int32(value: int) -> int:
    return ((value - _INT32_MIN) & _UINT32_MAX) + _INT32_MIN


def _float_to_int64(value: float) -> int:
    if not math.isfinite(value) or not -(2.0**63) <= value < 2.0**63:
        return _INT64_MIN
    return int(value)


def _float_to_uint64(value: float) -> int:
    if not math.isfinite(value) or value >= 2.0**64:
        return 1 << 63
    return int(value)


def _parse_int64(text: str) -> int | None:
    if not _INT_RE.fullmatch(text):
        return None
    value = int(text)
    return value if _INT64_MIN <= value <= _INT64_MAX else None


def _parse_uint64(text: str) -> int | None:
    if not _UINT_RE.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _UINT64_MAX else None


def _parse_float(text: str) -> float | None:
    if _INF_RE.fullmatch(text):
        return -math.inf if text.startswith("-") else math.inf
    if _NAN_RE.fullmatch(text):
        return math.nan
    try:
        if _DEC_FLOAT_RE.fullmatch(text):
            value = float(text)
        elif _HEX_FLOAT_RE.fullmatch(text):
            value = float.fromhex(text)
        else:
            return None
    except (OverflowError, ValueError):
        return None
    return None if math.isinf(value) else value


def _parse_bool(text: str) -> bool | None:
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return None


def _fixed_notation(digits: str) -> str:
    text = format(Decimal(digits), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _format_special(value: float) -> str | None:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return None


def _format_float64(value: float) -> str:
    special = _format_special(value)
    if special is not None:
        return special
    return _fixed_notation(repr(float(value)))


def _format_float32(value: float) -> str:
    special = _format_special(value)
    if special is not None:
        return special
    digits = repr(float(value))
    for precision in range(1, 10):
        candidate = f"{value:.{precision}g}"
        if _to_float32(float(candidate)) == value:
            digits = candidate
            break
    return _fixed_notation(digits)


def _format_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    base = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    offset = value.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return base + "Z"
    sign = "+" if offset > timedelta(0) else "-"
    minutes = abs(offset) // timedelta(minutes=1)
    return f"{base}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _fraction_micro(fraction: str | None) -> int:
    if not fraction:
        return 0
    return int(fraction[1:7].ljust(6, "0"))


def _parse_time(text: str) -> datetime | None:
    try:
        match = _RFC3339_RE.fullmatch(text)
        if match:
            year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
            zone = match.group(8)
            if zone == "Z":
                tz = timezone.utc
            else:
                sign = -1 if zone[0] == "-" else 1
                tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
            return datetime(
                year, month, day, hour, minute, second, _fraction_micro(match.group(7)), tzinfo=tz
            )

        match = _RFC1123_RE.fullmatch(text)
        if match:
            day_name, day, month_name, year, hour, minute, second, zone = match.groups()
            month = _MONTHS.get(month_name.lower())
            if day_name.lower() not in _DAYS or month is None:
                return None
            tz = timezone.utc if zone in ("UTC", "GMT") else timezone(timedelta(0), zone)
            return datetime(
                int(year), month, int(day), int(hour), int(minute), int(second), tzinfo=tz
            )

        match = _DATETIME_RE.fullmatch(text)
        if match:
            year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
            return datetime(
                year,
                month,
                day,
                hour,
                minute,
                second,
                _fraction_micro(match.group(7)),
                tzinfo=timezone.utc,
            )

        match = _DATE_RE.fullmatch(text)
        if match:
            year, month, day = (int(g) for g in match.groups())
            return datetime(year, month, day, tzinfo=timezone.utc)
    except (ValueError, OverflowError):
        return None
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_int(value: Any, low: int, high: int, kind: str) -> int:
    if not _is_int(value):
        raise TypeError(f"{kind} value must be an integer, not {type(value).__name__}")
    if not low <= value <= high:
        raise OverflowError(f"value {value} is out of range for {kind}")
    return int(value)


def _check_float(value: Any, kind: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{kind} value must be a number, not {type(value).__name__}")
    return float(value)


class Metadata:
    """Key/value metadata for a node.

    Values are replaced copy-on-write, so readers never see a partial update.
    Every local change stamps the metadata with a fresh HLC timestamp; remote
    state is only accepted through :meth:`update` when it is newer.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        # Zero lets the first remote update through; local writes stamp now().
        self._last_modified = Timestamp(0)
        self._lock = threading.Lock()

    def _get(self, key: str) -> tuple[Any, bool]:
        data = self._data
        if key in data:
            return data[key], True
        return None, False

    def _set(self, key: str, value: Any) -> "Metadata":
        with self._lock:
            new_data = dict(self._data)
            new_data[key] = value
            stamp = now()
            self._data = new_data
            self._last_modified = stamp
        return self

    # Readers

    def get_string(self, key: str) -> str:
        """Return the value as a string, or "" if the key is missing."""
        value, ok = self._get(key)
        if not ok:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, int):
            return str(value)
        if isinstance(value, _Float32):
            return _format_float32(value)
        if isinstance(value, float):
            return _format_float64(value)
        if isinstance(value, datetime):
            return _format_rfc3339(value)
        return str(value)

    def get_bool(self, key: str) -> bool:
        """Return the value as a bool; numbers are true when non-zero."""
        value, ok = self._get(key)
        if not ok:
            return False
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            parsed = _parse_bool(value)
            return bool(parsed)
        if isinstance(value, int):
            return self.get_int64(key) != 0
        if isinstance(value, float):
            return self.get_float64(key) != 0
        return False

    def get_int64(self, key: str) -> int:
        """Return the value as a signed 64-bit integer, or 0."""
        value, ok = self._get(key)
        if not ok:
            return 0
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, int):
            return _wrap_int64(value)
        if isinstance(value, float):
            return _float_to_int64(value)
        if isinstance(value, str):
            parsed = _parse_int64(value)
            if parsed is not None:
                return parsed
            as_float = _parse_float(value)
            if as_float is not None:
                return _float_to_int64(as_float)
        return 0

    def get_int(self, key: str) -> int:
        """Return the value as an integer, or 0."""
        return self.get_int64(key)

    def get_int32(self, key: str) -> int:
        """Return the value truncated to a signed 32-bit integer."""
        return _wrap_int32(self.get_int64(key))

    def get_uint64(self, key: str) -> int:
        """Return the value as an unsigned 64-bit integer; negatives give 0."""
        value, ok = self._get(key)
        if not ok:
            return 0
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, int):
            return 0 if value < 0 else value & _UINT64_MAX
        if isinstance(value, float):
            return 0 if value < 0 else _float_to_uint64(value)
        if isinstance(value, str):
            parsed = _parse_uint64(value)
            if parsed is not None:
                return parsed
        return 0

    def get_uint(self, key: str) -> int:
        """Return the value as an unsigned integer, or 0."""
        return self.get_uint64(key)

    def get_uint32(self, key: str) -> int:
        """Return the value truncated to an unsigned 32-bit integer."""
        return self.get_uint64(key) & _UINT32_MAX

    def get_float64(self, key: str) -> float:
        """Return the value as a float, or 0.0."""
        value, ok = self._get(key)
        if not ok:
            return 0.0
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            parsed = _parse_float(value)
            if parsed is not None:
                return parsed
        return 0.0

    def get_float32(self, key: str) -> float:
        """Return the value rounded to single precision."""
        return _to_float32(self.get_float64(key))

    def get_time(self, key: str) -> datetime:
        """Return the value as a datetime, or :data:`ZERO_TIME`.

        Integers are read as nanoseconds since the Unix epoch; strings may be
        RFC 3339, RFC 1123, "YYYY-MM-DD HH:MM:SS" or "YYYY-MM-DD".
        """
        value, ok = self._get(key)
        if not ok:
            return ZERO_TIME
        if isinstance(value, datetime):
            return value
        if _is_int(value):
            try:
                return _UNIX_EPOCH + timedelta(microseconds=value // 1000)
            except OverflowError:
                return ZERO_TIME
        if isinstance(value, str):
            parsed = _parse_time(value)
            if parsed is not None:
                return parsed
        return ZERO_TIME

    # Writers

    def set_string(self, key: str, value: str) -> "Metadata":
        if not isinstance(value, str):
            raise TypeError(f"string value expected, not {type(value).__name__}")
        return self._set(key, value)

    def set_bool(self, key: str, value: bool) -> "Metadata":
        if not isinstance(value, bool):
            raise TypeError(f"bool value expected, not {type(value).__name__}")
        return self._set(key, value)

    def set_int(self, key: str, value: int) -> "Metadata":
        return self._set(key, _check_int(value, _INT64_MIN, _INT64_MAX, "int"))

    def set_int32(self, key: str, value: int) -> "Metadata":
        return self._set(key, _check_int(value, _INT32_MIN, _INT32_MAX, "int32"))

    def set_int64(self, key: str, value: int) -> "Metadata":
        return self._set(key, _check_int(value, _INT64_MIN, _INT64_MAX, "int64"))

    def set_uint(self, key: str, value: int) -> "Metadata":
        return self._set(key, _check_int(value, 0, _UINT64_MAX, "uint"))

    def set_uint32(self, key: str, value: int) -> "Metadata":
        return self._set(key, _check_int(value, 0, _UINT32_MAX, "uint32"))

    def set_uint64(self, key: str, value: int) -> "Metadata":
        return self._set(key, _check_int(value, 0, _UINT64_MAX, "uint64"))

    def set_float32(self, key: str, value: float) -> "Metadata":
        return self._set(key, _Float32(_to_float32(_check_float(value, "float32"))))

    def set_float64(self, key: str, value: float) -> "Metadata":
        return self._set(key, _check_float(value, "float64"))

    def set_time(self, key: str, value: datetime) -> "Metadata":
        if not isinstance(value, datetime):
            raise TypeError(f"datetime value expected, not {type(value).__name__}")
        return self._set(key, value)

    def delete(self, key: str) -> None:
        """Remove ``key``; a missing key leaves the timestamp unchanged."""
        with self._lock:
            if key not in self._data:
                return
            new_data = {k: v for k, v in self._data.items() if k != key}
            stamp = now()
            self._data = new_data
            self._last_modified = stamp

    # Whole-map access

    def exists(self, key: str) -> bool:
        return key in self._data

    def get_timestamp(self) -> Timestamp:
        """Return the timestamp of the last modification."""
        return self._last_modified

    def get_all(self) -> dict[str, Any]:
        """Return a copy of all values."""
        return dict(self._data)

    def get_all_keys(self) -> list[str]:
        return list(self._data)

    def get_all_as_string(self) -> dict[str, str]:
        return {key: self.get_string(key) for key in list(self._data)}

    def update(self, data: Mapping[str, Any], timestamp: int, force: bool) -> bool:
        """Replace all values if ``timestamp`` is newer, or unconditionally if ``force``.

        Returns True if the data was replaced.
        """
        timestamp = Timestamp(timestamp)
        with self._lock:
            if not force and not timestamp.after(self._last_modified):
                return False
            self._data = dict(data)
            self._last_modified = timestamp
        return True