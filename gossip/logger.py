"""Logging interface used throughout the package, and a silent implementation."""

from __future__ import annotations

from typing import Any, Dict, Protocol, runtime_checkable

__all__ = ["Logger", "NullLogger"]


@runtime_checkable
class Logger(Protocol):
    """Structured logger with printf-style messages and chained fields."""

    def trace(self, fmt: str, *args: Any) -> None: ...

    def debug(self, fmt: str, *args: Any) -> None: ...

    def info(self, fmt: str, *args: Any) -> None: ...

    def warn(self, fmt: str, *args: Any) -> None: ...

    def error(self, fmt: str, *args: Any) -> None: ...

    def field(self, key: str, value: Any) -> "Logger": ...

    def err(self, error: BaseException) -> "Logger": ...


class NullLogger:
    """Logger that writes nothing; it only counts what it discards."""

    def __init__(self) -> None:
        self.discarded = 0
        self.fields: Dict[str, Any] = {}

    def _discard(self) -> None:
        self.discarded += 1

    def trace(self, fmt: str, *args: Any) -> None:
        self._discard()

    def debug(self, fmt: str, *args: Any) -> None:
        self._discard()

    def info(self, fmt: str, *args: Any) -> None:
        self._discard()

    def warn(self, fmt: str, *args: Any) -> None:
        self._discard()

    def error(self, fmt: str, *args: Any) -> None:
        self._discard()

    def field(self, key: str, value: Any) -> "NullLogger":
        self.fields[key] = value
        return self

    def err(self, error: BaseException) -> "NullLogger":
        self.fields["error"] = error
        return self