"""Framed connection wrapper adding compression and encryption."""

from __future__ import annotations

import errno
import struct
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

__all__ = [
    "Compressor",
    "Cipher",
    "StreamConfig",
    "PacketTooLargeError",
    "Stream",
    "new_stream",
]

_FLAG_COMPRESSED = 1 << 31
_MAX_SIZE_MASK = 0x7FFFFFFF
_HEADER = struct.Struct(">I")


class Compressor(Protocol):
    def compress(self, data: bytes) -> bytes:
        """Return ``data`` compressed."""

    def decompress(self, data: bytes) -> bytes:
        """Return ``data`` decompressed."""


class Cipher(Protocol):
    def encrypt(self, key: bytes, data: bytes) -> bytes:
        """Return ``data`` encrypted with ``key``."""

    def decrypt(self, key: bytes, data: bytes) -> bytes:
        """Return ``data`` decrypted with ``key``."""


class _Connection(Protocol):
    def read(self, size: int) -> bytes: ...
    def write(self, data: bytes) -> int: ...
    def close(self) -> None: ...
    def local_addr(self) -> Any: ...
    def remote_addr(self) -> Any: ...
    def set_deadline(self, deadline: float) -> None: ...
    def set_read_deadline(self, deadline: float) -> None: ...
    def set_write_deadline(self, deadline: float) -> None: ...


@dataclass
class StreamConfig:
    """Settings for a :class:`Stream`; ``tcp_deadline`` is in seconds."""

    tcp_deadline: float
    compress_min_size: int
    stream_max_packet_size: int
    compressor: Compressor | None = None
    cipher: Cipher | None = None
    encryption_key: bytes = b""


class PacketTooLargeError(Exception):
    """A frame exceeds the maximum allowed size."""

    def __init__(self, message: str = "packet exceeds maximum allowed size") -> None:
        super().__init__(message)


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "use of closed network connection")


class Stream:
    """Connection that frames each write, compressing and encrypting it.

    Each frame is a 4-byte big-endian header (bit 31 set when the body is
    compressed, low 31 bits the body size) followed by the body. Deadlines
    are absolute times in seconds since the Unix epoch.
    """

    def __init__(self, conn: _Connection, config: StreamConfig) -> None:
        self._conn = conn
        self._config = config
        self._pending = b""
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = False
        self._compression_disabled = False

    def _read_exact(self, size: int, *, allow_eof: bool = False) -> bytes:
        received = bytearray()
        while len(received) < size:
            piece = self._conn.read(size - len(received))
            if not piece:
                if allow_eof and not received:
                    return b""
                raise EOFError("unexpected EOF")
            received += piece
        return bytes(received)

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; ``b""`` at end of stream."""
        if size < 0:
            raise ValueError("size must not be negative")
        if self._closed:
            raise _closed_error()

        with self._read_lock:
            if self._pending:
                chunk, self._pending = self._pending[:size], self._pending[size:]
                return chunk
            if size == 0:
                return b""

            config = self._config
            self._conn.set_read_deadline(time.time() + config.tcp_deadline)

            header = self._read_exact(_HEADER.size, allow_eof=True)
            if not header:
                return b""
            (flags_and_size,) = _HEADER.unpack(header)
            compressed = bool(flags_and_size & _FLAG_COMPRESSED)
            body_size = flags_and_size & _MAX_SIZE_MASK
            if body_size > config.stream_max_packet_size:
                raise PacketTooLargeError()

            body = self._read_exact(body_size)

            if config.cipher is not None:
                try:
                    body = config.cipher.decrypt(config.encryption_key, body)
                except Exception as exc:
                    raise ValueError(f"failed to decrypt data: {exc}") from exc

            if compressed:
                if config.compressor is None:
                    raise ValueError("received compressed data but no decompressor configured")
                try:
                    body = config.compressor.decompress(body)
                except Exception as exc:
                    raise ValueError(f"failed to decompress data: {exc}") from exc

            if len(body) <= size:
                return body
            self._pending = body[size:]
            return body[:size]

    def write(self, data: bytes) -> int:
        """Send ``data`` as one frame and return its original length."""
        data = bytes(data)
        if not data:
            return 0
        if self._closed:
            raise _closed_error()

        with self._write_lock:
            config = self._config
            if len(data) > config.stream_max_packet_size:
                raise PacketTooLargeError()

            body, compressed = data, False
            if (
                not self._compression_disabled
                and config.compressor is not None
                and len(data) >= config.compress_min_size
            ):
                try:
                    packed = config.compressor.compress(data)
                except Exception as exc:
                    raise ValueError(f"failed to compress data: {exc}") from exc
                if len(packed) < len(data):
                    body, compressed = packed, True

            if config.cipher is not None:
                try:
                    body = config.cipher.encrypt(config.encryption_key, body)
                except Exception as exc:
                    raise ValueError(f"failed to encrypt data: {exc}") from exc

            self._conn.set_write_deadline(time.time() + config.tcp_deadline)

            flags_and_size = len(body) & _MAX_SIZE_MASK
            if compressed:
                flags_and_size |= _FLAG_COMPRESSED
            self._conn.write(_HEADER.pack(flags_and_size))
            self._conn.write(body)
            return len(data)

    def close(self) -> None:
        """Close the stream and the underlying connection; later calls do nothing."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._conn.close()

    def local_addr(self) -> Any:
        return self._conn.local_addr()

    def remote_addr(self) -> Any:
        return self._conn.remote_addr()

    def set_deadline(self, deadline: float) -> None:
        self._conn.set_deadline(deadline)

    def set_read_deadline(self, deadline: float) -> None:
        self._conn.set_read_deadline(deadline)

    def set_write_deadline(self, deadline: float) -> None:
        self._conn.set_write_deadline(deadline)

    def enable_compression(self) -> "Stream":
        self._compression_disabled = False
        return self

    def disable_compression(self) -> "Stream":
        self._compression_disabled = True
        return self

    def __enter__(self) -> "Stream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def new_stream(conn: _Connection, config: StreamConfig) -> Any:
    """Wrap ``conn`` in a :class:`Stream`, or return it unchanged when neither
    compression nor encryption is configured."""
    if config.compressor is None and config.cipher is None:
        return conn
    return Stream(conn, config)