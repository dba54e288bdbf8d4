import errno
import os
import struct
import time
import zlib

import pytest

from gossip.stream import PacketTooLargeError, Stream, StreamConfig, new_stream

FLAG_COMPRESSED = 1 << 31


class MockEncryptor:
    def encrypt(self, key, data):
        return b"E:" + data + b":E"

    def decrypt(self, key, data):
        if len(data) <= 2 or not data.startswith(b"E:") or not data.endswith(b":E"):
            return data
        return data[2:-2]


class ZlibCompressor:
    def compress(self, data):
        return zlib.compress(data)

    def decompress(self, data):
        return zlib.decompress(data)


class MockConn:
    def __init__(self):
        self.inbound = bytearray()
        self.outbound = bytearray()
        self.closed = False
        self.read_deadline = None
        self.write_deadline = None

    def read(self, size):
        if self.closed:
            raise OSError(errno.EBADF, "closed")
        chunk = bytes(self.inbound[:size])
        del self.inbound[:size]
        return chunk

    def write(self, data):
        if self.closed:
            raise OSError(errno.EBADF, "closed")
        self.outbound += data
        return len(data)

    def close(self):
        self.closed = True

    def local_addr(self):
        return ("127.0.0.1", 9000)

    def remote_addr(self):
        return ("127.0.0.1", 9001)

    def set_deadline(self, deadline):
        self.read_deadline = deadline
        self.write_deadline = deadline

    def set_read_deadline(self, deadline):
        self.read_deadline = deadline

    def set_write_deadline(self, deadline):
        self.write_deadline = deadline

    def take_written(self):
        data = bytes(self.outbound)
        self.outbound.clear()
        return data

    def feed(self, data):
        self.inbound += data


KEY = b"12345678901234567890123456789012"


def make_config(**overrides):
    settings = dict(tcp_deadline=5.0, compress_min_size=20, stream_max_packet_size=1024 * 1024)
    settings.update(overrides)
    return StreamConfig(**settings)


def header_of(written):
    return struct.unpack(">I", written[:4])[0]


def test_new_stream_without_processing_returns_connection():
    conn = MockConn()
    assert new_stream(conn, make_config()) is conn


def test_new_stream_with_cipher_wraps():
    conn = MockConn()
    stream = new_stream(conn, make_config(cipher=MockEncryptor(), encryption_key=KEY))
    stream.write(b"abc")
    assert conn.take_written()[4:] == b"E:abc:E"


def test_basic_read_write():
    conn = MockConn()
    stream = Stream(conn, make_config())
    data = b"hello, world"
    assert stream.write(data) == len(data)

    written = conn.take_written()
    header = header_of(written)
    assert header & FLAG_COMPRESSED == 0
    assert header == len(data)
    assert written[4:] == data

    conn.feed(written)
    assert stream.read(100) == data


def test_with_compression():
    conn = MockConn()
    stream = Stream(conn, make_config(compressor=ZlibCompressor(), compress_min_size=2))
    data = b"please compress this data " * 5
    assert stream.write(data) == len(data)

    written = conn.take_written()
    assert header_of(written) & FLAG_COMPRESSED
    assert len(written) - 4 < len(data)

    conn.feed(written)
    assert stream.read(1000) == data


def test_incompressible_data_sent_plain():
    conn = MockConn()
    stream = Stream(conn, make_config(compressor=ZlibCompressor(), compress_min_size=2))
    data = os.urandom(64)
    stream.write(data)
    written = conn.take_written()
    assert header_of(written) & FLAG_COMPRESSED == 0
    assert written[4:] == data


def test_disable_and_enable_compression():
    conn = MockConn()
    stream = Stream(conn, make_config(compressor=ZlibCompressor(), compress_min_size=2))
    data = b"compress me please " * 10

    assert stream.disable_compression() is stream
    stream.write(data)
    assert header_of(conn.take_written()) & FLAG_COMPRESSED == 0

    assert stream.enable_compression() is stream
    stream.write(data)
    assert header_of(conn.take_written()) & FLAG_COMPRESSED


def test_with_encryption():
    conn = MockConn()
    stream = Stream(conn, make_config(cipher=MockEncryptor(), encryption_key=KEY))
    data = b"encrypt this message"
    stream.write(data)

    written = conn.take_written()
    assert written[4:6] == b"E:"
    conn.feed(written)
    assert stream.read(100) == data


def test_with_compression_and_encryption():
    conn = MockConn()
    config = make_config(compressor=ZlibCompressor(), cipher=MockEncryptor(), encryption_key=KEY)
    stream = Stream(conn, config)
    data = b"compress and encrypt me " * 5
    stream.write(data)

    written = conn.take_written()
    assert header_of(written) & FLAG_COMPRESSED
    conn.feed(written)
    assert stream.read(1000) == data


def test_large_data():
    conn = MockConn()
    stream = Stream(conn, make_config())
    data = bytes(i % 256 for i in range(100 * 1024))
    stream.write(data)
    conn.feed(conn.take_written())

    received = bytearray()
    while len(received) < len(data):
        chunk = stream.read(16 * 1024)
        if not chunk:
            break
        assert len(chunk) <= 16 * 1024
        received += chunk
    assert bytes(received) == data


def test_close():
    conn = MockConn()
    stream = Stream(conn, make_config())
    stream.close()
    assert conn.closed

    with pytest.raises(OSError) as write_error:
        stream.write(b"test")
    assert write_error.value.errno == errno.EBADF

    with pytest.raises(OSError) as read_error:
        stream.read(10)
    assert read_error.value.errno == errno.EBADF

    stream.close()
    assert conn.closed


def test_context_manager_closes():
    conn = MockConn()
    with Stream(conn, make_config()) as stream:
        stream.write(b"x")
    assert conn.closed


def test_network_addresses():
    stream = Stream(MockConn(), make_config())
    assert stream.local_addr() == ("127.0.0.1", 9000)
    assert stream.remote_addr() == ("127.0.0.1", 9001)


def test_deadlines():
    conn = MockConn()
    stream = Stream(conn, make_config())
    deadline = time.time() + 1
    stream.set_deadline(deadline)
    assert conn.read_deadline == deadline
    assert conn.write_deadline == deadline

    later = deadline + 1
    stream.set_read_deadline(later)
    stream.set_write_deadline(later + 1)
    assert conn.read_deadline == later
    assert conn.write_deadline == later + 1


def test_write_sets_deadline_from_config():
    conn = MockConn()
    stream = Stream(conn, make_config())
    before = time.time()
    stream.write(b"payload")
    assert before + 5.0 <= conn.write_deadline <= time.time() + 5.0


def test_buffered_reads():
    conn = MockConn()
    stream = Stream(conn, make_config())
    data = b"this is a test of buffered reads"
    stream.write(data)
    conn.feed(conn.take_written())

    assert stream.read(10) == data[:10]
    rest = stream.read(100)
    assert len(rest) == len(data) - 10
    assert rest == data[10:]


def test_zero_length_write():
    conn = MockConn()
    stream = Stream(conn, make_config())
    assert stream.write(b"") == 0
    assert conn.take_written() == b""


def test_write_too_large():
    stream = Stream(MockConn(), make_config(stream_max_packet_size=8))
    with pytest.raises(PacketTooLargeError):
        stream.write(b"123456789")


def test_read_frame_too_large():
    conn = MockConn()
    stream = Stream(conn, make_config(stream_max_packet_size=8))
    conn.feed(struct.pack(">I", 9) + b"123456789")
    with pytest.raises(PacketTooLargeError):
        stream.read(100)


def test_compressed_frame_without_compressor():
    conn = MockConn()
    stream = Stream(conn, make_config(cipher=MockEncryptor(), encryption_key=KEY))
    conn.feed(struct.pack(">I", FLAG_COMPRESSED | 3) + b"abc")
    with pytest.raises(ValueError):
        stream.read(100)


def test_read_at_end_of_stream():
    stream = Stream(MockConn(), make_config())
    assert stream.read(10) == b""


def test_truncated_frame():
    conn = MockConn()
    stream = Stream(conn, make_config())
    conn.feed(struct.pack(">I", 10) + b"abc")
    with pytest.raises(EOFError):
        stream.read(100)


def test_negative_read_size():
    stream = Stream(MockConn(), make_config())
    with pytest.raises(ValueError):
        stream.read(-1)