"""Packets exchanged between nodes and the messages they carry."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Protocol

from .hlc import Timestamp
from .ids import EMPTY_NODE_ID, NodeID
from .node import NodeState

__all__ = [
    "MessageType",
    "Codec",
    "Packet",
    "JoinMessage",
    "JoinReplyMessage",
    "ExchangeNodeState",
    "PingMessage",
    "IndirectPingMessage",
    "AliveMessage",
    "SuspicionMessage",
    "LeavingMessage",
    "MetadataUpdateMessage",
]


class MessageType(IntEnum):
    """Built-in message types; applications use values from USER_MSG upwards."""

    REPLY = 0
    PING = 1
    PING_ACK = 2
    INDIRECT_PING = 3
    INDIRECT_PING_ACK = 4
    NODE_JOIN = 5
    PUSH_PULL_STATE = 6
    ALIVE = 7
    SUSPICION = 8
    LEAVING = 9
    METADATA_UPDATE = 10
    STREAM_OPEN_ACK = 11
    RESERVED_MSGS_START = 64
    USER_MSG = 128


class Codec(Protocol):
    """Serialises message bodies to bytes and back."""

    def marshal(self, value: Any) -> bytes:
        """Encode ``value``."""

    def unmarshal(self, data: bytes) -> Any:
        """Decode ``data``."""


class Packet:
    """A message header plus its still-encoded payload.

    Packets are reference counted; when the last reference is released the
    connection the packet arrived on, if any, is closed.
    """

    def __init__(
        self,
        message_type: int = MessageType.REPLY,
        sender_id: NodeID = EMPTY_NODE_ID,
        message_id: int = 0,
        ttl: int = 0,
        *,
        payload: bytes = b"",
        codec: Codec | None = None,
        conn: Any = None,
    ) -> None:
        if not 0 <= ttl <= 0xFF:
            raise ValueError(f"ttl {ttl} does not fit in a byte")
        if not 0 <= int(message_type) <= 0xFFFF:
            raise ValueError(f"message type {message_type} does not fit in 16 bits")
        self.message_type = message_type
        self.sender_id = sender_id
        self.message_id = Timestamp(message_id)
        self.ttl = ttl
        self.payload = payload
        self.codec = codec
        self.conn = conn
        self._refs = 1
        self._lock = threading.Lock()

    @property
    def ref_count(self) -> int:
        return self._refs

    def add_ref(self) -> "Packet":
        """Take another reference and return the packet."""
        with self._lock:
            self._refs += 1
        return self

    def release(self) -> None:
        """Drop a reference, closing the connection when none remain."""
        with self._lock:
            if self._refs <= 0:
                raise RuntimeError("packet already released")
            self._refs -= 1
            if self._refs:
                return
            conn, self.conn = self.conn, None
            self.payload = b""
        if conn is not None:
            conn.close()

    def unmarshal(self) -> Any:
        """Decode the payload with the packet's codec."""
        if self.codec is None:
            raise ValueError("packet has no codec")
        return self.codec.unmarshal(self.payload)


def _wire(name: str, default: Any = None, *, factory: Callable[[], Any] | None = None) -> Any:
    if factory is not None:
        return field(default_factory=factory, metadata={"wire": name})
    return field(default=default, metadata={"wire": name})


@dataclass
class JoinMessage:
    id: NodeID = _wire("id", EMPTY_NODE_ID)
    advertise_addr: str = _wire("addr", "")
    protocol_version: int = _wire("pv", 0)
    application_version: str = _wire("av", "")
    metadata_timestamp: Timestamp = _wire("mdts", Timestamp(0))
    metadata: dict[str, Any] = _wire("md", factory=dict)


@dataclass
class JoinReplyMessage:
    accepted: bool = _wire("acc", False)
    reject_reason: str = _wire("rr", "")
    id: NodeID = _wire("id", EMPTY_NODE_ID)
    advertise_addr: str = _wire("addr", "")
    protocol_version: int = _wire("pv", 0)
    application_version: str = _wire("av", "")
    metadata_timestamp: Timestamp = _wire("mdts", Timestamp(0))
    metadata: dict[str, Any] = _wire("md", factory=dict)


@dataclass
class ExchangeNodeState:
    id: NodeID = _wire("id", EMPTY_NODE_ID)
    advertise_addr: str = _wire("addr", "")
    state: NodeState = _wire("s", NodeState.UNKNOWN)
    state_change_time: Timestamp = _wire("sct", Timestamp(0))
    metadata_timestamp: Timestamp = _wire("mdts", Timestamp(0))
    metadata: dict[str, Any] = _wire("md", factory=dict)


@dataclass
class PingMessage:
    target_id: NodeID = _wire("ti", EMPTY_NODE_ID)
    seq: int = _wire("seq", 0)
    advertise_addr: str = _wire("addr", "")


@dataclass
class IndirectPingMessage:
    target_id: NodeID = _wire("ti", EMPTY_NODE_ID)
    seq: int = _wire("seq", 0)
    advertise_addr: str = _wire("addr", "")
    ok: bool = _wire("ok", False)


@dataclass
class AliveMessage:
    node_id: NodeID = _wire("ni", EMPTY_NODE_ID)
    advertise_addr: str = _wire("addr", "")


@dataclass
class SuspicionMessage:
    node_id: NodeID = _wire("ni", EMPTY_NODE_ID)


@dataclass
class LeavingMessage:
    node_id: NodeID = _wire("ni", EMPTY_NODE_ID)


@dataclass
class MetadataUpdateMessage:
    metadata_timestamp: Timestamp = _wire("mdts", Timestamp(0))
    metadata: dict[str, Any] = _wire("md", factory=dict)