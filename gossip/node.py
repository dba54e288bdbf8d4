"""Cluster members and their lifecycle states."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any

from .hlc import Timestamp, now
from .ids import NodeID
from .metadata import Metadata

__all__ = ["NodeState", "Node"]

_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class NodeState(IntEnum):
    """Lifecycle state of a node as seen by the local member."""

    UNKNOWN = 0
    ALIVE = 1
    LEAVING = 2
    DEAD = 3
    SUSPECT = 4

    def __str__(self) -> str:
        return self.name.capitalize()


class Node:
    """A member of the cluster.

    ``advertise_addr`` is the raw address the node announces (host and port,
    SRV name or URL); ``address`` holds the locally resolved form and is
    ``None`` until something resolves it.
    """

    def __init__(
        self,
        node_id: NodeID,
        advertise_addr: str = "",
        *,
        state: NodeState = NodeState.ALIVE,
        state_change_time: int | None = None,
        metadata: Metadata | None = None,
        protocol_version: int = 0,
        application_version: str = "",
    ) -> None:
        self.id = node_id
        self.advertise_addr = advertise_addr
        self.address: Any = None
        self.state = NodeState(state)
        self.state_change_time = now() if state_change_time is None else Timestamp(state_change_time)
        self.metadata = metadata if metadata is not None else Metadata()
        self.protocol_version = protocol_version
        self.application_version = application_version
        self._last_activity_ns = time.time_ns()

    def update_last_activity(self) -> None:
        """Record that a message was just received from this node."""
        self._last_activity_ns = time.time_ns()

    def last_activity(self) -> datetime:
        """Return when a message was last received from this node (UTC)."""
        return _UNIX_EPOCH + timedelta(microseconds=self._last_activity_ns // 1000)

    def dead_or_left(self) -> bool:
        return self.state in (NodeState.DEAD, NodeState.LEAVING)

    def alive(self) -> bool:
        return self.state is NodeState.ALIVE

    def suspect(self) -> bool:
        return self.state is NodeState.SUSPECT

    def __repr__(self) -> str:
        return f"Node(id={self.id}, advertise_addr={self.advertise_addr!r}, state={self.state})"