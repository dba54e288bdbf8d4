"""Quorum-based leader election on top of cluster membership."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from ..ids import EMPTY_NODE_ID, NodeID
from ..interfaces import ClusterView
from ..node import Node, NodeState
from ..node_group import NodeGroup
from ..packet import Packet
from .config import LeaderConfig, default_config
from .events import EventHandlers, EventType, LeaderEventHandler

__all__ = ["HeartbeatMessage", "LeaderElection"]

_ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _LONG_FRACTION.sub(r"\1", text)
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, timezone.utc)
    raise TypeError(f"cannot read a time from {value!r}")


@dataclass
class HeartbeatMessage:
    """Announcement sent periodically by the leader."""

    leader_time: datetime = field(default=_ZERO_TIME, metadata={"wire": "ts"})
    term: int = field(default=0, metadata={"wire": "term"})

    def to_wire(self) -> dict[str, Any]:
        return {"ts": self.leader_time.isoformat(), "term": self.term}

    @classmethod
    def from_wire(cls, data: Any) -> "HeartbeatMessage":
        """Build a message from a decoded payload (a mapping or a message)."""
        if isinstance(data, cls):
            return data
        if not isinstance(data, Mapping):
            raise TypeError(f"heartbeat payload must be a mapping, not {type(data).__name__}")
        term = int(data.get("term", 0))
        if term < 0:
            raise ValueError("heartbeat term must not be negative")
        raw_time = data.get("ts")
        leader_time = _ZERO_TIME if raw_time is None else _parse_time(raw_time)
        return cls(leader_time=leader_time, term=term)


class LeaderElection:
    """Elects the eligible node with the lowest identifier as leader.

    A leader is only recognised while a quorum of eligible nodes is alive and
    a heartbeat has been seen within ``leader_timeout``. ``clock`` is a
    monotonic clock in seconds; ``event_runner`` decides how event handlers
    are run (by default each on its own thread).
    """

    def __init__(
        self,
        cluster: ClusterView,
        config: LeaderConfig | None = None,
        *,
        event_runner: Callable[[Callable[[], None]], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        group_shard_count: int = 16,
    ) -> None:
        self._cluster = cluster
        self._config = config if config is not None else default_config()
        self._clock = clock
        self._leader_id: NodeID = EMPTY_NODE_ID
        self._leader_time = _ZERO_TIME
        self._last_heartbeat = 0.0
        self._has_leader = False
        self._current_term = 0
        self._is_leader = False
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._events = EventHandlers(event_runner)

        cluster.handle_node_state_change_func(self.handle_node_state_change)
        cluster.handle_func(self._config.heartbeat_message_type, self.handle_leader_heartbeat)

        self._node_group: NodeGroup | None = None
        if self._config.metadata_criteria:
            self._node_group = NodeGroup(
                cluster, self._config.metadata_criteria, shard_count=group_shard_count
            )

    @property
    def current_term(self) -> int:
        with self._lock:
            return self._current_term

    def handle_event_func(self, event_type: EventType, handler: LeaderEventHandler) -> None:
        """Register ``handler`` for leadership events of ``event_type``."""
        self._events.add(event_type, handler)

    # Lifecycle

    def start(self) -> None:
        """Run an election now and then re-check every ``leader_check_interval``."""
        if self._thread is not None:
            raise RuntimeError("leader election already started")
        self._thread = threading.Thread(target=self._run, name="leader-election", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the periodic checks and release the node group."""
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        if self._node_group is not None:
            self._node_group.close()

    def _run(self) -> None:
        self._safe_check()
        while not self._stopped.wait(self._config.leader_check_interval):
            self._safe_check()

    def _safe_check(self) -> None:
        try:
            self.check_and_elect_leader()
        except Exception as exc:
            self._cluster.logger.err(exc).error("Leader election check failed")

    # Queries

    def is_leader(self) -> bool:
        with self._lock:
            return self._is_leader

    def get_leader_id(self) -> NodeID:
        with self._lock:
            return self._leader_id

    def get_leader(self) -> Node | None:
        """Return the current leader node, or None if there is no valid leader."""
        if not self.has_leader():
            return None
        with self._lock:
            return self._cluster.get_node(self._leader_id)

    def get_node_group(self) -> NodeGroup | None:
        return self._node_group

    def _eligible_nodes(self) -> list[Node]:
        if self._node_group is not None:
            return self._node_group.get_nodes(None)
        return self._cluster.alive_nodes()

    def has_leader(self) -> bool:
        """Return True if a leader is known, alive, eligible and recently heard."""
        logger = self._cluster.logger
        with self._lock:
            if not self._has_leader:
                return False

            if self._node_group is not None:
                participating = self._node_group.contains(self._cluster.local_node.id)
                eligible = self._node_group.get_nodes(None)
            else:
                participating = True
                eligible = self._cluster.alive_nodes()

            required = self.calculate_quorum_for_nodes(len(eligible))
            if len(eligible) < required:
                logger.field("eligibleNodes", len(eligible)).field(
                    "requiredQuorum", required
                ).field("participating", participating).warn(
                    "Quorum lost among eligible nodes"
                )
                return False

            if self._clock() - self._last_heartbeat > self._config.leader_timeout:
                return False

            leader = self._cluster.get_node(self._leader_id)
            if leader is None or leader.state is not NodeState.ALIVE:
                return False

            if self._node_group is not None and not self._node_group.contains(leader.id):
                logger.field("leaderId", self._leader_id).debug(
                    "Current leader no longer eligible due to metadata mismatch"
                )
                return False

            return True

    # Election

    def check_and_elect_leader(self) -> None:
        """Heartbeat if leading, otherwise elect a leader when none is valid."""
        if self._node_group is not None and not self._node_group.contains(
            self._cluster.local_node.id
        ):
            with self._lock:
                self._is_leader = False
            return

        if self.has_leader():
            if self.is_leader():
                self._send_leader_heartbeat()
            return

        self._elect_leader()

    def _elect_leader(self) -> None:
        logger = self._cluster.logger
        eligible = self._eligible_nodes()
        required = self.calculate_quorum_for_nodes(len(eligible))

        if len(eligible) < required:
            logger.field("eligibleNodes", len(eligible)).field(
                "requiredQuorum", required
            ).debug("Quorum not met, cannot elect leader")
            with self._lock:
                if self._has_leader:
                    logger.warn("Lost leader %s due to lack of quorum", self._leader_id)
                    if self._is_leader:
                        self._events.dispatch(
                            EventType.STEPPED_DOWN, self._cluster.local_node.id
                        )
                    self._events.dispatch(EventType.LEADER_LOST, self._leader_id)
                    self._has_leader = False
                    self._is_leader = False
            return

        if not eligible:
            logger.error("No candidate node found despite meeting quorum")
            return
        candidate = min(eligible, key=lambda node: str(node.id))
        local = self._cluster.local_node

        with self._lock:
            was_leader = self._is_leader
            previous_leader = self._leader_id
            had_leader = self._has_leader

            self._current_term += 1
            self._leader_id = candidate.id
            self._has_leader = True
            self._last_heartbeat = self._clock()
            self._leader_time = datetime.now(timezone.utc)
            self._is_leader = candidate.id == local.id
            is_leader = self._is_leader
            term = self._current_term

        logger.field("leaderId", str(candidate.id)).field("term", term).field(
            "isLocal", is_leader
        ).debug("New leader elected (quorum: %d/%d)", len(eligible), required)

        if was_leader and not is_leader:
            self._events.dispatch(EventType.STEPPED_DOWN, local.id)
        if not was_leader and is_leader:
            self._events.dispatch(EventType.BECAME_LEADER, local.id)
        if not had_leader or previous_leader != candidate.id:
            self._events.dispatch(EventType.LEADER_ELECTED, candidate.id)

        if is_leader:
            self._send_leader_heartbeat()

    def _send_leader_heartbeat(self) -> None:
        leader_time = datetime.now(timezone.utc)
        with self._lock:
            term = self._current_term
        message = HeartbeatMessage(leader_time=leader_time, term=term)
        try:
            self._cluster.send(self._config.heartbeat_message_type, message)
        except Exception as exc:
            self._cluster.logger.err(exc).error("Failed to send leader heartbeat")
        with self._lock:
            self._leader_time = leader_time
            self._last_heartbeat = self._clock()

    # Incoming events

    def handle_leader_heartbeat(self, sender: Node | None, packet: Packet) -> None:
        """Process a heartbeat, adopting the sender as leader when it wins.

        A higher term always wins; within the same term a heartbeat wins when
        there is no leader, when it is newer, or when it is equally new and
        the sender's identifier is lower.
        """
        if sender is None:
            return
        if self._node_group is not None and not self._node_group.contains(sender.id):
            return

        logger = self._cluster.logger
        try:
            message = HeartbeatMessage.from_wire(packet.unmarshal())
        except Exception as exc:
            logger.error("Failed to unmarshal heartbeat message: %s", exc)
            raise

        local_id = self._cluster.local_node.id
        with self._lock:
            accept = False
            if message.term > self._current_term:
                accept = True
                logger.field("senderId", str(sender.id)).field("senderTerm", message.term).field(
                    "currentTerm", self._current_term
                ).debug("Accepting heartbeat due to higher term")
            elif message.term == self._current_term:
                if not self._has_leader:
                    accept = True
                    logger.field("senderId", str(sender.id)).field("term", message.term).debug(
                        "Accepting heartbeat as we have no current leader"
                    )
                elif message.leader_time > self._leader_time:
                    accept = True
                elif message.leader_time == self._leader_time and str(sender.id) < str(
                    self._leader_id
                ):
                    accept = True
                    logger.field("senderId", str(sender.id)).field(
                        "leaderId", str(self._leader_id)
                    ).field("term", message.term).debug(
                        "Accepting heartbeat due to tie-breaker (lower ID)"
                    )

            if not accept:
                return

            was_leader = self._is_leader
            previous_leader = self._leader_id
            had_leader = self._has_leader

            self._leader_id = sender.id
            self._has_leader = True
            self._leader_time = message.leader_time
            self._last_heartbeat = self._clock()
            self._current_term = message.term
            self._is_leader = sender.id == local_id

            if was_leader and not self._is_leader:
                logger.debug("Stepping down as leader due to heartbeat from %s", sender.id)
                self._events.dispatch(EventType.STEPPED_DOWN, local_id)
            if not was_leader and self._is_leader:
                logger.warn("Became leader unexpectedly via heartbeat from self?")
                self._events.dispatch(EventType.BECAME_LEADER, local_id)
            if not had_leader or previous_leader != sender.id:
                logger.field("leaderId", str(sender.id)).field(
                    "term", self._current_term
                ).debug("Leader updated via heartbeat")
                self._events.dispatch(EventType.LEADER_ELECTED, sender.id)

    def handle_node_state_change(self, node: Node, prev_state: NodeState) -> None:
        """Forget the leader when its node stops being alive."""
        logger = self._cluster.logger
        logger.field("nodeId", str(node.id)).field("prevState", str(prev_state)).field(
            "newState", str(node.state)
        ).debug("Node state changed")

        with self._lock:
            is_current_leader = self._has_leader and node.id == self._leader_id
            current_leader = self._leader_id
            term = self._current_term

        if is_current_leader and node.state is not NodeState.ALIVE:
            logger.field("leaderId", str(node.id)).field("currentTerm", term).warn(
                "Leader node is down, clearing leader state"
            )
            self._events.dispatch(EventType.LEADER_LOST, current_leader)
            with self._lock:
                if self._has_leader and self._leader_id == node.id:
                    self._has_leader = False
                    self._is_leader = False

    def calculate_quorum_for_nodes(self, num_nodes: int) -> int:
        """Return the minimum number of nodes out of ``num_nodes`` that make a quorum."""
        if num_nodes == 0:
            return 0
        percentage = self._config.quorum_percentage
        required = (num_nodes * percentage + 99) // 100
        if required == 0 and percentage > 0:
            required = 1
        return required

    # Sending

    def send_to_peers(self, msg_type: int, data: Any) -> None:
        """Send to the eligible group if there is one, otherwise gossip to the cluster."""
        if self._node_group is not None:
            self._node_group.send_to_peers(msg_type, data)
        else:
            self._cluster.send(msg_type, data)

    def send_to_peers_reliable(self, msg_type: int, data: Any) -> None:
        """As :meth:`send_to_peers`, over the reliable transport."""
        if self._node_group is not None:
            self._node_group.send_to_peers_reliable(msg_type, data)
        else:
            self._cluster.send_reliable(msg_type, data)