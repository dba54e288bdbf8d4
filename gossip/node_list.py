"""Sharded registry of known cluster nodes, indexed by state."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .hlc import Timestamp, now
from .ids import NodeID
from .interfaces import ClusterView
from .node import Node, NodeState

__all__ = ["NodeList"]

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619
_UINT32_MASK = 0xFFFFFFFF

_TRACKED_STATES = (NodeState.ALIVE, NodeState.SUSPECT, NodeState.LEAVING, NodeState.DEAD)
_ALL_STATES = list(_TRACKED_STATES)


def _fnv1a(data: bytes) -> int:
    digest = _FNV_OFFSET
    for byte in data:
        digest ^= byte
        digest = (digest * _FNV_PRIME) & _UINT32_MASK
    return digest


def _check_shard_count(shard_count: int) -> None:
    if shard_count < 1 or shard_count & (shard_count - 1):
        raise ValueError(f"shard count must be a positive power of two, not {shard_count}")


def _require_tracked(state: NodeState) -> NodeState:
    state = NodeState(state)
    if state not in _TRACKED_STATES:
        raise ValueError(f"node state {state} cannot be stored")
    return state


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    nodes: dict[NodeID, Node] = field(default_factory=dict)
    by_state: dict[NodeState, dict[NodeID, Node]] = field(
        default_factory=lambda: {state: {} for state in _TRACKED_STATES}
    )


class NodeList:
    """All nodes known to the local member, spread over locked shards.

    State-change notifications go to ``cluster.notify_node_state_changed``
    once the shard lock has been released.
    """

    def __init__(
        self,
        cluster: ClusterView,
        shard_count: int,
        *,
        rng: random.Random | None = None,
    ) -> None:
        _check_shard_count(shard_count)
        self._cluster = cluster
        self._shard_mask = shard_count - 1
        self._shards = [_Shard() for _ in range(shard_count)]
        self._rng = rng if rng is not None else random.Random()
        self._counts = dict.fromkeys(_TRACKED_STATES, 0)
        self._counts_lock = threading.Lock()

    @property
    def shard_count(self) -> int:
        return len(self._shards)

    def _shard_for(self, node_id: NodeID) -> _Shard:
        return self._shards[_fnv1a(node_id.bytes) & self._shard_mask]

    def _adjust_count(self, state: NodeState, delta: int) -> None:
        with self._counts_lock:
            self._counts[state] += delta

    def _move_count(self, old: NodeState, new: NodeState) -> None:
        with self._counts_lock:
            self._counts[old] -= 1
            self._counts[new] += 1

    def _is_local(self, node_id: NodeID) -> bool:
        return node_id == self._cluster.local_node.id

    # Membership

    def add(self, node: Node, update_existing: bool) -> bool:
        """Store ``node``; an existing entry is replaced only if ``update_existing``.

        Returns False when the node exists and was left alone.
        """
        state = _require_tracked(node.state)
        shard = self._shard_for(node.id)
        notify: NodeState | None = None
        with shard.lock:
            existing = shard.nodes.get(node.id)
            if existing is not None:
                if not update_existing:
                    return False
                old_state = existing.state
                shard.by_state[old_state].pop(node.id, None)
                shard.nodes[node.id] = node
                shard.by_state[state][node.id] = node
                self._move_count(old_state, state)
                if old_state in (NodeState.LEAVING, NodeState.DEAD) or (
                    old_state is NodeState.SUSPECT and state is NodeState.ALIVE
                ):
                    notify = old_state
            else:
                shard.nodes[node.id] = node
                shard.by_state[state][node.id] = node
                self._adjust_count(state, 1)
                notify = NodeState.UNKNOWN
        if notify is not None:
            self._cluster.notify_node_state_changed(node, notify)
        return True

    def add_if_not_exists(self, node: Node) -> bool:
        return self.add(node, False)

    def add_or_update(self, node: Node) -> bool:
        return self.add(node, True)

    def remove(self, node_id: NodeID) -> bool:
        """Remove the node whatever its state; the local node is never removed."""
        return self.remove_if_in_state(node_id, _ALL_STATES)

    def remove_if_in_state(self, node_id: NodeID, states: Iterable[NodeState]) -> bool:
        """Remove the node if its state is one of ``states``."""
        if self._is_local(node_id):
            return False
        wanted = set(states)
        shard = self._shard_for(node_id)
        with shard.lock:
            node = shard.nodes.get(node_id)
            if node is None or node.state not in wanted:
                return False
            self._adjust_count(node.state, -1)
            shard.by_state[node.state].pop(node_id, None)
            del shard.nodes[node_id]
            return True

    def get(self, node_id: NodeID) -> Node | None:
        shard = self._shard_for(node_id)
        with shard.lock:
            return shard.nodes.get(node_id)

    # State changes

    def update_state(self, node_id: NodeID, state: NodeState) -> bool:
        """Change a node's state, stamped with the local clock."""
        return self.update_state_with_timestamp(node_id, state, now())

    def update_state_with_timestamp(self, node_id: NodeID, state: NodeState, ts: int) -> bool:
        """Change a node's state using ``ts`` as the change time when it is newer.

        Returns False if the node is unknown, or if the local node would be
        marked anything other than alive or leaving.
        """
        state = NodeState(state)
        ts = Timestamp(ts)
        if self._is_local(node_id) and state not in (NodeState.ALIVE, NodeState.LEAVING):
            self._cluster.logger.field("rejected_state", str(state)).debug(
                "Attempted to set invalid state for local node, ignoring"
            )
            return False
        state = _require_tracked(state)

        shard = self._shard_for(node_id)
        with shard.lock:
            node = shard.nodes.get(node_id)
            if node is None:
                return False
            old_state = node.state
            if old_state is state:
                if ts.after(node.state_change_time):
                    node.state_change_time = ts
                return True

            shard.by_state[old_state].pop(node_id, None)
            node.state = state
            node.state_change_time = ts if ts.after(node.state_change_time) else now()
            shard.by_state[state][node_id] = node
            self._move_count(old_state, state)

        self._cluster.notify_node_state_changed(node, old_state)
        if state is not NodeState.ALIVE:
            node.address = None
        return True

    # Selection

    def get_random_nodes_in_states(
        self,
        k: int,
        states: Iterable[NodeState],
        exclude_ids: Iterable[NodeID] | None,
    ) -> list[Node]:
        """Return up to ``k`` nodes chosen uniformly from those in ``states``."""
        states = list(states)
        if not states or k <= 0:
            return []
        excluded = set(exclude_ids or ())
        reservoir: list[Node] = []
        seen = 0
        for shard in self._shards:
            with shard.lock:
                for state in states:
                    for node_id, node in shard.by_state.get(state, {}).items():
                        if node_id in excluded:
                            continue
                        seen += 1
                        if len(reservoir) < k:
                            reservoir.append(node)
                        else:
                            slot = self._rng.randrange(seen)
                            if slot < k:
                                reservoir[slot] = node
        return reservoir

    def get_random_nodes(self, k: int, exclude_ids: Iterable[NodeID] | None) -> list[Node]:
        """Return up to ``k`` random alive or suspect nodes."""
        return self.get_random_nodes_in_states(
            k, [NodeState.ALIVE, NodeState.SUSPECT], exclude_ids
        )

    def get_random_nodes_for_gossip(
        self, k: int, exclude_ids: Iterable[NodeID] | None
    ) -> list[Node]:
        """Return up to ``k`` nodes, mostly live ones, topped up with dead ones."""
        excluded = list(exclude_ids or ())
        chosen = self.get_random_nodes_in_states(
            k * 3 // 4,
            [NodeState.ALIVE, NodeState.SUSPECT, NodeState.LEAVING],
            excluded,
        )
        if len(chosen) < k:
            chosen.extend(
                self.get_random_nodes_in_states(k - len(chosen), [NodeState.DEAD], excluded)
            )
        return chosen

    # Counters

    def alive_count(self) -> int:
        return self._counts[NodeState.ALIVE]

    def suspect_count(self) -> int:
        return self._counts[NodeState.SUSPECT]

    def leaving_count(self) -> int:
        return self._counts[NodeState.LEAVING]

    def dead_count(self) -> int:
        return self._counts[NodeState.DEAD]

    def recalculate_counters(self) -> None:
        """Rebuild the per-state counters from the shards."""
        totals = dict.fromkeys(_TRACKED_STATES, 0)
        for shard in self._shards:
            with shard.lock:
                for state in _TRACKED_STATES:
                    totals[state] += len(shard.by_state[state])
        with self._counts_lock:
            self._counts = totals

    # Iteration

    def for_all_in_states(
        self, states: Iterable[NodeState], callback: Callable[[Node], bool]
    ) -> None:
        """Call ``callback`` for each node in ``states`` until it returns false."""
        states = list(states)
        for shard in self._shards:
            with shard.lock:
                snapshot = [
                    node
                    for state in states
                    for node in shard.by_state.get(state, {}).values()
                ]
            for node in snapshot:
                if not callback(node):
                    return

    def get_all_in_states(self, states: Iterable[NodeState]) -> list[Node]:
        collected: list[Node] = []

        def collect(node: Node) -> bool:
            collected.append(node)
            return True

        self.for_all_in_states(states, collect)
        return collected

    def get_all(self) -> list[Node]:
        """Return every known node."""
        result: list[Node] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.nodes.values())
        return result