"""Live subsets of the cluster selected by node metadata."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from .ids import NodeID
from .interfaces import ClusterView
from .node import Node, NodeState
from .node_list import _check_shard_count, _fnv1a

__all__ = ["NodeGroup", "METADATA_ANY_VALUE", "METADATA_CONTAINS_PREFIX"]

METADATA_ANY_VALUE = "*"
METADATA_CONTAINS_PREFIX = "~"


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    nodes: dict[NodeID, Node] = field(default_factory=dict)


class NodeGroup:
    """Tracks the alive or suspect nodes whose metadata matches ``criteria``.

    Each criterion maps a metadata key to an expected value: ``"*"`` accepts
    any value, a value starting with ``"~"`` requires the rest as a substring,
    anything else must match exactly. The key must exist in every case.
    """

    def __init__(
        self,
        cluster: ClusterView,
        criteria: Mapping[str, str],
        *,
        shard_count: int = 16,
        on_node_added: Callable[[Node], None] | None = None,
        on_node_removed: Callable[[Node], None] | None = None,
    ) -> None:
        _check_shard_count(shard_count)
        for key, expected in criteria.items():
            if not expected:
                raise ValueError(f"criterion for {key!r} has an empty value")
        self._cluster = cluster
        self._criteria = dict(criteria)
        self._shard_mask = shard_count - 1
        self._shards = [_Shard() for _ in range(shard_count)]
        self._on_node_added = on_node_added
        self._on_node_removed = on_node_removed

        self._state_handler_id = cluster.handle_node_state_change_func(
            self._handle_node_state_change
        )
        self._meta_handler_id = cluster.handle_node_metadata_change_func(
            self._handle_node_metadata_change
        )

        for node in cluster.nodes_in_states([NodeState.ALIVE, NodeState.SUSPECT]):
            if self.node_matches_criteria(node):
                self._add(node)

    def _shard_for(self, node_id: NodeID) -> _Shard:
        return self._shards[_fnv1a(node_id.bytes) & self._shard_mask]

    def close(self) -> None:
        """Unregister from the cluster and forget all members."""
        self._cluster.remove_node_state_change_handler(self._state_handler_id)
        self._cluster.remove_node_metadata_change_handler(self._meta_handler_id)
        for shard in self._shards:
            with shard.lock:
                shard.nodes = {}

    def node_matches_criteria(self, node: Node) -> bool:
        """Return True if ``node``'s metadata satisfies every criterion."""
        metadata = node.metadata
        for key, expected in self._criteria.items():
            if not metadata.exists(key):
                return False
            if expected.startswith(METADATA_CONTAINS_PREFIX):
                if expected[1:] not in metadata.get_string(key):
                    return False
            elif expected != METADATA_ANY_VALUE and expected != metadata.get_string(key):
                return False
        return True

    def _handle_node_state_change(self, node: Node, prev_state: NodeState) -> None:
        if node.alive() or node.suspect():
            if self.node_matches_criteria(node):
                self._add(node)
        elif prev_state in (NodeState.ALIVE, NodeState.SUSPECT):
            self._remove(node)

    def _handle_node_metadata_change(self, node: Node) -> None:
        if not node.alive():
            return
        shard = self._shard_for(node.id)
        with shard.lock:
            present = node.id in shard.nodes
        matches = self.node_matches_criteria(node)
        if matches and not present:
            self._add(node)
        elif not matches and present:
            self._remove(node)
        elif matches:
            with shard.lock:
                shard.nodes[node.id] = node

    def _add(self, node: Node) -> None:
        shard = self._shard_for(node.id)
        with shard.lock:
            shard.nodes[node.id] = node
        if self._on_node_added is not None:
            self._on_node_added(node)

    def _remove(self, node: Node) -> None:
        shard = self._shard_for(node.id)
        with shard.lock:
            shard.nodes.pop(node.id, None)
        if self._on_node_removed is not None:
            self._on_node_removed(node)

    def get_nodes(self, exclude_ids: Iterable[NodeID] | None) -> list[Node]:
        """Return the members, leaving out ``exclude_ids``."""
        excluded = set(exclude_ids or ())
        result: list[Node] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(
                    node for node_id, node in shard.nodes.items() if node_id not in excluded
                )
        return result

    def contains(self, node_id: NodeID) -> bool:
        shard = self._shard_for(node_id)
        with shard.lock:
            return node_id in shard.nodes

    def count(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.nodes)
        return total

    def _peers(self) -> list[Node]:
        peers = self.get_nodes([self._cluster.local_node.id])
        random.shuffle(peers)
        return peers

    def send_to_peers(self, msg_type: int, data: Any) -> None:
        """Send to every other member, then gossip on if the fan-out is larger."""
        peers = self._peers()
        self._cluster.send_to_peers(peers, msg_type, data)
        if self._cluster.calc_fan_out() > len(peers) + 1:
            peers.append(self._cluster.local_node)
            self._cluster.send_excluding(msg_type, data, self._cluster.nodes_to_ids(peers))

    def send_to_peers_reliable(self, msg_type: int, data: Any) -> None:
        """As :meth:`send_to_peers`, over the reliable transport."""
        peers = self._peers()
        self._cluster.send_to_peers_reliable(peers, msg_type, data)
        if self._cluster.calc_fan_out() > len(peers) + 1:
            peers.append(self._cluster.local_node)
            self._cluster.send_reliable_excluding(
                msg_type, data, self._cluster.nodes_to_ids(peers)
            )