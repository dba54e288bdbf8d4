"""Interfaces for name resolution and for the cluster that owns node state."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from .ids import NodeID
from .logger import Logger
from .node import Node, NodeState

__all__ = ["Resolver", "ClusterView"]


@runtime_checkable
class Resolver(Protocol):
    """Pluggable DNS resolution."""

    def lookup_ip(self, host: str) -> list[str]:
        """Return the IP addresses (as strings) of ``host``."""

    def lookup_srv(self, service: str) -> list[tuple[str, int]]:
        """Return ``(ip, port)`` pairs for the SRV records of ``service``."""


class ClusterView(Protocol):
    """The parts of a cluster that node lists, node groups and leader
    election depend on."""

    @property
    def local_node(self) -> Node:
        """The node representing this process."""

    @property
    def logger(self) -> Logger:
        """The cluster's logger."""

    def notify_node_state_changed(self, node: Node, prev_state: NodeState) -> None:
        """Tell state-change handlers that ``node`` left ``prev_state``."""

    def handle_node_state_change_func(
        self, handler: Callable[[Node, NodeState], None]
    ) -> Any:
        """Register a state-change handler and return its handle."""

    def handle_node_metadata_change_func(self, handler: Callable[[Node], None]) -> Any:
        """Register a metadata-change handler and return its handle."""

    def remove_node_state_change_handler(self, handler_id: Any) -> None:
        """Unregister a state-change handler."""

    def remove_node_metadata_change_handler(self, handler_id: Any) -> None:
        """Unregister a metadata-change handler."""

    def handle_func(self, msg_type: int, handler: Callable[[Node | None, Any], None]) -> None:
        """Register a handler for packets of ``msg_type``."""

    def nodes_in_states(self, states: Iterable[NodeState]) -> list[Node]:
        """Return all known nodes whose state is one of ``states``."""

    def alive_nodes(self) -> list[Node]:
        """Return all nodes currently alive."""

    def get_node(self, node_id: NodeID) -> Node | None:
        """Return the node with ``node_id``, or None."""

    def calc_fan_out(self) -> int:
        """Return how many peers a gossip round reaches."""

    def send(self, msg_type: int, data: Any) -> None:
        """Gossip a message to random peers."""

    def send_reliable(self, msg_type: int, data: Any) -> None:
        """Gossip a message to random peers over the reliable transport."""

    def send_to_peers(self, nodes: list[Node], msg_type: int, data: Any) -> None:
        """Send a message to each of ``nodes``."""

    def send_to_peers_reliable(self, nodes: list[Node], msg_type: int, data: Any) -> None:
        """Send a message to each of ``nodes`` over the reliable transport."""

    def send_excluding(self, msg_type: int, data: Any, exclude_ids: list[NodeID]) -> None:
        """Gossip a message to random peers other than ``exclude_ids``."""

    def send_reliable_excluding(
        self, msg_type: int, data: Any, exclude_ids: list[NodeID]
    ) -> None:
        """Reliably gossip a message to random peers other than ``exclude_ids``."""

    def nodes_to_ids(self, nodes: Iterable[Node]) -> list[NodeID]:
        """Return the identifiers of ``nodes`` in order."""
        return [node.id for node in nodes]