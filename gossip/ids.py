"""Node identifiers."""

from __future__ import annotations

import uuid
from typing import Callable

__all__ = [
    "NodeID",
    "EMPTY_NODE_ID",
    "ApplicationVersionCheck",
    "new_node_id",
    "parse_node_id",
]

NodeID = uuid.UUID

EMPTY_NODE_ID: NodeID = uuid.UUID(int=0)

ApplicationVersionCheck = Callable[[str], bool]
"""Callable deciding whether a peer's application version is compatible."""


def new_node_id() -> NodeID:
    """Return a new random node identifier."""
    return uuid.uuid4()


def parse_node_id(text: str) -> NodeID:
    """Parse a node identifier from its textual form.

    Raises ValueError if the text is not a valid UUID.
    """
    if not isinstance(text, str):
        raise TypeError("node id must be given as a string")
    try:
        return uuid.UUID(text)
    except ValueError as exc:
        raise ValueError(f"invalid node id: {text!r}") from exc