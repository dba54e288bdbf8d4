"""Settings for leader election."""

from __future__ import annotations

from dataclasses import dataclass

from ..packet import MessageType

__all__ = ["LeaderConfig", "default_config"]


@dataclass
class LeaderConfig:
    """Leader election settings; intervals are in seconds.

    ``quorum_percentage`` is the share of eligible nodes (1-100) that must be
    alive for a leader to be elected. When ``metadata_criteria`` is given,
    only nodes whose metadata matches every criterion may become leader.
    """

    leader_check_interval: float = 1.0
    leader_timeout: float = 3.0
    heartbeat_message_type: int = MessageType.RESERVED_MSGS_START + 1
    quorum_percentage: int = 51
    metadata_criteria: dict[str, str] | None = None


def default_config() -> LeaderConfig:
    """Return a fresh configuration holding the default settings."""
    return LeaderConfig()