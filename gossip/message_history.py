"""Record of recently seen messages, used to drop duplicates."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .ids import NodeID

__all__ = ["MessageHistory"]

_UINT32_MASK = 0xFFFFFFFF
_UINT64_MASK = (1 << 64) - 1


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[tuple[NodeID, int], int] = field(default_factory=dict)


class MessageHistory:
    """Sharded set of (sender, message id) pairs with age-based expiry.

    A background thread calls :meth:`prune` every ``gc_interval`` seconds,
    dropping entries older than ``max_age`` seconds. ``clock`` returns the
    current time in nanoseconds.
    """

    def __init__(
        self,
        shard_count: int,
        max_age: float,
        gc_interval: float,
        *,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        if shard_count < 1:
            raise ValueError("shard count must be at least 1")
        if gc_interval <= 0:
            raise ValueError("gc interval must be positive")
        self._clock = clock
        self._max_age_ns = int(max_age * 1_000_000_000)
        self._gc_interval = gc_interval
        self._shard_mask = shard_count - 1
        self._shards = [_Shard() for _ in range(shard_count)]
        self._stopped = threading.Event()
        self._pruner = threading.Thread(
            target=self._prune_loop, name="message-history-pruner", daemon=True
        )
        self._pruner.start()

    def _shard_for(self, node_id: NodeID, message_id: int) -> _Shard:
        raw = node_id.bytes
        mixed = bytes(
            a ^ b ^ c ^ d for a, b, c, d in zip(raw[0:4], raw[4:8], raw[8:12], raw[12:16])
        )
        digest = int.from_bytes(mixed, "little")
        message = int(message_id) & _UINT64_MASK
        digest ^= (message & _UINT32_MASK) ^ (message >> 32)
        return self._shards[digest & self._shard_mask]

    def record_message(self, node_id: NodeID, message_id: int) -> None:
        """Remember that ``message_id`` from ``node_id`` has been seen."""
        shard = self._shard_for(node_id, message_id)
        with shard.lock:
            shard.entries[(node_id, int(message_id))] = self._clock()

    def contains(self, node_id: NodeID, message_id: int) -> bool:
        """Return True if the message has been recorded and not yet expired."""
        shard = self._shard_for(node_id, message_id)
        with shard.lock:
            return (node_id, int(message_id)) in shard.entries

    def prune(self) -> int:
        """Drop entries older than the maximum age; return how many were dropped."""
        cutoff = self._clock() - self._max_age_ns
        removed = 0
        for shard in self._shards:
            with shard.lock:
                kept = {key: seen for key, seen in shard.entries.items() if seen >= cutoff}
                removed += len(shard.entries) - len(kept)
                shard.entries = kept
        return removed

    def stop(self) -> None:
        """Stop the background pruning thread."""
        self._stopped.set()
        if self._pruner is not threading.current_thread():
            self._pruner.join()

    def _prune_loop(self) -> None:
        while not self._stopped.wait(self._gc_interval):
            self.prune()