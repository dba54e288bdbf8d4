import time
import uuid

import pytest

from gossip.hlc import now
from gossip.message_history import MessageHistory


def node_id_of(value):
    return uuid.UUID(bytes=bytes([value]) * 16)


class FakeClock:
    def __init__(self):
        self.ns = 1_000_000_000

    def __call__(self):
        return self.ns

    def advance(self, seconds):
        self.ns += int(seconds * 1_000_000_000)


@pytest.fixture
def history():
    mh = MessageHistory(4, 3600, 3600)
    yield mh
    mh.stop()


def test_basic(history):
    node1, node2 = node_id_of(1), node_id_of(2)
    assert not history.contains(node1, 1)

    history.record_message(node1, 1)
    history.record_message(node2, 2)

    assert history.contains(node1, 1)
    assert history.contains(node2, 2)
    assert not history.contains(node1, 2)
    assert not history.contains(node2, 1)


def test_prune_with_clock():
    clock = FakeClock()
    mh = MessageHistory(4, 0.1, 3600, clock=clock)
    try:
        node = node_id_of(1)
        message = now()
        mh.record_message(node, message)
        assert mh.contains(node, message)

        clock.advance(0.2)
        assert mh.prune() == 1
        assert not mh.contains(node, message)
    finally:
        mh.stop()


def test_prune_keeps_recent_entries():
    clock = FakeClock()
    mh = MessageHistory(4, 0.1, 3600, clock=clock)
    try:
        node = node_id_of(3)
        mh.record_message(node, 10)
        clock.advance(0.05)
        mh.record_message(node, 11)
        clock.advance(0.06)

        assert mh.prune() == 1
        assert not mh.contains(node, 10)
        assert mh.contains(node, 11)
    finally:
        mh.stop()


def test_background_pruning():
    mh = MessageHistory(4, 0.1, 0.05)
    try:
        node = node_id_of(1)
        message = now()
        mh.record_message(node, message)
        assert mh.contains(node, message)
        time.sleep(0.4)
        assert not mh.contains(node, message)
    finally:
        mh.stop()


def test_sharding(history):
    nodes = [node_id_of(i) for i in range(10)]
    for node in nodes:
        for message in range(100):
            history.record_message(node, message)

    assert all(history.contains(node, message) for node in nodes for message in range(100))

    counts = [len(shard.entries) for shard in history._shards]
    assert sum(counts) == 1000
    assert all(count > 0 for count in counts)


def test_large_message_ids(history):
    node = node_id_of(7)
    big = (1 << 64) - 1
    history.record_message(node, big)
    assert history.contains(node, big)
    assert not history.contains(node, big - 1)


@pytest.mark.parametrize("shards", [0, -1])
def test_invalid_shard_count(shards):
    with pytest.raises(ValueError):
        MessageHistory(shards, 1, 1)


def test_invalid_gc_interval():
    with pytest.raises(ValueError):
        MessageHistory(4, 1, 0)