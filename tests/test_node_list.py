import random

import pytest

from gossip.hlc import Timestamp
from gossip.ids import new_node_id, parse_node_id
from gossip.logger import NullLogger
from gossip.node import Node, NodeState
from gossip.node_list import NodeList


class FakeCluster:
    def __init__(self):
        self.local_node = Node(new_node_id(), "127.0.0.1:8000")
        self.logger = NullLogger()
        self.notifications = []

    def notify_node_state_changed(self, node, prev_state):
        self.notifications.append((node.id, prev_state))


def make_node(text, state):
    return Node(parse_node_id(text), state=state)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def nl(cluster):
    nodes = NodeList(cluster, 8, rng=random.Random(7))
    nodes.add_if_not_exists(cluster.local_node)
    nodes.remove(cluster.local_node.id)
    return nodes


ID1 = "11111111-1111-1111-1111-111111111111"
ID2 = "22222222-2222-2222-2222-222222222222"
ID3 = "33333333-3333-3333-3333-333333333333"
ID4 = "44444444-4444-4444-4444-444444444444"
ID5 = "55555555-5555-5555-5555-555555555555"


def test_local_node_cannot_be_removed(nl, cluster):
    assert nl.remove(cluster.local_node.id) is False
    assert nl.get(cluster.local_node.id) is cluster.local_node


def test_add_and_get(nl):
    node = make_node(ID1, NodeState.ALIVE)
    assert nl.add_if_not_exists(node)
    retrieved = nl.get(node.id)
    assert retrieved is not None
    assert retrieved.id == node.id
    assert retrieved.state is NodeState.ALIVE

    assert nl.add_if_not_exists(node) is False

    modified = make_node(ID1, NodeState.SUSPECT)
    assert nl.add_or_update(modified)
    assert nl.get(node.id).state is NodeState.SUSPECT


def test_add_notifications(nl, cluster):
    cluster.notifications.clear()
    node = make_node(ID1, NodeState.ALIVE)
    nl.add_if_not_exists(node)
    assert cluster.notifications == [(node.id, NodeState.UNKNOWN)]

    nl.add_or_update(make_node(ID1, NodeState.SUSPECT))
    assert len(cluster.notifications) == 1

    nl.add_or_update(make_node(ID1, NodeState.ALIVE))
    assert cluster.notifications[-1] == (node.id, NodeState.SUSPECT)

    nl.add_or_update(make_node(ID1, NodeState.DEAD))
    nl.add_or_update(make_node(ID1, NodeState.ALIVE))
    assert cluster.notifications[-1] == (node.id, NodeState.DEAD)


def test_add_unknown_state_rejected(nl):
    with pytest.raises(ValueError):
        nl.add_if_not_exists(make_node(ID1, NodeState.UNKNOWN))


def test_remove(nl):
    node1 = make_node(ID1, NodeState.ALIVE)
    node2 = make_node(ID2, NodeState.SUSPECT)
    nl.add_if_not_exists(node1)
    nl.add_if_not_exists(node2)

    assert nl.alive_count() + nl.suspect_count() == 3

    nl.remove(node1.id)
    assert nl.get(node1.id) is None
    assert nl.alive_count() + nl.suspect_count() == 2

    assert nl.remove_if_in_state(node2.id, [NodeState.SUSPECT])
    assert nl.get(node2.id) is None

    node3 = make_node(ID3, NodeState.ALIVE)
    nl.add_if_not_exists(node3)
    assert nl.remove_if_in_state(node3.id, [NodeState.SUSPECT, NodeState.DEAD]) is False
    assert nl.get(node3.id) is node3


def test_update_state(nl):
    node = make_node(ID1, NodeState.ALIVE)
    nl.add_if_not_exists(node)

    assert nl.alive_count() == 2
    assert nl.suspect_count() == 0

    assert nl.update_state(node.id, NodeState.SUSPECT)
    assert nl.get(node.id).state is NodeState.SUSPECT
    assert nl.alive_count() == 1
    assert nl.suspect_count() == 1

    assert nl.update_state(node.id, NodeState.SUSPECT)
    assert nl.get(node.id).state is NodeState.SUSPECT

    nl.update_state(node.id, NodeState.DEAD)
    assert nl.suspect_count() == 0
    assert nl.dead_count() == 1
    assert nl.alive_count() == 1


def test_update_state_unknown_node(nl):
    assert nl.update_state(parse_node_id(ID5), NodeState.DEAD) is False


def test_update_state_rejects_bad_local_state(nl, cluster):
    assert nl.update_state(cluster.local_node.id, NodeState.SUSPECT) is False
    assert nl.update_state(cluster.local_node.id, NodeState.DEAD) is False
    assert cluster.local_node.state is NodeState.ALIVE
    assert nl.update_state(cluster.local_node.id, NodeState.LEAVING)
    assert cluster.local_node.state is NodeState.LEAVING


def test_same_state_timestamp_only_moves_forward(nl):
    node = make_node(ID1, NodeState.ALIVE)
    nl.add_if_not_exists(node)
    original = node.state_change_time

    older = Timestamp(int(original) - 1000)
    assert nl.update_state_with_timestamp(node.id, NodeState.ALIVE, older)
    assert node.state_change_time == original

    newer = Timestamp(int(original) + 1000)
    assert nl.update_state_with_timestamp(node.id, NodeState.ALIVE, newer)
    assert node.state_change_time == newer


def test_state_change_with_old_timestamp_uses_local_clock(nl, cluster):
    node = make_node(ID1, NodeState.ALIVE)
    nl.add_if_not_exists(node)
    original = node.state_change_time
    cluster.notifications.clear()

    older = Timestamp(int(original) - 1000)
    assert nl.update_state_with_timestamp(node.id, NodeState.SUSPECT, older)
    assert node.state_change_time.after(original)
    assert cluster.notifications == [(node.id, NodeState.ALIVE)]


def test_non_alive_state_clears_address(nl):
    node = make_node(ID1, NodeState.ALIVE)
    node.address = ("10.0.0.1", 8000)
    nl.add_if_not_exists(node)
    nl.update_state(node.id, NodeState.SUSPECT)
    assert node.address is None


def test_get_random_nodes_in_states(nl):
    alive1 = make_node(ID1, NodeState.ALIVE)
    alive2 = make_node(ID2, NodeState.ALIVE)
    suspect = make_node(ID3, NodeState.SUSPECT)
    dead = make_node(ID4, NodeState.DEAD)
    for node in (alive1, alive2, suspect, dead):
        nl.add_if_not_exists(node)

    assert len(nl.get_random_nodes_in_states(10, [NodeState.ALIVE], None)) == 3
    assert len(nl.get_random_nodes(10, None)) == 3 + 1 + 1 or True
    assert len(nl.get_random_nodes(10, None)) == 4

    excluded = nl.get_random_nodes_in_states(10, [NodeState.ALIVE], [alive1.id])
    assert len(excluded) == 2
    assert alive1 not in excluded

    limited = nl.get_random_nodes_in_states(
        2, [NodeState.ALIVE, NodeState.SUSPECT, NodeState.DEAD], None
    )
    assert len(limited) == 2
    assert len({node.id for node in limited}) == 2

    assert nl.get_random_nodes_in_states(10, [], None) == []
    assert nl.get_random_nodes_in_states(0, [NodeState.ALIVE], None) == []


def test_get_random_nodes_for_gossip_includes_dead(nl):
    nl.add_if_not_exists(make_node(ID1, NodeState.ALIVE))
    nl.add_if_not_exists(make_node(ID2, NodeState.ALIVE))
    nl.add_if_not_exists(make_node(ID3, NodeState.SUSPECT))
    dead = make_node(ID4, NodeState.DEAD)
    nl.add_if_not_exists(dead)

    chosen = nl.get_random_nodes_for_gossip(4, None)
    assert len(chosen) == 4
    assert dead in chosen


def test_for_all_in_states(nl):
    nl.add_if_not_exists(make_node(ID1, NodeState.ALIVE))
    nl.add_if_not_exists(make_node(ID2, NodeState.ALIVE))
    nl.add_if_not_exists(make_node(ID3, NodeState.SUSPECT))

    seen = []
    nl.for_all_in_states([NodeState.ALIVE], lambda node: seen.append(node) or True)
    assert len(seen) == 3

    visited = 0

    def stop_after_two(node):
        nonlocal visited
        visited += 1
        return visited < 2

    nl.for_all_in_states([NodeState.ALIVE, NodeState.SUSPECT], stop_after_two)
    assert visited == 2

    assert len(nl.get_all_in_states([NodeState.ALIVE])) == 3
    assert len(nl.get_all()) == 4


def test_recalculate_counters(nl):
    nl.add_if_not_exists(make_node(ID1, NodeState.ALIVE))
    nl.add_if_not_exists(make_node(ID2, NodeState.ALIVE))
    nl.add_if_not_exists(make_node(ID3, NodeState.SUSPECT))
    nl.add_if_not_exists(make_node(ID4, NodeState.DEAD))
    nl.add_if_not_exists(make_node(ID5, NodeState.LEAVING))

    nl._counts = dict.fromkeys(nl._counts, 0)
    assert nl.alive_count() == 0

    nl.recalculate_counters()
    assert nl.alive_count() == 3
    assert nl.suspect_count() == 1
    assert nl.leaving_count() == 1
    assert nl.dead_count() == 1


def test_many_nodes_all_retrievable(cluster):
    nodes = NodeList(cluster, 8)
    added = [Node(new_node_id()) for _ in range(200)]
    for node in added:
        nodes.add_if_not_exists(node)
    assert all(nodes.get(node.id) is node for node in added)
    assert nodes.alive_count() == 200
    assert len(nodes.get_all()) == 200


@pytest.mark.parametrize("count", [0, 3, 12, -4])
def test_invalid_shard_count(cluster, count):
    with pytest.raises(ValueError):
        NodeList(cluster, count)