# gossip

Building blocks for a gossip-style cluster:

- a hybrid logical clock;
- node identifiers;
- typed node metadata;
- a sharded node list;
- node groups selected by metadata;
- a history of seen messages;
- packet and message types;
- a framed stream with optional compression and encryption;
- quorum-based leader election.

The package has no third-party dependencies.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Hybrid logical clock

`gossip.hlc` hands out `Timestamp` values, which are 64-bit integers. Each one
holds 54 bits of microseconds since 1 January 2025 UTC and a 10-bit logical
counter. Timestamps from one `Clock` always increase, even when two are taken
in the same microsecond.

```python
from gossip.hlc import Clock, now

clock = Clock()
a = clock.now()
b = clock.now()
assert b.after(a)
print(a.time(), a.counter())   # aware UTC datetime, counter bits

ts = now()  # taken from the shared default clock
```

A `Clock` takes an optional `source` argument. This is a callable that returns
nanoseconds since the Unix epoch, and it defaults to `time.time_ns`.

## Node identifiers

Node identifiers are `uuid.UUID` values.

```python
from gossip.ids import EMPTY_NODE_ID, new_node_id, parse_node_id

node_id = new_node_id()
same = parse_node_id("11111111-1111-1111-1111-111111111111")  # ValueError if malformed
```

## Metadata

`gossip.metadata.Metadata` stores typed values under string keys. Every write
or delete of an existing key stamps the metadata with a fresh HLC timestamp,
which you can read with `get_timestamp()`.

Setters check the type and range of the value. For example, `set_int32`
raises `OverflowError` for values outside 32 bits, and `set_string` raises
`TypeError` for a value that is not a string.

Getters convert between types. When the key is missing or the value cannot be
converted, they return a zero value: `""`, `0`, `0.0`, `False`, or
`ZERO_TIME` for `get_time`.

```python
from gossip.metadata import Metadata

md = Metadata()
md.set_string("zone", "eu-1").set_int("weight", 5).set_bool("ready", True)

md.get_string("weight")   # "5"
md.get_int("zone")        # 0
md.get_bool("ready")      # True
md.get_all_as_string()    # {"zone": "eu-1", "weight": "5", "ready": "true"}

# Replace everything only if the remote copy is newer (or force=True).
md.update({"zone": "us-2"}, remote_timestamp, False)
```

## Nodes

`gossip.node.Node` carries:

- an `id`;
- an `advertise_addr`;
- a resolved `address`, which starts as `None`;
- a `NodeState`: `UNKNOWN`, `ALIVE`, `LEAVING`, `DEAD` or `SUSPECT`;
- `state_change_time`;
- its `Metadata`;
- version fields.

It also offers the helpers `alive()`, `suspect()`, `dead_or_left()`,
`update_last_activity()` and `last_activity()`.

## The cluster you supply

`NodeList`, `NodeGroup` and `LeaderElection` work against a cluster object.
That object must follow the `gossip.interfaces.ClusterView` protocol, which
covers these members:

- the local node and a logger;
- registering and removing state-change and metadata-change handlers;
- registering packet handlers;
- listing and looking up nodes;
- computing the fan-out;
- the `send*` methods.

`gossip.interfaces.Resolver` describes DNS lookups (`lookup_ip`,
`lookup_srv`). `gossip.logger` provides the `Logger` protocol and a
`NullLogger` that discards messages and counts them.

## Node lists and groups

`gossip.node_list.NodeList(cluster, shard_count)` keeps nodes in shards. The
shard count must be a power of two. A node list:

- counts nodes by state (`alive_count()`, `suspect_count()` and so on);
- picks random nodes by reservoir sampling (`get_random_nodes`,
  `get_random_nodes_in_states`, `get_random_nodes_for_gossip`);
- reports state changes through `cluster.notify_node_state_changed`.

It never removes the local node, and it never marks the local node as
suspect or dead.

`gossip.node_group.NodeGroup` follows the alive or suspect nodes whose
metadata matches a set of criteria. The metadata key must be present for
every criterion, and the value is matched as follows:

- `"*"` matches any value;
- `"~text"` matches a value that contains `text`;
- any other string must equal the value exactly.

```python
from gossip.node_group import NodeGroup

group = NodeGroup(cluster, {"role": "db", "zone": "~eu"},
                  on_node_added=print, on_node_removed=print)
peers = group.get_nodes([cluster.local_node.id])
group.send_to_peers(msg_type, data)
group.close()
```

## Message history

`gossip.message_history.MessageHistory(shard_count, max_age, gc_interval)`
remembers `(node_id, message_id)` pairs so that duplicates can be dropped.
The shard count should be a power of two, and both times are in seconds. A
background thread calls `prune()` every `gc_interval` seconds, and `stop()`
ends that thread.

## Packets and messages

`gossip.packet` defines:

- `MessageType`. Application messages start at `USER_MSG` (128).
- A reference-counted `Packet`. Releasing the last reference closes the
  connection the packet arrived on. `unmarshal()` decodes the payload with the
  packet's `Codec`.
- Dataclasses for the built-in messages, such as `JoinMessage`, `PingMessage`
  and `MetadataUpdateMessage`. Each field's wire name is kept in the field's
  metadata under `"wire"`.

## Framed streams

`gossip.stream.new_stream(conn, config)` wraps a connection-like object. The
object must have `read`, `write`, `close`, the address methods and the
deadline setters.

Each write becomes one frame: a 4-byte big-endian header, then the body. The
header's top bit is set when the body is compressed, and the remaining 31 bits
give the body's length.

- A body is compressed only when it reaches `compress_min_size` and
  compression makes it smaller.
- When a `cipher` is set, every body is encrypted.
- When neither a compressor nor a cipher is set, the connection is returned
  unwrapped.
- Frames larger than `stream_max_packet_size` raise `PacketTooLargeError`.
- Reading or writing after `close()` raises `OSError`.

```python
from gossip.stream import StreamConfig, new_stream

config = StreamConfig(tcp_deadline=5.0, compress_min_size=256,
                      stream_max_packet_size=1 << 20, compressor=my_compressor)
stream = new_stream(conn, config)
stream.write(b"hello")
```

## Leader election

```python
from gossip.leader.config import default_config
from gossip.leader.election import LeaderElection
from gossip.leader.events import EventType

config = default_config()
config.metadata_criteria = {"role": "db"}   # optional: limit the candidates

election = LeaderElection(cluster, config)
election.handle_event_func(
    EventType.BECAME_LEADER,
    lambda event, leader_id: print("leading", leader_id),
)
election.start()
...
election.stop()
```

Election works as follows:

- Once a quorum of eligible nodes is present, the eligible node with the
  lowest id becomes leader. By default the quorum is 51 percent
  (`quorum_percentage`).
- The leader sends a `HeartbeatMessage` every `leader_check_interval`.
- Other nodes treat the leader as lost when no heartbeat has arrived within
  `leader_timeout`, or when the leader's node stops being alive.
- Between competing heartbeats, a higher term wins. Within the same term, the
  later leader time wins. On a tie, the lower node id wins.

By default each event handler runs on its own thread. Pass `event_runner` to
`LeaderElection` to run handlers another way.

## What this package does not do

This package contains no cluster implementation and no network transport. It
does not open sockets or WebSockets, resolve addresses, or run a
join/ping/suspicion protocol. It also ships no codec, compressor, cipher or
resolver implementations. You provide the cluster object (`ClusterView`), the
connections for `Stream`, and any `Codec`, `Compressor`, `Cipher` or
`Resolver` you need.