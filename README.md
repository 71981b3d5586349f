# serfkit

The pieces a gossip-based cluster membership system is built from:

- `serfkit.lamport`: a thread-safe `LamportClock` for ordering events
  across nodes.
- `serfkit.messages`: the message types exchanged between members
  (`MessageJoin`, `MessageLeave`, `MessagePushPull`, `MessageUserEvent`,
  `MessageQuery`, `MessageQueryResponse`, `RelayHeader`, `FilterTag`).
  Each is framed as a one-byte `MessageType` header followed by a msgpack
  body.
- `serfkit.event`: `EventType`, `MemberStatus`, `Member` and the events
  that are delivered to an application: `MemberEvent`, `UserEvent` and
  `Query`.
- `serfkit.config`: `Config` and `default_config()` with the usual
  timeouts, buffer sizes and limits.
- `serfkit.query`: query parameters and filters, collecting responses and
  acknowledgements, default timeouts, and the random choice of relay
  members.
- `serfkit.keymanager`: `KeyManager`, which changes the encryption keyring
  across a cluster (install, use, remove, list) and sums up the answers in
  a `KeyResponse`.
- `serfkit.internal_query`: handling of the internal `_serf_` queries
  (ping, name conflict, keyring changes) and a simple in-memory `Keyring`.

## Installation

```
pip install serfkit
```

The only runtime dependency is `msgpack`.

## Lamport clocks

```python
from serfkit.lamport import LamportClock

clock = LamportClock()
clock.increment()      # 1
clock.witness(41)      # we saw time 41 from a peer
clock.time()           # 42, one past what was witnessed
clock.witness(30)      # older values change nothing
clock.time()           # 42
```

## Configuration

```python
from serfkit.config import default_config

config = default_config()
config.protocol_version            # 4
config.query_response_size_limit   # 1024
config.gossip_interval             # 0.2
```

All durations in `Config` are in seconds. `default_config()` uses the host
name as the node name. A bare `Config()` holds zero values only, and
`Config.init()` creates the tag map if it is missing.
`PROTOCOL_VERSION_MAP` maps the member protocol version to the underlying
gossip protocol version.

## Messages

`encode_message(t, msg)` writes a one-byte `MessageType` header and then
the msgpack body. `decode_message(buf, cls)` reads a body (without the
header) back into the given message class. It can also check the result
against a builtin type such as `list`, and it raises `ValueError` on
malformed input.

```python
from serfkit.messages import MessageLeave, MessageType, decode_message, encode_message

raw = encode_message(MessageType.LEAVE, MessageLeave(node="foo"))
raw[0] == MessageType.LEAVE                 # True
decode_message(raw[1:], MessageLeave)       # MessageLeave(ltime=0, node='foo', prune=False)
```

`encode_relay_message(t, addr, msg)` wraps a message with a `RelayHeader`
naming its final `(host, port)` destination. `decode_relay_message(buf)`
returns the header and the inner, still typed message.
`encode_filter(f, filt)` builds a query filter with a `FilterType` header.
`MessageQuery.ack()` and `no_broadcast()` read the query flags.
`MessageQuery.timeout` is in seconds.

## Events

`MemberEvent`, `UserEvent` and `Query` each have `event_type()` and a
string form (`"member-join"`, `"user-event: <name>"`, `"query: <name>"`).
`str()` of a `MemberEvent` whose type is not a member event raises
`ValueError`.

A `Query` can be answered once before its deadline. `deadline` is a
`time.time()` value. The query needs a `send(addr, raw)` callable to
deliver the answer, and it may have a `relay(relay_factor, addr, response)`
callable to pass copies through other members. `respond(buf)` encodes the
answer and sends it. If the answer is over `response_size_limit`, was
already sent, is past the deadline, or there is no `send`, it raises
`RuntimeError`.

## Queries

`QueryParam` restricts which nodes should answer a query, by node name
and by regular expressions matched against tags. `encode_filters()`
converts them to the wire form. On the receiving side,
`should_process_query(filters, node_name, tags)` decides whether a node
is addressed:

```python
from serfkit.query import QueryParam, should_process_query

params = QueryParam(filter_nodes=["foo", "bar", "zip"],
                    filter_tags={"role": "^web", "datacenter": "aws$"})
filters = params.encode_filters()

should_process_query(filters, "zip",
                     {"role": "webserver", "datacenter": "east-aws"})  # True
should_process_query(filters, "other",
                     {"role": "webserver", "datacenter": "east-aws"})  # False
```

The default query timeout grows with the size of the cluster: gossip
interval × timeout multiplier × ⌈log10(N + 1)⌉, as computed by
`default_query_timeout(gossip_interval, query_timeout_mult, num_members)`.
`default_query_params(...)` returns a `QueryParam` with that timeout and
no filters.

A `QueryResponse(n, message_query)` collects the answers to one query and
buffers at most `n` of them. `send_response()` and `send_ack()` deliver
answers. Duplicates from the same node and deliveries after `close()` are
dropped, and a full buffer raises `RuntimeError`. The generators
`responses(timeout)` and `acks(timeout)` yield `NodeResponse` values and
node names. They stop when the deadline or the timeout passes, or once
the query is closed and its buffer is empty. `acks()` yields nothing if
the query did not request acks. `finished()` tells whether the query is
closed or past its deadline.

`k_random_members(k, members, filter_func)` picks up to `k` distinct
members that `filter_func` does not exclude (it returns True for members
to skip). It makes at most 3 × len(members) probes.

## Keyring management

`KeyManager(query, num_members, default_params=None)` is built from three
callables. `query(name, payload, params)` sends a query and returns its
`QueryResponse`. `num_members()` reports the cluster size.
`default_params()` supplies the base `QueryParam`.

`install_key`, `use_key`, `remove_key` and `list_keys` each take an
optional `KeyRequestOptions` (its `relay_factor`). The key is given in
base64. Each method sends the matching internal query and gathers the
answers into a `KeyResponse`:

- a message for each node that reported one,
- the numbers of nodes, responses and errors,
- for `list_keys`, how many nodes hold each base64-encoded key.

`KeyRequestError` is raised if the key is not valid base64, if any node
reports a failure, or if not every node answers. Its `response` attribute
holds what was gathered. `stream_key_responses(resp, responses)` is the
folding step on its own.

On the receiving side, `InternalQueryHandler(node_name, keyring=...,
lookup_member=..., out=..., persist_keyring=...)` handles internal
queries. `dispatch(event)` handles queries whose name starts with the
internal prefix (see `internal_query_name` and `is_internal_query`) and
passes every other event to `out`. It returns True for handled queries.
A handler without a keyring answers key queries with an error message
saying that encryption is not enabled. `Keyring` holds 16-, 24- or
32-byte keys with the primary key first. It refuses to remove the primary
key or to use a key it does not hold. If a key list answer is too large
for the response size limit, `key_list_response_with_correct_size`
shortens the list in place and adds a note that it was truncated.

## What this package does not do

serfkit has no network transport, failure detector or member list of its
own, and no agent or command-line tool. Sending packets, tracking members,
running queries across a cluster and writing keyring files are left to the
callables you pass in (`Query.send`, `Query.relay`, the `KeyManager`
callables, and the `InternalQueryHandler` hooks).

## Running the tests

```
pip install "serfkit[test]"
pytest
```