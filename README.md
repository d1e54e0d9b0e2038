# shardraft

`shardraft` provides, inside a single Python process:

- a Raft consensus peer (`shardraft.raft`)
- a shard controller replicated over Raft (`shardraft.shardctrler`)
- a client for a sharded key/value service (`shardraft.shardkv`)

Peers reach each other through ordinary Python objects that expose `call(method, args)`. The package has no runtime dependencies.

## Installation

```
pip install .
```

To install the test requirements as well:

```
pip install ".[test]"
```

## Raft

`shardraft.raft.node.make_raft(peers, me, persister, apply_queue)` creates a `Raft` peer and starts its background threads. The arguments are:

- `peers`: one `Peer` per server, this server included. A `Peer(target, connected=True)` delivers `call(method, args)` straight to the target peer's handler. It returns `None` when the endpoint is disconnected, has no target, or its target has been killed. It accepts the method names `request_vote`, `append_entries` and `install_snapshot`, and their `Raft.RequestVote`-style aliases. Any other name raises `ValueError`.
- `me`: this server's index into `peers`.
- `persister`: a `shardraft.raft.persister.Persister`.
- `apply_queue`: a `queue.Queue`. It receives an `ApplyMsg` for every committed entry and for every installed snapshot.

A `Raft` peer has these methods:

- `start(command)` returns `(index, term, is_leader)`. A peer that is not the leader returns `(-1, term, False)`.
- `get_state()` returns `(term, is_leader)`.
- `snapshot(index, data)` trims the log through `index`.
- `kill()` and `killed()` stop the peer and report whether it has stopped.
- `request_vote`, `append_entries` and `install_snapshot` are the RPC handlers. They take and return the dataclasses in `shardraft.raft.messages`.

Leadership is only ever gained from the candidate state. Any other attempt to become leader, and any move from leader straight to candidate, raises `IllegalTransitionError`.

`Persister` keeps Raft state and the service snapshot together and saves both in one step:

```python
from shardraft.raft.persister import Persister

p = Persister()
p.save(b"state", b"snap")
assert p.read_raft_state() == b"state"
assert p.snapshot_size() == 4
q = p.copy()  # independent persister holding the same bytes
```

`shardraft.raft.raft_log` has the pieces underneath a peer:

- `RaftLog`, a log addressed by absolute index. Its first entry marks the snapshot boundary.
- `PersistentState`, with `encode_state` and `decode_state`. `decode_state` returns `None` for empty data and raises `CorruptStateError` for data it cannot decode.

## Shard controller

`shardraft.shardctrler.state_machine.MemoryConfig` is the controller's state machine. It spreads `N_SHARDS` (10) shards over the replica groups and keeps them balanced, moving as few shards as it can. Each change appends a new numbered `Config`.

```python
from shardraft.shardctrler.state_machine import MemoryConfig

sm = MemoryConfig()
sm.join({1: ["x", "y", "z"]})
sm.join({2: ["a", "b", "c"]})
config = sm.query(-1)          # latest; any out-of-range number also gives the latest
print(config.num, config.shards, config.groups)
sm.move(0, 1)
sm.leave([2])
```

The helpers `group_to_shards`, `gid_with_minimum_shards` and `gid_with_maximum_shards` are public in the same module.

`shardraft.shardctrler.ctrl_server.start_server(servers, me, persister)` starts one `ShardCtrler` replica on top of its own Raft peer. `servers` is the list of Raft `Peer`s. The replica's handlers `join`, `leave`, `move` and `query` take `JoinArgs`, `LeaveArgs`, `MoveArgs` and `QueryArgs` from `shardraft.shardctrler.ctrl_common`. They return replies carrying an `Err`. `Err.ERR_WRONG_LEADER` or `Err.ERR_TIMEOUT` means the request should be retried elsewhere. Repeated requests from one client are answered from the replica's record of that client's last reply. `raft()` returns the underlying peer.

`shardraft.shardctrler.ctrl_client.Clerk(servers)` takes endpoints whose `call(method, args)` returns a reply, or `None` when the call was lost. It sends `ShardCtrler.Join`, `ShardCtrler.Leave`, `ShardCtrler.Move` and `ShardCtrler.Query`. It moves on to the next server and retries until a leader answers. `Clerk.query(-1)` returns the latest configuration.

## Sharded key/value client

`shardraft.shardkv.kv_client.Clerk(ctrlers, make_end)` provides `get`, `put`, `append` and `put_append`. The arguments are:

- `ctrlers`: the controller endpoints.
- `make_end(name)`: turns a server name from `Config.groups` into an endpoint.

The clerk finds a key's shard with `key2shard(key)`, which uses the key's first byte modulo `N_SHARDS`. It sends `ShardKV.Get` or `ShardKV.PutAppend` to the owning group's servers. When it gets no answer, or `ErrWrongGroup`, it fetches a new configuration and tries again. `get` returns `""` for a missing key.

## What is not included

- The package has no key/value server. Something outside the package has to answer `ShardKV.Get` and `ShardKV.PutAppend`.
- It has no simulated network, and nothing for unreliable delivery, partitions or RPC counting. `Peer` is a direct in-process call.
- State is kept in memory in `Persister` objects and never written to disk.
- There is no command-line program.