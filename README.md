# raftkv

A replicated key-value store. Every node runs a Raft peer that elects a
leader, replicates a log of commands and takes snapshots. On top of it a
key-value server applies committed `Put`, `Append` and `Get` operations. It
also filters out requests it has already applied from the same client. Nodes
talk to each other over a small TCP RPC layer. Each request carries a
varint-prefixed header, and each response is a varint-prefixed payload.

The package has no dependencies outside the standard library and supports
Python 3.10 and later.

## What is inside

| Module | Purpose |
| --- | --- |
| `raftkv.config` | `RpcConfig` reads `key=value` files and skips blank lines and `#` comments; `trim_spaces` |
| `raftkv.controller` | `RpcController` records whether an RPC call failed and why |
| `raftkv.wire` | `RpcHeader`, `encode_request` / `decode_request`, `encode_varint` / `decode_varint`, `WireError` |
| `raftkv.messages` | `ApplyMsg`, `LogEntry`, `Op`, the Raft and key-value request and reply types, `encode_message` / `decode_message` |
| `raftkv.persister` | `Persister` keeps a node's Raft state and snapshot in two files |
| `raftkv.provider` | `RpcProvider` serves registered services over TCP |
| `raftkv.channel` | `RpcChannel` is the client side of the RPC layer; `RaftPeer` calls another node's Raft methods |
| `raftkv.raftlog` | `RaftState` handles the log, terms, commit index and snapshot bookkeeping; also `Role` and `RaftInvariantError` |
| `raftkv.handlers` | `RaftHandlers` provides `append_entries`, `request_vote`, `install_snapshot`, `start` and `get_state` |
| `raftkv.replication` | `RaftReplication` runs elections, heartbeats and snapshot shipping |
| `raftkv.node` | `Raft` is a full peer with its election, heartbeat and applier tickers |
| `raftkv.kvserver` | `KvServer` and `start_server` |

Messages are serialised as compact JSON, and Raft state and snapshots are
stored the same way. A broken invariant in the Raft state raises
`RaftInvariantError`.

## Describing a cluster

The nodes of a cluster are listed in a plain configuration file. They are
numbered from zero without gaps, and reading stops at the first missing
`node<N>ip`:

```
# three-node cluster
node0ip=127.0.0.1
node0port=7000
node1ip=127.0.0.1
node1port=7001
node2ip=127.0.0.1
node2port=7002
```

`RpcConfig` reads such a file. When a key appears more than once, the first
value wins. `load` returns an empty string for a key that is not present, and
`load_file` raises `FileNotFoundError` for a missing file.

```python
from raftkv.config import RpcConfig

config = RpcConfig()
config.load_file("cluster.conf")
print(config.load("node1port"))   # "7001"
print(config.load("node9ip"))     # ""
```

## Starting a node

`start_server` takes four arguments:

- the node's index;
- the Raft state size that triggers a snapshot (`-1` turns snapshots off);
- the cluster file;
- the port its RPC server listens on.

```python
from raftkv.kvserver import start_server

start_server(0, 1000, "cluster.conf", 7000)
```

The node does the following:

1. It starts an `RpcProvider` that publishes the services `kvServerRpc` and
   `raftRpc`. The provider also appends the node's own address to `test.conf`
   in the working directory.
2. It waits six seconds for the other nodes to come up.
3. It connects to its peers from the cluster file.
4. It restores any snapshot it finds, starts the Raft tickers and applies
   committed commands.

The call does not return while the server runs.

A node keeps its durable state in `raftstatePersist<N>.txt` and
`snapshotPersist<N>.txt` in the working directory, where `<N>` is the node
index. Both files are emptied when the `Persister` is created.

## Talking to a cluster

Clients call the methods `Get` and `PutAppend` of the service `kvServerRpc`.
`RpcChannel` can make these calls directly:

```python
from raftkv.channel import RpcChannel
from raftkv.messages import GetArgs, GetReply, PutAppendArgs, PutAppendReply

with RpcChannel("127.0.0.1", 7000, timeout=2.0) as channel:
    channel.call_method(
        "kvServerRpc", "PutAppend",
        PutAppendArgs(key="k", value="v", op="Put", client_id="c1", request_id=1),
        PutAppendReply,
    )
    reply = channel.call_method(
        "kvServerRpc", "Get", GetArgs(key="k", client_id="c1", request_id=2), GetReply,
    )
```

`call_method` returns `None` when the call fails, and the reason is recorded
in the `RpcController` passed to it.

A reply error of `"ErrWrongLeader"` means one of two things: the node was not
the leader, or the command was not committed within the consensus timeout
(0.5 s by default). Retry on another node with the same client id and request
id; the server does not apply the same request twice. `"ErrNoKey"` means
`Get` found no value for the key.

`Append` behaves exactly like `Put`: it sets the key to the given value and
does not add to the value already stored.

## Persisting state directly

```python
from raftkv.persister import Persister

persister = Persister(0, directory="/tmp")
persister.save_raft_state("state")
assert persister.read_raft_state() == "state"
assert persister.raft_state_size() == len("state")
```

## What it does not do

- There is no command-line program. A node is started by calling
  `start_server` from Python.
- There is no client library that finds the leader and retries on its own.
  Clients must pick nodes and retry themselves, for example with
  `RpcChannel`.
- Nodes cannot be added or removed while the cluster runs.