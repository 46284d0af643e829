# gofka

Building blocks of a small Kafka-style message system, written on `asyncio`:

- **`gofka.raft`** – a Raft consensus node (`RaftNode`) with elections, log
  replication and commit tracking, and its messages (`LogEntry`,
  `VoteRequest`, `VoteResponse`, `AppendEntriesRequest`,
  `AppendEntriesResponse`). The node does no networking itself: you give it
  two coroutines that deliver append-entries and vote requests to a peer by
  node id.
- **`gofka.metadata`** – the cluster view (`ClusterMetadata`: brokers, topics,
  partitions) and the commands that change it (`CreateTopicCommand`,
  `RegisterBrokerCommand`, `UpdateBrokerCommand`,
  `ChangePartitionLeaderCommand`, `AlterPartitionCommand`).
- **`gofka.controller`** – `KraftController`, which applies committed raft
  entries to the metadata and keeps them in a JSON-lines file
  (`MetadataLog`, under `<data_dir>/__cluster_metadata/<node_id>.log`), replayed
  on start. On the leader it assigns replicas to leaderless partitions
  round-robin over live brokers, fails partitions over when a broker stops
  sending heartbeats, and moves leadership back to each partition's first
  replica when that replica is alive and in sync. A follower answers requests
  with `NotControllerLeaderError`, which names the leader and its address, or
  `LeaderUnavailableError` when no leader is known.
- **`gofka.controller_api`** – `ControllerService`, the request handlers of a
  controller node: raft traffic, topic creation, broker registration and
  heartbeats, metadata fetches (`MetadataResponse`) and ISR changes. `fence()`
  makes the node refuse raft traffic for a while (5 seconds by default).
- **`gofka.consumer_group`** – consumer groups with a join window, a leader
  that hands out assignments, heartbeats and dead-session cleanup (15 s), plus
  `group_coordinator()`, which picks a group's coordinating broker by FNV-1a
  hash of the group id.
- **`gofka.replica`** – `ReplicaManager` and `ReplicaFetcher`: a follower
  periodically pulls records of a partition from its leader and reports its
  progress. The partition object and the broker client are supplied by you.
- **`gofka.visualizer`** – an event hub and web server that stream cluster
  events to browsers over WebSockets and queue commands for the nodes.

## Configuration

`gofka.config.load_config(path)` reads a node configuration from YAML and
returns a `Config` of dataclasses. Durations are written as `250ms`, `5s`,
`1h30m` and so on (`parse_duration`, which returns seconds; a bare number
counts nanoseconds).

```yaml
server:
  node_id: raft-0
  roles: [controller, broker]
  address: localhost
  port: 9092
  max_reconnection_retries: 5
  initial_backoff: 250ms
  cluster:
    peers:
      raft-0: localhost:9092
      raft-1: localhost:9093
      raft-2: localhost:9094

kraft:
  timeout: 5s
  grace_period: 10s

broker:
  controller_address: localhost:9092
  heartbeat_interval: 250ms
  metadata_interval: 250ms
  replica:
    fetch_interval: 750ms
  consumer_group:
    joining_duration: 750ms

visualizer:
  enabled: false
  address: localhost:42169
```

Built-in defaults: `server.address` localhost, `server.port` 9092,
`server.initial_backoff` 250ms, `kraft.timeout` 5s, `kraft.grace_period` 10s,
`broker.heartbeat_interval` and `broker.metadata_interval` 250ms,
`broker.replica.fetch_interval` and `broker.consumer_group.joining_duration`
750ms, `visualizer.enabled` false.

A key that is set in the file or by a default can be overridden from the
environment: upper-case the dotted key and replace the dots with underscores
(`server.port` → `SERVER_PORT`). A list such as `server.roles` is given there
comma separated.

`validate()` raises `ConfigError` when the node id or address is missing, the
port is outside 1–65535, `kraft.timeout` or `kraft.grace_period` is not
positive, or the node has the `broker` role without
`broker.controller_address`.

```python
from gofka.config import load_config

config = load_config("gofka.yaml")
print(config.server.node_id, config.server.roles)
```

## Running the visualizer

```
gofka-visualizer [--config PATH] [--static-dir DIR]
```

The configuration path defaults to `$GOFKA_CONFIG_PATH`, or `gofka.yaml`; the
static directory to `./static`. Settings (`gofka.visualizer.config`):

```yaml
server:
  address: localhost
  grpc_port: 42169
  web_port: 42069
```

The two ports are required, must lie in 1–65535 and must differ.

On `web_port` the server serves `index.html` from the static directory for
every path, the directory's files under `/static/`, and the browser WebSocket
at `/ws`. On `grpc_port` nodes report events with `POST /update`, a JSON body
holding `node_type`, `action`, `target` and base64 `data`. The reply is
`{"success": true, "commands": [...]}`, and the commands list is filled only
for the action `commands`, which takes the commands queued for `target`.

The hub (`VisualizerHub`) handles events as follows:

- Events with the actions `metadata`, `log_append` and `error` are broadcast
  at once and not stored.
- Every other event is appended to a shared log. Each client receives the log
  from its own offset, which the browser sets with an `offset` message.
- A browser `ping` is answered with `pong`.
- The command messages (`create-topic`, `update-topic`, `add-topic`,
  `remove-topic`, `send-message`, `stop-send-message`, `consume-message`,
  `stop-consume-message`, `fence`) are queued for their target node.

## What is not included

There is no broker that stores topic partitions or serves producers and
consumers, and no command that runs a controller or broker node. The raft node
and the controller have no network transport of their own, and the replica
fetcher relies on a partition and a broker client that you supply. Only the
visualizer comes with a server.

## Tests

The tests use pytest and pytest-asyncio, both listed in the `test` extra:

```
pip install -e .[test]
pytest
```