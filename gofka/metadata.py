"""Cluster metadata: brokers, topics and partitions, changed by replicated commands."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Union


@dataclass
class BrokerInfo:
    id: str
    address: str = ""
    alive: bool = False
    last_seen: float = 0.0


@dataclass
class PartitionInfo:
    id: int
    leader: str = ""
    replicas: list[str] = field(default_factory=list)
    isr: list[str] = field(default_factory=list)
    epoch: int = 0


@dataclass
class TopicInfo:
    name: str
    replication_factor: int = 0
    partitions: dict[int, PartitionInfo] = field(default_factory=dict)


@dataclass
class PartitionAssignment:
    topic_id: str
    partition_id: int
    new_leader: str
    new_replicas: list[str] = field(default_factory=list)
    new_isr: list[str] = field(default_factory=list)
    new_epoch: int = 0


@dataclass
class AlterPartition:
    topic: str
    partition: int
    new_isr: list[str] = field(default_factory=list)


@dataclass
class CreateTopicCommand:
    topic: str
    n_partitions: int = 1
    replication_factor: int = 0


@dataclass
class RegisterBrokerCommand:
    id: str
    address: str = ""
    last_seen: float = 0.0
    alive: bool = True


@dataclass
class UpdateBrokerCommand:
    id: str
    address: str = ""
    last_seen: float = 0.0
    alive: bool = True


@dataclass
class ChangePartitionLeaderCommand:
    assignments: list[PartitionAssignment] = field(default_factory=list)


@dataclass
class AlterPartitionCommand:
    changes: list[AlterPartition] = field(default_factory=list)


Command = Union[
    CreateTopicCommand,
    RegisterBrokerCommand,
    UpdateBrokerCommand,
    ChangePartitionLeaderCommand,
    AlterPartitionCommand,
]

_KINDS: dict[type, str] = {
    CreateTopicCommand: "create_topic",
    RegisterBrokerCommand: "register_broker",
    UpdateBrokerCommand: "update_broker",
    ChangePartitionLeaderCommand: "change_partition_leader",
    AlterPartitionCommand: "alter_partition",
}
_CLASSES: dict[str, type] = {kind: cls for cls, kind in _KINDS.items()}


def _encode_command(command: Command) -> dict[str, Any]:
    """Turn a command into a JSON-ready mapping tagged with its kind."""
    kind = _KINDS.get(type(command))
    if kind is None:
        raise TypeError(f"unknown command {type(command).__name__}")
    return {"type": kind, **asdict(command)}


def _decode_command(data: Mapping[str, Any]) -> Command:
    """Rebuild a command from the mapping made by ``_encode_command``."""
    kind = data.get("type")
    cls = _CLASSES.get(kind)
    if cls is None:
        raise ValueError(f"unknown command type {kind!r}")
    payload = {key: value for key, value in data.items() if key != "type"}
    if cls is ChangePartitionLeaderCommand:
        return ChangePartitionLeaderCommand(
            assignments=[PartitionAssignment(**item) for item in payload.get("assignments", [])]
        )
    if cls is AlterPartitionCommand:
        return AlterPartitionCommand(
            changes=[AlterPartition(**item) for item in payload.get("changes", [])]
        )
    return cls(**payload)


class ClusterMetadata:
    """Current view of the cluster, built by applying commands in log order.

    After each command is applied, the listener (if any) is told through an
    ``apply_<kind>`` method, when it defines one.
    """

    def __init__(self) -> None:
        self.brokers: dict[str, BrokerInfo] = {}
        self.topics: dict[str, TopicInfo] = {}

    def topic(self, name: str) -> TopicInfo | None:
        return self.topics.get(name)

    def apply(self, command: Command, listener: Any = None) -> None:
        """Apply one command and notify the listener."""
        kind = _KINDS.get(type(command))
        if kind is None:
            raise TypeError(f"unknown command {type(command).__name__}")
        getattr(self, kind)(command)
        if listener is not None:
            hook = getattr(listener, f"apply_{kind}", None)
            if callable(hook):
                hook(command)

    def create_topic(self, command: CreateTopicCommand) -> None:
        if command.topic in self.topics:
            return
        self.topics[command.topic] = TopicInfo(
            name=command.topic,
            replication_factor=command.replication_factor,
            partitions={pid: PartitionInfo(id=pid) for pid in range(command.n_partitions)},
        )

    def register_broker(self, command: RegisterBrokerCommand) -> None:
        self.brokers[command.id] = BrokerInfo(
            id=command.id,
            address=command.address,
            alive=command.alive,
            last_seen=command.last_seen,
        )

    def update_broker(self, command: UpdateBrokerCommand) -> None:
        broker = self.brokers.get(command.id)
        if broker is None:
            self.brokers[command.id] = BrokerInfo(
                id=command.id,
                address=command.address,
                alive=command.alive,
                last_seen=command.last_seen,
            )
            return
        broker.address = command.address
        broker.alive = command.alive
        broker.last_seen = command.last_seen

    def change_partition_leader(self, command: ChangePartitionLeaderCommand) -> None:
        for assignment in command.assignments:
            topic = self.topics.get(assignment.topic_id)
            if topic is None:
                continue
            partition = topic.partitions.get(assignment.partition_id)
            if partition is None:
                continue
            partition.epoch = assignment.new_epoch
            partition.leader = assignment.new_leader
            partition.replicas = list(assignment.new_replicas)
            partition.isr = list(assignment.new_isr)

    def alter_partition(self, command: AlterPartitionCommand) -> None:
        for change in command.changes:
            topic = self.topics.get(change.topic)
            if topic is None:
                continue
            partition = topic.partitions.get(change.partition)
            if partition is None:
                continue
            partition.isr = list(change.new_isr)