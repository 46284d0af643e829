import json

import pytest

from gofka.metadata import (
    AlterPartition,
    AlterPartitionCommand,
    ChangePartitionLeaderCommand,
    ClusterMetadata,
    CreateTopicCommand,
    PartitionAssignment,
    RegisterBrokerCommand,
    UpdateBrokerCommand,
    _decode_command,
    _encode_command,
)


class Recorder:
    def __init__(self):
        self.seen = []

    def apply_create_topic(self, command):
        self.seen.append(("create", command))

    def apply_update_broker(self, command):
        self.seen.append(("update", command))


def test_create_topic_builds_partitions():
    md = ClusterMetadata()
    md.create_topic(CreateTopicCommand("orders", 3, 2))
    topic = md.topic("orders")
    assert topic.name == "orders"
    assert topic.replication_factor == 2
    assert sorted(topic.partitions) == list(range(3))
    assert all(p.leader == "" and p.epoch == 0 for p in topic.partitions.values())


def test_create_existing_topic_keeps_state():
    md = ClusterMetadata()
    md.create_topic(CreateTopicCommand("orders", 1, 1))
    md.topic("orders").partitions[0].leader = "b1"
    md.create_topic(CreateTopicCommand("orders", 4, 1))
    assert len(md.topic("orders").partitions) == 1
    assert md.topic("orders").partitions[0].leader == "b1"


def test_unknown_topic_is_none():
    assert ClusterMetadata().topic("missing") is None


def test_register_then_update_broker():
    md = ClusterMetadata()
    md.register_broker(RegisterBrokerCommand("b1", "h1:9092", 10.0, True))
    md.update_broker(UpdateBrokerCommand("b1", "h1:9092", 20.0, False))
    broker = md.brokers["b1"]
    assert broker.alive is False
    assert broker.last_seen == 20.0
    assert broker.address == "h1:9092"


def test_update_unknown_broker_adds_it():
    md = ClusterMetadata()
    md.update_broker(UpdateBrokerCommand("b7", "h7", 1.5, True))
    assert md.brokers["b7"].address == "h7"
    assert md.brokers["b7"].alive is True


def test_change_partition_leader_sets_fields_and_skips_unknown():
    md = ClusterMetadata()
    md.create_topic(CreateTopicCommand("orders", 1, 2))
    md.change_partition_leader(
        ChangePartitionLeaderCommand(
            [
                PartitionAssignment("orders", 0, "b2", ["b2", "b1"], ["b2"], 4),
                PartitionAssignment("missing", 0, "b1", ["b1"], ["b1"], 1),
                PartitionAssignment("orders", 9, "b1", ["b1"], ["b1"], 1),
            ]
        )
    )
    partition = md.topic("orders").partitions[0]
    assert partition.leader == "b2"
    assert partition.replicas == ["b2", "b1"]
    assert partition.isr == ["b2"]
    assert partition.epoch == 4
    assert list(md.topics) == ["orders"]
    assert list(md.topic("orders").partitions) == [0]


def test_alter_partition_replaces_isr():
    md = ClusterMetadata()
    md.create_topic(CreateTopicCommand("orders", 2, 2))
    md.alter_partition(AlterPartitionCommand([AlterPartition("orders", 1, ["b1", "b3"])]))
    assert md.topic("orders").partitions[1].isr == ["b1", "b3"]
    assert md.topic("orders").partitions[0].isr == []


def test_apply_dispatches_and_notifies_listener():
    md = ClusterMetadata()
    listener = Recorder()
    create = CreateTopicCommand("orders", 1, 1)
    register = RegisterBrokerCommand("b1", "h1", 0.0, True)
    md.apply(create, listener)
    md.apply(register, listener)
    assert md.topic("orders") is not None and "b1" in md.brokers
    assert listener.seen == [("create", create)]


def test_apply_without_listener_mutates():
    md = ClusterMetadata()
    md.apply(UpdateBrokerCommand("b2", "h2", 3.0, False))
    assert md.brokers["b2"].alive is False


def test_apply_rejects_unknown_command():
    with pytest.raises(TypeError):
        ClusterMetadata().apply("create orders")


@pytest.mark.parametrize(
    "command",
    [
        CreateTopicCommand("orders", 3, 2),
        RegisterBrokerCommand("b1", "h1:9092", 12.5, True),
        UpdateBrokerCommand("b1", "h1:9092", 13.5, False),
        ChangePartitionLeaderCommand([PartitionAssignment("orders", 0, "b1", ["b1"], ["b1"], 2)]),
        AlterPartitionCommand([AlterPartition("orders", 0, ["b1", "b2"])]),
    ],
)
def test_command_encoding_round_trip(command):
    encoded = json.loads(json.dumps(_encode_command(command)))
    assert _decode_command(encoded) == command


def test_decode_unknown_type_raises():
    with pytest.raises(ValueError):
        _decode_command({"type": "drop_everything"})