import asyncio

import pytest

from gofka.replica import (
    DEFAULT_MAX_BYTES,
    FetchRequest,
    FetchResponse,
    FollowerStateRequest,
    ReplicaError,
    ReplicaFetcher,
    ReplicaManager,
)


class FakePartition:
    def __init__(self, partition_id=0, leo=5, leader=False, fail_append=False):
        self.id = partition_id
        self._leo = leo
        self._leader = leader
        self.fail_append = fail_append
        self.appended = []
        self.roles = []

    def leo(self):
        return self._leo

    def is_leader(self):
        return self._leader

    def become_leader(self, broker_id, epoch, replicas):
        self._leader = True
        self.roles.append(("leader", broker_id, epoch, list(replicas)))

    def become_follower(self, leader_id, epoch, replicas):
        self._leader = False
        self.roles.append(("follower", leader_id, epoch, list(replicas)))

    def append_batch(self, messages):
        if self.fail_append:
            raise ValueError("bad batch")
        self.appended.append(list(messages))
        self._leo += len(messages)


class FakeClient:
    def __init__(self, response=None, error=None):
        self.response = response or FetchResponse()
        self.error = error
        self.fetches = []
        self.states = []

    async def fetch_records(self, request):
        self.fetches.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    async def update_follower_state(self, request):
        self.states.append(request)


@pytest.mark.asyncio
async def test_fetch_appends_and_reports_progress():
    partition = FakePartition(leo=5)
    client = FakeClient(FetchResponse(messages=["a", "b"], log_end_offset=7))
    fetcher = ReplicaFetcher("b2", "b1", "orders", partition, client, 1.0)
    await fetcher.fetch_from_leader()
    assert client.fetches == [
        FetchRequest(broker_id="b1", topic="orders", partition=0, offset=4)
    ]
    assert client.fetches[0].max_bytes == 1024 * 1024 * 102 == DEFAULT_MAX_BYTES
    assert partition.appended == [["a", "b"]]
    assert client.states == [
        FollowerStateRequest(
            broker_id="b1",
            topic="orders",
            partition=0,
            follower_id="b2",
            fetch_offset=4,
            log_end_offset=7,
        )
    ]


@pytest.mark.asyncio
async def test_failed_fetch_reports_current_offset():
    partition = FakePartition(leo=5)
    client = FakeClient(error=ConnectionError("down"))
    await ReplicaFetcher("b2", "b1", "orders", partition, client, 1.0).fetch_from_leader()
    assert partition.appended == []
    assert len(client.states) == 1
    assert client.states[0].fetch_offset == client.states[0].log_end_offset == 4


@pytest.mark.asyncio
async def test_failed_append_sends_no_progress():
    partition = FakePartition(fail_append=True)
    client = FakeClient(FetchResponse(messages=["a"], log_end_offset=6))
    await ReplicaFetcher("b2", "b1", "orders", partition, client, 1.0).fetch_from_leader()
    assert len(client.fetches) == 1
    assert client.states == []


@pytest.mark.asyncio
async def test_empty_fetch_reports_leader_end_offset():
    partition = FakePartition(leo=3)
    client = FakeClient(FetchResponse(messages=[], log_end_offset=3))
    await ReplicaFetcher("b2", "b1", "orders", partition, client, 1.0).fetch_from_leader()
    assert partition.appended == []
    assert client.states[0].log_end_offset == 3
    assert client.states[0].fetch_offset == 2


def test_leader_change_for_unknown_partition():
    manager = ReplicaManager("b1", FakeClient(), 1.0)
    with pytest.raises(ReplicaError):
        manager.handle_leader_change("orders", 0, "b1", 1, ["b1"])


def test_becoming_leader_starts_no_fetcher():
    manager = ReplicaManager("b1", FakeClient(), 1.0)
    partition = FakePartition()
    manager.add_partition("orders", partition)
    manager.handle_leader_change("orders", 0, "b1", 3, ["b1", "b2"])
    assert partition.roles == [("leader", "b1", 3, ["b1", "b2"])]
    assert manager.fetchers == {}


def test_leader_cannot_replicate():
    manager = ReplicaManager("b1", FakeClient(), 1.0)
    manager.add_partition("orders", FakePartition(leader=True))
    with pytest.raises(ReplicaError, match="leader"):
        manager.start_replication("orders", 0, "b2")
    with pytest.raises(ReplicaError):
        manager.start_replication("orders", 9, "b2")


@pytest.mark.asyncio
async def test_follow_then_lead_stops_fetcher():
    manager = ReplicaManager("b2", FakeClient(), 10.0)
    partition = FakePartition()
    manager.add_partition("orders", partition)
    manager.handle_leader_change("orders", 0, "b1", 1, ["b1", "b2"])
    fetcher = manager.fetchers["orders-0"]
    assert fetcher.leader_id == "b1"
    assert partition.roles[-1] == ("follower", "b1", 1, ["b1", "b2"])

    manager.handle_leader_change("orders", 0, "b2", 2, ["b1", "b2"])
    assert fetcher.stopped is True
    assert "orders-0" not in manager.fetchers
    await manager.wait_stopped()


@pytest.mark.asyncio
async def test_restart_replaces_fetcher():
    manager = ReplicaManager("b3", FakeClient(), 10.0)
    manager.add_partition("orders", FakePartition())
    first = manager.start_replication("orders", 0, "b1")
    second = manager.start_replication("orders", 0, "b2")
    assert first.stopped is True
    assert manager.fetchers["orders-0"] is second
    assert second.leader_id == "b2"
    manager.shutdown()
    assert second.stopped is True
    await manager.wait_stopped()


@pytest.mark.asyncio
async def test_running_fetcher_polls_until_shutdown():
    client = FakeClient(FetchResponse(messages=[], log_end_offset=5))
    manager = ReplicaManager("b2", client, 0.01)
    manager.add_partition("orders", FakePartition())
    manager.start_replication("orders", 0, "b1")
    await asyncio.sleep(0.1)
    assert len(client.fetches) >= 1
    manager.shutdown()
    await manager.wait_stopped()
    count = len(client.fetches)
    await asyncio.sleep(0.05)
    assert len(client.fetches) == count