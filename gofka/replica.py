"""Follower replication: fetch records from partition leaders and report progress."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 1024 * 1024 * 102


class ReplicaError(Exception):
    """Raised when replication of a partition cannot be changed as asked."""


@dataclass
class FetchRequest:
    broker_id: str
    topic: str
    partition: int
    offset: int
    max_bytes: int = DEFAULT_MAX_BYTES


@dataclass
class FetchResponse:
    messages: list[Any] = field(default_factory=list)
    high_watermark: int = 0
    log_end_offset: int = 0
    success: bool = True


@dataclass
class FollowerStateRequest:
    broker_id: str
    topic: str
    partition: int
    follower_id: str
    fetch_offset: int
    log_end_offset: int


class _Partition(Protocol):
    id: int

    def leo(self) -> int: ...

    def is_leader(self) -> bool: ...

    def become_leader(self, broker_id: str, epoch: int, replicas: Sequence[str]) -> Any: ...

    def become_follower(self, leader_id: str, epoch: int, replicas: Sequence[str]) -> Any: ...

    def append_batch(self, messages: Sequence[Any]) -> Any: ...


class _BrokerClient(Protocol):
    def fetch_records(self, request: FetchRequest) -> Any: ...

    def update_follower_state(self, request: FollowerStateRequest) -> Any: ...


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _key(topic: str, partition_id: int) -> str:
    return f"{topic}-{partition_id}"


class ReplicaFetcher:
    """Periodically pulls one partition's records from its leader."""

    def __init__(
        self,
        broker_id: str,
        leader_id: str,
        topic: str,
        partition: _Partition,
        client: _BrokerClient,
        fetch_interval: float,
    ) -> None:
        self.broker_id = broker_id
        self.leader_id = leader_id
        self.topic = topic
        self.partition = partition
        self.client = client
        self.fetch_interval = fetch_interval
        self.stopped = False

    async def start(self) -> None:
        """Fetch every ``fetch_interval`` seconds until stopped."""
        while not self.stopped:
            await asyncio.sleep(self.fetch_interval)
            if self.stopped:
                break
            await self.fetch_from_leader()

    def stop(self) -> None:
        self.stopped = True

    async def fetch_from_leader(self) -> None:
        """Fetch once, append what arrived and tell the leader where we are."""
        offset = self.partition.leo() - 1
        request = FetchRequest(
            broker_id=self.leader_id,
            topic=self.topic,
            partition=self.partition.id,
            offset=offset,
        )
        try:
            response: FetchResponse = await _resolve(self.client.fetch_records(request))
        except Exception as exc:
            logger.debug("fetching records from %s failed: %s", self.leader_id, exc)
            await self._send_fetch_response(offset, offset)
            return
        if response.messages:
            try:
                self.partition.append_batch(response.messages)
            except Exception as exc:
                logger.debug("appending replicated batch failed: %s", exc)
                return
        await self._send_fetch_response(offset, response.log_end_offset)

    async def _send_fetch_response(self, fetch_offset: int, log_end_offset: int) -> None:
        request = FollowerStateRequest(
            broker_id=self.leader_id,
            topic=self.topic,
            partition=self.partition.id,
            follower_id=self.broker_id,
            fetch_offset=fetch_offset,
            log_end_offset=log_end_offset,
        )
        try:
            await _resolve(self.client.update_follower_state(request))
        except Exception as exc:
            logger.warning("error updating follower state: %s", exc)


class ReplicaManager:
    """Tracks local partitions and runs a fetcher for each one this broker follows."""

    def __init__(self, broker_id: str, client: _BrokerClient, fetch_interval: float) -> None:
        self.broker_id = broker_id
        self.client = client
        self.fetch_interval = fetch_interval
        self.partitions: dict[str, _Partition] = {}
        self.fetchers: dict[str, ReplicaFetcher] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    def add_partition(self, topic: str, partition: _Partition) -> None:
        self.partitions[_key(topic, partition.id)] = partition

    def handle_leader_change(
        self,
        topic: str,
        partition_id: int,
        new_leader_id: str,
        epoch: int,
        replicas: Sequence[str],
    ) -> None:
        """Lead the partition or follow its new leader."""
        partition = self.partitions.get(_key(topic, partition_id))
        if partition is None:
            raise ReplicaError("cannot find partition")
        if new_leader_id == self.broker_id:
            partition.become_leader(self.broker_id, epoch, replicas)
            self.stop_replication(topic, partition_id)
        else:
            partition.become_follower(new_leader_id, epoch, replicas)
            self.start_replication(topic, partition_id, new_leader_id)

    def start_replication(self, topic: str, partition_id: int, leader_id: str) -> ReplicaFetcher:
        """Replace any fetcher of the partition by one that pulls from ``leader_id``."""
        key = _key(topic, partition_id)
        partition = self.partitions.get(key)
        if partition is None:
            raise ReplicaError("cannot find partition")
        if partition.is_leader():
            raise ReplicaError("cannot replicate if you are the leader")
        self._stop(key)
        fetcher = ReplicaFetcher(
            self.broker_id, leader_id, topic, partition, self.client, self.fetch_interval
        )
        self.fetchers[key] = fetcher
        if self._closed:
            fetcher.stop()
        else:
            self._tasks[key] = asyncio.get_running_loop().create_task(fetcher.start())
        return fetcher

    def stop_replication(self, topic: str, partition_id: int) -> None:
        key = _key(topic, partition_id)
        self._stop(key)
        self.fetchers.pop(key, None)

    def _stop(self, key: str) -> None:
        fetcher = self.fetchers.get(key)
        if fetcher is not None:
            fetcher.stop()
        task = self._tasks.pop(key, None)
        if task is not None:
            task.cancel()

    def shutdown(self) -> None:
        """Stop every fetcher; later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        for key in list(self.fetchers):
            self._stop(key)

    async def wait_stopped(self) -> None:
        """Wait until cancelled fetcher tasks have finished."""
        tasks = list(self._tasks.values())
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task