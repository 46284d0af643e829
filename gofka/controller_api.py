"""Request handlers of the controller: raft traffic, topics, brokers and ISR changes."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from gofka.controller import ControllerError, KraftController
from gofka.metadata import AlterPartition, AlterPartitionCommand, CreateTopicCommand
from gofka.raft.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    LogEntry,
    VoteRequest,
    VoteResponse,
)

logger = logging.getLogger(__name__)

FENCE_DURATION = 5.0


class FencedError(ControllerError):
    """Raised while the node is fenced and refuses raft traffic."""


@dataclass
class MetadataResponse:
    """Log entries a broker has not seen yet, and the index they reach."""

    metadata_index: int
    logs: list[LogEntry] = field(default_factory=list)
    success: bool = True


class ControllerService:
    """Front door of a controller node, called by peers and brokers."""

    def __init__(
        self,
        controller: KraftController,
        *,
        notify: Callable[[str, str, bytes], Any] | None = None,
    ) -> None:
        self.controller = controller
        self.fenced = False
        self._notify = notify
        self._unfence_handle: Any = None

    # -- raft ------------------------------------------------------------

    def handle_vote_request(self, request: VoteRequest) -> VoteResponse:
        if self.fenced:
            raise FencedError("fenced")
        return self.controller.raft.process_vote_request(request)

    def handle_append_entries(self, request: AppendEntriesRequest) -> AppendEntriesResponse:
        if self.fenced:
            raise FencedError("fenced")
        return self.controller.raft.process_append_request(request)

    # -- topics ----------------------------------------------------------

    def handle_create_topic(
        self, topic: str, n_partitions: int = 1, replication_factor: int = 0
    ) -> LogEntry | None:
        """Submit a create-topic command; the topic must be new."""
        if not topic:
            raise ControllerError("topic cannot be blank")
        if n_partitions <= 0:
            n_partitions = 1
        if topic in self.controller.metadata.topics:
            raise ControllerError(f"topic already exists {topic}")
        command = CreateTopicCommand(
            topic=topic, n_partitions=n_partitions, replication_factor=replication_factor
        )
        if len(self.controller.metadata.brokers) < replication_factor:
            raise ControllerError(
                "invalid replication factor, cannot be greater than available nodes"
            )
        return self.controller.submit_command(command)

    # -- brokers ---------------------------------------------------------

    def handle_broker_heartbeat(self, broker_id: str) -> None:
        self.controller.broker_heartbeat(broker_id)

    def handle_fetch_metadata(self, index: int) -> MetadataResponse:
        logs = self.controller.broker_metadata(index)
        if logs:
            return MetadataResponse(metadata_index=logs[-1].index, logs=logs)
        return MetadataResponse(metadata_index=index, logs=logs)

    def handle_register_broker(self, broker_id: str, address: str) -> LogEntry | None:
        return self.controller.register_broker(broker_id, address)

    # -- in-sync replicas ------------------------------------------------

    def handle_alter_partition(self, changes: Iterable[AlterPartition]) -> LogEntry | None:
        """Submit the ISR changes that differ from the current metadata, if any."""
        changed = self.filter_changes(changes)
        if not changed:
            return None
        return self.controller.submit_command(AlterPartitionCommand(changes=changed))

    def filter_changes(self, changes: Iterable[AlterPartition]) -> list[AlterPartition]:
        return [
            change
            for change in changes
            if self.has_changes(change.topic, change.partition, change.new_isr)
        ]

    def has_changes(self, topic: str, partition: int, new_isr: Sequence[str]) -> bool:
        """Tell whether ``new_isr`` holds other members than the partition's ISR."""
        info = self.controller.metadata.topic(topic)
        if info is None:
            return False
        current = info.partitions.get(partition)
        if current is None:
            return False
        old, new = sorted(current.isr), sorted(new_isr)
        if old != new:
            logger.info("found changing isr old: %s, new: %s", old, new)
            return True
        return False

    # -- fencing ---------------------------------------------------------

    def fence(self, duration: float = FENCE_DURATION) -> None:
        """Refuse raft traffic for ``duration`` seconds."""
        logger.info("fencing node %s", self.controller.id)
        self.fenced = True
        self._send("fenced")
        if self._unfence_handle is not None:
            self._unfence_handle.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            timer = threading.Timer(duration, self._unfence)
            timer.daemon = True
            timer.start()
            self._unfence_handle = timer
        else:
            self._unfence_handle = loop.call_later(duration, self._unfence)

    def _unfence(self) -> None:
        self.fenced = False
        self._unfence_handle = None
        self._send("fenced-removed")

    def _send(self, action: str) -> None:
        if self._notify is not None:
            target = self.controller.id
            self._notify(action, target, f"controller {target} just become alive".encode())