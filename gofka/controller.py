"""Metadata controller: applies the replicated log and manages partition leadership."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from gofka.config import Config
from gofka.metadata import (
    BrokerInfo,
    ChangePartitionLeaderCommand,
    ClusterMetadata,
    Command,
    CreateTopicCommand,
    PartitionAssignment,
    RegisterBrokerCommand,
    UpdateBrokerCommand,
    _decode_command,
    _encode_command,
)
from gofka.raft.messages import LogEntry
from gofka.raft.node import NotLeaderError, RaftNode, SendAppend, SendVote

logger = logging.getLogger(__name__)

DEAD_SESSION_CHECK_INTERVAL = 0.5
METADATA_DIR = "__cluster_metadata"


class ControllerError(Exception):
    """Raised when the controller cannot carry out a request."""


class LeaderUnavailableError(ControllerError):
    """Raised when no controller leader is known."""


class NotControllerLeaderError(ControllerError):
    """Raised on a follower; names the leader to redirect to."""

    def __init__(self, leader_id: str, address: str) -> None:
        super().__init__(f"not leader|{leader_id}|{address}")
        self.leader_id = leader_id
        self.address = address


def validate_log_continuity(entries: Sequence[LogEntry]) -> None:
    """Raise ControllerError if the (sorted) entries skip an index."""
    if not entries:
        return
    expected = entries[0].index
    for position, entry in enumerate(entries):
        if entry.index != expected:
            raise ControllerError(
                f"log gap detected: expected index {expected}, "
                f"got {entry.index} at position {position}"
            )
        expected += 1


class MetadataLog:
    """Append-only file of committed metadata log entries, one JSON record per line."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, entry: LogEntry) -> None:
        record = {
            "term": entry.term,
            "index": entry.index,
            "command": None if entry.command is None else _encode_command(entry.command),
        }
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record) + "\n")

    def read_all(self) -> list[LogEntry]:
        if not self.path.exists():
            return []
        entries = []
        with self.path.open(encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    command = record.get("command")
                    entries.append(
                        LogEntry(
                            term=record["term"],
                            index=record["index"],
                            command=None if command is None else _decode_command(command),
                        )
                    )
                except (ValueError, KeyError, TypeError) as exc:
                    raise ControllerError(f"corrupt metadata log line {number}: {exc}") from exc
        return entries


class KraftController:
    """Raft-backed controller that owns the cluster metadata."""

    def __init__(
        self,
        config: Config,
        send_append_entries: SendAppend,
        send_vote_request: SendVote,
        *,
        data_dir: str | os.PathLike = "data",
        notify: Callable[[str, str, bytes], Any] | None = None,
        election_timeout: float | None = None,
    ) -> None:
        if not config.server.node_id or not config.server.address:
            raise ControllerError("nodeID and address cannot be empty")
        self.metadata = ClusterMetadata()
        self.metadata_log = MetadataLog(
            Path(data_dir) / METADATA_DIR / f"{config.server.node_id}.log"
        )
        self.timeout = config.kraft.timeout
        self.grace_period = config.kraft.grace_period
        self.startup_time = time.time()
        self.raft = RaftNode(
            config.server.node_id,
            config.server.cluster.peers,
            send_append_entries,
            send_vote_request,
            apply=self._apply_committed,
            on_become_leader=self.reset_startup_time,
            notify=notify,
            election_timeout=election_timeout,
        )
        self._monitor: asyncio.Task | None = None
        try:
            self.read_from_disk()
        except ControllerError as exc:
            logger.warning("error initializing controller: %s", exc)

    @property
    def id(self) -> str:
        return self.raft.id

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """Start the raft node and the dead-broker monitor."""
        self.raft.start()
        self._monitor = asyncio.get_running_loop().create_task(self._monitor_dead_sessions())

    async def shutdown(self) -> None:
        """Stop the monitor and the raft node."""
        if self._monitor is not None:
            self._monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor
            self._monitor = None
        await self.raft.shutdown()

    async def _monitor_dead_sessions(self) -> None:
        while True:
            await asyncio.sleep(DEAD_SESSION_CHECK_INTERVAL)
            self.clean_dead_sessions()

    # -- log -------------------------------------------------------------

    def _apply_committed(self, entry: LogEntry) -> None:
        if entry.command is None:
            return
        self.apply_entry(entry)
        self.save_entry(entry)

    def apply_entry(self, entry: LogEntry) -> None:
        if entry.command is not None:
            self.metadata.apply(entry.command, self)

    def save_entry(self, entry: LogEntry) -> None:
        self.metadata_log.append(entry)

    def read_from_disk(self) -> None:
        """Replay committed entries saved by an earlier run."""
        entries = self.metadata_log.read_all()
        if not entries:
            logger.info("no logs found on disk, starting fresh")
            return
        max_term = max(entry.term for entry in entries)
        max_index = max(entry.index for entry in entries)
        entries.sort(key=lambda entry: entry.index)
        try:
            validate_log_continuity(entries)
        except ControllerError as exc:
            raise ControllerError(f"log validation failed: {exc}") from exc

        self.raft.current_term = max_term
        self.raft.last_applied = 0
        self.raft.commit_index = max_index
        self.raft.voted_for = ""
        for entry in entries:
            self.raft.append_log(entry)
            self.apply_entry(entry)
            self.raft.last_applied = entry.index

    # -- metadata hooks --------------------------------------------------

    def apply_create_topic(self, command: CreateTopicCommand) -> None:
        if self.raft.is_leader():
            self.elect_partition_leaders()
            self.update_favorite_leaders()

    def apply_register_broker(self, command: RegisterBrokerCommand) -> None:
        if self.raft.is_leader():
            self.elect_partition_leaders()
            self.update_favorite_leaders()

    def apply_update_broker(self, command: UpdateBrokerCommand) -> None:
        if not command.alive:
            self.remove_from_isr(command.id)
            if self.raft.is_leader():
                self.broker_fail_over(command.id)

    def on_cluster_stable(self) -> None:
        if self.raft.is_leader():
            logger.info("cluster stable")
            self.update_favorite_leaders()

    # -- leadership ------------------------------------------------------

    def _alive_brokers(self) -> list[BrokerInfo]:
        return sorted(
            (broker for broker in self.metadata.brokers.values() if broker.alive),
            key=lambda broker: broker.id,
        )

    def elect_partition_leaders(self) -> None:
        brokers = self._alive_brokers()
        if brokers:
            self._submit_assignments(self.assign_partitions(brokers))

    def update_favorite_leaders(self) -> None:
        brokers = self._alive_brokers()
        if brokers:
            self._submit_assignments(self.update_favorite(brokers))

    def assign_partitions(self, brokers: Sequence[BrokerInfo]) -> list[PartitionAssignment]:
        """Give every leaderless partition replicas, round-robin over ``brokers``."""
        assignments: list[PartitionAssignment] = []
        if not brokers:
            return assignments
        broker_index = 0
        for topic in self.metadata.topics.values():
            for partition in topic.partitions.values():
                if partition.leader:
                    continue
                factor = topic.replication_factor
                if factor > len(brokers):
                    logger.warning(
                        "not enough brokers (%d) for replication factor %d of topic %s; "
                        "using all available brokers",
                        len(brokers),
                        factor,
                        topic.name,
                    )
                    factor = len(brokers)
                replicas: list[str] = []
                for offset in range(factor):
                    candidate = brokers[(broker_index + offset) % len(brokers)].id
                    if candidate not in replicas:
                        replicas.append(candidate)
                if not replicas:
                    logger.warning(
                        "topic %s has no replication factor; partition %d left unassigned",
                        topic.name,
                        partition.id,
                    )
                    continue
                assignments.append(
                    PartitionAssignment(
                        topic_id=topic.name,
                        partition_id=partition.id,
                        new_leader=replicas[0],
                        new_replicas=replicas,
                        new_isr=list(replicas),
                        new_epoch=partition.epoch + 1,
                    )
                )
                broker_index = (broker_index + 1) % len(brokers)
        return assignments

    def update_favorite(self, alive_brokers: Iterable[BrokerInfo]) -> list[PartitionAssignment]:
        """Move leadership back to each partition's first replica when it is able."""
        alive = {broker.id for broker in alive_brokers}
        assignments: list[PartitionAssignment] = []
        for topic in self.metadata.topics.values():
            for partition in topic.partitions.values():
                if not partition.leader or not partition.replicas:
                    continue
                favorite = partition.replicas[0]
                if (
                    partition.leader != favorite
                    and favorite in partition.isr
                    and favorite in alive
                ):
                    assignments.append(
                        PartitionAssignment(
                            topic_id=topic.name,
                            partition_id=partition.id,
                            new_leader=favorite,
                            new_replicas=list(partition.replicas),
                            new_isr=list(partition.isr),
                            new_epoch=partition.epoch + 1,
                        )
                    )
        return assignments

    def _submit_assignments(self, assignments: list[PartitionAssignment]) -> None:
        if assignments:
            self.submit_command(ChangePartitionLeaderCommand(assignments=assignments))

    def remove_from_isr(self, broker_id: str) -> None:
        for topic in self.metadata.topics.values():
            for partition in topic.partitions.values():
                partition.isr = [member for member in partition.isr if member != broker_id]

    def broker_fail_over(self, leader_id: str) -> None:
        """Elect new leaders for the partitions led by a dead broker."""
        brokers = self.metadata.brokers
        if not brokers:
            return
        assignments: list[PartitionAssignment] = []
        for topic in self.metadata.topics.values():
            for partition in topic.partitions.values():
                if partition.leader != leader_id:
                    continue
                current = brokers.get(partition.leader)
                if current is not None and current.alive:
                    continue
                new_leader = next(
                    (
                        replica
                        for replica in partition.isr
                        if replica in brokers
                        and brokers[replica].alive
                        and replica != partition.leader
                    ),
                    "",
                )
                if not new_leader:
                    logger.critical(
                        "no live replica in ISR for topic %s, partition %d %s; partition is offline",
                        topic.name,
                        partition.id,
                        partition.isr,
                    )
                    continue
                assignments.append(
                    PartitionAssignment(
                        topic_id=topic.name,
                        partition_id=partition.id,
                        new_leader=new_leader,
                        new_replicas=list(partition.replicas),
                        new_isr=[member for member in partition.isr if member != leader_id],
                        new_epoch=partition.epoch + 1,
                    )
                )
        self._submit_assignments(assignments)

    # -- brokers ---------------------------------------------------------

    def clean_dead_sessions(self, now: float | None = None) -> None:
        """On the leader, mark brokers silent for longer than the timeout as dead."""
        if not self.raft.is_leader():
            return
        if now is None:
            now = time.time()
        if now - self.startup_time < self.grace_period:
            return
        for broker in list(self.metadata.brokers.values()):
            if broker.alive and now - broker.last_seen > self.timeout:
                logger.info("found dead broker %s (controller %s)", broker.id, self.id)
                self.submit_command(
                    UpdateBrokerCommand(
                        id=broker.id,
                        address=broker.address,
                        last_seen=broker.last_seen,
                        alive=False,
                    )
                )

    def broker_heartbeat(self, broker_id: str) -> None:
        self.check_leader()
        broker = self.metadata.brokers.get(broker_id)
        if broker is None:
            raise ControllerError(f"cannot find broker with id: {broker_id}")
        was_alive = broker.alive
        broker.alive = True
        broker.last_seen = time.time()
        if not was_alive:
            logger.info("reviving broker %s", broker_id)
            self.submit_command(
                UpdateBrokerCommand(
                    id=broker.id,
                    address=broker.address,
                    last_seen=broker.last_seen,
                    alive=True,
                )
            )

    def broker_metadata(self, index: int) -> list[LogEntry]:
        return self.raft.log_from_index(index)

    def register_broker(self, broker_id: str, address: str) -> LogEntry | None:
        return self.submit_command(
            RegisterBrokerCommand(id=broker_id, address=address, last_seen=time.time(), alive=True)
        )

    def submit_command(self, command: Command) -> LogEntry | None:
        """Append a command to the raft log; on a follower raise a redirect error."""
        try:
            return self.raft.submit_command(command)
        except NotLeaderError:
            self.check_leader()
            return None

    def check_leader(self) -> None:
        """Return if this node leads; otherwise raise an error naming the leader."""
        if self.raft.is_leader():
            return
        leader = self.raft.leader()
        if not leader:
            raise LeaderUnavailableError("no leader available")
        address = self.raft.get_address(leader)
        if address is None:
            raise LeaderUnavailableError(f"leader address not found: {leader} ")
        raise NotControllerLeaderError(leader, address)

    def reset_startup_time(self) -> None:
        self.startup_time = time.time()