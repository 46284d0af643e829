"""Consumer groups: join windows, leader election, assignment sync and liveness."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

DEAD_SESSION_TIMEOUT = 15.0
SYNC_MAX_RETRIES = 5
SYNC_RETRY_STEP = 0.1

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


class ConsumerGroupError(Exception):
    """Raised when a consumer group operation cannot be carried out."""


@dataclass(frozen=True)
class BrokerAddress:
    id: str
    address: str


@dataclass
class ConsumerSession:
    id: str
    topics: list[str] = field(default_factory=list)
    partitions: list[Any] = field(default_factory=list)
    last_heartbeat: float = 0.0


@dataclass
class SessionInfo:
    id: str
    topics: list[str] = field(default_factory=list)
    assignments: list[Any] = field(default_factory=list)
    leader: bool = False


@dataclass
class RegisterResponse:
    success: bool
    leader: str = ""
    error_message: str = ""
    all_topics: list[str] = field(default_factory=list)
    consumers: list[SessionInfo] = field(default_factory=list)


def fnv1a_32(data: bytes | str) -> int:
    """32-bit FNV-1a hash."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    value = _FNV_OFFSET
    for byte in data:
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value


def group_coordinator(
    group_id: str, brokers: Iterable[BrokerAddress] | Mapping[str, BrokerAddress]
) -> tuple[str, str]:
    """Pick the coordinating broker for a group; return its (address, id)."""
    if isinstance(brokers, Mapping):
        brokers = brokers.values()
    ordered = sorted(brokers, key=lambda broker: broker.id)
    if not ordered:
        raise ConsumerGroupError("no brokers found")
    chosen = ordered[fnv1a_32(group_id) % len(ordered)]
    return chosen.address, chosen.id


class ConsumerGroup:
    """Membership and partition assignments of one consumer group."""

    def __init__(self, group_id: str, joining_duration: float) -> None:
        self.id = group_id
        self.joining_duration = joining_duration
        self.leader_id = ""
        self.topic_list: dict[str, None] = {}
        self.consumers: dict[str, ConsumerSession] = {}
        self.in_sync = False
        self._window: asyncio.Future | None = None

    @property
    def joining(self) -> bool:
        return self._window is not None and not self._window.done()

    def _open_window(self) -> asyncio.Future:
        """Start a join window unless one is open; return the open window."""
        if self.joining:
            return self._window
        self.consumers = {}
        self.topic_list = {}
        self.in_sync = False
        loop = asyncio.get_running_loop()
        window = loop.create_future()
        self._window = window
        loop.call_later(self.joining_duration, self._close_window, window)
        return window

    @staticmethod
    def _close_window(window: asyncio.Future) -> None:
        if not window.done():
            window.set_result(None)

    async def reset(self) -> None:
        """Open (or join) a join window and wait until it closes."""
        await asyncio.shield(self._open_window())

    def add_consumer(self, consumer_id: str, topics: Iterable[str]) -> None:
        """Admit a consumer during the join window."""
        if not self.joining:
            raise ConsumerGroupError(f"group {self.id} is not accepting members")
        session = self.consumers.get(consumer_id) or ConsumerSession(consumer_id)
        session.topics = list(topics)
        session.last_heartbeat = time.monotonic()
        if not self.leader_id:
            self.leader_id = consumer_id
        self.add_topics(session.topics)
        self.consumers[consumer_id] = session

    def register_response(self, consumer_id: str) -> RegisterResponse:
        """Describe the group as it stands after a join window."""
        if not self.topic_list:
            return RegisterResponse(success=False, error_message="cannot find topics")
        return RegisterResponse(
            success=True,
            leader=self.leader_id,
            all_topics=list(self.topic_list),
            consumers=[
                SessionInfo(id=session.id, topics=list(session.topics))
                for session in self.consumers.values()
            ],
        )

    def add_topics(self, topics: Iterable[str]) -> None:
        for topic in topics:
            self.topic_list[topic] = None

    def sync_group(self, consumers: Iterable[SessionInfo]) -> None:
        """Store the leader's assignments and mark the group in sync."""
        for info in consumers:
            session = self.consumers.get(info.id)
            if session is None:
                raise ConsumerGroupError(f"cannot find consumer with id: {info.id}")
            session.partitions = list(info.assignments)
        self.in_sync = True

    async def user_assignment(self, consumer_id: str, max_retries: int) -> SessionInfo:
        """Wait for the leader's sync, then return the consumer's assignment."""
        retries = 0
        while not self.in_sync:
            if retries >= max_retries:
                raise ConsumerGroupError("max retries without syncgroup of leader")
            retries += 1
            await asyncio.sleep(retries * SYNC_RETRY_STEP)
        session = self.consumers.get(consumer_id)
        if session is None:
            raise ConsumerGroupError(f"cannot find consumer with id: {consumer_id}")
        return SessionInfo(
            id=session.id,
            topics=list(session.topics),
            assignments=list(session.partitions),
            leader=session.id == self.leader_id,
        )

    def heartbeat(self, consumer_id: str) -> None:
        session = self.consumers.get(consumer_id)
        if session is not None:
            session.last_heartbeat = time.monotonic()

    def clear_dead_sessions(self, now: float | None = None) -> None:
        """Drop consumers silent for longer than the dead-session timeout."""
        if now is None:
            now = time.monotonic()
        dead = [
            session.id
            for session in self.consumers.values()
            if now - session.last_heartbeat > DEAD_SESSION_TIMEOUT
        ]
        for consumer_id in dead:
            self.unregister(consumer_id)

    def unregister(self, consumer_id: str) -> None:
        self.consumers.pop(consumer_id, None)


class ConsumerGroupRegistry:
    """All consumer groups coordinated by one broker."""

    def __init__(self, joining_duration: float) -> None:
        self.joining_duration = joining_duration
        self.groups: dict[str, ConsumerGroup] = {}

    def get_or_create(self, group_id: str) -> ConsumerGroup:
        group = self.groups.get(group_id)
        if group is None:
            group = ConsumerGroup(group_id, self.joining_duration)
            self.groups[group_id] = group
        return group

    async def register_consumer(
        self, consumer_id: str, group_id: str, topics: Iterable[str]
    ) -> RegisterResponse:
        """Join the group's current window and report membership once it closes."""
        group = self.get_or_create(group_id)
        window = group._open_window()
        group.add_consumer(consumer_id, topics)
        await asyncio.shield(window)
        return group.register_response(consumer_id)

    async def sync_group(
        self, consumer_id: str, group_id: str, consumers: Iterable[SessionInfo]
    ) -> SessionInfo:
        """Apply the leader's assignments (if the caller leads) and return the caller's."""
        group = self.get_or_create(group_id)
        if group.leader_id == consumer_id:
            group.sync_group(consumers)
        return await group.user_assignment(consumer_id, SYNC_MAX_RETRIES)

    def heartbeat(self, consumer_id: str, group_id: str) -> None:
        self.get_or_create(group_id).heartbeat(consumer_id)

    def cleanup_dead_sessions(self) -> None:
        for group in self.groups.values():
            group.clear_dead_sessions()