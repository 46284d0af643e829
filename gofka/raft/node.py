"""Raft consensus node: elections, log replication and commit tracking."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from typing import Any

from gofka.raft.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    LogEntry,
    VoteRequest,
    VoteResponse,
)

logger = logging.getLogger(__name__)

BASE_ELECTION_TIMEOUT = 0.75
ELECTION_JITTER = 0.25
VOTE_WAIT = 0.15
HEARTBEAT_INTERVAL = 0.15
APPLY_INTERVAL = 0.25
SHUTDOWN_TIMEOUT = 5.0

SendAppend = Callable[[str, AppendEntriesRequest], Awaitable[AppendEntriesResponse]]
SendVote = Callable[[str, VoteRequest], Awaitable[VoteResponse]]


class State(str, enum.Enum):
    FOLLOWER = "Follower"
    CANDIDATE = "Candidate"
    LEADER = "Leader"


class NotLeaderError(Exception):
    """Raised when an operation needs this node to be the leader."""


class RaftNode:
    """One member of a raft cluster.

    ``peers`` maps node ids to addresses and may include this node itself;
    requests are sent through the given coroutines, addressed by node id.
    """

    def __init__(
        self,
        node_id: str,
        peers: Mapping[str, str],
        send_append_entries: SendAppend,
        send_vote_request: SendVote,
        *,
        apply: Callable[[LogEntry], Any] | None = None,
        on_become_leader: Callable[[], Any] | None = None,
        notify: Callable[[str, str, bytes], Any] | None = None,
        election_timeout: float | None = None,
    ) -> None:
        self.id = node_id
        self.peers = dict(peers)
        self.state = State.FOLLOWER
        self.current_term = 0
        self.voted_for = ""
        self.leader_id = ""
        self.log: list[LogEntry] = [LogEntry(term=0, index=0)]
        self.commit_index = 0
        self.last_applied = 0
        self.next_index: dict[str, int] = {}
        self.match_index: dict[str, int] = {}

        self._send_append = send_append_entries
        self._send_vote = send_vote_request
        self._apply = apply
        self._on_become_leader = on_become_leader
        self._notify_cb = notify
        self._fixed_timeout = election_timeout

        self._election_deadline: float | None = None
        self._timer_changed: asyncio.Event | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self._shutdown_started = False

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """Arm the election timer and start the background loops."""
        self._timer_changed = asyncio.Event()
        self._reset_election_timer()
        self._spawn(self._run_election_timer())
        self._spawn(self._run_apply())

    async def shutdown(self) -> None:
        """Stop every background task; raise TimeoutError if some hang."""
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self._closed = True
        self.stop_timers()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_TIMEOUT)
            if pending:
                raise TimeoutError("timeout: some tasks didn't finish within 5 seconds")

    def stop_timers(self) -> None:
        self._election_deadline = None
        self._signal_timer()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- timers ----------------------------------------------------------

    def _election_timeout(self) -> float:
        if self._fixed_timeout:
            return self._fixed_timeout
        return BASE_ELECTION_TIMEOUT + random.random() * ELECTION_JITTER

    def _signal_timer(self) -> None:
        if self._timer_changed is not None:
            self._timer_changed.set()

    def _reset_election_timer(self) -> None:
        self._election_deadline = time.monotonic() + self._election_timeout()
        self._signal_timer()

    async def _run_election_timer(self) -> None:
        while not self._closed:
            deadline = self._election_deadline
            self._timer_changed.clear()
            if deadline is None:
                await self._timer_changed.wait()
                continue
            delay = deadline - time.monotonic()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._timer_changed.wait(), delay)
                except asyncio.TimeoutError:
                    pass
                continue
            self._election_deadline = None
            await self.run_election()

    async def _run_heartbeat(self) -> None:
        while not self._closed:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            if self.state is not State.LEADER:
                return
            term = self.current_term
            for peer_id in self.peers:
                self._spawn(self._replicate(peer_id, term))
            self._notify("log_append", self._progress())

    async def _run_apply(self) -> None:
        while not self._closed:
            await asyncio.sleep(APPLY_INTERVAL)
            if self.last_applied >= self.commit_index:
                continue
            entries = self.log[self.last_applied + 1 : self.commit_index + 1]
            self.last_applied = self.commit_index
            if self._apply is None:
                continue
            for entry in entries:
                result = self._apply(entry)
                if inspect.isawaitable(result):
                    await result

    # -- elections -------------------------------------------------------

    async def run_election(self) -> None:
        """Stand for election in the next term and count the votes."""
        if self.state is State.LEADER:
            return
        self.state = State.CANDIDATE
        self.current_term += 1
        self.voted_for = self.id
        self._reset_election_timer()

        term = self.current_term
        last = self.log[-1]
        request = VoteRequest(
            candidate_id=self.id,
            term=term,
            last_log_index=len(self.log) - 1,
            last_log_term=last.term,
        )

        ballots: asyncio.Queue[bool] = asyncio.Queue()
        for peer_id in self.peers:
            self._spawn(self._collect_vote(peer_id, request, ballots))

        votes = 1
        for _ in self.peers:
            try:
                if await asyncio.wait_for(ballots.get(), VOTE_WAIT):
                    votes += 1
            except asyncio.TimeoutError:
                pass

        if self.state is State.CANDIDATE and self.current_term == term:
            if votes >= len(self.peers) // 2 + 1:
                self._become_leader()
                logger.info("node %s became leader with %d votes at term %d", self.id, votes, term)
            else:
                self._become_follower(self.current_term)

    async def _collect_vote(
        self, peer_id: str, request: VoteRequest, ballots: asyncio.Queue[bool]
    ) -> None:
        ballots.put_nowait(await self._request_vote(peer_id, request))

    async def _request_vote(self, peer_id: str, request: VoteRequest) -> bool:
        try:
            response = await self._send_vote(peer_id, request)
        except Exception as exc:
            logger.debug("vote request to %s failed: %s", peer_id, exc)
            return False
        if response.term > self.current_term:
            self._become_follower(response.term)
        return response.vote and response.term == request.term

    def _become_follower(self, term: int) -> None:
        self.state = State.FOLLOWER
        self.current_term = term
        self.voted_for = ""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        self._reset_election_timer()

    def _become_leader(self) -> None:
        self.state = State.LEADER
        last_index = len(self.log) - 1
        for peer_id in self.peers:
            self.next_index[peer_id] = last_index + 1
            self.match_index[peer_id] = 0
        self._election_deadline = None
        self._signal_timer()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._heartbeat_task = self._spawn(self._run_heartbeat())
        if self._on_become_leader is not None:
            self._on_become_leader()
        self._notify("leader", f"controller {self.id} just become leader".encode())

    def process_vote_request(self, request: VoteRequest) -> VoteResponse:
        """Decide whether to grant a vote to a candidate."""
        response = VoteResponse(term=self.current_term, vote=False)
        if request.term > self.current_term:
            self._become_follower(request.term)
        if (
            request.term == self.current_term
            and self.voted_for in ("", request.candidate_id)
            and self._is_log_up_to_date(request.last_log_index, request.last_log_term)
        ):
            self.voted_for = request.candidate_id
            response.vote = True
            self._reset_election_timer()
        response.term = self.current_term
        return response

    def _is_log_up_to_date(self, last_index: int, last_term: int) -> bool:
        my_index = len(self.log) - 1
        my_term = self.log[my_index].term
        if last_term != my_term:
            return last_term > my_term
        return last_index >= my_index

    # -- log -------------------------------------------------------------

    def process_append_request(self, request: AppendEntriesRequest) -> AppendEntriesResponse:
        """Accept entries (or a heartbeat) from the leader."""
        response = AppendEntriesResponse(term=self.current_term, success=False)
        if request.term < self.current_term:
            return response
        if request.term > self.current_term:
            self._become_follower(request.term)
        self._reset_election_timer()
        self.leader_id = request.leader_id

        if request.prev_log_index >= 0:
            if request.prev_log_index >= len(self.log):
                response.term = self.current_term
                return response
            if self.log[request.prev_log_index].term != request.prev_log_term:
                response.term = self.current_term
                return response

        insert_at = request.prev_log_index + 1
        for offset, entry in enumerate(request.entries):
            position = insert_at + offset
            if position < len(self.log):
                if self.log[position].term != entry.term:
                    self.log = self.log[:position] + list(request.entries[offset:])
                    break
            else:
                self.log.extend(request.entries[offset:])
                break

        if request.leader_commit > self.commit_index:
            self.commit_index = min(request.leader_commit, len(self.log) - 1)

        response.success = True
        response.index = len(self.log) - 1
        response.term = self.current_term
        self._notify("log_append", self._progress())
        return response

    def submit_command(self, command: Any) -> LogEntry:
        """Append a command to the leader's log; raise NotLeaderError elsewhere."""
        if self.state is not State.LEADER:
            raise NotLeaderError("not the leader")
        return self.init_log(command)

    def init_log(self, command: Any) -> LogEntry:
        """Append a command at the current term regardless of role."""
        entry = LogEntry(term=self.current_term, index=len(self.log), command=command)
        self.log.append(entry)
        return entry

    def append_log(self, entry: LogEntry) -> None:
        self.log.append(entry)

    def is_leader(self) -> bool:
        return self.state is State.LEADER

    def leader(self) -> str:
        return self.leader_id

    def get_address(self, node_id: str) -> str | None:
        return self.peers.get(node_id)

    def log_from_index(self, index: int) -> list[LogEntry]:
        """Return a copy of the log from ``index`` on."""
        if index < 0 or index > len(self.log):
            raise IndexError(f"invalid index: {index}")
        return list(self.log[index:])

    # -- replication -----------------------------------------------------

    def _prepare_append_entries(self, peer_id: str, term: int) -> AppendEntriesRequest:
        if self.state is not State.LEADER or self.current_term != term:
            raise NotLeaderError("not leader / invalid term")
        next_index = self.next_index.get(peer_id, 0)
        prev_index = next_index - 1
        if prev_index < 0 or prev_index >= len(self.log):
            raise IndexError("previous index is outside the log")
        return AppendEntriesRequest(
            term=self.current_term,
            leader_id=self.id,
            prev_log_index=prev_index,
            prev_log_term=self.log[prev_index].term,
            entries=list(self.log[next_index:]),
            leader_commit=self.commit_index,
        )

    async def send_append_entries(self, peer_id: str, term: int) -> None:
        """Replicate the log to one peer and update the commit index."""
        request = self._prepare_append_entries(peer_id, term)
        response = await self._send_append(peer_id, request)
        if self.state is not State.LEADER or self.current_term != term:
            raise NotLeaderError("not leader / invalid term")
        if response.term > self.current_term:
            self._become_follower(response.term)
            return
        if response.success:
            self.next_index[peer_id] = response.index + 1
            self.match_index[peer_id] = response.index
            self._update_commit_index()
        elif self.next_index.get(peer_id, 0) > 1:
            self.next_index[peer_id] -= 1

    async def _replicate(self, peer_id: str, term: int) -> None:
        try:
            await self.send_append_entries(peer_id, term)
        except Exception as exc:
            logger.debug("append entries to %s failed: %s", peer_id, exc)

    def _update_commit_index(self) -> None:
        if self.state is not State.LEADER:
            return
        for entry_index in range(self.commit_index + 1, len(self.log)):
            if self.log[entry_index].term != self.current_term:
                continue
            count = 1 + sum(
                1 for peer_id in self.peers if self.match_index.get(peer_id, 0) >= entry_index
            )
            if count > len(self.peers) // 2:
                self.commit_index = entry_index

    # -- reporting -------------------------------------------------------

    def _progress(self) -> bytes:
        return (
            f'{{"term": {self.current_term}, "leo": {self.commit_index}, '
            f'"last_applied": {self.last_applied}}}'
        ).encode()

    def _notify(self, action: str, data: bytes) -> None:
        if self._notify_cb is not None:
            self._notify_cb(action, self.id, data)