"""Messages exchanged between raft nodes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any, TypeVar

_T = TypeVar("_T", bound="_Wire")


class _Wire:
    """Conversion between a message and a plain mapping."""

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls: type[_T], data: Mapping[str, Any]) -> _T:
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class LogEntry(_Wire):
    """One entry of the replicated log; ``command`` is opaque to raft."""

    term: int = 0
    index: int = 0
    command: Any = None


@dataclass
class VoteRequest(_Wire):
    candidate_id: str = ""
    term: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class VoteResponse(_Wire):
    term: int = 0
    vote: bool = False


@dataclass
class AppendEntriesRequest(_Wire):
    term: int = 0
    leader_id: str = ""
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["entries"] = [entry.to_dict() for entry in self.entries]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AppendEntriesRequest:
        request = super().from_dict(data)
        request.entries = [
            entry if isinstance(entry, LogEntry) else LogEntry.from_dict(entry)
            for entry in request.entries
        ]
        return request


@dataclass
class AppendEntriesResponse(_Wire):
    term: int = 0
    success: bool = False
    index: int = 0