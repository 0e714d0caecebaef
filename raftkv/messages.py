"""Messages exchanged between Raft peers, the key/value service and clients."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, TypeVar

from raftkv.wire import WireError

OK = "OK"
ERR_NO_KEY = "ErrNoKey"
ERR_WRONG_LEADER = "ErrWrongLeader"

T = TypeVar("T")


@dataclass
class ApplyMsg:
    """A committed command or an installed snapshot handed to the service."""

    command_valid: bool = False
    command: str = ""
    command_index: int = -1
    snapshot_valid: bool = False
    snapshot: str = ""
    snapshot_term: int = -1
    snapshot_index: int = -1


@dataclass
class LogEntry:
    """One entry of the replicated log."""

    command: str = ""
    log_term: int = 0
    log_index: int = 0


@dataclass
class Op:
    """A client operation carried through the log as a command string."""

    operation: str = ""
    key: str = ""
    value: str = ""
    client_id: str = ""
    request_id: int = 0

    def as_string(self) -> str:
        """Serialise the operation for storage in a log entry."""
        return _dumps(self)

    @classmethod
    def parse(cls, text: str) -> Op:
        """Rebuild an operation from :meth:`as_string` output; raise ``ValueError`` if malformed."""
        return _from_dict(cls, json.loads(text))


@dataclass
class AppendEntriesArgs:
    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    term: int = 0
    success: bool = False
    update_next_index: int = 0
    app_state: int = 0


@dataclass
class RequestVoteArgs:
    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False
    vote_state: int = 0


@dataclass
class InstallSnapshotRequest:
    leader_id: int = 0
    term: int = 0
    last_snapshot_include_index: int = 0
    last_snapshot_include_term: int = 0
    data: str = ""


@dataclass
class InstallSnapshotResponse:
    term: int = 0


@dataclass
class GetArgs:
    key: str = ""
    client_id: str = ""
    request_id: int = 0


@dataclass
class GetReply:
    err: str = ""
    value: str = ""


@dataclass
class PutAppendArgs:
    key: str = ""
    value: str = ""
    op: str = ""
    client_id: str = ""
    request_id: int = 0


@dataclass
class PutAppendReply:
    err: str = ""


_MESSAGE_TYPES = frozenset(
    {
        ApplyMsg,
        LogEntry,
        Op,
        AppendEntriesArgs,
        AppendEntriesReply,
        RequestVoteArgs,
        RequestVoteReply,
        InstallSnapshotRequest,
        InstallSnapshotResponse,
        GetArgs,
        GetReply,
        PutAppendArgs,
        PutAppendReply,
    }
)

_NESTED_LISTS: dict[type, dict[str, type]] = {AppendEntriesArgs: {"entries": LogEntry}}


def _dumps(message: Any) -> str:
    return json.dumps(dataclasses.asdict(message), separators=(",", ":"), ensure_ascii=False)


def _expected_type(f: dataclasses.Field) -> type:
    return list if f.default is dataclasses.MISSING else type(f.default)


def _from_dict(cls: type[T], payload: Any) -> T:
    if not isinstance(payload, dict):
        raise WireError(f"{cls.__name__} must be encoded as an object")
    nested = _NESTED_LISTS.get(cls, {})
    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in payload:
            continue
        value = payload[f.name]
        expected = _expected_type(f)
        if (expected is int and isinstance(value, bool)) or not isinstance(value, expected):
            raise WireError(f"{cls.__name__}.{f.name} must be {expected.__name__}")
        if f.name in nested:
            value = [_from_dict(nested[f.name], item) for item in value]
        kwargs[f.name] = value
    return cls(**kwargs)


def encode_message(message: Any) -> bytes:
    """Serialise a message to bytes."""
    if type(message) not in _MESSAGE_TYPES:
        raise TypeError(f"not a message type: {type(message).__name__}")
    return _dumps(message).encode("utf-8")


def decode_message(cls: type[T], data: bytes) -> T:
    """Parse bytes produced by :func:`encode_message` into a ``cls`` instance.

    Missing fields take their defaults and unknown fields are ignored.
    """
    if cls not in _MESSAGE_TYPES:
        raise TypeError(f"not a message type: {getattr(cls, '__name__', cls)!r}")
    try:
        payload = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WireError(f"cannot decode {cls.__name__}") from exc
    return _from_dict(cls, payload)