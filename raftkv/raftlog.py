"""The state of a Raft node and the operations on its log.

Log indexes are logical: the first entry has index 1, and entries up to
``last_snapshot_include_index`` have been folded into a snapshot and are no
longer held in ``logs``.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
from typing import Any

from raftkv.messages import ApplyMsg, LogEntry, decode_message, encode_message
from raftkv.persister import Persister
from raftkv.wire import WireError

logger = logging.getLogger(__name__)


class Role(enum.Enum):
    """The role a node currently plays."""

    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"


class RaftInvariantError(RuntimeError):
    """Raised when the node's state breaks a Raft invariant."""


class RaftState:
    """Persistent and volatile state of node ``me`` in a cluster of ``peer_count``.

    ``lock`` guards the state; callers hold it around every method.
    """

    def __init__(self, me: int, peer_count: int, persister: Persister) -> None:
        self.lock = threading.Lock()
        self.me = me
        self.persister = persister
        self.current_term = 0
        self.voted_for = -1
        self.logs: list[LogEntry] = []
        self.commit_index = 0
        self.last_applied = 0
        self.next_index = [0] * peer_count
        self.match_index = [0] * peer_count
        self.role = Role.FOLLOWER
        self.last_snapshot_include_index = 0
        self.last_snapshot_include_term = 0
        now = time.monotonic()
        self.last_reset_election_time = now
        self.last_reset_heartbeat_time = now

    @property
    def peer_count(self) -> int:
        """Number of nodes in the cluster, this one included."""
        return len(self.next_index)

    @staticmethod
    def _check(condition: bool, message: str) -> None:
        if not condition:
            raise RaftInvariantError(message)

    def last_log_index(self) -> int:
        """Logical index of the newest entry, or the snapshot index if the log is empty."""
        return self.logs[-1].log_index if self.logs else self.last_snapshot_include_index

    def last_log_term(self) -> int:
        """Term of the newest entry, or the snapshot term if the log is empty."""
        return self.logs[-1].log_term if self.logs else self.last_snapshot_include_term

    def log_term_at(self, log_index: int) -> int:
        """Term of the entry at ``log_index``, which may be the snapshot point."""
        self._check(
            log_index >= self.last_snapshot_include_index,
            f"[rf{self.me}] index {log_index} < lastSnapshotIncludeIndex {self.last_snapshot_include_index}",
        )
        last = self.last_log_index()
        self._check(log_index <= last, f"[rf{self.me}] logIndex {log_index} > lastLogIndex {last}")
        if log_index == self.last_snapshot_include_index:
            return self.last_snapshot_include_term
        return self.logs[self.slice_index(log_index)].log_term

    def slice_index(self, log_index: int) -> int:
        """Position in ``logs`` of the entry with logical index ``log_index``."""
        self._check(
            log_index > self.last_snapshot_include_index,
            f"[rf{self.me}] index {log_index} <= lastSnapshotIncludeIndex {self.last_snapshot_include_index}",
        )
        last = self.last_log_index()
        self._check(log_index <= last, f"[rf{self.me}] logIndex {log_index} > lastLogIndex {last}")
        return log_index - self.last_snapshot_include_index - 1

    def match_log(self, log_index: int, log_term: int) -> bool:
        """Whether the entry at ``log_index`` has term ``log_term``."""
        last = self.last_log_index()
        self._check(
            self.last_snapshot_include_index <= log_index <= last,
            f"logIndex {log_index} outside [{self.last_snapshot_include_index}, {last}]",
        )
        return log_term == self.log_term_at(log_index)

    def up_to_date(self, index: int, term: int) -> bool:
        """Whether a log ending at ``(index, term)`` is at least as new as this one."""
        last_term = self.last_log_term()
        return term > last_term or (term == last_term and index >= self.last_log_index())

    def new_command_index(self) -> int:
        """Logical index a newly started command will get."""
        return self.last_log_index() + 1

    def prev_log_info(self, server: int) -> tuple[int, int]:
        """Index and term of the entry preceding what ``server`` is sent next."""
        next_index = self.next_index[server]
        if next_index == self.last_snapshot_include_index + 1:
            return self.last_snapshot_include_index, self.last_snapshot_include_term
        prev_index = next_index - 1
        return prev_index, self.logs[self.slice_index(prev_index)].log_term

    def persist_data(self) -> str:
        """Serialise the state that must survive a restart."""
        return json.dumps(
            {
                "current_term": self.current_term,
                "voted_for": self.voted_for,
                "last_snapshot_include_index": self.last_snapshot_include_index,
                "last_snapshot_include_term": self.last_snapshot_include_term,
                "logs": [encode_message(entry).decode("utf-8") for entry in self.logs],
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def read_persist(self, data: str) -> None:
        """Restore state written by :meth:`persist_data`; empty ``data`` is ignored.

        Raises :class:`~raftkv.wire.WireError` if ``data`` is malformed.
        """
        if not data:
            return
        try:
            payload: Any = json.loads(data)
            fields = {
                name: payload[name]
                for name in ("current_term", "voted_for", "last_snapshot_include_index", "last_snapshot_include_term")
            }
            raw_logs = payload["logs"]
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise WireError("malformed raft state") from exc
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in fields.values()):
            raise WireError("malformed raft state")
        if not isinstance(raw_logs, list) or not all(isinstance(item, str) for item in raw_logs):
            raise WireError("malformed raft state")
        logs = [decode_message(LogEntry, item.encode("utf-8")) for item in raw_logs]

        self.current_term = fields["current_term"]
        self.voted_for = fields["voted_for"]
        self.last_snapshot_include_index = fields["last_snapshot_include_index"]
        self.last_snapshot_include_term = fields["last_snapshot_include_term"]
        self.logs = logs
        if self.last_snapshot_include_index > 0:
            self.last_applied = self.last_snapshot_include_index

    def persist(self) -> None:
        """Write the persistent state through the persister."""
        self.persister.save_raft_state(self.persist_data())

    def snapshot(self, index: int, snapshot: str) -> bool:
        """Fold the log up to ``index`` into ``snapshot``.

        Returns False, changing nothing, when ``index`` is not newer than the
        current snapshot or is not yet committed.
        """
        if self.last_snapshot_include_index >= index or index > self.commit_index:
            logger.debug(
                "[rf%d] rejects snapshot at %d; current snapshot index %d",
                self.me,
                index,
                self.last_snapshot_include_index,
            )
            return False
        last = self.last_log_index()
        position = self.slice_index(index)
        new_term = self.logs[position].log_term
        self.logs = self.logs[position + 1 :]
        self.last_snapshot_include_index = index
        self.last_snapshot_include_term = new_term
        self.commit_index = max(self.commit_index, index)
        self.last_applied = max(self.last_applied, index)
        self.persister.save(self.persist_data(), snapshot)
        logger.debug("[rf%d] snapshot index %d term %d loglen %d", self.me, index, new_term, len(self.logs))
        self._check(
            len(self.logs) + self.last_snapshot_include_index == last,
            f"len(logs) {len(self.logs)} + snapshot index {self.last_snapshot_include_index} != {last}",
        )
        return True

    def apply_logs(self) -> list[ApplyMsg]:
        """Return messages for entries committed but not yet applied, marking them applied."""
        last = self.last_log_index()
        self._check(self.commit_index <= last, f"[rf{self.me}] commitIndex {self.commit_index} > lastLogIndex {last}")
        messages: list[ApplyMsg] = []
        while self.last_applied < self.commit_index:
            self.last_applied += 1
            entry = self.logs[self.slice_index(self.last_applied)]
            self._check(
                entry.log_index == self.last_applied,
                f"logs entry index {entry.log_index} != lastApplied {self.last_applied}",
            )
            messages.append(
                ApplyMsg(command_valid=True, snapshot_valid=False, command=entry.command, command_index=self.last_applied)
            )
        return messages

    def leader_update_commit_index(self) -> None:
        """Advance the commit index to the newest current-term entry held by a majority."""
        self.commit_index = self.last_snapshot_include_index
        majority = self.peer_count // 2 + 1
        for index in range(self.last_log_index(), self.last_snapshot_include_index, -1):
            holders = sum(1 for peer, matched in enumerate(self.match_index) if peer == self.me or matched >= index)
            if holders >= majority and self.log_term_at(index) == self.current_term:
                self.commit_index = index
                break

    def raft_state_size(self) -> int:
        """Size of the persisted Raft state."""
        return self.persister.raft_state_size()