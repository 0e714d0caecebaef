"""Handlers for the calls a Raft node receives from its peers and its service."""

from __future__ import annotations

import enum
import logging
import queue
import time

from raftkv.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    LogEntry,
    Op,
    RequestVoteArgs,
    RequestVoteReply,
)
from raftkv.raftlog import RaftInvariantError, RaftState, Role

logger = logging.getLogger(__name__)

APP_DISCONNECTED = 0
"""``app_state`` of a reply that never reached the peer."""

APP_NORMAL = 1
"""``app_state`` of a reply the peer actually produced."""

STALE_TERM_NEXT_INDEX = -100
"""``update_next_index`` sent back when the leader's term is stale."""


class VoteState(enum.IntEnum):
    """Why a vote was or was not granted."""

    KILLED = 0
    VOTED = 1
    EXPIRE = 2
    NORMAL = 3


class RaftHandlers:
    """Answers AppendEntries, RequestVote and InstallSnapshot calls and accepts commands.

    Installed snapshots are handed to the service through ``apply_queue``.
    """

    def __init__(self, state: RaftState, apply_queue: queue.Queue[ApplyMsg]) -> None:
        self.state = state
        self.apply_queue = apply_queue

    def _step_down(self, term: int) -> None:
        self.state.role = Role.FOLLOWER
        self.state.current_term = term
        self.state.voted_for = -1

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        """Handle log replication or a heartbeat from a leader."""
        st = self.state
        with st.lock:
            reply = AppendEntriesReply(app_state=APP_NORMAL)
            if args.term < st.current_term:
                reply.success = False
                reply.term = st.current_term
                reply.update_next_index = STALE_TERM_NEXT_INDEX
                logger.debug(
                    "[rf%d] rejects AppendEntries from %d: term %d < %d",
                    st.me,
                    args.leader_id,
                    args.term,
                    st.current_term,
                )
                return reply
            try:
                self._append_entries_locked(args, reply)
            finally:
                st.persist()
            return reply

    def _append_entries_locked(self, args: AppendEntriesArgs, reply: AppendEntriesReply) -> None:
        st = self.state
        if args.term > st.current_term:
            self._step_down(args.term)
        if args.term != st.current_term:
            raise RaftInvariantError("assert {args.Term == rf.currentTerm} fail")
        st.role = Role.FOLLOWER
        st.last_reset_election_time = time.monotonic()

        reply.term = st.current_term
        reply.success = False
        if args.prev_log_index > st.last_log_index():
            reply.update_next_index = st.last_log_index() + 1
            return
        if args.prev_log_index < st.last_snapshot_include_index:
            reply.update_next_index = st.last_snapshot_include_index + 1
            return

        if st.match_log(args.prev_log_index, args.prev_log_term):
            for entry in args.entries:
                if entry.log_index > st.last_log_index():
                    st.logs.append(entry)
                    continue
                position = st.slice_index(entry.log_index)
                current = st.logs[position]
                if current.log_term == entry.log_term and current.command != entry.command:
                    raise RaftInvariantError(
                        f"[rf{st.me}] logIndex {entry.log_index} and term {entry.log_term} match "
                        f"but commands differ: {current.command!r} vs {entry.command!r}"
                    )
                if current.log_term != entry.log_term:
                    st.logs[position] = entry

            if st.last_log_index() < args.prev_log_index + len(args.entries):
                raise RaftInvariantError(
                    f"[rf{st.me}] lastLogIndex {st.last_log_index()} < prevLogIndex "
                    f"{args.prev_log_index} + len(entries) {len(args.entries)}"
                )
            if args.leader_commit > st.commit_index:
                st.commit_index = min(args.leader_commit, st.last_log_index())
            if st.last_log_index() < st.commit_index:
                raise RaftInvariantError(
                    f"[rf{st.me}] lastLogIndex {st.last_log_index()} < commitIndex {st.commit_index}"
                )
            reply.success = True
            return

        # Skip back over the whole conflicting term in one step.
        reply.update_next_index = args.prev_log_index
        conflict_term = st.log_term_at(args.prev_log_index)
        for index in range(args.prev_log_index, st.last_snapshot_include_index - 1, -1):
            if st.log_term_at(index) != conflict_term:
                reply.update_next_index = index + 1
                break

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Decide whether to vote for a candidate."""
        st = self.state
        with st.lock:
            try:
                return self._request_vote_locked(args)
            finally:
                st.persist()

    def _request_vote_locked(self, args: RequestVoteArgs) -> RequestVoteReply:
        st = self.state
        if args.term < st.current_term:
            return RequestVoteReply(term=st.current_term, vote_state=VoteState.EXPIRE, vote_granted=False)
        if args.term > st.current_term:
            self._step_down(args.term)
        if args.term != st.current_term:
            raise RaftInvariantError(f"[rf{st.me}] args.Term != rf.currentTerm after update")

        if not st.up_to_date(args.last_log_index, args.last_log_term):
            return RequestVoteReply(term=st.current_term, vote_state=VoteState.VOTED, vote_granted=False)
        if st.voted_for not in (-1, args.candidate_id):
            return RequestVoteReply(term=st.current_term, vote_state=VoteState.VOTED, vote_granted=False)
        st.voted_for = args.candidate_id
        st.last_reset_election_time = time.monotonic()
        return RequestVoteReply(term=st.current_term, vote_state=VoteState.NORMAL, vote_granted=True)

    def install_snapshot(self, args: InstallSnapshotRequest) -> InstallSnapshotResponse:
        """Replace the log prefix with a snapshot sent by the leader."""
        st = self.state
        with st.lock:
            reply = InstallSnapshotResponse()
            if args.term < st.current_term:
                reply.term = st.current_term
                return reply
            if args.term > st.current_term:
                self._step_down(args.term)
                st.persist()
            st.role = Role.FOLLOWER
            st.last_reset_election_time = time.monotonic()
            if args.last_snapshot_include_index <= st.last_snapshot_include_index:
                return reply

            if st.last_log_index() > args.last_snapshot_include_index:
                st.logs = st.logs[st.slice_index(args.last_snapshot_include_index) + 1 :]
            else:
                st.logs = []
            st.commit_index = max(st.commit_index, args.last_snapshot_include_index)
            st.last_applied = max(st.last_applied, args.last_snapshot_include_index)
            st.last_snapshot_include_index = args.last_snapshot_include_index
            st.last_snapshot_include_term = args.last_snapshot_include_term

            reply.term = st.current_term
            self.apply_queue.put(
                ApplyMsg(
                    snapshot_valid=True,
                    snapshot=args.data,
                    snapshot_term=args.last_snapshot_include_term,
                    snapshot_index=args.last_snapshot_include_index,
                )
            )
            st.persister.save(st.persist_data(), args.data)
            return reply

    def cond_install_snapshot(self, last_included_term: int, last_included_index: int, snapshot: str) -> bool:
        """Whether the service may install a snapshot it received; always True."""
        return True

    def start(self, command: Op) -> tuple[int, int, bool]:
        """Append ``command`` to the log if this node leads.

        Returns the new entry's index and term and whether this node is the
        leader; ``(-1, -1, False)`` when it is not.
        """
        st = self.state
        with st.lock:
            if st.role is not Role.LEADER:
                logger.debug("[rf%d] start: not leader", st.me)
                return -1, -1, False
            entry = LogEntry(command=command.as_string(), log_term=st.current_term, log_index=st.new_command_index())
            st.logs.append(entry)
            logger.debug("[rf%d] start: lastLogIndex %d", st.me, st.last_log_index())
            st.persist()
            return entry.log_index, entry.log_term, True

    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this node believes it leads."""
        st = self.state
        with st.lock:
            return st.current_term, st.role is Role.LEADER