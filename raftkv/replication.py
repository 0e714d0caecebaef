"""Elections, heartbeats and log shipping driven by a Raft node.

Calls to peers are made without holding the state lock. Each call is
started through ``spawn``, which by default runs it on a daemon thread.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence

from raftkv.handlers import APP_DISCONNECTED, STALE_TERM_NEXT_INDEX
from raftkv.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    RequestVoteArgs,
    RequestVoteReply,
)
from raftkv.raftlog import RaftInvariantError, RaftState, Role

logger = logging.getLogger(__name__)

Spawn = Callable[..., None]


class _Peer(Protocol):
    def append_entries(self, args: AppendEntriesArgs) -> Optional[AppendEntriesReply]: ...

    def install_snapshot(self, args: InstallSnapshotRequest) -> Optional[InstallSnapshotResponse]: ...

    def request_vote(self, args: RequestVoteArgs) -> Optional[RequestVoteReply]: ...


def _spawn_thread(fn: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=fn, args=args, daemon=True).start()


@dataclass
class _Tally:
    """A counter shared by the calls of one election or one heartbeat round."""

    count: int = 1


class RaftReplication:
    """Sends RequestVote, AppendEntries and InstallSnapshot calls for one node.

    ``peers`` holds one stub per node, indexed by node number; the entry for
    this node itself is not used and may be None. A stub returns the peer's
    reply, or None when the call failed.
    """

    def __init__(
        self,
        state: RaftState,
        peers: Sequence[Optional[_Peer]],
        spawn: Optional[Spawn] = None,
    ) -> None:
        self.state = state
        self.peers = list(peers)
        self._spawn = spawn or _spawn_thread

    def _other_peers(self) -> list[int]:
        return [server for server in range(len(self.peers)) if server != self.state.me]

    def _step_down(self, term: int) -> None:
        st = self.state
        st.role = Role.FOLLOWER
        st.current_term = term
        st.voted_for = -1

    def do_election(self) -> None:
        """Become a candidate for the next term and ask every peer for a vote."""
        st = self.state
        tasks: list[tuple[int, RequestVoteArgs]] = []
        with st.lock:
            if st.role is Role.LEADER:
                return
            logger.debug("[rf%d] election timeout, starting election", st.me)
            st.role = Role.CANDIDATE
            st.current_term += 1
            st.voted_for = st.me
            st.persist()
            tally = _Tally(count=1)
            st.last_reset_election_time = time.monotonic()
            for server in self._other_peers():
                args = RequestVoteArgs(
                    term=st.current_term,
                    candidate_id=st.me,
                    last_log_index=st.last_log_index(),
                    last_log_term=st.last_log_term(),
                )
                tasks.append((server, args))
        for server, args in tasks:
            self._spawn(self.send_request_vote, server, args, tally)

    def do_heartbeat(self) -> None:
        """As leader, send every peer the entries it lacks, or a snapshot."""
        st = self.state
        tasks: list[tuple[Callable[..., Any], tuple[Any, ...]]] = []
        with st.lock:
            if st.role is not Role.LEADER:
                return
            append_nums = _Tally(count=1)
            for server in self._other_peers():
                next_index = st.next_index[server]
                if next_index < 1:
                    raise RaftInvariantError(f"rf.nextIndex[{server}] = {next_index}")
                if next_index <= st.last_snapshot_include_index:
                    tasks.append((self.leader_send_snapshot, (server,)))
                    continue
                prev_index, prev_term = st.prev_log_info(server)
                if prev_index != st.last_snapshot_include_index:
                    entries = st.logs[st.slice_index(prev_index) + 1 :]
                else:
                    entries = list(st.logs)
                args = AppendEntriesArgs(
                    term=st.current_term,
                    leader_id=st.me,
                    prev_log_index=prev_index,
                    prev_log_term=prev_term,
                    entries=entries,
                    leader_commit=st.commit_index,
                )
                last = st.last_log_index()
                if prev_index + len(entries) != last:
                    raise RaftInvariantError(
                        f"prevLogIndex {prev_index} + len(entries) {len(entries)} != lastLogIndex {last}"
                    )
                tasks.append((self.send_append_entries, (server, args, append_nums)))
            st.last_reset_heartbeat_time = time.monotonic()
        for fn, args in tasks:
            self._spawn(fn, *args)

    def send_request_vote(self, server: int, args: RequestVoteArgs, voted: Any) -> bool:
        """Ask ``server`` for a vote and count it in ``voted.count``.

        Returns False when the peer could not be reached. Winning a majority
        makes this node leader and starts a heartbeat at once.
        """
        st = self.state
        reply = self.peers[server].request_vote(args)
        if reply is None:
            return False
        became_leader = False
        with st.lock:
            if reply.term > st.current_term:
                self._step_down(reply.term)
                st.persist()
                return True
            if reply.term < st.current_term or not reply.vote_granted:
                return True
            voted.count += 1
            if voted.count >= st.peer_count // 2 + 1:
                voted.count = 0
                if st.role is Role.LEADER:
                    raise RaftInvariantError(f"[rf{st.me}] term {st.current_term}: elected leader twice")
                st.role = Role.LEADER
                last = st.last_log_index()
                logger.debug("[rf%d] elected, term %d, lastLogIndex %d", st.me, st.current_term, last)
                st.next_index = [last + 1] * st.peer_count
                st.match_index = [0] * st.peer_count
                st.persist()
                became_leader = True
        if became_leader:
            self._spawn(self.do_heartbeat)
        return True

    def send_append_entries(self, server: int, args: AppendEntriesArgs, append_nums: Any) -> bool:
        """Send ``args`` to ``server`` and act on the reply.

        ``append_nums.count`` counts the successful replies of this round;
        once a majority holds entries of the current term, they commit.
        Returns False when the peer could not be reached.
        """
        st = self.state
        reply = self.peers[server].append_entries(args)
        if reply is None:
            logger.debug("[rf%d] AppendEntries to %d failed", st.me, server)
            return False
        if reply.app_state == APP_DISCONNECTED:
            return True
        with st.lock:
            if reply.term > st.current_term:
                self._step_down(reply.term)
                return True
            if reply.term < st.current_term or st.role is not Role.LEADER:
                return True
            if not reply.success:
                if reply.update_next_index != STALE_TERM_NEXT_INDEX:
                    st.next_index[server] = reply.update_next_index
                return True

            append_nums.count += 1
            sent_up_to = args.prev_log_index + len(args.entries)
            st.match_index[server] = max(st.match_index[server], sent_up_to)
            st.next_index[server] = st.match_index[server] + 1
            last = st.last_log_index()
            if st.next_index[server] > last + 1:
                raise RaftInvariantError(
                    f"rf.nextIndex[{server}] {st.next_index[server]} > lastLogIndex+1 {last + 1}"
                )
            if append_nums.count >= 1 + st.peer_count // 2:
                append_nums.count = 0
                if args.entries and args.entries[-1].log_term == st.current_term:
                    st.commit_index = max(st.commit_index, sent_up_to)
                if st.commit_index > last:
                    raise RaftInvariantError(
                        f"[rf{st.me}] commitIndex {st.commit_index} > lastLogIndex {last}"
                    )
        return True

    def leader_send_snapshot(self, server: int) -> bool:
        """Send the stored snapshot to ``server``.

        Returns False when the peer could not be reached.
        """
        st = self.state
        with st.lock:
            args = InstallSnapshotRequest(
                leader_id=st.me,
                term=st.current_term,
                last_snapshot_include_index=st.last_snapshot_include_index,
                last_snapshot_include_term=st.last_snapshot_include_term,
                data=st.persister.read_snapshot(),
            )
        reply = self.peers[server].install_snapshot(args)
        if reply is None:
            return False
        with st.lock:
            if st.role is not Role.LEADER or st.current_term != args.term:
                return True
            if reply.term > st.current_term:
                self._step_down(reply.term)
                st.persist()
                st.last_reset_election_time = time.monotonic()
                return True
            st.match_index[server] = args.last_snapshot_include_index
            st.next_index[server] = st.match_index[server] + 1
        return True