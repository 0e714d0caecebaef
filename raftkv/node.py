"""A Raft node: its state, its handlers and its background tickers."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from typing import Any, Callable, Optional, Sequence

from raftkv.channel import SERVICE_NAME
from raftkv.handlers import RaftHandlers
from raftkv.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    RequestVoteArgs,
    RequestVoteReply,
)
from raftkv.persister import Persister
from raftkv.raftlog import RaftState, Role
from raftkv.replication import RaftReplication, Spawn

logger = logging.getLogger(__name__)

_MIN_SLEEP = 0.001


class Raft:
    """Node ``me`` of a cluster whose stubs are ``peers``.

    State saved by ``persister`` is restored on creation. Committed commands
    and installed snapshots are delivered on ``apply_queue``. Times are in
    seconds; ``election_timeout`` is the range a randomised timeout is drawn
    from.
    """

    service_name = SERVICE_NAME

    def __init__(
        self,
        peers: Sequence[Any],
        me: int,
        persister: Persister,
        apply_queue: queue.Queue[ApplyMsg],
        *,
        heartbeat_timeout: float = 0.025,
        election_timeout: tuple[float, float] = (0.3, 0.5),
        apply_interval: float = 0.01,
        spawn: Optional[Spawn] = None,
    ) -> None:
        low, high = election_timeout
        if not 0 < low <= high:
            raise ValueError("election_timeout must be a range of positive durations")
        if heartbeat_timeout <= 0 or apply_interval <= 0:
            raise ValueError("heartbeat_timeout and apply_interval must be positive")
        self.me = me
        self.peers = list(peers)
        self.persister = persister
        self.apply_queue = apply_queue
        self.heartbeat_timeout = heartbeat_timeout
        self.election_timeout = (low, high)
        self.apply_interval = apply_interval

        self.state = RaftState(me, len(self.peers), persister)
        with self.state.lock:
            self.state.read_persist(persister.read_raft_state())
        logger.debug(
            "[init] server %d, term %d, snapshot index %d, snapshot term %d",
            me,
            self.state.current_term,
            self.state.last_snapshot_include_index,
            self.state.last_snapshot_include_term,
        )
        self.handlers = RaftHandlers(self.state, apply_queue)
        self.replication = RaftReplication(self.state, self.peers, spawn=spawn)
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

    def _randomized_election_timeout(self) -> float:
        return random.uniform(*self.election_timeout)

    def start_background(self) -> None:
        """Start the election, heartbeat and applier tickers on daemon threads."""
        if self._threads:
            raise RuntimeError("background tickers already running")
        self._stopped.clear()
        for name, target in (
            ("heartbeat", self.leader_heartbeat_ticker),
            ("election", self.election_timeout_ticker),
            ("applier", self.applier_ticker),
        ):
            thread = threading.Thread(target=target, name=f"raft-{self.me}-{name}", daemon=True)
            self._threads.append(thread)
            thread.start()

    def stop(self) -> None:
        """Stop the tickers and wait for their threads to finish."""
        self._stopped.set()
        threads, self._threads = self._threads, []
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join()

    def __enter__(self) -> Raft:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if the node was stopped."""
        return self._stopped.wait(seconds)

    def election_timeout_ticker(self) -> None:
        """Start an election whenever the election timer runs out, until stopped."""
        st = self.state
        while not self._stopped.is_set():
            while st.role is Role.LEADER:
                if self._sleep(self.heartbeat_timeout):
                    return
            with st.lock:
                wake = time.monotonic()
                sleep_for = self._randomized_election_timeout() + st.last_reset_election_time - wake
            if sleep_for > _MIN_SLEEP:
                logger.debug("[rf%d] election ticker sleeps %.1f ms", self.me, sleep_for * 1000)
                if self._sleep(sleep_for):
                    return
            with st.lock:
                reset_at = st.last_reset_election_time
            if reset_at > wake:
                continue
            if self._stopped.is_set():
                return
            self.replication.do_election()

    def leader_heartbeat_ticker(self) -> None:
        """While leading, send heartbeats every ``heartbeat_timeout``, until stopped."""
        st = self.state
        while not self._stopped.is_set():
            while st.role is not Role.LEADER:
                if self._sleep(self.heartbeat_timeout):
                    return
            with st.lock:
                wake = time.monotonic()
                sleep_for = self.heartbeat_timeout + st.last_reset_heartbeat_time - wake
            if sleep_for > _MIN_SLEEP:
                if self._sleep(sleep_for):
                    return
            with st.lock:
                reset_at = st.last_reset_heartbeat_time
            if reset_at > wake:
                continue
            if self._stopped.is_set():
                return
            self.replication.do_heartbeat()

    def applier_ticker(self) -> None:
        """Deliver newly committed commands to ``apply_queue``, until stopped."""
        st = self.state
        while not self._stopped.is_set():
            with st.lock:
                messages = st.apply_logs()
            if messages:
                logger.debug("[rf%d] applying %d messages", self.me, len(messages))
            for message in messages:
                self.apply_queue.put(message)
            if self._sleep(self.apply_interval):
                return

    def rpc_methods(self) -> dict[str, tuple[type, type, Callable[[Any], Any]]]:
        """The peer-to-peer methods this node serves, for an RPC provider."""
        return {
            "AppendEntries": (AppendEntriesArgs, AppendEntriesReply, self.handlers.append_entries),
            "InstallSnapshot": (InstallSnapshotRequest, InstallSnapshotResponse, self.handlers.install_snapshot),
            "RequestVote": (RequestVoteArgs, RequestVoteReply, self.handlers.request_vote),
        }