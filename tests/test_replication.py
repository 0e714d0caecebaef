import time
from types import SimpleNamespace

import pytest

from raftkv.handlers import APP_DISCONNECTED, APP_NORMAL, STALE_TERM_NEXT_INDEX, RaftHandlers
from raftkv.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    InstallSnapshotResponse,
    LogEntry,
    RequestVoteArgs,
    RequestVoteReply,
)
from raftkv.persister import Persister
from raftkv.raftlog import RaftInvariantError, RaftState, Role
from raftkv.replication import RaftReplication


def make_state(tmp_path, me=0, n=3):
    return RaftState(me, n, Persister(me, tmp_path))


def leader_state(tmp_path, term=2, n=3, entry_terms=(1, 1, 2)):
    st = make_state(tmp_path, n=n)
    st.current_term = term
    st.role = Role.LEADER
    st.logs = [LogEntry(command=f"c{i}", log_term=t, log_index=i) for i, t in enumerate(entry_terms, start=1)]
    last = st.last_log_index()
    st.next_index = [last + 1] * n
    st.match_index = [0] * n
    return st


class FakePeer:
    def __init__(self, vote=None, append=None, snapshot=None):
        self.vote = vote
        self.append = append
        self.snapshot = snapshot
        self.calls = []

    def request_vote(self, args):
        self.calls.append(args)
        return self.vote

    def append_entries(self, args):
        self.calls.append(args)
        return self.append

    def install_snapshot(self, args):
        self.calls.append(args)
        return self.snapshot


class Collector:
    def __init__(self):
        self.spawned = []

    def __call__(self, fn, *args):
        self.spawned.append((fn, args))


def test_do_election_becomes_candidate_and_asks_peers(tmp_path):
    st = make_state(tmp_path)
    spawn = Collector()
    rep = RaftReplication(st, [None, FakePeer(), FakePeer()], spawn=spawn)
    before = st.current_term
    rep.do_election()
    assert st.role is Role.CANDIDATE
    assert st.current_term == before + 1
    assert st.voted_for == 0
    servers = [args[0] for _, args in spawn.spawned]
    assert servers == [1, 2]
    for fn, (server, args, tally) in spawn.spawned:
        assert fn == rep.send_request_vote
        assert args == RequestVoteArgs(term=st.current_term, candidate_id=0, last_log_index=0, last_log_term=0)
        assert tally.count == 1
    restored = make_state(tmp_path / "other") if False else None
    assert restored is None
    assert f'"current_term":{st.current_term}' in st.persister.read_raft_state()


def test_do_election_as_leader_does_nothing(tmp_path):
    st = leader_state(tmp_path)
    spawn = Collector()
    rep = RaftReplication(st, [None, FakePeer(), FakePeer()], spawn=spawn)
    term = st.current_term
    rep.do_election()
    assert st.current_term == term
    assert spawn.spawned == []


def test_vote_majority_makes_leader(tmp_path):
    st = make_state(tmp_path)
    st.current_term = 1
    st.role = Role.CANDIDATE
    st.logs = [LogEntry("a", 1, 1)]
    spawn = Collector()
    peer = FakePeer(vote=RequestVoteReply(term=1, vote_granted=True))
    rep = RaftReplication(st, [None, peer, FakePeer()], spawn=spawn)
    tally = SimpleNamespace(count=1)
    assert rep.send_request_vote(1, RequestVoteArgs(term=1), tally) is True
    assert st.role is Role.LEADER
    assert st.next_index == [st.last_log_index() + 1] * 3
    assert st.match_index == [0, 0, 0]
    assert tally.count == 0
    assert spawn.spawned == [(rep.do_heartbeat, ())]


def test_vote_denied_is_not_counted(tmp_path):
    st = make_state(tmp_path)
    st.current_term = 1
    st.role = Role.CANDIDATE
    rep = RaftReplication(st, [None, FakePeer(vote=RequestVoteReply(term=1, vote_granted=False)), None])
    tally = SimpleNamespace(count=1)
    rep.send_request_vote(1, RequestVoteArgs(term=1), tally)
    assert tally.count == 1
    assert st.role is Role.CANDIDATE


def test_vote_reply_with_higher_term_steps_down(tmp_path):
    st = make_state(tmp_path)
    st.current_term = 1
    st.role = Role.CANDIDATE
    st.voted_for = 0
    rep = RaftReplication(st, [None, FakePeer(vote=RequestVoteReply(term=4)), None])
    rep.send_request_vote(1, RequestVoteArgs(term=1), SimpleNamespace(count=1))
    assert st.role is Role.FOLLOWER
    assert st.current_term == 4
    assert st.voted_for == -1


def test_unreachable_peer_returns_false(tmp_path):
    st = make_state(tmp_path)
    st.current_term = 1
    rep = RaftReplication(st, [None, FakePeer(vote=None), None])
    tally = SimpleNamespace(count=1)
    assert rep.send_request_vote(1, RequestVoteArgs(term=1), tally) is False
    assert tally.count == 1


def test_second_majority_while_leader_is_invariant_error(tmp_path):
    st = leader_state(tmp_path, term=1, entry_terms=(1,))
    rep = RaftReplication(st, [None, FakePeer(vote=RequestVoteReply(term=1, vote_granted=True)), None])
    with pytest.raises(RaftInvariantError):
        rep.send_request_vote(1, RequestVoteArgs(term=1), SimpleNamespace(count=1))


def test_heartbeat_sends_missing_entries(tmp_path):
    st = leader_state(tmp_path)
    st.next_index[1] = 2
    spawn = Collector()
    rep = RaftReplication(st, [None, FakePeer(), FakePeer()], spawn=spawn)
    before = st.last_reset_heartbeat_time
    rep.do_heartbeat()
    sent = {args[0]: args[1] for _, args in spawn.spawned}
    assert sent[1].prev_log_index == 1
    assert sent[1].prev_log_term == st.logs[0].log_term
    assert sent[1].entries == st.logs[1:]
    assert sent[2].prev_log_index == st.last_log_index()
    assert sent[2].entries == []
    assert all(a.term == st.current_term and a.leader_commit == st.commit_index for a in sent.values())
    assert st.last_reset_heartbeat_time >= before


def test_heartbeat_from_snapshot_point_sends_whole_log(tmp_path):
    st = leader_state(tmp_path)
    st.next_index[1] = 1
    spawn = Collector()
    rep = RaftReplication(st, [None, FakePeer(), FakePeer()], spawn=spawn)
    rep.do_heartbeat()
    sent = {args[0]: args[1] for _, args in spawn.spawned}
    assert sent[1].prev_log_index == 0
    assert sent[1].entries == st.logs


def test_heartbeat_behind_snapshot_sends_snapshot(tmp_path):
    st = leader_state(tmp_path)
    st.last_snapshot_include_index = 2
    st.last_snapshot_include_term = 1
    st.logs = [LogEntry("c3", 2, 3)]
    st.next_index = [4, 2, 4]
    spawn = Collector()
    rep = RaftReplication(st, [None, FakePeer(), FakePeer()], spawn=spawn)
    rep.do_heartbeat()
    assert (rep.leader_send_snapshot, (1,)) in spawn.spawned
    assert [fn for fn, _ in spawn.spawned].count(rep.send_append_entries) == 1


def test_heartbeat_with_bad_next_index_is_invariant_error(tmp_path):
    st = leader_state(tmp_path)
    st.next_index[2] = 0
    rep = RaftReplication(st, [None, FakePeer(), FakePeer()], spawn=Collector())
    with pytest.raises(RaftInvariantError):
        rep.do_heartbeat()


def test_heartbeat_only_from_leader(tmp_path):
    st = make_state(tmp_path)
    spawn = Collector()
    RaftReplication(st, [None, FakePeer(), FakePeer()], spawn=spawn).do_heartbeat()
    assert spawn.spawned == []


def test_append_success_advances_match_and_commit(tmp_path):
    st = leader_state(tmp_path)
    reply = AppendEntriesReply(term=st.current_term, success=True, app_state=APP_NORMAL)
    rep = RaftReplication(st, [None, FakePeer(append=reply), None])
    args = AppendEntriesArgs(term=st.current_term, leader_id=0, entries=list(st.logs))
    tally = SimpleNamespace(count=1)
    assert rep.send_append_entries(1, args, tally) is True
    assert st.match_index[1] == st.last_log_index()
    assert st.next_index[1] == st.last_log_index() + 1
    assert st.commit_index == st.last_log_index()
    assert tally.count == 0


def test_append_success_of_old_term_entries_does_not_commit(tmp_path):
    st = leader_state(tmp_path, term=3)
    reply = AppendEntriesReply(term=3, success=True, app_state=APP_NORMAL)
    rep = RaftReplication(st, [None, FakePeer(append=reply), None])
    args = AppendEntriesArgs(term=3, entries=list(st.logs))
    rep.send_append_entries(1, args, SimpleNamespace(count=1))
    assert st.match_index[1] == st.last_log_index()
    assert st.commit_index == 0


def test_append_failure_moves_next_index_back(tmp_path):
    st = leader_state(tmp_path)
    reply = AppendEntriesReply(term=st.current_term, success=False, update_next_index=2, app_state=APP_NORMAL)
    rep = RaftReplication(st, [None, FakePeer(append=reply), None])
    rep.send_append_entries(1, AppendEntriesArgs(term=st.current_term), SimpleNamespace(count=1))
    assert st.next_index[1] == 2
    assert st.match_index[1] == 0


def test_append_failure_with_stale_marker_keeps_next_index(tmp_path):
    st = leader_state(tmp_path)
    before = list(st.next_index)
    reply = AppendEntriesReply(
        term=st.current_term, success=False, update_next_index=STALE_TERM_NEXT_INDEX, app_state=APP_NORMAL
    )
    rep = RaftReplication(st, [None, FakePeer(append=reply), None])
    rep.send_append_entries(1, AppendEntriesArgs(term=st.current_term), SimpleNamespace(count=1))
    assert st.next_index == before


def test_append_reply_with_higher_term_steps_down(tmp_path):
    st = leader_state(tmp_path)
    reply = AppendEntriesReply(term=st.current_term + 3, app_state=APP_NORMAL)
    rep = RaftReplication(st, [None, FakePeer(append=reply), None])
    rep.send_append_entries(1, AppendEntriesArgs(term=st.current_term), SimpleNamespace(count=1))
    assert st.role is Role.FOLLOWER
    assert st.current_term == reply.term
    assert st.voted_for == -1


def test_disconnected_reply_is_ignored(tmp_path):
    st = leader_state(tmp_path)
    before = (list(st.next_index), list(st.match_index))
    reply = AppendEntriesReply(term=st.current_term, success=True, app_state=APP_DISCONNECTED)
    rep = RaftReplication(st, [None, FakePeer(append=reply), None])
    assert rep.send_append_entries(1, AppendEntriesArgs(entries=list(st.logs)), SimpleNamespace(count=1)) is True
    assert (st.next_index, st.match_index) == before


def test_leader_send_snapshot_updates_match_index(tmp_path):
    st = leader_state(tmp_path)
    st.last_snapshot_include_index = 2
    st.last_snapshot_include_term = 1
    st.logs = [LogEntry("c3", 2, 3)]
    st.persister.save("state", "snap")
    peer = FakePeer(snapshot=InstallSnapshotResponse(term=st.current_term))
    rep = RaftReplication(st, [None, peer, None])
    assert rep.leader_send_snapshot(1) is True
    assert peer.calls[0].data == "snap"
    assert peer.calls[0].last_snapshot_include_index == 2
    assert st.match_index[1] == 2
    assert st.next_index[1] == 3


def test_leader_send_snapshot_steps_down_on_higher_term(tmp_path):
    st = leader_state(tmp_path)
    peer = FakePeer(snapshot=InstallSnapshotResponse(term=st.current_term + 1))
    rep = RaftReplication(st, [None, peer, None])
    rep.leader_send_snapshot(1)
    assert st.role is Role.FOLLOWER
    assert st.current_term == peer.snapshot.term


def test_leader_send_snapshot_unreachable(tmp_path):
    st = leader_state(tmp_path)
    rep = RaftReplication(st, [None, FakePeer(snapshot=None), None])
    before = list(st.match_index)
    assert rep.leader_send_snapshot(1) is False
    assert st.match_index == before


class HandlerPeer:
    def __init__(self, handlers):
        self.handlers = handlers

    def request_vote(self, args):
        return self.handlers.request_vote(args)

    def append_entries(self, args):
        return self.handlers.append_entries(args)

    def install_snapshot(self, args):
        return self.handlers.install_snapshot(args)


def test_election_against_real_handlers(tmp_path):
    import queue

    states = [RaftState(i, 3, Persister(i, tmp_path)) for i in range(3)]
    peers = [None] + [HandlerPeer(RaftHandlers(states[i], queue.Queue())) for i in (1, 2)]
    rep = RaftReplication(states[0], peers, spawn=lambda fn, *args: fn(*args))
    rep.do_election()
    assert states[0].role is Role.LEADER
    for follower in states[1:]:
        assert follower.current_term == states[0].current_term
        assert follower.voted_for == 0
        assert follower.role is Role.FOLLOWER
    assert time.monotonic() >= states[0].last_reset_heartbeat_time