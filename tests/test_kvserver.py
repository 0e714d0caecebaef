import queue
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from raftkv.kvserver import (
    ERR_NO_KEY,
    ERR_WRONG_LEADER,
    OK,
    KvServer,
)
from raftkv.messages import ApplyMsg, GetArgs, LogEntry, Op, PutAppendArgs
from raftkv.node import Raft
from raftkv.persister import Persister
from raftkv.raftlog import Role
from raftkv.wire import WireError


def _make(tmp_path, *, max_raft_state=-1, timeout=0.2, me=0):
    persister = Persister(me, tmp_path)
    apply_queue = queue.Queue()
    raft = Raft([None], me, persister, apply_queue)
    kv = KvServer(me, raft, apply_queue, max_raft_state=max_raft_state, consensus_timeout=timeout)
    return kv, raft


def _op(operation, key, value, client, request):
    return Op(operation=operation, key=key, value=value, client_id=client, request_id=request)


def _deliver(kv, op, index, deadline=3.0):
    end = time.monotonic() + deadline
    while time.monotonic() < end:
        if kv.send_message_to_wait_chan(op, index):
            return True
        time.sleep(0.005)
    return False


def _lead(raft):
    with raft.state.lock:
        raft.state.role = Role.LEADER


def test_put_then_get(tmp_path):
    kv, _ = _make(tmp_path)
    kv.execute_put(_op("Put", "k", "v1", "c", 1))
    assert kv.execute_get(_op("Get", "k", "", "c", 2)) == ("v1", True)


def test_get_missing_key(tmp_path):
    kv, _ = _make(tmp_path)
    assert kv.execute_get(_op("Get", "nope", "", "c", 1)) == ("", False)


def test_append_sets_value(tmp_path):
    kv, _ = _make(tmp_path)
    kv.execute_put(_op("Put", "k", "a", "c", 1))
    kv.execute_append(_op("Append", "k", "b", "c", 2))
    assert kv.execute_get(_op("Get", "k", "", "c", 3)) == ("b", True)


def test_is_duplicate(tmp_path):
    kv, _ = _make(tmp_path)
    assert kv.is_duplicate("c", 1) is False
    kv.execute_put(_op("Put", "k", "v", "c", 5))
    assert kv.is_duplicate("c", 5) is True
    assert kv.is_duplicate("c", 4) is True
    assert kv.is_duplicate("c", 6) is False
    assert kv.is_duplicate("other", 1) is False


def test_snapshot_round_trip(tmp_path):
    kv, _ = _make(tmp_path)
    kv.execute_put(_op("Put", "x", "1", "c", 3))
    kv.execute_put(_op("Put", "y", "2", "d", 7))
    data = kv.make_snapshot()

    other, _ = _make(tmp_path / "..", me=1)
    other.install_snapshot_data(data)
    assert other.execute_get(_op("Get", "x", "", "z", 1)) == ("1", True)
    assert other.execute_get(_op("Get", "y", "", "z", 2)) == ("2", True)
    assert other.is_duplicate("d", 7) is True
    assert other.is_duplicate("c", 4) is False


def test_install_empty_snapshot_changes_nothing(tmp_path):
    kv, _ = _make(tmp_path)
    kv.execute_put(_op("Put", "k", "v", "c", 1))
    kv.install_snapshot_data("")
    assert kv.execute_get(_op("Get", "k", "", "c", 2)) == ("v", True)


def test_install_malformed_snapshot_raises(tmp_path):
    kv, _ = _make(tmp_path)
    with pytest.raises(WireError):
        kv.install_snapshot_data("not a snapshot")
    with pytest.raises(WireError):
        kv.install_snapshot_data('{"kv": {}}')


def test_constructor_loads_persisted_snapshot(tmp_path):
    source, _ = _make(tmp_path)
    source.execute_put(_op("Put", "k", "stored", "c", 2))
    persister = Persister(0, tmp_path)
    persister.save("", source.make_snapshot())
    raft = Raft([None], 0, persister, queue.Queue())
    kv = KvServer(0, raft, queue.Queue())
    assert kv.execute_get(_op("Get", "k", "", "z", 1)) == ("stored", True)
    assert kv.is_duplicate("c", 2) is True


def test_get_not_leader(tmp_path):
    kv, raft = _make(tmp_path)
    reply = kv.get(GetArgs(key="k", client_id="c", request_id=1))
    assert reply.err == ERR_WRONG_LEADER
    assert raft.state.logs == []


def test_put_append_not_leader(tmp_path):
    kv, raft = _make(tmp_path)
    reply = kv.put_append(PutAppendArgs(key="k", value="v", op="Put", client_id="c", request_id=1))
    assert reply.err == ERR_WRONG_LEADER
    assert raft.state.logs == []


def test_put_append_committed(tmp_path):
    kv, raft = _make(tmp_path, timeout=3.0)
    _lead(raft)
    args = PutAppendArgs(key="k", value="v", op="Put", client_id="c", request_id=1)
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(kv.put_append, args)
        assert _deliver(kv, _op("Put", "k", "v", "c", 1), 1)
        reply = future.result(timeout=5)
    assert reply.err == OK
    assert len(raft.state.logs) == 1
    logged = Op.parse(raft.state.logs[0].command)
    assert (logged.operation, logged.key, logged.value) == ("Put", "k", "v")
    assert kv.send_message_to_wait_chan(logged, 1) is False


def test_put_append_other_op_committed(tmp_path):
    kv, raft = _make(tmp_path, timeout=3.0)
    _lead(raft)
    args = PutAppendArgs(key="k", value="v", op="Put", client_id="c", request_id=1)
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(kv.put_append, args)
        assert _deliver(kv, _op("Put", "k", "v", "someone", 9), 1)
        reply = future.result(timeout=5)
    assert reply.err == ERR_WRONG_LEADER


def test_put_append_timeout_not_duplicate(tmp_path):
    kv, raft = _make(tmp_path, timeout=0.05)
    _lead(raft)
    reply = kv.put_append(PutAppendArgs(key="k", value="v", op="Put", client_id="c", request_id=1))
    assert reply.err == ERR_WRONG_LEADER


def test_put_append_timeout_duplicate(tmp_path):
    kv, raft = _make(tmp_path, timeout=0.05)
    _lead(raft)
    kv.execute_put(_op("Put", "k", "v", "c", 4))
    reply = kv.put_append(PutAppendArgs(key="k", value="v", op="Put", client_id="c", request_id=4))
    assert reply.err == OK


def test_get_timeout_duplicate_served(tmp_path):
    kv, raft = _make(tmp_path, timeout=0.05)
    _lead(raft)
    kv.execute_put(_op("Put", "k", "val", "c", 2))
    reply = kv.get(GetArgs(key="k", client_id="c", request_id=2))
    assert (reply.err, reply.value) == (OK, "val")
    missing = kv.get(GetArgs(key="none", client_id="c", request_id=1))
    assert (missing.err, missing.value) == (ERR_NO_KEY, "")


def test_get_timeout_not_duplicate(tmp_path):
    kv, raft = _make(tmp_path, timeout=0.05)
    _lead(raft)
    reply = kv.get(GetArgs(key="k", client_id="c", request_id=1))
    assert reply.err == ERR_WRONG_LEADER


def test_get_committed(tmp_path):
    kv, raft = _make(tmp_path, timeout=3.0)
    _lead(raft)
    kv.execute_put(_op("Put", "k", "val", "w", 1))
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(kv.get, GetArgs(key="k", client_id="c", request_id=1))
        assert _deliver(kv, _op("Get", "k", "", "c", 1), 1)
        reply = future.result(timeout=5)
    assert (reply.err, reply.value) == (OK, "val")


def test_get_command_from_raft_applies_once(tmp_path):
    kv, _ = _make(tmp_path)
    first = _op("Put", "k", "a", "c", 1)
    again = _op("Put", "k", "b", "c", 1)
    kv.get_command_from_raft(ApplyMsg(command_valid=True, command=first.as_string(), command_index=1))
    kv.get_command_from_raft(ApplyMsg(command_valid=True, command=again.as_string(), command_index=2))
    assert kv.execute_get(_op("Get", "k", "", "z", 1)) == ("a", True)


def test_command_below_snapshot_index_ignored(tmp_path):
    kv, _ = _make(tmp_path)
    source, _ = _make(tmp_path / "..", me=1)
    source.execute_put(_op("Put", "s", "snap", "c", 1))
    kv.get_snapshot_from_raft(
        ApplyMsg(snapshot_valid=True, snapshot=source.make_snapshot(), snapshot_term=1, snapshot_index=5)
    )
    assert kv.last_snapshot_raft_log_index == 5
    stale = _op("Put", "k", "v", "d", 1)
    kv.get_command_from_raft(ApplyMsg(command_valid=True, command=stale.as_string(), command_index=3))
    assert kv.execute_get(_op("Get", "k", "", "z", 1)) == ("", False)
    assert kv.execute_get(_op("Get", "s", "", "z", 2)) == ("snap", True)


def test_read_apply_loop_stops_on_none(tmp_path):
    kv, _ = _make(tmp_path)
    op = _op("Put", "k", "v", "c", 1)
    kv.apply_queue.put(ApplyMsg(command_valid=True, command=op.as_string(), command_index=1))
    kv.apply_queue.put(None)
    kv.read_apply_loop()
    assert kv.execute_get(_op("Get", "k", "", "z", 1)) == ("v", True)
    assert kv.apply_queue.empty()


def test_maybe_snapshot(tmp_path):
    kv, raft = _make(tmp_path, max_raft_state=1)
    kv.execute_put(_op("Put", "k", "v", "c", 1))
    entry_op = _op("Put", "k", "v", "c", 1)
    with raft.state.lock:
        raft.state.logs = [LogEntry(command=entry_op.as_string(), log_term=1, log_index=1)]
        raft.state.commit_index = 1
        raft.state.persist()
    assert kv.maybe_snapshot(1, 9) is True
    assert raft.state.last_snapshot_include_index == 1
    assert raft.persister.read_snapshot() == kv.make_snapshot()


def test_maybe_snapshot_small_state(tmp_path):
    kv, raft = _make(tmp_path, max_raft_state=10**9)
    assert kv.maybe_snapshot(1, 9) is False
    assert raft.state.last_snapshot_include_index == 0


def test_rpc_methods(tmp_path):
    kv, _ = _make(tmp_path)
    methods = kv.rpc_methods()
    assert set(methods) == {"PutAppend", "Get"}
    assert methods["Get"][0] is GetArgs
    assert methods["PutAppend"][0] is PutAppendArgs