"""The replicated key/value service that sits on top of a Raft node.

Clients call ``Get`` and ``PutAppend``. Each request is started as a command
in the Raft log, and the call waits until the command is applied or a
timeout passes. Applied commands arrive on the apply queue and change the
store. Requests already seen from the same client are not applied twice.
"""

from __future__ import annotations

import json
import logging
import queue
import re
import threading
import time
from typing import Any, Callable, Iterator, Optional

from raftkv.channel import SERVICE_NAME as RAFT_SERVICE_NAME
from raftkv.channel import RaftPeer
from raftkv.config import RpcConfig
from raftkv.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    GetArgs,
    GetReply,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    Op,
    PutAppendArgs,
    PutAppendReply,
    RequestVoteArgs,
    RequestVoteReply,
)
from raftkv.node import Raft
from raftkv.persister import Persister
from raftkv.provider import RpcProvider
from raftkv.wire import WireError

logger = logging.getLogger(__name__)

OK = "OK"
ERR_NO_KEY = "ErrNoKey"
ERR_WRONG_LEADER = "ErrWrongLeader"

SERVICE_NAME = "kvServerRpc"
"""Name under which the key/value methods are published."""

CONSENSUS_TIMEOUT = 0.5
"""Seconds a request waits for its command to be applied."""

_PEER_STARTUP_WAIT = 6.0
_SNAPSHOT_RATIO = 10.0


class KvServer:
    """Key/value store of node ``me`` replicated through ``raft``.

    ``apply_queue`` is the queue ``raft`` delivers applied commands and
    snapshots on. A ``max_raft_state`` of -1 turns snapshots off.

    Both ``Put`` and ``Append`` set the key to the given value.
    """

    service_name = SERVICE_NAME

    def __init__(
        self,
        me: int,
        raft: Raft,
        apply_queue: queue.Queue[Optional[ApplyMsg]],
        max_raft_state: int = -1,
        consensus_timeout: float = CONSENSUS_TIMEOUT,
    ) -> None:
        self.me = me
        self.raft = raft
        self.apply_queue = apply_queue
        self.max_raft_state = max_raft_state
        self.consensus_timeout = consensus_timeout
        self._lock = threading.RLock()
        self._store: dict[str, str] = {}
        self._last_request_id: dict[str, int] = {}
        self._wait_channels: dict[int, queue.Queue[Op]] = {}
        self.last_snapshot_raft_log_index = 0

        snapshot = raft.persister.read_snapshot()
        if snapshot:
            self.install_snapshot_data(snapshot)

    def _log_store(self) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        with self._lock:
            for key, value in sorted(self._store.items()):
                logger.debug("[kv%d] %s: %s", self.me, key, value)

    def execute_put(self, op: Op) -> None:
        """Set ``op.key`` to ``op.value`` and record the request."""
        with self._lock:
            self._store[op.key] = op.value
            self._last_request_id[op.client_id] = op.request_id
        self._log_store()

    def execute_append(self, op: Op) -> None:
        """Apply an ``Append``; like ``Put`` it sets the key to ``op.value``."""
        with self._lock:
            self._store[op.key] = op.value
            self._last_request_id[op.client_id] = op.request_id
        self._log_store()

    def execute_get(self, op: Op) -> tuple[str, bool]:
        """Return the value of ``op.key`` and whether it exists; record the request."""
        with self._lock:
            exists = op.key in self._store
            value = self._store.get(op.key, "")
            self._last_request_id[op.client_id] = op.request_id
        self._log_store()
        return value, exists

    def _reply_get(self, op: Op) -> GetReply:
        value, exists = self.execute_get(op)
        if exists:
            return GetReply(err=OK, value=value)
        return GetReply(err=ERR_NO_KEY, value="")

    def _open_wait_channel(self, raft_index: int) -> queue.Queue[Op]:
        with self._lock:
            return self._wait_channels.setdefault(raft_index, queue.Queue())

    def _close_wait_channel(self, raft_index: int) -> None:
        with self._lock:
            self._wait_channels.pop(raft_index, None)

    def _wait_for(self, raft_index: int) -> Optional[Op]:
        channel = self._open_wait_channel(raft_index)
        try:
            return channel.get(timeout=self.consensus_timeout)
        except queue.Empty:
            return None

    def get(self, args: GetArgs) -> GetReply:
        """Handle a client's ``Get``."""
        op = Op(operation="Get", key=args.key, value="", client_id=args.client_id, request_id=args.request_id)
        raft_index, _term, is_leader = self.raft.handlers.start(op)
        if not is_leader:
            return GetReply(err=ERR_WRONG_LEADER)
        try:
            committed = self._wait_for(raft_index)
            if committed is None:
                _term, is_leader = self.raft.handlers.get_state()
                # An already applied Get may be served again without breaking linearisability.
                if self.is_duplicate(op.client_id, op.request_id) and is_leader:
                    return self._reply_get(op)
                return GetReply(err=ERR_WRONG_LEADER)
            if committed.client_id == op.client_id and committed.request_id == op.request_id:
                return self._reply_get(op)
            return GetReply(err=ERR_WRONG_LEADER)
        finally:
            self._close_wait_channel(raft_index)

    def put_append(self, args: PutAppendArgs) -> PutAppendReply:
        """Handle a client's ``Put`` or ``Append``; the change itself is made when applied."""
        op = Op(
            operation=args.op,
            key=args.key,
            value=args.value,
            client_id=args.client_id,
            request_id=args.request_id,
        )
        raft_index, _term, is_leader = self.raft.handlers.start(op)
        if not is_leader:
            logger.debug("[kv%d] PutAppend from %s: not leader", self.me, op.client_id)
            return PutAppendReply(err=ERR_WRONG_LEADER)
        logger.debug("[kv%d] PutAppend from %s at raft index %d", self.me, op.client_id, raft_index)
        try:
            committed = self._wait_for(raft_index)
            if committed is None:
                logger.debug("[kv%d] PutAppend timed out at raft index %d", self.me, raft_index)
                if self.is_duplicate(op.client_id, op.request_id):
                    return PutAppendReply(err=OK)
                return PutAppendReply(err=ERR_WRONG_LEADER)
            # A change of leader may have overwritten the entry.
            if committed.client_id == op.client_id and committed.request_id == op.request_id:
                return PutAppendReply(err=OK)
            return PutAppendReply(err=ERR_WRONG_LEADER)
        finally:
            self._close_wait_channel(raft_index)

    def get_command_from_raft(self, message: ApplyMsg) -> None:
        """Apply a committed command and wake the request waiting for it."""
        op = Op.parse(message.command)
        logger.debug(
            "[kv%d] got command index %d: %s %s from %s/%d",
            self.me,
            message.command_index,
            op.operation,
            op.key,
            op.client_id,
            op.request_id,
        )
        if message.command_index <= self.last_snapshot_raft_log_index:
            return
        if not self.is_duplicate(op.client_id, op.request_id):
            if op.operation == "Put":
                self.execute_put(op)
            if op.operation == "Append":
                self.execute_append(op)
        if self.max_raft_state != -1:
            self.maybe_snapshot(message.command_index, 9)
        self.send_message_to_wait_chan(op, message.command_index)

    def is_duplicate(self, client_id: str, request_id: int) -> bool:
        """Whether ``request_id`` from ``client_id`` has already been applied."""
        with self._lock:
            last = self._last_request_id.get(client_id)
            return last is not None and request_id <= last

    def read_apply_loop(self) -> None:
        """Process messages from the apply queue; a ``None`` on the queue ends the loop."""
        while True:
            message = self.apply_queue.get()
            if message is None:
                return
            logger.debug("[kv%d] message from raft", self.me)
            if message.command_valid:
                self.get_command_from_raft(message)
            if message.snapshot_valid:
                self.get_snapshot_from_raft(message)

    def install_snapshot_data(self, snapshot: str) -> None:
        """Replace the store and request history with those in ``snapshot``.

        An empty snapshot changes nothing; a malformed one raises
        :class:`~raftkv.wire.WireError`.
        """
        if not snapshot:
            return
        try:
            payload: Any = json.loads(snapshot)
            store = payload["kv"]
            last_request_id = payload["last_request_id"]
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise WireError("malformed snapshot") from exc
        if not isinstance(store, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in store.items()
        ):
            raise WireError("malformed snapshot")
        if not isinstance(last_request_id, dict) or not all(
            isinstance(v, int) and not isinstance(v, bool) for v in last_request_id.values()
        ):
            raise WireError("malformed snapshot")
        with self._lock:
            self._store = dict(store)
            self._last_request_id = dict(last_request_id)

    def send_message_to_wait_chan(self, op: Op, raft_index: int) -> bool:
        """Hand ``op`` to the request waiting on ``raft_index``; False if none waits."""
        with self._lock:
            channel = self._wait_channels.get(raft_index)
            if channel is None:
                return False
            channel.put(op)
            return True

    def maybe_snapshot(self, raft_index: int, proportion: int) -> bool:
        """Snapshot up to ``raft_index`` when the Raft state has grown too large.

        Returns True when Raft took the snapshot.
        """
        if self.raft.state.raft_state_size() <= self.max_raft_state / _SNAPSHOT_RATIO:
            return False
        snapshot = self.make_snapshot()
        with self.raft.state.lock:
            return self.raft.state.snapshot(raft_index, snapshot)

    def get_snapshot_from_raft(self, message: ApplyMsg) -> None:
        """Install a snapshot that Raft received from its leader."""
        with self._lock:
            if self.raft.handlers.cond_install_snapshot(
                message.snapshot_term, message.snapshot_index, message.snapshot
            ):
                self.install_snapshot_data(message.snapshot)
                self.last_snapshot_raft_log_index = message.snapshot_index

    def make_snapshot(self) -> str:
        """Serialise the store and the request history."""
        with self._lock:
            return json.dumps(
                {"kv": self._store, "last_request_id": self._last_request_id},
                separators=(",", ":"),
                sort_keys=True,
                ensure_ascii=False,
            )

    def rpc_methods(self) -> dict[str, tuple[type, type, Callable[[Any], Any]]]:
        """The client methods this server offers, for an RPC provider."""
        return {
            "PutAppend": (PutAppendArgs, PutAppendReply, self.put_append),
            "Get": (GetArgs, GetReply, self.get),
        }


class _DeferredService:
    """Publishes a service's methods before the object serving them exists."""

    def __init__(
        self,
        service_name: str,
        signatures: dict[str, tuple[type, type]],
        fallback: Callable[[type], Any],
    ) -> None:
        self.service_name = service_name
        self._signatures = signatures
        self._fallback = fallback
        self.target: Any = None

    def _dispatcher(self, name: str, response_type: type) -> Callable[[Any], Any]:
        def call(request: Any) -> Any:
            target = self.target
            if target is None:
                return self._fallback(response_type)
            return target.rpc_methods()[name][2](request)

        return call

    def rpc_methods(self) -> dict[str, tuple[type, type, Callable[[Any], Any]]]:
        return {
            name: (request_type, response_type, self._dispatcher(name, response_type))
            for name, (request_type, response_type) in self._signatures.items()
        }


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def _node_addresses(config: RpcConfig) -> Iterator[tuple[str, int]]:
    index = 0
    while True:
        node = f"node{index}"
        ip = config.load(node + "ip")
        if not ip:
            return
        yield ip, _atoi(config.load(node + "port"))
        index += 1


def start_server(me: int, max_raft_state: int, node_info_file: str, port: int) -> KvServer:
    """Run node ``me`` of the cluster described in ``node_info_file``.

    Serves client and peer calls on ``port`` and processes applied commands;
    this call does not return while the server runs.
    """
    persister = Persister(me)
    apply_queue: queue.Queue[Optional[ApplyMsg]] = queue.Queue()

    raft_service = _DeferredService(
        RAFT_SERVICE_NAME,
        {
            "AppendEntries": (AppendEntriesArgs, AppendEntriesReply),
            "InstallSnapshot": (InstallSnapshotRequest, InstallSnapshotResponse),
            "RequestVote": (RequestVoteArgs, RequestVoteReply),
        },
        lambda response_type: response_type(),
    )
    kv_service = _DeferredService(
        SERVICE_NAME,
        {"PutAppend": (PutAppendArgs, PutAppendReply), "Get": (GetArgs, GetReply)},
        lambda response_type: response_type(err=ERR_WRONG_LEADER),
    )
    provider = RpcProvider()
    provider.notify_service(kv_service)
    provider.notify_service(raft_service)
    threading.Thread(target=provider.run, args=(me, port), name=f"rpc-provider-{me}", daemon=True).start()

    logger.info("raftServer node:%d waits for the other nodes to start", me)
    time.sleep(_PEER_STARTUP_WAIT)
    logger.info("raftServer node:%d connects to the other nodes", me)

    config = RpcConfig()
    config.load_file(node_info_file)
    addresses = list(_node_addresses(config))
    peers: list[Optional[RaftPeer]] = []
    for index, (ip, peer_port) in enumerate(addresses):
        if index == me:
            peers.append(None)
            continue
        peers.append(RaftPeer(ip, peer_port))
        logger.info("node%d connected to node%d", me, index)
    time.sleep(max(len(addresses) - me, 0))

    raft = Raft(peers, me, persister, apply_queue)
    kv = KvServer(me, raft, apply_queue, max_raft_state)
    raft_service.target = raft
    kv_service.target = kv
    raft.start_background()
    kv.read_apply_loop()
    return kv