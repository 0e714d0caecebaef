"""Client side of the RPC transport and the per-peer Raft stub.

A call is sent as a framed request (see :func:`raftkv.wire.encode_request`).
The reply comes back as ``varint(len(payload)) + payload``. One connection
to the remote node is kept open and reused. It is re-established when it
breaks.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, TypeVar

from raftkv.controller import RpcController
from raftkv.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    RequestVoteArgs,
    RequestVoteReply,
    decode_message,
    encode_message,
)
from raftkv.wire import WireError, encode_request

logger = logging.getLogger(__name__)

SERVICE_NAME = "raftRpc"
"""Name under which a Raft node publishes its peer-to-peer methods."""

_CONNECT_RETRIES = 3
_MAX_VARINT_BYTES = 10

T = TypeVar("T")


class RpcChannel:
    """A connection to one remote RPC node.

    With ``connect_now`` the constructor tries to connect at once, retrying
    a few times; otherwise the first call connects. ``timeout`` bounds every
    socket operation in seconds, ``None`` meaning wait forever.
    """

    def __init__(self, ip: str, port: int, connect_now: bool = True, timeout: float | None = None) -> None:
        self.ip = ip
        self.port = port
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()
        if not connect_now:
            return
        error = self._connect()
        for _ in range(_CONNECT_RETRIES):
            if error is None:
                break
            logger.info("%s", error)
            error = self._connect()

    @property
    def connected(self) -> bool:
        """Whether a connection is currently open."""
        return self._sock is not None

    def _connect(self) -> str | None:
        """Open a new connection; return an error message on failure."""
        self._drop()
        try:
            sock = socket.create_connection((self.ip, self.port), timeout=self.timeout)
        except OSError as exc:
            return f"connect fail! errno:{exc.errno}"
        sock.settimeout(self.timeout)
        self._sock = sock
        return None

    def _drop(self) -> None:
        sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def _recv_exact(self, count: int) -> bytes:
        assert self._sock is not None
        chunks = bytearray()
        while len(chunks) < count:
            chunk = self._sock.recv(count - len(chunks))
            if not chunk:
                raise ConnectionError("connection closed by peer")
            chunks += chunk
        return bytes(chunks)

    def _receive(self) -> bytes:
        length = 0
        for shift in range(_MAX_VARINT_BYTES):
            byte = self._recv_exact(1)[0]
            length |= (byte & 0x7F) << (7 * shift)
            if not byte & 0x80:
                return self._recv_exact(length)
        raise WireError("overlong response length")

    def call_method(
        self,
        service_name: str,
        method_name: str,
        request: Any,
        response_type: type[T],
        controller: RpcController | None = None,
    ) -> T | None:
        """Call ``service_name.method_name`` with ``request``.

        Returns the decoded response, or None when the call failed; the
        reason is then recorded in ``controller``.
        """
        if controller is None:
            controller = RpcController()
        with self._lock:
            if self._sock is None:
                error = self._connect()
                if error is not None:
                    logger.debug("reconnect to %s:%s failed", self.ip, self.port)
                    controller.set_failed(error)
                    return None
            try:
                args = encode_message(request)
            except TypeError:
                controller.set_failed("serialize request error!")
                return None
            frame = encode_request(service_name, method_name, args)

            while True:
                assert self._sock is not None
                try:
                    self._sock.sendall(frame)
                    break
                except OSError:
                    logger.info("send failed, reconnecting to %s:%s", self.ip, self.port)
                    error = self._connect()
                    if error is not None:
                        controller.set_failed(error)
                        return None

            try:
                payload = self._receive()
            except (OSError, WireError) as exc:
                self._drop()
                errno = getattr(exc, "errno", None)
                controller.set_failed(f"recv error! errno:{errno}")
                return None

            try:
                return decode_message(response_type, payload)
            except WireError:
                controller.set_failed(f"parse error! response_str:{payload!r}")
                return None

    def close(self) -> None:
        """Close the connection; a later call reconnects."""
        with self._lock:
            self._drop()

    def __enter__(self) -> RpcChannel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RaftPeer:
    """Calls the Raft methods of one other node.

    Each method returns the peer's reply, or None when the call failed.
    """

    def __init__(self, ip: str, port: int, timeout: float | None = None) -> None:
        self.channel = RpcChannel(ip, port, connect_now=True, timeout=timeout)

    def _call(self, method_name: str, args: Any, reply_type: type[T]) -> T | None:
        controller = RpcController()
        reply = self.channel.call_method(SERVICE_NAME, method_name, args, reply_type, controller)
        return None if controller.failed else reply

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply | None:
        """Send an AppendEntries call."""
        return self._call("AppendEntries", args, AppendEntriesReply)

    def install_snapshot(self, args: InstallSnapshotRequest) -> InstallSnapshotResponse | None:
        """Send an InstallSnapshot call."""
        return self._call("InstallSnapshot", args, InstallSnapshotResponse)

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply | None:
        """Send a RequestVote call."""
        return self._call("RequestVote", args, RequestVoteReply)

    def close(self) -> None:
        """Close the underlying connection."""
        self.channel.close()