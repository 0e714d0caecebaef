"""Publishes service objects over TCP and dispatches incoming calls.

A service object offers ``rpc_methods()``, a mapping from method name to a
``(request_type, response_type, handler)`` triple, where ``handler`` takes a
decoded request and returns the response message. The service is published
under its ``service_name`` attribute, or its class name when it has none.

Requests arrive framed as produced by :func:`raftkv.wire.encode_request`;
each response is sent as ``varint(len(payload)) + payload``.
"""

from __future__ import annotations

import logging
import socket
import socketserver
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from raftkv.messages import decode_message, encode_message
from raftkv.wire import RpcHeader, WireError, decode_request, decode_varint, encode_varint

logger = logging.getLogger(__name__)

_MAX_VARINT_BYTES = 10


@dataclass
class ServiceInfo:
    """A published service and its methods."""

    service: Any
    methods: dict[str, tuple[type, type, Callable[[Any], Any]]] = field(default_factory=dict)


def _frame_length(buffer: bytes) -> int | None:
    """Return the length of the first complete request in ``buffer``, or None."""
    try:
        header_size, pos = decode_varint(buffer)
    except WireError:
        if len(buffer) < _MAX_VARINT_BYTES:
            return None
        raise
    end = pos + header_size
    if len(buffer) < end:
        return None
    header = RpcHeader.from_bytes(buffer[pos:end])
    total = end + header.args_size
    return total if len(buffer) >= total else None


def _local_ip() -> str:
    addresses = socket.gethostbyname_ex(socket.gethostname())[2]
    return addresses[-1] if addresses else "127.0.0.1"


class RpcProvider:
    """Serves the methods of published services to remote callers."""

    def __init__(self, config_path: str = "test.conf", host: str | None = None) -> None:
        self.config_path = config_path
        self.host = host
        self.services: dict[str, ServiceInfo] = {}
        self.server_address: tuple[str, int] | None = None
        self.ready = threading.Event()
        self._server: socketserver.ThreadingTCPServer | None = None

    def notify_service(self, service: Any) -> None:
        """Publish every method of ``service``."""
        name = getattr(service, "service_name", None) or type(service).__name__
        logger.info("service_name: %s", name)
        self.services[name] = ServiceInfo(service, dict(service.rpc_methods()))

    def handle_message(self, data: bytes) -> bytes | None:
        """Dispatch one framed request; return the serialised response.

        Returns None when the request cannot be parsed, names an unknown
        service or method, or the response cannot be serialised.
        """
        try:
            header, args = decode_request(data)
        except WireError as exc:
            logger.warning("rpc header parse error: %s", exc)
            return None
        info = self.services.get(header.service_name)
        if info is None:
            logger.warning(
                "service %s is not exist; known services: %s",
                header.service_name,
                " ".join(self.services),
            )
            return None
        method = info.methods.get(header.method_name)
        if method is None:
            logger.warning("%s:%s is not exist", header.service_name, header.method_name)
            return None
        request_type, _response_type, handler = method
        try:
            request = decode_message(request_type, args)
        except WireError:
            logger.warning("request parse error, content: %r", args)
            return None
        response = handler(request)
        try:
            return encode_message(response)
        except TypeError:
            logger.error("serialize response error")
            return None

    def _make_handler(self) -> type[socketserver.BaseRequestHandler]:
        provider = self

        class _Connection(socketserver.BaseRequestHandler):
            def handle(self) -> None:
                buffer = b""
                while True:
                    try:
                        chunk = self.request.recv(65536)
                    except OSError:
                        return
                    if not chunk:
                        return
                    buffer += chunk
                    while True:
                        try:
                            length = _frame_length(buffer)
                        except WireError as exc:
                            logger.warning("dropping connection: %s", exc)
                            return
                        if length is None:
                            break
                        frame, buffer = buffer[:length], buffer[length:]
                        reply = provider.handle_message(frame)
                        if reply is not None:
                            try:
                                self.request.sendall(encode_varint(len(reply)) + reply)
                            except OSError:
                                return

        return _Connection

    def run(self, node_index: int, port: int) -> None:
        """Record this node's address in the config file and serve until stopped."""
        ip = self.host or _local_ip()
        server = socketserver.ThreadingTCPServer((ip, port), self._make_handler(), bind_and_activate=False)
        server.daemon_threads = True
        server.allow_reuse_address = True
        try:
            server.server_bind()
            server.server_activate()
        except OSError:
            server.server_close()
            raise
        bound_ip, bound_port = server.server_address[:2]
        node = f"node{node_index}"
        with open(self.config_path, "a", encoding="utf-8") as handle:
            handle.write(f"{node}ip={bound_ip}\n")
            handle.write(f"{node}port={bound_port}\n")
        self._server = server
        self.server_address = (bound_ip, bound_port)
        logger.info("RpcProvider start service at ip:%s port:%s", bound_ip, bound_port)
        self.ready.set()
        try:
            server.serve_forever()
        finally:
            server.server_close()

    def stop(self) -> None:
        """Stop a running server; does nothing if none is running."""
        server, self._server = self._server, None
        if server is not None:
            server.shutdown()
        self.ready.clear()