"""Varints, the RPC request header and request framing.

A request on the wire is ``varint(len(header)) + header + args`` where the
header holds the service name, the method name and the size of ``args``.
"""

from __future__ import annotations

from dataclasses import dataclass

_MAX_VARINT_BYTES = 10
_UINT32_MASK = 0xFFFFFFFF

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LENGTH_DELIMITED = 2
_WIRE_FIXED32 = 5


class WireError(ValueError):
    """Raised when bytes cannot be decoded."""


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a base-128 varint."""
    if value < 0:
        raise ValueError("varint value must not be negative")
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def decode_varint(data: bytes, pos: int = 0) -> tuple[int, int]:
    """Decode a varint at ``pos``; return the value and the position after it."""
    result = 0
    for shift, byte in enumerate(data[pos : pos + _MAX_VARINT_BYTES]):
        result |= (byte & 0x7F) << (7 * shift)
        if not byte & 0x80:
            return result, pos + shift + 1
    raise WireError("truncated or overlong varint")


def _read_length_delimited(data: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = decode_varint(data, pos)
    end = pos + length
    if end > len(data):
        raise WireError("truncated length-delimited field")
    return data[pos:end], end


def _skip_field(data: bytes, pos: int, wire_type: int) -> int:
    if wire_type == _WIRE_VARINT:
        return decode_varint(data, pos)[1]
    if wire_type == _WIRE_LENGTH_DELIMITED:
        return _read_length_delimited(data, pos)[1]
    widths = {_WIRE_FIXED64: 8, _WIRE_FIXED32: 4}
    if wire_type not in widths:
        raise WireError(f"unsupported wire type {wire_type}")
    end = pos + widths[wire_type]
    if end > len(data):
        raise WireError("truncated fixed-width field")
    return end


def _text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WireError("name is not valid UTF-8") from exc


@dataclass
class RpcHeader:
    """Names the service and method called and the size of the arguments."""

    service_name: str = ""
    method_name: str = ""
    args_size: int = 0

    def to_bytes(self) -> bytes:
        """Serialise the header; empty and zero fields are omitted."""
        out = bytearray()
        for number, name in ((1, self.service_name), (2, self.method_name)):
            if name:
                raw = name.encode("utf-8")
                out += encode_varint(number << 3 | _WIRE_LENGTH_DELIMITED)
                out += encode_varint(len(raw))
                out += raw
        if self.args_size:
            out += encode_varint(3 << 3 | _WIRE_VARINT)
            out += encode_varint(self.args_size & _UINT32_MASK)
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> RpcHeader:
        """Parse a header; unknown fields are skipped."""
        data = bytes(data)
        header = cls()
        pos = 0
        while pos < len(data):
            tag, pos = decode_varint(data, pos)
            number, wire_type = tag >> 3, tag & 7
            if number == 0:
                raise WireError("invalid field number 0")
            if number == 1 and wire_type == _WIRE_LENGTH_DELIMITED:
                raw, pos = _read_length_delimited(data, pos)
                header.service_name = _text(raw)
            elif number == 2 and wire_type == _WIRE_LENGTH_DELIMITED:
                raw, pos = _read_length_delimited(data, pos)
                header.method_name = _text(raw)
            elif number == 3 and wire_type == _WIRE_VARINT:
                value, pos = decode_varint(data, pos)
                header.args_size = value & _UINT32_MASK
            else:
                pos = _skip_field(data, pos, wire_type)
        return header


def encode_request(service_name: str, method_name: str, args: bytes) -> bytes:
    """Frame a call of ``service_name.method_name`` with serialised ``args``."""
    header = RpcHeader(service_name, method_name, len(args)).to_bytes()
    return encode_varint(len(header)) + header + bytes(args)


def decode_request(data: bytes) -> tuple[RpcHeader, bytes]:
    """Split a framed request into its header and argument bytes.

    Bytes after the arguments are ignored.
    """
    data = bytes(data)
    header_size, pos = decode_varint(data)
    end = pos + (header_size & _UINT32_MASK)
    if end > len(data):
        raise WireError("truncated request header")
    header = RpcHeader.from_bytes(data[pos:end])
    args = data[end : end + header.args_size]
    if len(args) < header.args_size:
        raise WireError("truncated request arguments")
    return header, args