"""Gossip message types and their msgpack wire encoding."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field, fields
from enum import IntEnum
from typing import Any, Callable

import msgpack


class MessageType(IntEnum):
    """Type byte that prefixes every gossip message."""

    LEAVE = 0
    JOIN = 1
    PUSH_PULL = 2
    USER_EVENT = 3
    QUERY = 4
    QUERY_RESPONSE = 5
    CONFLICT_RESPONSE = 6
    KEY_REQUEST = 7
    KEY_RESPONSE = 8
    RELAY = 9


# Forces the receiver to send an ack back.
QUERY_FLAG_ACK = 1 << 0
# Prevents re-broadcast of a query, to target individual members.
QUERY_FLAG_NO_BROADCAST = 1 << 1


class FilterType(IntEnum):
    """Type byte that prefixes an encoded query filter."""

    NODE = 0
    TAG = 1


_NANOS = 1_000_000_000

_DECODE_ERRORS = (ValueError, TypeError, msgpack.exceptions.UnpackException)


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise ValueError(f"expected bytes, got {type(value).__name__}")


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, str):
        return value
    raise ValueError(f"expected string, got {type(value).__name__}")


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected integer, got {type(value).__name__}")
    return value


def _as_bool(value: Any) -> bool:
    return bool(value)


def _bytes_list(value: Any) -> list[bytes]:
    return [_as_bytes(item) for item in value or []]


def _str_list(value: Any) -> list[str]:
    return [_as_str(item) for item in value or []]


def _ltime_map(value: Any) -> dict[str, int]:
    return {_as_str(k): _as_int(v) for k, v in (value or {}).items()}


def _encode_events(events: list) -> list:
    out = []
    for entry in events:
        if entry is None:
            out.append(None)
            continue
        ltime, items = entry
        out.append(
            {
                "LTime": ltime,
                "Events": [{"Name": name, "Payload": payload} for name, payload in items],
            }
        )
    return out


def _decode_events(value: Any) -> list:
    out: list = []
    for entry in value or []:
        if entry is None:
            out.append(None)
            continue
        items = [
            (_as_str(e.get("Name")), _as_bytes(e.get("Payload")))
            for e in entry.get("Events") or []
        ]
        out.append((_as_int(entry.get("LTime")), items))
    return out


def _encode_timeout(seconds: float) -> int:
    return int(round(seconds * _NANOS))


def _decode_timeout(value: Any) -> float:
    return _as_int(value) / _NANOS


def _ip_to_host(raw: bytes) -> str:
    if not raw:
        return ""
    addr = ipaddress.ip_address(bytes(raw))
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def _encode_udp_addr(addr: tuple[str, int]) -> dict:
    host, port = addr
    packed = ipaddress.ip_address(host).packed if host else b""
    return {"IP": packed, "Port": port, "Zone": ""}


def _decode_udp_addr(value: Any) -> tuple[str, int]:
    if not isinstance(value, dict):
        raise ValueError("address must be a map")
    return _ip_to_host(_as_bytes(value.get("IP"))), _as_int(value.get("Port"))


def _wire(
    name: str,
    default: Any = None,
    *,
    factory: Callable[[], Any] | None = None,
    encode: Callable[[Any], Any] | None = None,
    decode: Callable[[Any], Any] | None = None,
):
    meta = {"wire": name, "encode": encode, "decode": decode}
    if factory is not None:
        return field(default_factory=factory, metadata=meta)
    return field(default=default, metadata=meta)


class _WireMessage:
    """Mixin mapping dataclass fields to the wire's field names."""

    def to_wire(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            encode = f.metadata["encode"]
            out[f.metadata["wire"]] = encode(value) if encode else value
        return out

    @classmethod
    def from_wire(cls, data: Any):
        if not isinstance(data, dict):
            raise ValueError(f"{cls.__name__} must be encoded as a map")
        kwargs = {}
        for f in fields(cls):
            wire_name = f.metadata["wire"]
            if wire_name not in data:
                continue
            decode = f.metadata["decode"]
            try:
                kwargs[f.name] = decode(data[wire_name]) if decode else data[wire_name]
            except (AttributeError, TypeError, KeyError) as err:
                raise ValueError(f"bad {wire_name} field: {err}") from err
        return cls(**kwargs)


@dataclass
class MessageJoin(_WireMessage):
    """Broadcast after joining, tying a node to a Lamport time."""

    ltime: int = _wire("LTime", 0, decode=_as_int)
    node: str = _wire("Node", "", decode=_as_str)


@dataclass
class MessageLeave(_WireMessage):
    """Broadcast to signal the intent to leave."""

    ltime: int = _wire("LTime", 0, decode=_as_int)
    node: str = _wire("Node", "", decode=_as_str)
    prune: bool = _wire("Prune", False, decode=_as_bool)


@dataclass
class MessagePushPull(_WireMessage):
    """Full state exchange.

    ``events`` holds one entry per buffered Lamport time: either None or
    ``(ltime, [(name, payload), ...])``.
    """

    ltime: int = _wire("LTime", 0, decode=_as_int)
    status_ltimes: dict[str, int] = _wire("StatusLTimes", factory=dict, decode=_ltime_map)
    left_members: list[str] = _wire("LeftMembers", factory=list, decode=_str_list)
    event_ltime: int = _wire("EventLTime", 0, decode=_as_int)
    events: list = _wire("Events", factory=list, encode=_encode_events, decode=_decode_events)
    query_ltime: int = _wire("QueryLTime", 0, decode=_as_int)


@dataclass
class MessageUserEvent(_WireMessage):
    """A user-generated event."""

    ltime: int = _wire("LTime", 0, decode=_as_int)
    name: str = _wire("Name", "", decode=_as_str)
    payload: bytes = _wire("Payload", b"", decode=_as_bytes)
    can_coalesce: bool = _wire("CC", False, decode=_as_bool)


@dataclass
class MessageQuery(_WireMessage):
    """A query event; ``timeout`` is in seconds."""

    ltime: int = _wire("LTime", 0, decode=_as_int)
    id: int = _wire("ID", 0, decode=_as_int)
    addr: bytes = _wire("Addr", b"", decode=_as_bytes)
    port: int = _wire("Port", 0, decode=_as_int)
    filters: list[bytes] = _wire("Filters", factory=list, decode=_bytes_list)
    flags: int = _wire("Flags", 0, decode=_as_int)
    relay_factor: int = _wire("RelayFactor", 0, decode=_as_int)
    timeout: float = _wire("Timeout", 0.0, encode=_encode_timeout, decode=_decode_timeout)
    name: str = _wire("Name", "", decode=_as_str)
    payload: bytes = _wire("Payload", b"", decode=_as_bytes)

    def ack(self) -> bool:
        """Whether the ack flag is set."""
        return bool(self.flags & QUERY_FLAG_ACK)

    def no_broadcast(self) -> bool:
        """Whether the no-broadcast flag is set."""
        return bool(self.flags & QUERY_FLAG_NO_BROADCAST)


@dataclass
class FilterTag(_WireMessage):
    """Restricts a query to nodes whose tag matches a regular expression."""

    tag: str = _wire("Tag", "", decode=_as_str)
    expr: str = _wire("Expr", "", decode=_as_str)


@dataclass
class MessageQueryResponse(_WireMessage):
    """A response to a query."""

    ltime: int = _wire("LTime", 0, decode=_as_int)
    id: int = _wire("ID", 0, decode=_as_int)
    from_node: str = _wire("From", "", decode=_as_str)
    flags: int = _wire("Flags", 0, decode=_as_int)
    payload: bytes = _wire("Payload", b"", decode=_as_bytes)

    def ack(self) -> bool:
        """Whether the ack flag is set."""
        return bool(self.flags & QUERY_FLAG_ACK)


@dataclass
class RelayHeader(_WireMessage):
    """The final destination, as ``(host, port)``, of a relayed message."""

    dest_addr: tuple[str, int] = _wire(
        "DestAddr", ("", 0), encode=_encode_udp_addr, decode=_decode_udp_addr
    )


def _pack(msg: Any) -> bytes:
    plain = msg.to_wire() if isinstance(msg, _WireMessage) else msg
    return msgpack.packb(plain, use_bin_type=True)


def decode_message(buf: bytes, cls: type | None = None) -> Any:
    """Decode a message body (without its type byte).

    With a message class the result is an instance of it; with a builtin
    type such as ``list`` the decoded value is checked against it.
    Raises ValueError on malformed input.
    """
    try:
        data = msgpack.unpackb(bytes(buf), raw=False)
    except _DECODE_ERRORS as err:
        raise ValueError(f"failed to decode message: {err}") from err
    if cls is None:
        return data
    if isinstance(cls, type) and issubclass(cls, _WireMessage):
        return cls.from_wire(data)
    if not isinstance(data, cls):
        raise ValueError(f"expected {cls.__name__}, got {type(data).__name__}")
    return data


def encode_message(t: MessageType, msg: Any) -> bytes:
    """Encode a message prefixed by its type byte."""
    return bytes([int(t)]) + _pack(msg)


def encode_relay_message(t: MessageType, addr: tuple[str, int], msg: Any) -> bytes:
    """Wrap a message for relaying to ``addr`` through another node."""
    header = RelayHeader(dest_addr=addr)
    return bytes([MessageType.RELAY]) + _pack(header) + bytes([int(t)]) + _pack(msg)


def decode_relay_message(buf: bytes) -> tuple[RelayHeader, bytes]:
    """Split a relay message into its header and the inner, typed message."""
    if not buf or buf[0] != MessageType.RELAY:
        raise ValueError("not a relay message")
    unpacker = msgpack.Unpacker(raw=False)
    unpacker.feed(bytes(buf[1:]))
    try:
        data = unpacker.unpack()
    except _DECODE_ERRORS as err:
        raise ValueError(f"failed to decode relay header: {err}") from err
    header = RelayHeader.from_wire(data)
    return header, bytes(buf[1 + unpacker.tell():])


def encode_filter(f: FilterType, filt: Any) -> bytes:
    """Encode a query filter prefixed by its filter type."""
    return bytes([int(f)]) + _pack(filt)