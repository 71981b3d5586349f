"""Events delivered by a cluster member, and the query event."""

from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable

from .messages import MessageQueryResponse, MessageType, encode_message


class EventType(IntEnum):
    """Kinds of events that may be delivered."""

    MEMBER_JOIN = 0
    MEMBER_LEAVE = 1
    MEMBER_FAILED = 2
    MEMBER_UPDATE = 3
    MEMBER_REAP = 4
    USER = 5
    QUERY = 6

    def __str__(self) -> str:
        return _EVENT_NAMES[self]


_EVENT_NAMES = {
    EventType.MEMBER_JOIN: "member-join",
    EventType.MEMBER_LEAVE: "member-leave",
    EventType.MEMBER_FAILED: "member-failed",
    EventType.MEMBER_UPDATE: "member-update",
    EventType.MEMBER_REAP: "member-reap",
    EventType.USER: "user",
    EventType.QUERY: "query",
}

_MEMBER_EVENTS = {
    EventType.MEMBER_JOIN,
    EventType.MEMBER_LEAVE,
    EventType.MEMBER_FAILED,
    EventType.MEMBER_UPDATE,
    EventType.MEMBER_REAP,
}


class MemberStatus(IntEnum):
    """State of a member as seen by this node."""

    NONE = 0
    ALIVE = 1
    LEAVING = 2
    LEFT = 3
    FAILED = 4

    def __str__(self) -> str:
        return self.name.lower()


@dataclass
class Member:
    """A single member of the cluster."""

    name: str = ""
    addr: str = ""
    port: int = 0
    tags: dict[str, str] = field(default_factory=dict)
    status: MemberStatus = MemberStatus.NONE
    protocol_min: int = 0
    protocol_max: int = 0
    protocol_cur: int = 0
    delegate_min: int = 0
    delegate_max: int = 0
    delegate_cur: int = 0


@dataclass
class MemberEvent:
    """A membership event; coalescing may group several members."""

    type: EventType
    members: list[Member] = field(default_factory=list)

    def event_type(self) -> EventType:
        return self.type

    def __str__(self) -> str:
        if self.type not in _MEMBER_EVENTS:
            raise ValueError(f"unknown event type: {int(self.type)}")
        return str(self.type)


@dataclass
class UserEvent:
    """An event triggered by a user, unrelated to membership."""

    ltime: int = 0
    name: str = ""
    payload: bytes = b""
    coalesce: bool = False

    def event_type(self) -> EventType:
        return EventType.USER

    def __str__(self) -> str:
        return f"user-event: {self.name}"


SendFunc = Callable[[tuple[str, int], bytes], None]
RelayFunc = Callable[[int, tuple[str, int], MessageQueryResponse], None]


def _host(raw: bytes) -> str:
    if not raw:
        return ""
    addr = ipaddress.ip_address(bytes(raw))
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


@dataclass(eq=False)
class Query:
    """A query event that may be answered once before its deadline.

    ``deadline`` is a ``time.time()`` value; it is None once a response
    has been sent. ``send`` delivers a raw packet to an address and
    ``relay`` forwards copies of the response through other members.
    """

    ltime: int = 0
    name: str = ""
    payload: bytes = b""
    id: int = 0
    addr: bytes = b""
    port: int = 0
    deadline: float | None = None
    relay_factor: int = 0
    node_name: str = ""
    response_size_limit: int = 1024
    send: SendFunc | None = field(default=None, repr=False)
    relay: RelayFunc | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def event_type(self) -> EventType:
        return EventType.QUERY

    def __str__(self) -> str:
        return f"query: {self.name}"

    def create_response(self, buf: bytes) -> MessageQueryResponse:
        """Build a response message carrying ``buf``."""
        return MessageQueryResponse(
            ltime=self.ltime, id=self.id, from_node=self.node_name, payload=buf
        )

    def check_response_size(self, resp: bytes) -> None:
        """Raise ValueError if an encoded response is over the size limit."""
        if len(resp) > self.response_size_limit:
            raise ValueError(f"response exceeds limit of {self.response_size_limit} bytes")

    def respond_with_message_and_response(self, raw: bytes, resp: MessageQueryResponse) -> None:
        """Send an already encoded response to the query's originator."""
        self.check_response_size(raw)
        with self._lock:
            if self.deadline is None:
                raise RuntimeError("response already sent")
            if time.time() > self.deadline:
                raise RuntimeError("response is past the deadline")
            if self.send is None:
                raise RuntimeError("query has no transport to respond on")
            dest = (_host(self.addr), self.port)
            self.send(dest, raw)
            if self.relay is not None:
                self.relay(self.relay_factor, dest, resp)
            self.deadline = None

    def respond(self, buf: bytes) -> None:
        """Send ``buf`` as the response to this query."""
        resp = self.create_response(buf)
        raw = encode_message(MessageType.QUERY_RESPONSE, resp)
        try:
            self.respond_with_message_and_response(raw, resp)
        except (ValueError, RuntimeError, OSError) as err:
            raise RuntimeError(f"failed to respond to key query: {err}") from err