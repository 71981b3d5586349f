"""Query parameters, response collection and query filtering."""

from __future__ import annotations

import logging
import math
import random
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterator, Sequence

from .event import Member
from .messages import FilterTag, FilterType, MessageQuery, decode_message, encode_filter

_log = logging.getLogger(__name__)


@dataclass
class QueryParam:
    """Parameters of a query. ``timeout`` is in seconds."""

    filter_nodes: list[str] | None = None
    filter_tags: dict[str, str] | None = None
    request_ack: bool = False
    relay_factor: int = 0
    timeout: float = 0.0

    def encode_filters(self) -> list[bytes]:
        """Convert the node and tag filters into their wire format."""
        filters: list[bytes] = []
        if self.filter_nodes:
            filters.append(encode_filter(FilterType.NODE, list(self.filter_nodes)))
        for tag, expr in (self.filter_tags or {}).items():
            filters.append(encode_filter(FilterType.TAG, FilterTag(tag=tag, expr=expr)))
        return filters


def default_query_timeout(
    gossip_interval: float, query_timeout_mult: int, num_members: int
) -> float:
    """Return GossipInterval * QueryTimeoutMult * ceil(log10(N + 1)) in seconds."""
    return gossip_interval * query_timeout_mult * math.ceil(math.log10(num_members + 1))


def default_query_params(
    gossip_interval: float, query_timeout_mult: int, num_members: int
) -> QueryParam:
    """Return query parameters with no filters and the default timeout."""
    return QueryParam(
        timeout=default_query_timeout(gossip_interval, query_timeout_mult, num_members)
    )


@dataclass(frozen=True)
class NodeResponse:
    """A single response from one node."""

    from_node: str
    payload: bytes = b""


class QueryResponse:
    """Collects acks and responses to one query until it is closed or expires.

    ``n`` bounds how many responses (and acks) may be buffered.
    """

    def __init__(self, n: int, q: MessageQuery) -> None:
        self.deadline = time.time() + q.timeout
        self.id = q.id
        self.ltime = q.ltime
        self._capacity = n
        self._cond = threading.Condition()
        self._closed = False
        self._resp_buf: deque[NodeResponse] = deque()
        self._responded: set[str] = set()
        self._ack_buf: deque[str] | None = deque() if q.ack() else None
        self._acked: set[str] = set()

    def close(self) -> None:
        """Stop accepting deliveries; buffered items can still be read."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def finished(self) -> bool:
        """Whether the query is closed or past its deadline."""
        with self._cond:
            return self._closed or time.time() > self.deadline

    def send_response(self, nr: NodeResponse) -> None:
        """Deliver a response; duplicates and late deliveries are dropped.

        Raises RuntimeError when the response buffer is full.
        """
        with self._cond:
            if self._closed or nr.from_node in self._responded:
                return
            if len(self._resp_buf) >= self._capacity:
                raise RuntimeError("failed to deliver query response, dropping")
            self._resp_buf.append(nr)
            self._responded.add(nr.from_node)
            self._cond.notify_all()

    def send_ack(self, node: str) -> None:
        """Deliver an ack from ``node``; duplicates are dropped.

        Raises RuntimeError if acks were not requested or the buffer is full.
        """
        with self._cond:
            if self._ack_buf is None:
                raise RuntimeError("query did not request acks")
            if self._closed or node in self._acked:
                return
            if len(self._ack_buf) >= self._capacity:
                raise RuntimeError("failed to deliver query ack, dropping")
            self._ack_buf.append(node)
            self._acked.add(node)
            self._cond.notify_all()

    def responses(self, timeout: float | None = None) -> Iterator[NodeResponse]:
        """Yield responses until the query finishes or ``timeout`` seconds pass."""
        yield from self._drain(self._resp_buf, timeout)

    def acks(self, timeout: float | None = None) -> Iterator[str]:
        """Yield names of acking nodes; yields nothing if acks were not requested."""
        if self._ack_buf is None:
            return
        yield from self._drain(self._ack_buf, timeout)

    def _drain(self, buf: deque, timeout: float | None) -> Iterator:
        limit = self.deadline if timeout is None else min(self.deadline, time.time() + timeout)
        while True:
            with self._cond:
                while not buf and not self._closed:
                    remaining = limit - time.time()
                    if remaining <= 0:
                        return
                    self._cond.wait(remaining)
                if not buf:
                    return
                item = buf.popleft()
            yield item


def should_process_query(
    filters: Sequence[bytes], node_name: str, tags: dict[str, str] | None
) -> bool:
    """Whether a node with this name and these tags passes every filter."""
    tags = tags or {}
    for filt in filters:
        if not filt:
            _log.warning("query has an empty filter")
            return False
        kind = filt[0]
        if kind == FilterType.NODE:
            try:
                nodes = decode_message(filt[1:], list)
            except ValueError as err:
                _log.warning("failed to decode node filter: %s", err)
                return False
            if node_name not in nodes:
                return False
        elif kind == FilterType.TAG:
            try:
                tag_filter = decode_message(filt[1:], FilterTag)
            except ValueError as err:
                _log.warning("failed to decode tag filter: %s", err)
                return False
            try:
                matched = re.search(tag_filter.expr, tags.get(tag_filter.tag, ""))
            except re.error as err:
                _log.warning("failed to compile filter regex (%s): %s", tag_filter.expr, err)
                return False
            if matched is None:
                return False
        else:
            _log.warning("query has unrecognized filter type: %d", kind)
            return False
    return True


def k_random_members(
    k: int,
    members: Sequence[Member],
    filter_func: Callable[[Member], bool] | None = None,
) -> list[Member]:
    """Pick up to ``k`` distinct members at random, skipping those the filter rejects.

    ``filter_func`` returns True for members to leave out. At most
    3 * len(members) probes are made.
    """
    chosen: list[Member] = []
    names: set[str] = set()
    for _ in range(3 * len(members)):
        if len(chosen) >= k:
            break
        member = random.choice(members)
        if filter_func is not None and filter_func(member):
            continue
        if member.name in names:
            continue
        chosen.append(member)
        names.add(member.name)
    return chosen