"""Cluster-wide encryption keyring changes carried out through queries."""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from .messages import MessageType, decode_message, encode_message
from .query import NodeResponse, QueryParam, QueryResponse

_log = logging.getLogger(__name__)

_INTERNAL_QUERY_PREFIX = "_serf_"
_INSTALL_KEY_QUERY = "install-key"
_USE_KEY_QUERY = "use-key"
_REMOVE_KEY_QUERY = "remove-key"
_LIST_KEYS_QUERY = "list-keys"

QueryFunc = Callable[[str, bytes, QueryParam], QueryResponse]


@dataclass
class KeyRequest:
    """The raw key sent to every node in a key query."""

    key: bytes = b""


@dataclass
class KeyResponse:
    """Aggregated outcome of a key query across the cluster."""

    messages: dict[str, str] = field(default_factory=dict)
    num_nodes: int = 0
    num_resp: int = 0
    num_err: int = 0
    keys: dict[str, int] = field(default_factory=dict)


@dataclass
class KeyRequestOptions:
    """Optional settings for a keyring operation."""

    relay_factor: int = 0


class KeyRequestError(Exception):
    """A key operation failed; ``response`` holds what was gathered."""

    def __init__(self, message: str, response: KeyResponse) -> None:
        super().__init__(message)
        self.response = response


def _format_payload(payload: bytes) -> str:
    return "[" + " ".join(str(b) for b in payload) + "]"


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, str):
        return value
    raise ValueError("expected a string")


def _parse_node_key_response(payload: bytes) -> tuple[bool, str, list[str]]:
    data = decode_message(payload, dict)
    result = bool(data.get("Result"))
    message = _text(data.get("Message"))
    keys = data.get("Keys") or []
    if not isinstance(keys, list):
        raise ValueError("Keys must be a list")
    return result, message, [_text(k) for k in keys]


def stream_key_responses(resp: KeyResponse, responses: Iterable[NodeResponse]) -> None:
    """Fold node responses into ``resp`` in place.

    Stops as soon as every node counted in ``resp.num_nodes`` has answered.
    """
    for r in responses:
        resp.num_resp += 1
        payload = r.payload
        if not payload or payload[0] != MessageType.KEY_RESPONSE:
            resp.messages[r.from_node] = (
                f"Invalid key query response type: {_format_payload(payload)}"
            )
            resp.num_err += 1
        else:
            try:
                result, message, keys = _parse_node_key_response(payload[1:])
            except (ValueError, UnicodeDecodeError):
                resp.messages[r.from_node] = (
                    f"Failed to decode key query response: {_format_payload(payload)}"
                )
                resp.num_err += 1
            else:
                if not result:
                    resp.messages[r.from_node] = message
                    resp.num_err += 1
                elif message:
                    resp.messages[r.from_node] = message
                    _log.warning("%s", message)
                for key in keys:
                    resp.keys[key] = resp.keys.get(key, 0) + 1
        if resp.num_resp == resp.num_nodes:
            return


class _ReadWriteLock:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class KeyManager:
    """Broadcasts keyring changes to the cluster and gathers the replies.

    ``query`` sends a named query with a payload and returns its
    QueryResponse; ``num_members`` reports the current cluster size;
    ``default_params`` supplies the base query parameters.
    """

    def __init__(
        self,
        query: QueryFunc,
        num_members: Callable[[], int],
        default_params: Callable[[], QueryParam] | None = None,
    ) -> None:
        self._query = query
        self._num_members = num_members
        self._default_params = default_params or QueryParam
        self._lock = _ReadWriteLock()

    def _handle_key_request(
        self, key: str, query: str, opts: KeyRequestOptions | None
    ) -> KeyResponse:
        resp = KeyResponse()
        try:
            raw_key = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as err:
            raise KeyRequestError(f"illegal base64 key: {err}", resp) from err

        req = KeyRequest(key=raw_key)
        payload = encode_message(MessageType.KEY_REQUEST, {"Key": req.key})

        params = self._default_params()
        if opts is not None:
            params.relay_factor = opts.relay_factor
        query_resp = self._query(_INTERNAL_QUERY_PREFIX + query, payload, params)

        resp.num_nodes = self._num_members()
        stream_key_responses(resp, query_resp.responses())

        if resp.num_err:
            raise KeyRequestError(f"{resp.num_err}/{resp.num_nodes} nodes reported failure", resp)
        if resp.num_resp != resp.num_nodes:
            raise KeyRequestError(f"{resp.num_resp}/{resp.num_nodes} nodes reported success", resp)
        return resp

    def install_key(self, key: str, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Install a base64-encoded key on every member."""
        with self._lock.write():
            return self._handle_key_request(key, _INSTALL_KEY_QUERY, opts)

    def use_key(self, key: str, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Make a base64-encoded key the primary key on every member."""
        with self._lock.write():
            return self._handle_key_request(key, _USE_KEY_QUERY, opts)

    def remove_key(self, key: str, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Remove a base64-encoded key from every member's keyring."""
        with self._lock.write():
            return self._handle_key_request(key, _REMOVE_KEY_QUERY, opts)

    def list_keys(self, opts: KeyRequestOptions | None = None) -> KeyResponse:
        """Gather every installed key and how many members hold it."""
        with self._lock.read():
            return self._handle_key_request("", _LIST_KEYS_QUERY, opts)