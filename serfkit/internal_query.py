"""Handling of the queries that cluster members run among themselves."""

from __future__ import annotations

import base64
import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from .event import Member, Query
from .messages import MessageQueryResponse, MessageType, decode_message, encode_message

# Prefix of queries that are handled internally and not forwarded.
INTERNAL_QUERY_PREFIX = "_serf_"

PING_QUERY = "ping"
CONFLICT_QUERY = "conflict"
INSTALL_KEY_QUERY = "install-key"
USE_KEY_QUERY = "use-key"
REMOVE_KEY_QUERY = "remove-key"
LIST_KEYS_QUERY = "list-keys"

# Smallest size of one encoded key; bounds how many keys fit in a response.
MIN_ENCODED_KEY_LENGTH = 25

_VALID_KEY_SIZES = (16, 24, 32)

_NO_KEYRING_MESSAGE = "No keyring to modify (encryption not enabled)"
_EMPTY_KEYRING_MESSAGE = "Keyring is empty (encryption not enabled)"


def internal_query_name(name: str) -> str:
    """Return the full query name of an internal query."""
    return INTERNAL_QUERY_PREFIX + name


def is_internal_query(name: str) -> bool:
    """Whether a query name belongs to an internal query."""
    return name.startswith(INTERNAL_QUERY_PREFIX)


@dataclass
class NodeKeyResponse:
    """One node's answer to a key query."""

    result: bool = False
    message: str = ""
    keys: list[str] = field(default_factory=list)

    def to_wire(self) -> dict:
        return {"Result": self.result, "Message": self.message, "Keys": list(self.keys)}


class Keyring:
    """Encryption keys of a node; the primary key is always listed first."""

    def __init__(self, keys: Iterable[bytes] = (), primary_key: bytes | None = None) -> None:
        self._lock = threading.Lock()
        self._keys: list[bytes] = []
        keys = [bytes(k) for k in keys]
        if keys and primary_key is None:
            raise ValueError("Empty primary key not allowed")
        for key in keys:
            self._validate(key)
        if primary_key is not None:
            primary_key = bytes(primary_key)
            self._validate(primary_key)
            self._install(keys, primary_key)

    @staticmethod
    def _validate(key: bytes) -> None:
        if len(key) not in _VALID_KEY_SIZES:
            raise ValueError("key size must be 16, 24 or 32 bytes")

    def _install(self, keys: list[bytes], primary: bytes) -> None:
        ordered = [primary]
        for key in keys:
            if key not in ordered:
                ordered.append(key)
        self._keys = ordered

    def add_key(self, key: bytes) -> None:
        """Add a key; adding a key that is already present does nothing."""
        key = bytes(key)
        self._validate(key)
        with self._lock:
            if key in self._keys:
                return
            primary = self._keys[0] if self._keys else key
            self._install(self._keys + [key], primary)

    def use_key(self, key: bytes) -> None:
        """Make an installed key the primary key."""
        key = bytes(key)
        with self._lock:
            if key not in self._keys:
                raise ValueError("Requested key is not in the keyring")
            self._install(self._keys, key)

    def remove_key(self, key: bytes) -> None:
        """Remove a key; the primary key cannot be removed."""
        key = bytes(key)
        with self._lock:
            if self._keys and key == self._keys[0]:
                raise ValueError("Removing the primary key is not allowed")
            self._keys = [k for k in self._keys if k != key]

    def get_keys(self) -> list[bytes]:
        """Return the installed keys, primary first."""
        with self._lock:
            return list(self._keys)

    def primary_key(self) -> bytes | None:
        """Return the primary key, or None if the keyring is empty."""
        with self._lock:
            return self._keys[0] if self._keys else None


def key_list_response_with_correct_size(
    q: Query, resp: NodeKeyResponse
) -> tuple[bytes, MessageQueryResponse]:
    """Encode a key list response, truncating ``resp.keys`` in place until it fits.

    Returns the encoded response and the response message. Raises
    ValueError if no truncation makes it fit.
    """
    max_list_keys = q.response_size_limit // MIN_ENCODED_KEY_LENGTH
    actual = len(resp.keys)
    for i in range(max_list_keys, -1, -1):
        buf = encode_message(MessageType.KEY_RESPONSE, resp.to_wire())
        qresp = q.create_response(buf)
        raw = encode_message(MessageType.QUERY_RESPONSE, qresp)
        try:
            q.check_response_size(raw)
        except ValueError:
            resp.keys = resp.keys[:i]
            resp.message = (
                f"truncated key list response, showing first {i} of {actual} keys"
            )
            continue
        if len(resp.keys) < actual:
            logging.getLogger(__name__).warning("%s", resp.message)
        return raw, qresp
    raise ValueError("Failed to truncate response so that it fits into message")


def _member_to_wire(member: Member | None) -> Any:
    if member is None:
        return None
    addr = ipaddress.ip_address(member.addr).packed if member.addr else b""
    return {
        "Name": member.name,
        "Addr": addr,
        "Port": member.port,
        "Tags": dict(member.tags),
        "Status": int(member.status),
        "ProtocolMin": member.protocol_min,
        "ProtocolMax": member.protocol_max,
        "ProtocolCur": member.protocol_cur,
        "DelegateMin": member.delegate_min,
        "DelegateMax": member.delegate_max,
        "DelegateCur": member.delegate_cur,
    }


class InternalQueryHandler:
    """Answers internal queries and forwards every other event.

    ``out`` receives forwarded events (they are dropped when it is None);
    ``lookup_member`` finds a member by name for conflict resolution;
    ``keyring`` is None when encryption is disabled; ``persist_keyring``
    is called after every successful keyring change.
    """

    def __init__(
        self,
        node_name: str,
        *,
        keyring: Keyring | None = None,
        lookup_member: Callable[[str], Member | None] | None = None,
        out: Callable[[Any], None] | None = None,
        persist_keyring: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.node_name = node_name
        self.keyring = keyring
        self._lookup_member = lookup_member
        self._out = out
        self._persist_keyring = persist_keyring
        self._log = logger or logging.getLogger(__name__)
        self._handlers: dict[str, Callable[[Query], None]] = {
            PING_QUERY: lambda q: None,
            CONFLICT_QUERY: self._handle_conflict,
            INSTALL_KEY_QUERY: self._handle_install_key,
            USE_KEY_QUERY: self._handle_use_key,
            REMOVE_KEY_QUERY: self._handle_remove_key,
            LIST_KEYS_QUERY: self._handle_list_keys,
        }

    @property
    def encryption_enabled(self) -> bool:
        return self.keyring is not None

    def dispatch(self, event: Any) -> bool:
        """Handle an internal query or forward the event; True if handled."""
        if isinstance(event, Query) and is_internal_query(event.name):
            self.handle_query(event)
            return True
        if self._out is not None:
            self._out(event)
        return False

    def handle_query(self, q: Query) -> None:
        """Run the handler for an internal query."""
        query_name = q.name[len(INTERNAL_QUERY_PREFIX):]
        handler = self._handlers.get(query_name)
        if handler is None:
            self._log.warning("Unhandled internal query '%s'", query_name)
            return
        handler(q)

    def _handle_conflict(self, q: Query) -> None:
        node = q.payload.decode("utf-8", errors="replace")
        if node == self.node_name:
            return
        self._log.debug("Got conflict resolution query for '%s'", node)
        member = self._lookup_member(node) if self._lookup_member else None
        buf = encode_message(MessageType.CONFLICT_RESPONSE, _member_to_wire(member))
        try:
            q.respond(buf)
        except RuntimeError as err:
            self._log.error("Failed to respond to conflict query: %s", err)

    def _send_key_response(self, q: Query, resp: NodeKeyResponse) -> None:
        try:
            if q.name == internal_query_name(LIST_KEYS_QUERY):
                raw, qresp = key_list_response_with_correct_size(q, resp)
                q.respond_with_message_and_response(raw, qresp)
            else:
                q.respond(encode_message(MessageType.KEY_RESPONSE, resp.to_wire()))
        except (ValueError, RuntimeError, OSError) as err:
            self._log.error("Failed to respond to key query: %s", err)

    def _decode_key(self, q: Query) -> bytes:
        if not q.payload:
            raise ValueError("empty key request")
        data = decode_message(q.payload[1:], dict)
        key = data.get("Key")
        if not isinstance(key, (bytes, bytearray)):
            raise ValueError("key request has no key")
        return bytes(key)

    def _modify_keyring(
        self, q: Query, label: str, action: Callable[[Keyring, bytes], None], what: str
    ) -> None:
        response = NodeKeyResponse()
        try:
            key = self._decode_key(q)
        except ValueError as err:
            self._log.error("Failed to decode key request: %s", err)
            self._send_key_response(q, response)
            return
        if self.keyring is None:
            response.message = _NO_KEYRING_MESSAGE
            self._log.error(_NO_KEYRING_MESSAGE)
            self._send_key_response(q, response)
            return
        self._log.info("Received %s query", label)
        try:
            action(self.keyring, key)
        except ValueError as err:
            response.message = str(err)
            self._log.error("Failed to %s: %s", what, err)
            self._send_key_response(q, response)
            return
        if self._persist_keyring is not None:
            try:
                self._persist_keyring()
            except OSError as err:
                response.message = str(err)
                self._log.error("Failed to write keyring file: %s", err)
                self._send_key_response(q, response)
                return
        response.result = True
        self._send_key_response(q, response)

    def _handle_install_key(self, q: Query) -> None:
        self._modify_keyring(q, INSTALL_KEY_QUERY, Keyring.add_key, "install key")

    def _handle_use_key(self, q: Query) -> None:
        self._modify_keyring(q, USE_KEY_QUERY, Keyring.use_key, "change primary key")

    def _handle_remove_key(self, q: Query) -> None:
        self._modify_keyring(q, REMOVE_KEY_QUERY, Keyring.remove_key, "remove key")

    def _handle_list_keys(self, q: Query) -> None:
        response = NodeKeyResponse()
        if self.keyring is None:
            response.message = _EMPTY_KEYRING_MESSAGE
            self._log.error(_EMPTY_KEYRING_MESSAGE)
        else:
            self._log.info("Received list-keys query")
            response.keys = [
                base64.b64encode(k).decode("ascii") for k in self.keyring.get_keys()
            ]
            response.result = True
        self._send_key_response(q, response)