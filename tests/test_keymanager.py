import base64

import pytest

from serfkit.keymanager import (
    KeyManager,
    KeyRequestError,
    KeyRequestOptions,
    KeyResponse,
    stream_key_responses,
)
from serfkit.messages import MessageQuery, MessageType, decode_message, encode_message
from serfkit.query import NodeResponse, QueryParam, QueryResponse


def _key(n):
    return base64.b64encode(bytes([n]) * 32).decode()


def _raw(key):
    return base64.b64decode(key)


RING = [_key(1), _key(2), _key(3)]


class FakeNode:
    def __init__(self, name, keys):
        self.name = name
        self.keys = [_raw(k) for k in keys]
        self.primary = self.keys[0]

    def handle(self, name, raw_key):
        op = name[len("_serf_"):]
        if op == "install-key":
            if len(raw_key) not in (16, 24, 32):
                return {"Result": False, "Message": "key size must be 16, 24 or 32 bytes"}
            if raw_key not in self.keys:
                self.keys.append(raw_key)
        elif op == "use-key":
            if raw_key not in self.keys:
                return {"Result": False, "Message": "Requested key is not in the keyring"}
            self.primary = raw_key
        elif op == "remove-key":
            if raw_key == self.primary:
                return {"Result": False, "Message": "Removing the primary key is not allowed"}
            if raw_key in self.keys:
                self.keys.remove(raw_key)
        elif op == "list-keys":
            return {
                "Result": True,
                "Message": "",
                "Keys": [base64.b64encode(k).decode() for k in self.keys],
            }
        return {"Result": True, "Message": ""}


class FakeCluster:
    def __init__(self, nodes, reported_members=None):
        self.nodes = nodes
        self.reported_members = reported_members
        self.params = []
        self.names = []

    def num_members(self):
        if self.reported_members is not None:
            return self.reported_members
        return len(self.nodes)

    def query(self, name, payload, params):
        assert payload[0] == MessageType.KEY_REQUEST
        raw_key = decode_message(payload[1:], dict)["Key"]
        self.params.append(params)
        self.names.append(name)
        qr = QueryResponse(len(self.nodes), MessageQuery(id=1, timeout=params.timeout, name=name))
        for node in self.nodes:
            body = encode_message(MessageType.KEY_RESPONSE, node.handle(name, raw_key))
            qr.send_response(NodeResponse(node.name, body))
        qr.close()
        return qr


def _manager(cluster):
    return KeyManager(cluster.query, cluster.num_members, lambda: QueryParam(timeout=1.0))


@pytest.fixture
def cluster():
    return FakeCluster([FakeNode("s1", RING), FakeNode("s2", RING)])


def test_install_key(cluster):
    new_key = _key(9)
    primary = cluster.nodes[0].primary
    resp = _manager(cluster).install_key(new_key)
    assert resp.num_resp == 2
    assert resp.num_err == 0
    assert cluster.names == ["_serf_install-key"]
    for node in cluster.nodes:
        assert node.primary == primary
        assert _raw(new_key) in node.keys


def test_use_key(cluster):
    manager = _manager(cluster)
    manager.use_key(RING[2])
    for node in cluster.nodes:
        assert node.primary == _raw(RING[2])

    with pytest.raises(KeyRequestError) as info:
        manager.use_key(_key(200))
    assert info.value.response.num_err == 2
    assert str(info.value) == "2/2 nodes reported failure"
    assert info.value.response.messages["s1"] == "Requested key is not in the keyring"


def test_remove_key_not_installed(cluster):
    missing = _key(77)
    resp = _manager(cluster).remove_key(missing)
    assert resp.num_err == 0
    for node in cluster.nodes:
        assert _raw(missing) not in node.keys


def test_remove_installed_key(cluster):
    _manager(cluster).remove_key(RING[1])
    for node in cluster.nodes:
        assert _raw(RING[1]) not in node.keys
        assert len(node.keys) == 2


def test_remove_primary_key_fails(cluster):
    with pytest.raises(KeyRequestError) as info:
        _manager(cluster).remove_key(RING[0])
    assert info.value.response.num_err == 2


def test_list_keys():
    extra = _key(42)
    cluster = FakeCluster([FakeNode("s1", RING), FakeNode("s2", RING + [extra])])
    resp = _manager(cluster).list_keys()
    assert len(resp.keys) == len(RING) + 1
    assert resp.keys[extra] == 1
    for key in RING:
        assert resp.keys[key] == 2
    assert cluster.names == ["_serf_list-keys"]


def test_missing_responses_reported():
    cluster = FakeCluster([FakeNode("s1", RING), FakeNode("s2", RING)], reported_members=3)
    with pytest.raises(KeyRequestError) as info:
        _manager(cluster).install_key(_key(9))
    assert str(info.value) == "2/3 nodes reported success"
    assert info.value.response.num_resp == 2


def test_invalid_base64_key(cluster):
    with pytest.raises(KeyRequestError):
        _manager(cluster).install_key("not base64!!")
    assert cluster.names == []


def test_relay_factor_option(cluster):
    _manager(cluster).install_key(_key(9), KeyRequestOptions(relay_factor=3))
    assert cluster.params[0].relay_factor == 3
    assert cluster.params[0].timeout == 1.0


def test_query_error_propagates():
    def failing_query(name, payload, params):
        raise RuntimeError("query failed")

    manager = KeyManager(failing_query, lambda: 1)
    with pytest.raises(RuntimeError, match="query failed"):
        manager.list_keys()


def _key_resp(body):
    return encode_message(MessageType.KEY_RESPONSE, body)


def _recorded_responses(names, consumed):
    for name in names:
        consumed.append(name)
        yield NodeResponse(name, _key_resp({"Result": True}))


def test_stream_invalid_type():
    resp = KeyResponse(num_nodes=5)
    stream_key_responses(resp, [NodeResponse("a", bytes([1, 2, 3]))])
    assert resp.num_resp == 1
    assert resp.num_err == 1
    assert resp.messages["a"] == "Invalid key query response type: [1 2 3]"


def test_stream_empty_payload():
    resp = KeyResponse(num_nodes=5)
    stream_key_responses(resp, [NodeResponse("a", b"")])
    assert resp.messages["a"] == "Invalid key query response type: []"
    assert resp.num_err == 1


def test_stream_undecodable():
    resp = KeyResponse(num_nodes=5)
    payload = bytes([MessageType.KEY_RESPONSE, 0xC1])
    stream_key_responses(resp, [NodeResponse("a", payload)])
    assert resp.num_err == 1
    assert resp.messages["a"].startswith("Failed to decode key query response")


def test_stream_failure_and_warning():
    resp = KeyResponse(num_nodes=5)
    stream_key_responses(
        resp,
        [
            NodeResponse("a", _key_resp({"Result": False, "Message": "boom"})),
            NodeResponse("b", _key_resp({"Result": True, "Message": "truncated"})),
        ],
    )
    assert resp.num_resp == 2
    assert resp.num_err == 1
    assert resp.messages == {"a": "boom", "b": "truncated"}


def test_stream_counts_keys():
    resp = KeyResponse(num_nodes=5)
    stream_key_responses(
        resp,
        [
            NodeResponse("a", _key_resp({"Result": True, "Keys": ["k1", "k2"]})),
            NodeResponse("b", _key_resp({"Result": True, "Keys": ["k1"]})),
        ],
    )
    assert resp.keys == {"k1": 2, "k2": 1}


def test_stream_stops_when_all_nodes_answered():
    consumed = []
    resp = KeyResponse(num_nodes=2)
    stream_key_responses(resp, _recorded_responses(("a", "b", "c"), consumed))
    assert resp.num_resp == 2
    assert consumed == ["a", "b"]