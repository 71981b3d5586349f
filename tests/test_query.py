import threading
import time

import pytest

from serfkit.event import Member, MemberStatus
from serfkit.messages import (
    QUERY_FLAG_ACK,
    FilterTag,
    FilterType,
    MessageQuery,
    decode_message,
    encode_filter,
)
from serfkit.query import (
    NodeResponse,
    QueryParam,
    QueryResponse,
    default_query_params,
    default_query_timeout,
    k_random_members,
    should_process_query,
)


def test_default_query_timeout_single_member():
    assert default_query_timeout(0.2, 16, 1) == pytest.approx(3.2)


def test_default_query_timeout_grows_with_members():
    assert default_query_timeout(0.2, 16, 9) == pytest.approx(3.2)
    assert default_query_timeout(0.2, 16, 10) == pytest.approx(6.4)


def test_default_query_params():
    params = default_query_params(0.2, 16, 1)
    assert params.filter_nodes is None
    assert params.filter_tags is None
    assert params.request_ack is False
    assert params.timeout == pytest.approx(3.2)


def test_encode_filters():
    q = QueryParam(
        filter_nodes=["foo", "bar"],
        filter_tags={"role": "^web", "datacenter": "aws$"},
    )
    filters = q.encode_filters()
    assert len(filters) == 3
    assert filters[0][0] == FilterType.NODE
    assert filters[1][0] == FilterType.TAG
    assert filters[2][0] == FilterType.TAG
    assert decode_message(filters[0][1:], list) == ["foo", "bar"]
    tags = {decode_message(f[1:], FilterTag).tag for f in filters[1:]}
    assert tags == {"role", "datacenter"}


def test_encode_filters_empty():
    assert QueryParam().encode_filters() == []


TAGS = {"role": "webserver", "datacenter": "east-aws"}


def test_should_process_matching():
    q = QueryParam(
        filter_nodes=["foo", "bar", "zip"],
        filter_tags={"role": "^web", "datacenter": "aws$"},
    )
    assert should_process_query(q.encode_filters(), "zip", TAGS) is True


def test_should_process_omit_node():
    q = QueryParam(filter_nodes=["foo", "bar"])
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_missing_tag():
    q = QueryParam(filter_tags={"other": "cool"})
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_bad_tag():
    q = QueryParam(filter_tags={"role": "db"})
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_no_filters():
    assert should_process_query([], "zip", None) is True


def test_should_process_unknown_filter_type():
    assert should_process_query([bytes([7]) + b"\x90"], "zip", TAGS) is False


def test_should_process_bad_regex():
    filt = encode_filter(FilterType.TAG, FilterTag(tag="role", expr="(unclosed"))
    assert should_process_query([filt], "zip", TAGS) is False


def test_should_process_undecodable_node_filter():
    assert should_process_query([bytes([FilterType.NODE]) + b"\xc1"], "zip", TAGS) is False


def _members():
    statuses = [MemberStatus.ALIVE, MemberStatus.FAILED, MemberStatus.LEFT]
    return [Member(name=f"test{i}", status=statuses[i % 3]) for i in range(90)]


def _reject(m):
    return m.name == "test0" or m.status != MemberStatus.ALIVE


def test_k_random_members():
    nodes = _members()
    s1 = k_random_members(3, nodes, _reject)
    s2 = k_random_members(3, nodes, _reject)
    s3 = k_random_members(3, nodes, _reject)
    assert s1 != s2
    assert s1 != s3
    assert s2 != s3
    for sample in (s1, s2, s3):
        assert len(sample) == 3
        assert len({m.name for m in sample}) == 3
        for m in sample:
            assert m.name != "test0"
            assert m.status == MemberStatus.ALIVE


def test_k_random_members_small_list_is_exhaustive_limit():
    nodes = [Member(name="only", status=MemberStatus.ALIVE)]
    assert [m.name for m in k_random_members(3, nodes)] == ["only"]


def test_k_random_members_empty():
    assert k_random_members(3, []) == []


def _query(timeout=5.0, flags=0):
    return MessageQuery(ltime=7, id=42, timeout=timeout, flags=flags)


def test_query_response_fields():
    before = time.time()
    qr = QueryResponse(4, _query(timeout=5.0))
    assert qr.id == 42
    assert qr.ltime == 7
    assert before + 5.0 <= qr.deadline <= time.time() + 5.0


def test_query_response_delivers_and_closes():
    qr = QueryResponse(4, _query())
    qr.send_response(NodeResponse("a", b"one"))
    qr.send_response(NodeResponse("b", b"two"))
    qr.close()
    assert list(qr.responses()) == [NodeResponse("a", b"one"), NodeResponse("b", b"two")]
    assert qr.finished() is True


def test_query_response_drops_duplicates():
    qr = QueryResponse(4, _query())
    qr.send_response(NodeResponse("a", b"one"))
    qr.send_response(NodeResponse("a", b"again"))
    qr.close()
    assert [r.payload for r in qr.responses()] == [b"one"]


def test_query_response_ignores_after_close():
    qr = QueryResponse(4, _query())
    qr.close()
    qr.send_response(NodeResponse("a", b"one"))
    assert list(qr.responses()) == []


def test_query_response_full_buffer():
    qr = QueryResponse(1, _query())
    qr.send_response(NodeResponse("a"))
    with pytest.raises(RuntimeError, match="dropping"):
        qr.send_response(NodeResponse("b"))


def test_query_response_finished_after_deadline():
    qr = QueryResponse(1, _query(timeout=-1.0))
    assert qr.finished() is True
    assert list(qr.responses()) == []


def test_query_response_not_finished_while_open():
    qr = QueryResponse(1, _query(timeout=10.0))
    assert qr.finished() is False


def test_query_response_timeout_ends_iteration():
    qr = QueryResponse(1, _query(timeout=10.0))
    start = time.time()
    assert list(qr.responses(timeout=0.05)) == []
    assert time.time() - start < 1.0


def test_query_response_waits_for_late_response():
    qr = QueryResponse(2, _query(timeout=5.0))

    def deliver():
        time.sleep(0.05)
        qr.send_response(NodeResponse("late", b"x"))
        qr.close()

    worker = threading.Thread(target=deliver)
    worker.start()
    got = list(qr.responses())
    worker.join()
    assert got == [NodeResponse("late", b"x")]


def test_acks_when_requested():
    qr = QueryResponse(3, _query(flags=QUERY_FLAG_ACK))
    qr.send_ack("a")
    qr.send_ack("a")
    qr.send_ack("b")
    qr.close()
    assert list(qr.acks()) == ["a", "b"]


def test_acks_not_requested():
    qr = QueryResponse(3, _query())
    with pytest.raises(RuntimeError):
        qr.send_ack("a")
    assert list(qr.acks()) == []