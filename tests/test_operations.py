import json
import threading

import pytest

from graphcas import CancellationToken, send, receive
from graphcas.config import GraphCasConfig
from graphcas.core import canonical_json_bytes
from graphcas.decomposer import decompose
from graphcas.errors import (
    CyclicGraphError,
    HashMismatchError,
    MissingObjectError,
    OperationCancelled,
    TransportReadError,
    TransportWriteError,
)
from graphcas.node import Node
from graphcas.transports import DiskTransport, MemoryTransport


class RecordingTransport(MemoryTransport):
    """Memory transport that remembers the order of puts."""

    def __init__(self, name="recording"):
        super().__init__(name)
        self.order = []
        self._order_lock = threading.Lock()

    def put(self, object_id, payload):
        with self._order_lock:
            self.order.append(object_id)
        super().put(object_id, payload)


class FailingTransport(MemoryTransport):
    """Fails on the first put (or on a chosen id)."""

    def __init__(self, name="flaky", fail_on=None):
        super().__init__(name)
        self.fail_on = fail_on
        self.attempts = 0

    def put(self, object_id, payload):
        self.attempts += 1
        if self.fail_on is None or object_id == self.fail_on:
            raise OSError("disk full")
        super().put(object_id, payload)


class CancellingTransport(MemoryTransport):
    def __init__(self, token):
        super().__init__("cancelling")
        self.token = token

    def put(self, object_id, payload):
        super().put(object_id, payload)
        self.token.cancel()


def _scene():
    """A small scene: shared geometry, repeated layers, inline metadata."""
    mesh = Node(kind="mesh", vertices=[0.0, 1.5, 2.25, -3.0], faces=[0, 1, 2])
    root = Node(name="level 1", meta=Node(author="ops", tags=["a", "b"]))
    walls = []
    for i in range(3):
        wall = Node(name=f"wall {i}", height=3.2)
        wall["@geometry"] = mesh
        wall["@layers"] = [Node(material="brick"), Node(material="plaster")]
        walls.append(wall)
    root["@walls"] = walls
    root["@mesh"] = mesh
    return root


def _copy(transport, skip=(), replace=None):
    out = MemoryTransport(name="copy")
    for oid, data in transport.objects.items():
        if oid in skip:
            continue
        out.put(oid, (replace or {}).get(oid, data))
    return out


class TestSend:

    def test_returns_root_id(self):
        root = _scene()
        store = MemoryTransport()
        root_id = send(root, [store])
        assert root_id == decompose(_scene()).root_id
        assert store.has(root_id)

    def test_writes_each_object_once_per_transport(self):
        a, b = MemoryTransport("a"), MemoryTransport("b")
        send(_scene(), [a, b])
        expected = decompose(_scene())
        assert dict(a.objects) == expected.objects
        assert dict(b.objects) == expected.objects
        assert a.writes == b.writes == len(expected.objects)

    def test_children_written_before_parents(self):
        store = RecordingTransport()
        send(_scene(), [store], pool_size=4)
        position = {oid: i for i, oid in enumerate(store.order)}
        assert len(position) == len(store.order)

        for oid, data in store.objects.items():
            closure = json.loads(data).get("__closure", {})
            for child, depth in closure.items():
                if depth == 1:
                    assert position[child] < position[oid]

    def test_empty_root(self):
        store = MemoryTransport()
        root_id = send(None, [store])
        assert store.get(root_id) == b"{}"

    def test_requires_transport(self):
        with pytest.raises(ValueError):
            send(Node(), [])

    def test_pool_size_from_config(self):
        config = GraphCasConfig()
        config.set("send.pool_size", 1)
        store = RecordingTransport()
        send(_scene(), [store], config=config)
        assert len(store.order) == len(decompose(_scene()).objects)

    def test_cycle_rejected_before_any_write(self):
        a, b = Node(), Node()
        a["@b"] = b
        b["@a"] = a
        store = MemoryTransport()
        with pytest.raises(CyclicGraphError):
            send(a, [store])
        assert len(store) == 0


class TestSendProgress:

    def test_counts_are_monotonic(self):
        events = []
        store = MemoryTransport("store")
        send(_scene(), [store], on_progress=events.append)

        total = len(decompose(_scene()).objects)
        assert [e.objects for e in events] == list(range(1, total + 1))
        assert all(e.total_objects == total for e in events)
        byte_counts = [e.bytes for e in events]
        assert byte_counts == sorted(byte_counts)
        assert byte_counts[-1] == sum(len(d) for d in store.objects.values())

    def test_reported_per_transport(self):
        events = []
        send(_scene(), [MemoryTransport("a"), MemoryTransport("b")], on_progress=events.append)
        assert {e.transport for e in events} == {"a", "b"}

    def test_callback_failure_does_not_fail_send(self):
        def explode(event):
            raise RuntimeError("ui went away")

        store = MemoryTransport()
        root_id = send(_scene(), [store], on_progress=explode)
        assert store.has(root_id)


class TestSendFailure:

    def test_error_names_transport_and_object(self):
        root = Node(name="root")
        root["@child"] = Node(v=1)
        child_id = decompose(Node(v=1)).root_id

        with pytest.raises(TransportWriteError) as exc_info:
            send(root, [MemoryTransport("ok"), FailingTransport("flaky", fail_on=child_id)])
        err = exc_info.value
        assert err.transport == "flaky"
        assert err.object_id == child_id
        assert isinstance(err.__cause__, OSError)

    def test_first_failure_stops_the_transport(self):
        root = Node()
        root["@items"] = [Node(i=i) for i in range(10)]
        flaky = FailingTransport()
        with pytest.raises(TransportWriteError):
            send(root, [flaky], pool_size=1)
        assert flaky.attempts == 1
        assert len(flaky) == 0

    def test_parent_never_written_after_child_failure(self):
        root = Node(name="root")
        root["@child"] = Node(v=1)
        root_id = decompose(root).root_id
        child_id = decompose(Node(v=1)).root_id

        flaky = FailingTransport(fail_on=child_id)
        with pytest.raises(TransportWriteError):
            send(root, [flaky])
        assert not flaky.has(root_id)

    def test_remote_flush_failure_fails_the_send(self, remote, remote_server):
        remote_server.failures = [400]
        mem = MemoryTransport("mem")
        expected = decompose(_scene()).objects

        with pytest.raises(TransportWriteError) as exc_info:
            send(_scene(), [remote, mem])
        err = exc_info.value
        assert err.transport == remote.name
        assert err.object_id in expected
        assert remote_server.objects == {}

        for oid, data in mem.objects.items():
            assert expected[oid] == data


class TestCancellation:

    def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        store = MemoryTransport()
        with pytest.raises(OperationCancelled):
            send(_scene(), [store], cancel=token)
        assert len(store) == 0

    def test_cancelled_mid_send(self):
        token = CancellationToken()
        store = CancellingTransport(token)
        with pytest.raises(OperationCancelled):
            send(_scene(), [store], cancel=token, pool_size=1)
        assert len(store) < len(decompose(_scene()).objects)

    def test_cancelled_receive(self):
        store = MemoryTransport()
        root_id = send(_scene(), [store])
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            receive(root_id, store, cancel=token)


class TestReceive:

    def test_round_trip(self):
        store = MemoryTransport()
        root_id = send(_scene(), [store])
        assert receive(root_id, store) == _scene()

    def test_round_trip_depth_chain(self, depth_chain):
        store = MemoryTransport()
        root_id = send(depth_chain["d1"], [store])
        received = receive(root_id, store)

        assert received.is_detached("detach")
        d5 = received["joker"]
        assert d5.get_str("name") == "depth five"
        assert received["detach"]["joker"][0] is d5
        assert received["detach"]["detach"]["detach"]["detach"] is d5

    def test_shared_chunks_are_one_instance(self):
        store = MemoryTransport()
        root_id = send(_scene(), [store])
        received = receive(root_id, store)

        walls = received.get_list("walls")
        assert walls[0]["geometry"] is walls[1]["geometry"] is received["mesh"]
        assert walls[0]["layers"][0] is walls[2]["layers"][0]

    def test_inline_nodes_restored(self):
        store = MemoryTransport()
        root_id = send(_scene(), [store])
        meta = receive(root_id, store).get_node("meta")
        assert meta.get_str("author") == "ops"
        assert not receive(root_id, store).is_detached("meta")

    def test_uppercase_id_accepted(self):
        store = MemoryTransport()
        root_id = send(Node(v=1), [store])
        assert receive(root_id.upper(), store) == Node(v=1)

    def test_missing_root(self):
        root_id = decompose(Node(v=1)).root_id
        with pytest.raises(MissingObjectError) as exc_info:
            receive(root_id, MemoryTransport())
        assert exc_info.value.object_id == root_id
        assert exc_info.value.parent_id is None

    def test_missing_child_named(self):
        root = Node(name="root")
        root["@child"] = Node(v=1)
        store = MemoryTransport()
        root_id = send(root, [store])
        child_id = decompose(Node(v=1)).root_id

        with pytest.raises(MissingObjectError) as exc_info:
            receive(root_id, _copy(store, skip={child_id}))
        assert exc_info.value.object_id == child_id
        assert exc_info.value.parent_id == root_id
        assert child_id in str(exc_info.value)

    def test_tampered_payload_detected(self):
        root = Node(name="root")
        root["@child"] = Node(v=1)
        store = MemoryTransport()
        root_id = send(root, [store])
        child_id = decompose(Node(v=1)).root_id
        tampered = _copy(store, replace={child_id: b'{"v":2}'})

        with pytest.raises(HashMismatchError) as exc_info:
            receive(root_id, tampered)
        assert exc_info.value.expected == child_id

        received = receive(root_id, tampered, verify=False)
        assert received["child"]["v"] == 2

    def test_corrupt_payload_is_read_error(self):
        root_id = decompose(Node(v=1)).root_id
        store = MemoryTransport("bad")
        store.put(root_id, b"\xff\xfe not json")
        with pytest.raises(TransportReadError) as exc_info:
            receive(root_id, store)
        assert "[bad]" in str(exc_info.value)

    def test_self_referencing_store_rejected(self):
        bogus = "ab" * 32
        store = MemoryTransport()
        store.put(bogus, canonical_json_bytes({"@me": {"__ref": bogus}}))
        with pytest.raises(CyclicGraphError):
            receive(bogus, store, verify=False)

    def test_progress_counts_fetches(self):
        store = MemoryTransport()
        root_id = send(_scene(), [store])
        events = []
        receive(root_id, store, on_progress=events.append)
        assert [e.objects for e in events] == list(range(1, len(store) + 1))
        assert all(e.total_objects == len(store) for e in events)

    def test_progress_total_for_leaf_root(self):
        store = MemoryTransport()
        root_id = send(Node(v=1), [store])
        events = []
        receive(root_id, store, on_progress=events.append)
        assert [(e.objects, e.total_objects) for e in events] == [(1, 1)]

    def test_prefetch_uses_batches(self):
        calls = []

        class CountingTransport(MemoryTransport):
            def get_many(self, object_ids):
                ids = list(object_ids)
                calls.append(len(ids))
                return super().get_many(ids)

        store = CountingTransport()
        root_id = send(_scene(), [store])
        config = GraphCasConfig()
        config.set("receive.prefetch_batch_size", 2)
        receive(root_id, store, config=config)

        closure_size = len(decompose(_scene()).closures[root_id])
        assert sum(calls) == closure_size
        assert all(n <= 2 for n in calls)


class TestLocalCache:

    def test_fetched_objects_written_to_local(self):
        remote = MemoryTransport("remote")
        root_id = send(_scene(), [remote])
        local = MemoryTransport("local")

        receive(root_id, remote, local=local)
        assert dict(local.objects) == dict(remote.objects)

    def test_local_hit_skips_transport(self):
        remote = MemoryTransport("remote")
        root_id = send(_scene(), [remote])
        local = _copy(remote)

        received = receive(root_id, MemoryTransport("empty"), local=local)
        assert received == _scene()

    def test_tampered_fetch_is_not_cached(self, tmp_path):
        root = Node(name="root")
        root["@child"] = Node(v=1)
        good = MemoryTransport("good")
        root_id = send(root, [good])
        child_id = decompose(Node(v=1)).root_id
        tampered = _copy(good, replace={child_id: b'{"v":2}'})
        local = DiskTransport(tmp_path)

        with pytest.raises(HashMismatchError):
            receive(root_id, tampered, local=local)
        assert not local.has(child_id)

        assert receive(root_id, good, local=local) == root
        assert local.get(child_id) == good.get(child_id)

    def test_unverified_receive_does_not_cache_bad_payload(self):
        root = Node(name="root")
        root["@child"] = Node(v=1)
        good = MemoryTransport("good")
        root_id = send(root, [good])
        child_id = decompose(Node(v=1)).root_id
        tampered = _copy(good, replace={child_id: b'{"v":2}'})
        local = MemoryTransport("local")

        received = receive(root_id, tampered, local=local, verify=False)
        assert received["child"]["v"] == 2
        assert local.has(root_id)
        assert not local.has(child_id)

    def test_round_trip_over_remote(self, remote, remote_server):
        local = MemoryTransport("local")
        root_id = send(_scene(), [remote, local])
        assert len(remote_server.objects) == len(local)

        assert receive(root_id, remote) == _scene()
        assert remote_server.headers["Authorization"] == "Bearer secret-token"


@pytest.mark.slow
def test_large_shared_graph_round_trip():
    shared = [Node(i=i) for i in range(200)]
    root = Node()
    children = []
    for i in range(2000):
        child = Node(n=i)
        child["@a"] = shared[i % 200]
        child["@b"] = [shared[(i * 7) % 200], shared[(i * 13) % 200]]
        children.append(child)
    root["@children"] = children

    store = MemoryTransport()
    root_id = send(root, [store], pool_size=16)
    assert len(store) == 2000 + 200 + 1
    received = receive(root_id, store)
    assert received["children"][0]["a"] is received["children"][200]["a"]
