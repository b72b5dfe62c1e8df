from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from hr_pulse.errors import StoreError, TransientStoreError
from hr_pulse.firebase_client import EventStreamParser, FirebaseApiError, FirebaseRecordStore
from hr_pulse.models import RecordKind
from hr_pulse.store import InMemoryRecordStore, StorePaths, merge_at, set_at, split_path

BASE_URL = "https://hr-pulse-test.firebaseio.com"


def test_store_paths_layout():
    paths = StorePaths("admin-1")
    assert paths.roster() == "users/admin-1/employees"
    assert paths.record("E1", RecordKind.LEAVES, "l1") == "users/admin-1/employees/E1/leaves/l1"


def test_set_at_places_and_removes_nodes():
    tree = set_at(None, split_path("a/b/c"), 1)
    assert tree == {"a": {"b": {"c": 1}}}

    tree = set_at(tree, ["a", "d"], {"x": None, "y": 2})
    assert tree == {"a": {"b": {"c": 1}, "d": {"y": 2}}}

    tree = set_at(tree, ["a", "b", "c"], None)
    assert tree == {"a": {"d": {"y": 2}}}

    assert set_at(tree, ["a"], None) is None


def test_merge_at_accepts_sub_paths():
    tree = {"m1": {"title": "Standup", "status": "scheduled"}}
    tree = merge_at(tree, ["m1"], {"status": "cancelled", "notes/agenda": "retro"})
    assert tree == {"m1": {"title": "Standup", "status": "cancelled", "notes": {"agenda": "retro"}}}


def test_in_memory_store_notifies_ancestors_and_descendants():
    async def scenario():
        store = InMemoryRecordStore({"root": {"a": {"x": 1}, "b": {"y": 2}}})
        seen = {"root": [], "a": [], "b": []}
        await store.subscribe("root", seen["root"].append)
        await store.subscribe("root/a", seen["a"].append)
        sub_b = await store.subscribe("root/b", seen["b"].append)
        await store.patch("root/a", {"x": 5})
        await store.write("root", {"a": {"x": 6}})
        sub_b.unsubscribe()
        await store.delete("root/a")
        return store, seen

    store, seen = asyncio.run(scenario())

    assert seen["a"] == [{"x": 1}, {"x": 5}, {"x": 6}, None]
    assert seen["b"] == [{"y": 2}, None]
    assert seen["root"][-1] is None
    assert len(seen["root"]) == 4
    assert store.subscription_count == 2


def test_in_memory_snapshots_are_copies():
    async def scenario():
        store = InMemoryRecordStore({"root": {"a": {"x": 1}}})
        seen = []
        await store.subscribe("root", seen.append)
        seen[0]["a"]["x"] = 99
        return await store.read("root/a/x")

    assert asyncio.run(scenario()) == 1


def test_in_memory_patch_requires_mapping():
    async def scenario():
        await InMemoryRecordStore().patch("root", ["not", "a", "mapping"])

    with pytest.raises(StoreError):
        asyncio.run(scenario())


def test_event_stream_parser():
    parser = EventStreamParser()
    lines = [": comment", "event: put", 'data: {"path": "/",', 'data: "data": 1}', "", "", "event: keep-alive", "data: null", ""]
    events = [event for event in map(parser.feed, lines) if event is not None]

    assert [event.event for event in events] == ["put", "keep-alive"]
    assert json.loads(events[0].data) == {"path": "/", "data": 1}


def _sse(*events):
    body = ""
    for name, payload in events:
        body += f"event: {name}\ndata: {json.dumps(payload)}\n\n"
    return body.encode()


def test_rest_operations_map_to_firebase_requests():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"name": "Asha"})
        return httpx.Response(200, json=None)

    async def scenario():
        store = FirebaseRecordStore(BASE_URL, "token-1", transport=httpx.MockTransport(handler))
        value = await store.read("users/admin-1/employees/E1")
        await store.patch("users/admin-1/employees/E1/meetings/m1", {"reminded5MinBefore": True})
        await store.write("users/admin-1/employees/E1/meetings/m2", {"title": "Sync"})
        await store.delete("users/admin-1/employees/E1/meetings/m2")
        await store.close()
        return value

    assert asyncio.run(scenario()) == {"name": "Asha"}
    assert [request.method for request in requests] == ["GET", "PATCH", "PUT", "DELETE"]
    assert requests[0].url.path == "/users/admin-1/employees/E1.json"
    assert requests[0].url.params["auth"] == "token-1"
    assert json.loads(requests[1].content) == {"reminded5MinBefore": True}
    assert requests[3].url.path == "/users/admin-1/employees/E1/meetings/m2.json"


@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [(500, TransientStoreError), (503, TransientStoreError), (429, TransientStoreError), (401, FirebaseApiError)],
)
def test_error_statuses_are_classified(status_code, error_type):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"error": "Permission denied"})

    async def scenario():
        store = FirebaseRecordStore(BASE_URL, transport=httpx.MockTransport(handler))
        try:
            await store.patch("users/admin-1/employees/E1/leaves/l1", {"status": "approved"})
        finally:
            await store.close()

    with pytest.raises(error_type) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.operation == "patch"
    if error_type is FirebaseApiError:
        assert "Permission denied" in excinfo.value.detail


def test_connection_errors_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        store = FirebaseRecordStore(BASE_URL, transport=httpx.MockTransport(handler))
        try:
            await store.read("users/admin-1/employees")
        finally:
            await store.close()

    with pytest.raises(TransientStoreError):
        asyncio.run(scenario())


def test_stream_folds_events_into_snapshots():
    body = _sse(
        ("put", {"path": "/", "data": {"a1": {"ts": 1}}}),
        ("keep-alive", None),
        ("patch", {"path": "/a1", "data": {"status": "late"}}),
        ("put", {"path": "/a2", "data": {"ts": 2}}),
        ("put", {"path": "/a1", "data": None}),
    )
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    async def scenario():
        store = FirebaseRecordStore(BASE_URL, "token-1", transport=httpx.MockTransport(handler))
        snapshots = []
        errors = []
        finished = asyncio.Event()

        def on_error(exc):
            errors.append(exc)
            finished.set()

        subscription = await store.subscribe("users/admin-1/employees/E1/attendance", snapshots.append, on_error)
        await asyncio.wait_for(finished.wait(), 2)
        await store.close()
        return subscription, snapshots, errors

    subscription, snapshots, errors = asyncio.run(scenario())

    assert requests[0].headers["accept"] == "text/event-stream"
    assert requests[0].url.path == "/users/admin-1/employees/E1/attendance.json"
    assert snapshots == [
        {"a1": {"ts": 1}},
        {"a1": {"ts": 1, "status": "late"}},
        {"a1": {"ts": 1, "status": "late"}, "a2": {"ts": 2}},
        {"a2": {"ts": 2}},
    ]
    assert len(errors) == 1
    assert isinstance(errors[0], TransientStoreError)
    assert subscription.closed


def test_stream_cancel_event_is_reported():
    body = _sse(("put", {"path": "/", "data": None}), ("cancel", None))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    async def scenario():
        store = FirebaseRecordStore(BASE_URL, transport=httpx.MockTransport(handler))
        snapshots = []
        errors = []
        finished = asyncio.Event()

        def on_error(exc):
            errors.append(exc)
            finished.set()

        await store.subscribe("users/admin-1/employees", snapshots.append, on_error)
        await asyncio.wait_for(finished.wait(), 2)
        await store.close()
        return snapshots, errors

    snapshots, errors = asyncio.run(scenario())

    assert snapshots == [None]
    assert isinstance(errors[0], FirebaseApiError)
    assert not isinstance(errors[0], TransientStoreError)


def test_rejected_stream_raises_on_subscribe():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "Permission denied"})

    async def scenario():
        store = FirebaseRecordStore(BASE_URL, transport=httpx.MockTransport(handler))
        try:
            await store.subscribe("users/admin-1/employees", lambda value: None)
        finally:
            await store.close()

    with pytest.raises(FirebaseApiError):
        asyncio.run(scenario())
