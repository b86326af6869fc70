"""
Tests for the REST table accessor, against a fake requests session.
"""
import asyncio

import pytest
import requests

from taskboard.accessor import AccessorError
from taskboard.rest import RestTableAccessor, build_params, diff_snapshots
from taskboard.schema import ChangeType, StreamStatus


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"" if payload is None and not text else b"body"

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Records requests; `handler(method, url, kwargs)` produces the response."""

    def __init__(self, handler=None):
        self.headers = {}
        self.calls = []
        self.closed = False
        self.handler = handler or (lambda method, url, kwargs: FakeResponse(200, []))

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.handler(method, url, kwargs)

    def close(self):
        self.closed = True


def make(handler=None, **kwargs):
    session = FakeSession(handler)
    return RestTableAccessor("https://db.example.com/", "anon-key", session=session, **kwargs), session


def test_build_params():
    params = build_params(
        {"project_id": "p1", "column_id": None, "is_read": False},
        order_by=[("order_index", True), ("created_at", False)],
        limit=5,
    )
    assert params == {
        "project_id": "eq.p1",
        "column_id": "is.null",
        "is_read": "eq.false",
        "order": "order_index.asc,created_at.desc",
        "limit": "5",
    }
    assert build_params() == {}


def test_auth_headers_set_on_session():
    _, session = make()
    assert session.headers["apikey"] == "anon-key"
    assert session.headers["Authorization"] == "Bearer anon-key"


def test_query_request_shape():
    acc, session = make(lambda m, u, k: FakeResponse(200, [{"id": "A"}]))
    rows = asyncio.run(acc.query("kanban_tasks", {"project_id": "p1"}, [("order_index", True)], 10))

    assert rows == [{"id": "A"}]
    method, url, kwargs = session.calls[0]
    assert method == "GET"
    assert url == "https://db.example.com/rest/v1/kanban_tasks"
    assert kwargs["params"] == {
        "select": "*", "project_id": "eq.p1", "order": "order_index.asc", "limit": "10",
    }


def test_writes_ask_for_representation():
    acc, session = make(lambda m, u, k: FakeResponse(201, [{"id": "new"}]))

    async def scenario():
        inserted = await acc.insert("kanban_tasks", [{"title": "x"}])
        updated = await acc.update("kanban_tasks", {"id": "A"}, {"order_index": 2})
        return inserted, updated

    inserted, updated = asyncio.run(scenario())
    assert inserted == [{"id": "new"}]
    assert updated == [{"id": "new"}]
    (m1, _, k1), (m2, _, k2) = session.calls
    assert (m1, m2) == ("POST", "PATCH")
    assert k1["headers"]["Prefer"] == "return=representation"
    assert k2["params"] == {"id": "eq.A"}
    assert k2["json"] == {"order_index": 2}


@pytest.mark.parametrize("call", [
    lambda acc: acc.update("kanban_tasks", {}, {"title": "all"}),
    lambda acc: acc.delete("kanban_tasks", {}),
])
def test_unfiltered_writes_refused(call):
    acc, session = make()
    with pytest.raises(AccessorError):
        asyncio.run(call(acc))
    assert session.calls == []


def test_http_error_becomes_accessor_error():
    acc, _ = make(lambda m, u, k: FakeResponse(400, {"message": "column bogus does not exist"}))
    with pytest.raises(AccessorError) as exc:
        asyncio.run(acc.query("kanban_tasks", {"bogus": 1}))
    assert "HTTP 400" in str(exc.value)
    assert "column bogus does not exist" in str(exc.value)


def test_transport_error_becomes_accessor_error():
    def handler(method, url, kwargs):
        raise requests.ConnectionError("connection refused")

    acc, _ = make(handler)
    with pytest.raises(AccessorError) as exc:
        asyncio.run(acc.update("kanban_tasks", {"id": "A"}, {"order_index": 0}))
    assert exc.value.operation == "update"


def test_empty_body_is_empty_list():
    acc, _ = make(lambda m, u, k: FakeResponse(204))
    assert asyncio.run(acc.delete("kanban_tasks", {"id": "A"})) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Polling change stream
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_diff_snapshots():
    before = {"A": {"id": "A", "t": 1}, "B": {"id": "B", "t": 1}}
    after = {"A": {"id": "A", "t": 2}, "C": {"id": "C", "t": 1}}
    events = diff_snapshots("kanban_tasks", before, after)
    assert [(e.type, e.record_id) for e in events] == [
        (ChangeType.UPDATE, "A"),
        (ChangeType.INSERT, "C"),
        (ChangeType.DELETE, "B"),
    ]
    assert events[0].old == {"id": "A", "t": 1}


def test_poll_feed_emits_changes_and_reconnects():
    table = {"rows": [{"id": "A", "project_id": "p1", "title": "A"}], "down": False}

    def handler(method, url, kwargs):
        if table["down"]:
            raise requests.ConnectionError("backend unreachable")
        return FakeResponse(200, [dict(r) for r in table["rows"]])

    async def scenario():
        acc, session = make(handler, poll_interval=0.01)
        sub = await acc.subscribe("kanban_tasks", {"project_id": "p1"})

        async def next_item():
            return await asyncio.wait_for(sub.get(), 2)

        items = [await next_item()]
        table["rows"] = [
            {"id": "A", "project_id": "p1", "title": "A2"},
            {"id": "B", "project_id": "p1", "title": "B"},
        ]
        items += [await next_item(), await next_item()]
        table["down"] = True
        items.append(await next_item())
        table["down"] = False
        items.append(await next_item())
        await acc.close()
        return items, sub, session

    items, sub, session = asyncio.run(scenario())
    assert items[0] == StreamStatus.SUBSCRIBED
    assert [(e.type, e.record_id) for e in items[1:3]] == [
        (ChangeType.UPDATE, "A"),
        (ChangeType.INSERT, "B"),
    ]
    assert items[3] == StreamStatus.RECONNECTING
    assert items[4] == StreamStatus.SUBSCRIBED
    assert sub.closed
    assert session.closed
