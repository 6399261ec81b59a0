"""
tests/conftest.py

In-memory stand-ins for the row store and the realtime service, plus a
controller fixture and a Flask test client wired to them.
"""
from __future__ import annotations

import copy
import datetime as _dt
import itertools
import json
import threading
from typing import Any, Callable, Generator

import pytest
from flask.testing import FlaskClient

from hut import site
from hut.controller import Controller
from hut.realtime import SUBSCRIBED, RealtimeError
from hut.site import app
from hut.store import GUESTBOOK, POST_COMMENTS, POSTS, StoreError

ADMIN_PASSWORD = "letmein"
TODAY = "2026-01-01"


def seed_posts() -> list[dict]:
    """Three posts, newest date first."""
    return [
        {
            "id": 3,
            "title": "Third",
            "content": "Untagged post",
            "date": "2025-03-01",
            "tags": None,
            "views": None,
            "created_at": "2025-03-01T08:00:00+00:00",
            "updated_at": "2025-03-01T08:00:00+00:00",
        },
        {
            "id": 2,
            "title": "Second",
            "content": "About **agents**",
            "date": "2025-02-01",
            "tags": ["ai", "web3"],
            "views": 5,
            "created_at": "2025-02-01T08:00:00+00:00",
            "updated_at": "2025-02-01T08:00:00+00:00",
        },
        {
            "id": 1,
            "title": "First",
            "content": "hello world",
            "date": "2025-01-01",
            "tags": ["web3"],
            "views": 0,
            "created_at": "2025-01-01T08:00:00+00:00",
            "updated_at": "2025-01-01T08:00:00+00:00",
        },
    ]


def _sort_key(order: str):
    def key(row: dict):
        v = row.get(order)
        return (v is None, v if v is not None else 0)

    return key


class FakeStore:
    """Dict-of-lists row store that records every call."""

    def __init__(self, tables: dict[str, list[dict]] | None = None):
        self.tables: dict[str, list[dict]] = {POSTS: [], GUESTBOOK: [], POST_COMMENTS: []}
        self.tables.update(copy.deepcopy(tables or {}))
        self.calls: list[tuple] = []
        self.failing: set[str] = set()
        self.before_select: Callable[[str], Any] | None = None
        self._ids = itertools.count(100)
        self._clock = itertools.count()

    def _check(self, op: str) -> None:
        if op in self.failing:
            raise StoreError(f"{op} unavailable")

    def _stamp(self) -> str:
        base = _dt.datetime(2026, 1, 1, tzinfo=_dt.timezone.utc)
        return (base + _dt.timedelta(seconds=next(self._clock))).isoformat()

    def select(self, table, *, order, ascending=True, eq=None):
        self.calls.append(("select", table, eq))
        if self.before_select is not None:
            self.before_select(table)
        self._check("select")
        rows = [
            r
            for r in self.tables[table]
            if all(r.get(k) == v for k, v in (eq or {}).items())
        ]
        rows.sort(key=_sort_key(order), reverse=not ascending)
        return copy.deepcopy(rows)

    def insert(self, table, row):
        self.calls.append(("insert", table, dict(row)))
        self._check("insert")
        stored = {"id": next(self._ids), "created_at": self._stamp(), **row}
        self.tables[table].append(stored)
        return dict(stored)

    def update(self, table, row_id, values):
        self.calls.append(("update", table, row_id, dict(values)))
        self._check("update")
        for r in self.tables[table]:
            if r.get("id") == row_id:
                r.update(values)
                return dict(r)
        raise StoreError(f"No row with id {row_id} in {table}")

    def delete(self, table, row_id):
        self.calls.append(("delete", table, row_id))
        self._check("delete")
        self.tables[table] = [r for r in self.tables[table] if r.get("id") != row_id]

    def increment_views(self, log_id):
        self.calls.append(("increment_views", log_id))
        self._check("increment_views")
        for r in self.tables[POSTS]:
            if r.get("id") == log_id:
                r["views"] = (r.get("views") or 0) + 1

    def ping(self):
        self._check("select")

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)


class FakeChannel:
    def __init__(self, rt: FakeRealtime, name: str, presence_key: str | None):
        self.rt = rt
        self.name = name
        self.presence_key = presence_key or ""
        self.sync_cbs: list[Callable] = []
        self.insert_cbs: list[tuple[str, Callable]] = []
        self.tracked: list[dict] = []
        self.presence: dict[str, list[dict]] = {}

    def on_presence_sync(self, callback):
        self.sync_cbs.append(callback)
        return self

    def on_insert(self, table, callback, schema="public"):
        self.insert_cbs.append((table, callback))
        return self

    def subscribe(self, callback=None):
        if self.rt.fail:
            raise RealtimeError("realtime down")
        self.rt.channels.append(self)
        if callback:
            callback(SUBSCRIBED)
        return self

    def track(self, payload):
        self.tracked.append(payload)

    def presence_state(self):
        return dict(self.presence)

    def unsubscribe(self):
        self.rt.remove_channel(self)

    # test helpers
    def sync(self, presence: dict[str, list[dict]]) -> None:
        self.presence = presence
        for cb in self.sync_cbs:
            cb()

    def insert(self, table: str, row: dict) -> None:
        for t, cb in self.insert_cbs:
            if t == table:
                cb(row)


class FakeSocket:
    """Stands in for the websocket: records outgoing frames; ``recv`` blocks until closed."""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed = threading.Event()

    def send(self, data):
        self.sent.append(json.loads(data))

    def recv(self):
        self.closed.wait()
        raise OSError("socket closed")

    def close(self):
        self.closed.set()

    def frames(self, event: str) -> list[dict]:
        return [f for f in self.sent if f["event"] == event]


class FakeRealtime:
    def __init__(self):
        self.channels: list[FakeChannel] = []
        self.removed: list[FakeChannel] = []
        self.fail = False

    def channel(self, name, *, presence_key=None):
        return FakeChannel(self, name, presence_key)

    def remove_channel(self, channel):
        if channel in self.channels:
            self.channels.remove(channel)
        self.removed.append(channel)

    def active(self, name: str) -> list[FakeChannel]:
        return [c for c in self.channels if c.name == name]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore({POSTS: seed_posts()})


@pytest.fixture
def realtime() -> FakeRealtime:
    return FakeRealtime()


@pytest.fixture
def storage() -> dict:
    """The browser's durable storage."""
    return {}


@pytest.fixture
def make_controller(store, realtime, storage):
    made: list[Controller] = []

    def _make(mount: bool = True) -> Controller:
        ctl = Controller(
            store, realtime, storage, admin_secret=ADMIN_PASSWORD, today=lambda: TODAY
        )
        if mount:
            ctl.mount()
        made.append(ctl)
        return ctl

    yield _make
    for ctl in made:
        ctl.unmount()


@pytest.fixture
def controller(make_controller) -> Controller:
    return make_controller()


@pytest.fixture
def admin(controller) -> Controller:
    assert controller.unlock_admin(ADMIN_PASSWORD)
    return controller


_ip_counter = itertools.count(1)


@pytest.fixture
def client(store, realtime, monkeypatch) -> Generator[FlaskClient, None, None]:
    """
    Test client whose visitors talk to the fakes.  Every test gets a
    unique REMOTE_ADDR so rate limits never bleed between tests.
    """
    monkeypatch.setattr(site, "make_store", lambda: store)
    monkeypatch.setattr(site, "make_realtime", lambda: realtime)
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setitem(app.config, "SESSION_COOKIE_SECURE", False)

    with app.test_client() as c:
        c.environ_base["REMOTE_ADDR"] = f"127.0.1.{next(_ip_counter)}"
        yield c

    site._unmount_all()


def unlock(client: FlaskClient) -> str:
    """Switch the client's visitor into admin mode; returns its CSRF token."""
    rv = client.post("/unlock", data={"password": ADMIN_PASSWORD})
    assert rv.status_code == 302
    with client.session_transaction() as sess:
        return sess["csrf"]


def visitor_of(client: FlaskClient) -> Controller:
    with client.session_transaction() as sess:
        return site._visitors[sess["visitor"]]
