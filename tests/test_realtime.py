"""tests/test_realtime.py – channel protocol, fed frame by frame"""
from __future__ import annotations

import json

import pytest
from conftest import FakeSocket

from hut.realtime import (
    CHANNEL_ERROR,
    CLOSED,
    SUBSCRIBED,
    RealtimeClient,
    RealtimeError,
    socket_url,
)


@pytest.fixture
def sock() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def client(sock):
    urls = []

    def connect(url):
        urls.append(url)
        return sock if not sock.closed.is_set() else FakeSocket()

    rt = RealtimeClient("https://abc.supabase.co", "anon", connect=connect, heartbeat=3600)
    rt.urls = urls
    yield rt
    rt.close()


def _reply(rt: RealtimeClient, ch, status: str = "ok") -> None:
    rt.handle(json.dumps({
        "topic": ch.topic, "event": "phx_reply", "ref": ch.join_ref,
        "payload": {"status": status, "response": {}},
    }))


def _frame(topic: str, event: str, payload: dict) -> str:
    return json.dumps({"topic": topic, "event": event, "payload": payload, "ref": None})


# ───────────────────────── url ──────────────────────────────────────
def test_socket_url():
    assert socket_url("https://abc.supabase.co", "k") == (
        "wss://abc.supabase.co/realtime/v1/websocket?apikey=k&vsn=1.0.0"
    )
    assert socket_url("http://localhost:54321", "k").startswith("ws://localhost:54321/")


# ───────────────────────── joining ──────────────────────────────────
def test_join_sends_the_config(client, sock):
    ch = client.channel("messages").on_insert("messages", lambda row: None)
    ch.subscribe()

    (join,) = sock.frames("phx_join")
    assert client.urls == [client.url]
    assert join["topic"] == "realtime:messages"
    assert join["ref"] == join["join_ref"] == ch.join_ref
    config = join["payload"]["config"]
    assert config["postgres_changes"] == [
        {"event": "INSERT", "schema": "public", "table": "messages"}
    ]
    assert join["payload"]["access_token"] == "anon"


def test_reply_reports_the_status(client):
    states = []
    ch = client.channel("online-users", presence_key="user-x").subscribe(states.append)
    _reply(client, ch)
    assert states == [SUBSCRIBED]
    assert ch.state == SUBSCRIBED


def test_refused_join(client):
    states = []
    ch = client.channel("messages").subscribe(states.append)
    _reply(client, ch, status="error")
    assert states == [CHANNEL_ERROR]


def test_topic_can_only_be_held_once(client):
    client.channel("messages").subscribe()
    with pytest.raises(RealtimeError):
        client.channel("messages").subscribe()


def test_connect_failure():
    def refuse(url):
        raise OSError("connection refused")

    rt = RealtimeClient("https://abc.supabase.co", "anon", connect=refuse)
    with pytest.raises(RealtimeError, match="connection refused"):
        rt.channel("messages").subscribe()


def test_unconfigured_client():
    rt = RealtimeClient("", "")
    with pytest.raises(RealtimeError, match="not configured"):
        rt.channel("messages").subscribe()


# ───────────────────────── presence ─────────────────────────────────
def test_track_needs_a_join(client):
    ch = client.channel("online-users", presence_key="user-x")
    with pytest.raises(RealtimeError):
        ch.track({"online_at": "now"})


def test_track_pushes_a_presence_event(client, sock):
    ch = client.channel("online-users", presence_key="user-x").subscribe()
    ch.track({"online_at": "2026-01-01T00:00:00+00:00"})
    (push,) = sock.frames("presence")
    assert push["payload"] == {
        "type": "presence",
        "event": "track",
        "payload": {"online_at": "2026-01-01T00:00:00+00:00"},
    }
    assert push["join_ref"] == ch.join_ref


def test_presence_state_and_diff(client):
    syncs = []
    ch = client.channel("online-users", presence_key="user-x")
    ch.on_presence_sync(lambda: syncs.append(len(ch.presence_state())))
    ch.subscribe()

    client.handle(_frame(ch.topic, "presence_state", {
        "user-a": {"metas": [{"phx_ref": "1"}]},
        "user-b": {"metas": [{"phx_ref": "2"}, {"phx_ref": "3"}]},
    }))
    client.handle(_frame(ch.topic, "presence_diff", {
        "joins": {"user-c": {"metas": [{"phx_ref": "4"}]}},
        "leaves": {"user-a": {"metas": [{"phx_ref": "1"}]},
                   "user-b": {"metas": [{"phx_ref": "2"}]}},
    }))

    assert syncs == [2, 2]
    assert set(ch.presence_state()) == {"user-b", "user-c"}
    assert ch.presence_state()["user-b"] == [{"phx_ref": "3"}]


# ───────────────────────── change feed ──────────────────────────────
def _change(table: str, record: dict, kind: str = "INSERT") -> dict:
    return {"data": {"type": kind, "schema": "public", "table": table, "record": record}}


def test_insert_reaches_the_callback(client):
    rows = []
    ch = client.channel("messages").on_insert("messages", rows.append).subscribe()

    client.handle(_frame(ch.topic, "postgres_changes", _change("messages", {"id": 1})))
    client.handle(_frame(ch.topic, "postgres_changes", _change("logs", {"id": 2})))
    client.handle(_frame(ch.topic, "postgres_changes", _change("messages", {"id": 3}, "UPDATE")))

    assert rows == [{"id": 1}]


def test_frames_for_unknown_topics_and_garbage_are_dropped(client):
    rows = []
    client.channel("messages").on_insert("messages", rows.append).subscribe()
    client.handle(_frame("realtime:other", "postgres_changes", _change("messages", {"id": 1})))
    client.handle("{not json")
    assert rows == []


def test_callback_errors_stay_inside(client):
    def broken(row):
        raise RuntimeError("callback bug")

    ch = client.channel("messages").on_insert("messages", broken).subscribe()
    client.handle(_frame(ch.topic, "postgres_changes", _change("messages", {"id": 1})))


def test_server_close_marks_the_channel(client):
    states = []
    ch = client.channel("messages").subscribe(states.append)
    client.handle(_frame(ch.topic, "phx_close", {}))
    assert states == [CLOSED]


# ───────────────────────── leaving ──────────────────────────────────
def test_remove_sends_leave_and_closes_the_last_channel(client, sock):
    a = client.channel("online-users", presence_key="user-x").subscribe()
    b = client.channel("messages").subscribe()

    client.remove_channel(b)
    (leave,) = sock.frames("phx_leave")
    assert leave["topic"] == "realtime:messages"
    assert not sock.closed.is_set()
    assert client.channels == [a]

    a.unsubscribe()
    assert sock.closed.is_set()
    assert client.channels == []


def test_removing_twice_is_harmless(client, sock):
    ch = client.channel("messages").subscribe()
    client.remove_channel(ch)
    client.remove_channel(ch)
    assert len(sock.frames("phx_leave")) == 1


def test_rejoin_after_leave(client, sock):
    ch = client.channel("messages").subscribe()
    client.remove_channel(ch)
    again = client.channel("messages").subscribe()
    assert again.join_ref is not None
    assert client.channels == [again]
