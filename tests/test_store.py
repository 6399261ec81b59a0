"""tests/test_store.py – row store client against a recording HTTP session"""
from __future__ import annotations

import json

import pytest
import requests

from hut.store import GUESTBOOK, POSTS, RowStore, StoreError

URL = "https://example.supabase.co"


def _response(status: int = 200, body=None, reason: str = "OK") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.reason = reason
    resp._content = b"" if body is None else json.dumps(body).encode()
    resp.encoding = "utf-8"
    return resp


class RecordingSession(requests.Session):
    """Answers every request with the queued responses, newest call last."""

    def __init__(self, *answers):
        super().__init__()
        self.answers = list(answers)
        self.sent: list[dict] = []

    def request(self, method, url, **kwargs):
        self.sent.append({"method": method, "url": url, **kwargs})
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def _store(*answers) -> tuple[RowStore, RecordingSession]:
    http = RecordingSession(*answers)
    return RowStore(URL + "/", "anon-key", timeout=3, session=http), http


def test_key_goes_into_every_request():
    store, http = _store(_response(body=[]))
    store.select(POSTS, order="date")
    assert http.headers["apikey"] == "anon-key"
    assert http.headers["Authorization"] == "Bearer anon-key"
    assert http.sent[0]["timeout"] == 3


def test_select_builds_the_query():
    store, http = _store(_response(body=[{"id": 1}]))
    rows = store.select("post_comments", order="created_at", ascending=True, eq={"log_id": 7})
    assert rows == [{"id": 1}]
    req = http.sent[0]
    assert req["method"] == "GET"
    assert req["url"] == URL + "/rest/v1/post_comments"
    assert req["params"] == {"select": "*", "order": "created_at.asc", "log_id": "eq.7"}


def test_select_descending():
    store, http = _store(_response(body=[]))
    assert store.select(GUESTBOOK, order="created_at", ascending=False) == []
    assert http.sent[0]["params"]["order"] == "created_at.desc"


def test_insert_asks_for_the_stored_row():
    store, http = _store(_response(201, [{"id": 9, "name": "ann"}], "Created"))
    row = store.insert(GUESTBOOK, {"name": "ann"})
    assert row == {"id": 9, "name": "ann"}
    req = http.sent[0]
    assert req["method"] == "POST"
    assert req["json"] == [{"name": "ann"}]
    assert req["headers"] == {"Prefer": "return=representation"}


def test_update_targets_one_id():
    store, http = _store(_response(body=[{"id": 2, "title": "x"}]))
    assert store.update(POSTS, 2, {"title": "x"})["title"] == "x"
    assert http.sent[0]["method"] == "PATCH"
    assert http.sent[0]["params"] == {"id": "eq.2"}


def test_update_of_missing_row():
    store, _ = _store(_response(body=[]))
    with pytest.raises(StoreError, match="No row"):
        store.update(POSTS, 404, {"title": "x"})


def test_delete_with_empty_answer():
    store, http = _store(_response(204, reason="No Content"))
    assert store.delete(POSTS, 3) is None
    assert http.sent[0]["method"] == "DELETE"


def test_increment_views_calls_the_procedure():
    store, http = _store(_response(204, reason="No Content"))
    store.increment_views(5)
    assert http.sent[0]["url"] == URL + "/rest/v1/rpc/increment_views"
    assert http.sent[0]["json"] == {"log_id": 5}


def test_error_message_from_the_body():
    store, _ = _store(_response(400, {"message": "violates row-level security"}, "Bad Request"))
    with pytest.raises(StoreError, match="row-level security"):
        store.insert(POSTS, {"title": "x"})


def test_error_without_body():
    store, _ = _store(_response(503, reason="Service Unavailable"))
    with pytest.raises(StoreError, match="503 Service Unavailable"):
        store.ping()


def test_network_errors_become_store_errors():
    store, _ = _store(requests.ConnectionError("no route to host"))
    with pytest.raises(StoreError, match="no route"):
        store.select(POSTS, order="date")


def test_unconfigured_store_fails_on_use():
    store = RowStore("", "", session=RecordingSession())
    with pytest.raises(StoreError, match="not configured"):
        store.select(POSTS, order="date")
