"""
A thin client of the hosted row store (PostgREST under ``/rest/v1``).

Only the handful of calls the site needs: ordered reads, single-row
insert / update / delete and the ``increment_views`` procedure.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

logger = logging.getLogger(__name__)

POSTS = "logs"
GUESTBOOK = "messages"
POST_COMMENTS = "post_comments"


class StoreError(Exception):
    """A remote call failed (network, timeout or a non-2xx answer)."""


class RowStore:
    def __init__(
        self,
        url: str,
        key: str,
        *,
        timeout: float = 10,
        session: requests.Session | None = None,
    ):
        self.base = url.rstrip("/") + "/rest/v1" if url else ""
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update(
            {
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Accept": "application/json",
            }
        )

    # ------------------------------------------------------------------ #
    # transport
    # ------------------------------------------------------------------ #
    def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        returning: bool = False,
    ) -> Any:
        if not self.base:
            raise StoreError("Row store URL is not configured")
        headers = {"Prefer": "return=representation"} if returning else {}
        try:
            resp = self.http.request(
                method,
                f"{self.base}/{path}",
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StoreError(str(exc)) from None

        if not resp.ok:
            raise StoreError(_error_message(resp))
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise StoreError("Malformed answer from the row store") from None

    # ------------------------------------------------------------------ #
    # rows
    # ------------------------------------------------------------------ #
    def select(
        self,
        table: str,
        *,
        order: str,
        ascending: bool = True,
        eq: dict[str, Any] | None = None,
    ) -> list[dict]:
        params = {"select": "*", "order": f"{order}.{'asc' if ascending else 'desc'}"}
        for col, val in (eq or {}).items():
            params[col] = f"eq.{val}"
        return self._call("GET", table, params=params) or []

    def insert(self, table: str, row: dict[str, Any]) -> dict:
        rows = self._call("POST", table, json=[row], returning=True)
        if not rows:
            raise StoreError(f"Insert into {table} returned no row")
        return rows[0]

    def update(self, table: str, row_id: Any, values: dict[str, Any]) -> dict:
        rows = self._call(
            "PATCH", table, params={"id": f"eq.{row_id}"}, json=values, returning=True
        )
        if not rows:
            raise StoreError(f"No row with id {row_id} in {table}")
        return rows[0]

    def delete(self, table: str, row_id: Any) -> None:
        self._call("DELETE", table, params={"id": f"eq.{row_id}"})

    def rpc(self, fn: str, args: dict[str, Any]) -> Any:
        return self._call("POST", f"rpc/{fn}", json=args)

    def increment_views(self, log_id: Any) -> None:
        """Atomic ``views = views + 1`` on the server side."""
        self.rpc("increment_views", {"log_id": log_id})

    def ping(self) -> None:
        self._call("GET", POSTS, params={"select": "id", "limit": "1"})


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    logger.debug("row store answered %s: %r", resp.status_code, resp.text[:200])
    return f"{resp.status_code} {resp.reason or 'error'}".strip()
