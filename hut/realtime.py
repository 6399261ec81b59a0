"""
Client of the hosted realtime service (Phoenix channels over a websocket).

One socket is shared by every channel.  A reader thread dispatches
incoming frames; a heartbeat thread keeps the socket alive.  Channels
support the two features the site uses:

• presence – who is connected to the topic right now
• change feed – ``INSERT`` events of one table
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from typing import Any, Callable
from urllib.parse import urlencode, urlparse

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

logger = logging.getLogger(__name__)


class RealtimeError(RuntimeError):
    """The socket could not be opened or a channel cannot be joined."""


SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"

PHX_TOPIC = "phoenix"


def socket_url(url: str, key: str) -> str:
    """https://x.supabase.co → wss://x.supabase.co/realtime/v1/websocket?…"""
    p = urlparse(url)
    scheme = "ws" if p.scheme == "http" else "wss"
    query = urlencode({"apikey": key, "vsn": "1.0.0"})
    return f"{scheme}://{p.netloc}/realtime/v1/websocket?{query}"


class Channel:
    """One topic on the shared socket.  Create via ``RealtimeClient.channel``."""

    def __init__(self, client: RealtimeClient, name: str, presence_key: str | None):
        self.client = client
        self.name = name
        self.topic = f"realtime:{name}"
        self.presence_key = presence_key or ""
        self.join_ref: str | None = None
        self.state = CLOSED
        self._status_cb: Callable[[str], Any] | None = None
        self._sync_cbs: list[Callable[[], Any]] = []
        self._insert_cbs: list[tuple[str, str, Callable[[dict], Any]]] = []
        self._presence: dict[str, list[dict]] = {}

    # ------------------------------------------------------------------ #
    # registration
    # ------------------------------------------------------------------ #
    def on_presence_sync(self, callback: Callable[[], Any]) -> Channel:
        self._sync_cbs.append(callback)
        return self

    def on_insert(
        self, table: str, callback: Callable[[dict], Any], schema: str = "public"
    ) -> Channel:
        self._insert_cbs.append((schema, table, callback))
        return self

    def subscribe(self, callback: Callable[[str], Any] | None = None) -> Channel:
        self._status_cb = callback
        self.client._join(self)
        return self

    # ------------------------------------------------------------------ #
    # presence
    # ------------------------------------------------------------------ #
    def track(self, payload: dict[str, Any]) -> None:
        self.client._push(
            self,
            "presence",
            {"type": "presence", "event": "track", "payload": payload},
        )

    def presence_state(self) -> dict[str, list[dict]]:
        with self.client._lock:
            return {k: list(v) for k, v in self._presence.items()}

    def unsubscribe(self) -> None:
        self.client.remove_channel(self)

    # ------------------------------------------------------------------ #
    # internals (called by the client under its lock)
    # ------------------------------------------------------------------ #
    def _join_payload(self, key: str) -> dict:
        changes = [
            {"event": "INSERT", "schema": schema, "table": table}
            for schema, table, _ in self._insert_cbs
        ]
        return {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": self.presence_key},
                "postgres_changes": changes,
            },
            "access_token": key,
        }

    def _apply_state(self, payload: dict) -> None:
        self._presence = {
            k: list(v.get("metas", [])) for k, v in (payload or {}).items()
        }

    def _apply_diff(self, payload: dict) -> None:
        for k, v in (payload.get("joins") or {}).items():
            self._presence.setdefault(k, []).extend(v.get("metas", []))
        for k, v in (payload.get("leaves") or {}).items():
            gone = {m.get("phx_ref") for m in v.get("metas", [])}
            left = [m for m in self._presence.get(k, []) if m.get("phx_ref") not in gone]
            if left:
                self._presence[k] = left
            else:
                self._presence.pop(k, None)


class RealtimeClient:
    def __init__(
        self,
        url: str,
        key: str,
        *,
        connect: Callable[[str], Any] = ws_connect,
        heartbeat: float = 25.0,
    ):
        self.url = socket_url(url, key) if url else ""
        self.key = key
        self.heartbeat = heartbeat
        self._connect = connect
        self._ws = None
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._refs = itertools.count(1)
        self._channels: dict[str, Channel] = {}

    def channel(self, name: str, *, presence_key: str | None = None) -> Channel:
        return Channel(self, name, presence_key)

    @property
    def channels(self) -> list[Channel]:
        with self._lock:
            return list(self._channels.values())

    def remove_channel(self, channel: Channel) -> None:
        with self._lock:
            if self._channels.get(channel.topic) is not channel:
                return
            del self._channels[channel.topic]
            was_joined = channel.join_ref is not None
            channel.state = CLOSED
            channel._presence = {}
            empty = not self._channels
        if was_joined and self._ws is not None:
            self._send(
                {
                    "topic": channel.topic,
                    "event": "phx_leave",
                    "payload": {},
                    "ref": self._ref(),
                    "join_ref": channel.join_ref,
                }
            )
        channel.join_ref = None
        if empty:
            self.close()

    def close(self) -> None:
        with self._lock:
            ws, self._ws = self._ws, None
            self._stop.set()
        if ws is not None:
            try:
                ws.close()
            except OSError:
                logger.debug("socket already gone", exc_info=True)

    # ------------------------------------------------------------------ #
    # frames in
    # ------------------------------------------------------------------ #
    def handle(self, raw: str | bytes) -> None:
        """Dispatch one incoming frame.  Public so tests can feed frames."""
        try:
            msg = json.loads(raw)
        except ValueError:
            logger.warning("dropping malformed realtime frame")
            return
        topic, event = msg.get("topic"), msg.get("event")
        payload = msg.get("payload") or {}

        calls: list[tuple[Callable, tuple]] = []
        with self._lock:
            ch = self._channels.get(topic)
            if ch is None:
                return
            if event == "phx_reply" and msg.get("ref") == ch.join_ref:
                ok = payload.get("status") == "ok"
                ch.state = SUBSCRIBED if ok else CHANNEL_ERROR
                if not ok:
                    logger.warning("join of %s refused: %r", topic, payload)
                if ch._status_cb:
                    calls.append((ch._status_cb, (ch.state,)))
            elif event in ("presence_state", "presence_diff"):
                if event == "presence_state":
                    ch._apply_state(payload)
                else:
                    ch._apply_diff(payload)
                calls.extend((cb, ()) for cb in ch._sync_cbs)
            elif event == "postgres_changes":
                data = payload.get("data") or {}
                if data.get("type") == "INSERT":
                    for schema, table, cb in ch._insert_cbs:
                        if data.get("schema") == schema and data.get("table") == table:
                            calls.append((cb, (data.get("record") or {},)))
            elif event in ("phx_close", "phx_error"):
                ch.state = CLOSED if event == "phx_close" else CHANNEL_ERROR
                if ch._status_cb:
                    calls.append((ch._status_cb, (ch.state,)))

        # callbacks run without the lock held; they may call back into us
        for cb, args in calls:
            try:
                cb(*args)
            except Exception:
                logger.exception("realtime callback failed on %s", topic)

    # ------------------------------------------------------------------ #
    # frames out
    # ------------------------------------------------------------------ #
    def _ref(self) -> str:
        return str(next(self._refs))

    def _join(self, channel: Channel) -> None:
        self._ensure_socket()
        with self._lock:
            old = self._channels.get(channel.topic)
            if old is not None and old is not channel:
                raise RealtimeError(f"{channel.topic} is already subscribed")
            channel.join_ref = self._ref()
            self._channels[channel.topic] = channel
            frame = {
                "topic": channel.topic,
                "event": "phx_join",
                "payload": channel._join_payload(self.key),
                "ref": channel.join_ref,
                "join_ref": channel.join_ref,
            }
        self._send(frame)

    def _push(self, channel: Channel, event: str, payload: dict) -> None:
        if channel.join_ref is None:
            raise RealtimeError(f"{channel.topic} is not subscribed")
        self._send(
            {
                "topic": channel.topic,
                "event": event,
                "payload": payload,
                "ref": self._ref(),
                "join_ref": channel.join_ref,
            }
        )

    def _send(self, frame: dict) -> None:
        ws = self._ws
        if ws is None:
            return
        with self._send_lock:
            try:
                ws.send(json.dumps(frame))
            except (ConnectionClosed, OSError):
                logger.warning("realtime send failed on %s", frame.get("topic"))

    # ------------------------------------------------------------------ #
    # socket lifecycle
    # ------------------------------------------------------------------ #
    def _ensure_socket(self) -> None:
        with self._lock:
            if self._ws is not None:
                return
            if not self.url:
                raise RealtimeError("Realtime URL is not configured")
            try:
                self._ws = self._connect(self.url)
            except (OSError, WebSocketException) as exc:
                raise RealtimeError(f"Cannot reach realtime service – {exc}") from None
            self._stop = threading.Event()
            ws, stop = self._ws, self._stop
        threading.Thread(
            target=self._read_loop, args=(ws,), name="realtime-reader", daemon=True
        ).start()
        threading.Thread(
            target=self._beat_loop, args=(stop,), name="realtime-heartbeat", daemon=True
        ).start()
        logger.info("realtime socket open")

    def _read_loop(self, ws) -> None:
        while True:
            try:
                raw = ws.recv()
            except (ConnectionClosed, OSError):
                break
            self.handle(raw)

        with self._lock:
            if self._ws is not ws:
                return  # closed on purpose
            self._ws = None
            self._stop.set()
            chans = list(self._channels.values())
            for ch in chans:
                ch.state = CLOSED
        logger.warning("realtime socket lost")
        for ch in chans:
            if ch._status_cb:
                try:
                    ch._status_cb(CLOSED)
                except Exception:
                    logger.exception("realtime callback failed on %s", ch.topic)

    def _beat_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.heartbeat):
            self._send(
                {"topic": PHX_TOPIC, "event": "heartbeat", "payload": {}, "ref": self._ref()}
            )
