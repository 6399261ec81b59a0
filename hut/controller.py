"""
The per-visitor controller.

One instance per browser session.  It owns the state containers, talks
to the row store and the realtime service, and merges every answer back
into local state.  The Flask layer turns requests into calls on it and
renders ``view()``.

User-visible failures are raised as ``Alert`` subclasses; the caller
decides how to show them.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
from datetime import datetime, timezone
from typing import Any, Callable, MutableMapping

from .realtime import SUBSCRIBED, Channel, RealtimeClient, RealtimeError
from .state import (
    ABOUT,
    ADMIN_KEY,
    ALL,
    BLOG,
    GUESTBOOK,
    HOME,
    TABS,
    About,
    BlogDetail,
    BlogList,
    Discussion,
    Guestbook,
    GuestbookState,
    Home,
    Identity,
    PostDraft,
    PostList,
    View,
)
from .store import GUESTBOOK as GUESTBOOK_TABLE
from .store import POST_COMMENTS, POSTS, RowStore, StoreError

logger = logging.getLogger(__name__)

PRESENCE_CHANNEL = "online-users"
GUESTBOOK_CHANNEL = "messages"
_KEY_CHARS = string.ascii_lowercase + string.digits


class Alert(Exception):
    """Something the visitor has to be told about."""


class ValidationError(Alert):
    pass


class RemoteError(Alert):
    pass


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def presence_key() -> str:
    """Random per-connection key so two tabs count as two visitors."""
    return "user-" + "".join(secrets.choice(_KEY_CHARS) for _ in range(9))


class Controller:
    def __init__(
        self,
        store: RowStore,
        realtime: RealtimeClient,
        storage: MutableMapping[str, Any],
        *,
        admin_secret: str = "",
        today: Callable[[], str] | None = None,
    ):
        self.store = store
        self.realtime = realtime
        self.storage = storage
        self.admin_secret = admin_secret or ""
        self.today = today or (lambda: utc_now().date().isoformat())

        self.tab = HOME
        self.posts = PostList()
        self.detail: dict | None = None
        self.draft = PostDraft()
        self.identity = Identity()
        self.guestbook = GuestbookState()
        self.discussion = Discussion()
        self.admin = False
        self.online = 1

        self.presence: Channel | None = None
        self._listeners: list[Callable[[str, Any], Any]] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #
    def mount(self) -> None:
        self.identity.load(self.storage)
        self.admin = self.storage.get(ADMIN_KEY) == "true"
        self.load_posts()
        self._join_presence()

    def unmount(self) -> None:
        with self._lock:
            presence, self.presence = self.presence, None
            self._leave_guestbook()
            self._listeners.clear()
        if presence is not None:
            self.realtime.remove_channel(presence)

    def load_posts(self) -> None:
        try:
            rows = self.store.select(POSTS, order="date", ascending=False)
        except StoreError as exc:
            logger.error("could not load posts: %s", exc)
            return
        with self._lock:
            self.posts.posts = rows

    def listen(self, callback: Callable[[str, Any], Any]) -> Callable[[], None]:
        """Observe ``("online", n)`` and ``("comment", row)`` events."""
        with self._lock:
            self._listeners.append(callback)

        def stop() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return stop

    def _emit(self, kind: str, value: Any) -> None:
        for cb in list(self._listeners):
            try:
                cb(kind, value)
            except Exception:
                logger.exception("listener failed on %s", kind)

    # ------------------------------------------------------------------ #
    # presence
    # ------------------------------------------------------------------ #
    def _join_presence(self) -> None:
        ch = self.realtime.channel(PRESENCE_CHANNEL, presence_key=presence_key())
        ch.on_presence_sync(self._on_presence_sync)
        with self._lock:
            self.presence = ch

        def on_status(status: str) -> None:
            if status == SUBSCRIBED:
                ch.track({"online_at": utc_now().isoformat()})

        try:
            ch.subscribe(on_status)
        except RealtimeError as exc:
            logger.warning("presence unavailable: %s", exc)
            with self._lock:
                self.presence = None

    def _on_presence_sync(self) -> None:
        with self._lock:
            if self.presence is None:
                return
            self.online = len(self.presence.presence_state())
            self._emit("online", self.online)

    # ------------------------------------------------------------------ #
    # navigation
    # ------------------------------------------------------------------ #
    def select_tab(self, tab: str) -> None:
        if tab not in TABS:
            raise ValueError(f"Unknown tab {tab!r}")
        with self._lock:
            previous, self.tab = self.tab, tab
            self.detail = None
            self.discussion.clear()
            self.draft.cancel()
            self.posts.active_tag = ALL
            if previous == GUESTBOOK and tab != GUESTBOOK:
                self._leave_guestbook()
        if tab == GUESTBOOK:
            self._enter_guestbook()

    def set_filter(self, tag: str | None) -> None:
        with self._lock:
            self.posts.active_tag = tag or ALL

    def view(self) -> View:
        with self._lock:
            if self.tab == HOME:
                return Home(latest=self.posts.latest())
            if self.tab == ABOUT:
                return About()
            if self.tab == GUESTBOOK:
                return Guestbook(
                    comments=list(self.guestbook.comments),
                    loading=self.guestbook.loading,
                )
            if self.detail is not None:
                return BlogDetail(
                    post=self.detail, comments=list(self.discussion.comments)
                )
            return BlogList(
                posts=self.posts.visible(),
                tags=self.posts.tags(),
                active_tag=self.posts.active_tag,
            )

    # ------------------------------------------------------------------ #
    # post detail + view counter
    # ------------------------------------------------------------------ #
    def open_post(self, post_id: Any) -> dict:
        with self._lock:
            post = self.posts.get(post_id)
            if post is None:
                raise LookupError(post_id)
            if self.tab == GUESTBOOK:
                self._leave_guestbook()
            self.tab = BLOG
            self.detail = post

        try:
            self.store.increment_views(post_id)
        except StoreError as exc:
            logger.warning("view increment for post %s failed: %s", post_id, exc)
        else:
            with self._lock:
                bumped = self.posts.bump_views(post_id)
                if bumped is not None and self.detail is post:
                    self.detail = bumped

        self._load_discussion(post_id)
        return self.detail

    def close_post(self) -> None:
        with self._lock:
            self.detail = None
            self.discussion.clear()

    def _load_discussion(self, post_id: Any) -> None:
        with self._lock:
            self.discussion.clear()
            self.discussion.post_id = post_id
        try:
            rows = self.store.select(
                POST_COMMENTS, order="created_at", ascending=True, eq={"log_id": post_id}
            )
        except StoreError as exc:
            logger.warning("could not load comments of post %s: %s", post_id, exc)
            return
        with self._lock:
            if self.discussion.post_id == post_id:
                self.discussion.comments = rows

    # ------------------------------------------------------------------ #
    # authoring (admin only)
    # ------------------------------------------------------------------ #
    def require_admin(self) -> None:
        if not self.admin:
            raise PermissionError("admin only")

    def start_edit(self, post_id: Any) -> None:
        self.require_admin()
        with self._lock:
            post = self.posts.get(post_id)
            if post is None:
                raise LookupError(post_id)
            self.draft.start_edit(post)

    def start_new_post(self) -> None:
        self.require_admin()
        with self._lock:
            self.draft.start_new(self.today())

    def cancel_edit(self) -> None:
        with self._lock:
            self.draft.cancel()

    def save_draft(
        self,
        title: str | None = None,
        content: str | None = None,
        date: str | None = None,
        tags: str | None = None,
    ) -> dict:
        self.require_admin()
        d = self.draft
        with self._lock:
            if not d.active:
                raise ValidationError("Nothing is being edited.")
            d.title = d.title if title is None else title
            d.content = d.content if content is None else content
            d.date = d.date if date is None else date
            d.tags = d.tags if tags is None else tags
            if d.missing():
                raise ValidationError("Title, content and date are required.")

            now = utc_now().isoformat()
            values = {
                "title": d.title.strip(),
                "content": d.content.strip(),
                "date": d.date.strip(),
                "tags": d.tag_list(),
                "updated_at": now,
            }
        try:
            if d.creating:
                row = self.store.insert(
                    POSTS, {**values, "views": 0, "created_at": now}
                )
            else:
                row = self.store.update(POSTS, d.editing["id"], values)
        except StoreError as exc:
            logger.error("saving post failed: %s", exc)
            raise RemoteError(f"Save failed: {exc}") from exc

        with self._lock:
            if d.creating:
                self.posts.prepend(row)
            else:
                self.posts.replace(row)
                if self.detail is not None and self.detail.get("id") == row.get("id"):
                    self.detail = row
            d.cancel()
        return row

    def delete_post(self, post_id: Any, confirmed: bool) -> bool:
        self.require_admin()
        if not confirmed:
            return False
        try:
            self.store.delete(POSTS, post_id)
        except StoreError as exc:
            logger.error("deleting post %s failed: %s", post_id, exc)
            raise RemoteError(f"Delete failed: {exc}") from exc

        with self._lock:
            self.posts.remove(post_id)
            self.detail = None
            self.discussion.clear()
            self.draft.cancel()
            self.tab = BLOG
        return True

    # ------------------------------------------------------------------ #
    # admin gate – a UI switch, not authentication
    # ------------------------------------------------------------------ #
    def unlock_admin(self, password: str) -> bool:
        if not self.admin_secret or not password:
            return False
        if not secrets.compare_digest(
            password.encode("utf-8"), self.admin_secret.encode("utf-8")
        ):
            return False
        self.admin = True
        self.storage[ADMIN_KEY] = "true"
        return True

    def lock_admin(self) -> None:
        self.admin = False
        self.draft.cancel()
        self.storage.pop(ADMIN_KEY, None)

    # ------------------------------------------------------------------ #
    # guestbook
    # ------------------------------------------------------------------ #
    def _enter_guestbook(self) -> None:
        with self._lock:
            gb = self.guestbook
            if gb.active:
                return
            gb.reset()
            ch = self.realtime.channel(GUESTBOOK_CHANNEL)
            ch.on_insert(GUESTBOOK_TABLE, lambda row: self._on_guestbook_insert(ch, row))
            gb.channel = ch
            gb.fetching = gb.loading = True

        # subscribe first so nothing inserted during the fetch is missed
        try:
            ch.subscribe()
        except RealtimeError as exc:
            logger.warning("guestbook feed unavailable: %s", exc)

        # a leave that raced the join found nothing registered to remove
        with self._lock:
            left = gb.channel is not ch
        if left:
            self.realtime.remove_channel(ch)
            return

        try:
            rows = self.store.select(GUESTBOOK_TABLE, order="created_at", ascending=False)
        except StoreError as exc:
            logger.error("could not load guestbook: %s", exc)
            rows = []

        with self._lock:
            if gb.channel is not ch:
                return  # left the tab while fetching
            gb.fetching = gb.loading = False
            gb.loaded(rows)

    def _leave_guestbook(self) -> None:
        ch = self.guestbook.channel
        self.guestbook.reset()
        if ch is not None:
            self.realtime.remove_channel(ch)

    def _on_guestbook_insert(self, channel: Channel, row: dict) -> None:
        with self._lock:
            if self.guestbook.channel is not channel:
                return
            if self.guestbook.push(row):
                self._emit("comment", row)

    def submit_guestbook(
        self,
        name: str,
        email: str,
        website: str,
        content: str,
        remember: bool,
    ) -> None:
        ident = self.identity
        ident.name, ident.email, ident.website = name, email, website
        ident.remember = bool(remember)
        self.guestbook.draft = content
        if not (name.strip() and email.strip() and content.strip()):
            raise ValidationError("Name, email and message are required.")

        self.guestbook.loading = True
        try:
            self.store.insert(
                GUESTBOOK_TABLE,
                {
                    "name": name.strip(),
                    "email": email.strip(),
                    "website": website.strip() or None,
                    "content": content.strip(),
                },
            )
        except StoreError as exc:
            logger.error("guestbook insert failed: %s", exc)
            raise RemoteError("Posting failed, please try again later.") from exc
        finally:
            self.guestbook.loading = False

        if ident.remember:
            ident.save(self.storage)
        else:
            Identity.forget(self.storage)
        self.guestbook.draft = ""

    # ------------------------------------------------------------------ #
    # per-post discussion
    # ------------------------------------------------------------------ #
    def submit_post_comment(self, name: str, email: str, content: str) -> dict:
        ident = self.identity
        ident.name, ident.email = name, email
        self.discussion.draft = content
        if not (name.strip() and email.strip() and content.strip()):
            raise ValidationError("Name, email and comment are required.")
        if self.detail is None:
            raise ValidationError("Open a post first.")

        try:
            row = self.store.insert(
                POST_COMMENTS,
                {
                    "log_id": self.detail["id"],
                    "name": name.strip(),
                    "email": email.strip(),
                    "content": content.strip(),
                },
            )
        except StoreError as exc:
            logger.error("comment insert failed: %s", exc)
            raise RemoteError("Posting failed, please check back later.") from exc

        with self._lock:
            self.discussion.comments = [*self.discussion.comments, row]
            self.discussion.draft = ""
        if ident.remember:
            ident.save(self.storage)
        return row
