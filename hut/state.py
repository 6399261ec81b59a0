"""
State containers, one per concern, plus the view variants the pages
are rendered from.

Rows coming back from the store are used verbatim as dicts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, MutableMapping

ALL = "all"

HOME = "home"
ABOUT = "about"
BLOG = "blog"
GUESTBOOK = "guestbook"
TABS = (HOME, ABOUT, BLOG, GUESTBOOK)

USER_KEY = "bbs_user"
ADMIN_KEY = "bbs_admin"


def post_tags(post: dict) -> list[str]:
    tags = post.get("tags")
    return tags if isinstance(tags, list) else []


###############################################################################
# Posts
###############################################################################
@dataclass
class PostList:
    posts: list[dict] = field(default_factory=list)
    active_tag: str = ALL

    def tags(self) -> list[str]:
        """``all`` first, then every tag in order of first appearance."""
        seen = dict.fromkeys(t for p in self.posts for t in post_tags(p))
        return [ALL, *seen]

    def visible(self) -> list[dict]:
        if self.active_tag == ALL:
            return list(self.posts)
        return [p for p in self.posts if self.active_tag in post_tags(p)]

    def get(self, post_id: Any) -> dict | None:
        return next((p for p in self.posts if p.get("id") == post_id), None)

    def latest(self) -> dict | None:
        return self.posts[0] if self.posts else None

    def prepend(self, post: dict) -> None:
        self.posts = [post, *self.posts]

    def replace(self, post: dict) -> None:
        self.posts = [post if p.get("id") == post.get("id") else p for p in self.posts]

    def remove(self, post_id: Any) -> None:
        self.posts = [p for p in self.posts if p.get("id") != post_id]

    def bump_views(self, post_id: Any) -> dict | None:
        """Local copy only; the server did its own atomic increment."""
        bumped = None
        out = []
        for p in self.posts:
            if p.get("id") == post_id:
                p = {**p, "views": (p.get("views") or 0) + 1}
                bumped = p
            out.append(p)
        self.posts = out
        return bumped


@dataclass
class PostDraft:
    """Browsing, editing an existing post, or creating a new one."""

    editing: dict | None = None
    creating: bool = False
    title: str = ""
    content: str = ""
    date: str = ""
    tags: str = ""

    @property
    def active(self) -> bool:
        return self.creating or self.editing is not None

    def start_edit(self, post: dict) -> None:
        self.editing, self.creating = post, False
        self.title = post.get("title") or ""
        self.content = post.get("content") or ""
        self.date = post.get("date") or ""
        self.tags = ", ".join(post_tags(post))

    def start_new(self, today: str) -> None:
        self.editing, self.creating = None, True
        self.title = self.content = self.tags = ""
        self.date = today

    def cancel(self) -> None:
        self.editing, self.creating = None, False

    def tag_list(self) -> list[str]:
        """Comma-separated tags, trimmed, blanks dropped; repeats are kept."""
        return [t.strip() for t in self.tags.split(",") if t.strip()]

    def missing(self) -> bool:
        return not (self.title.strip() and self.content.strip() and self.date.strip())


###############################################################################
# Comment forms
###############################################################################
@dataclass
class Identity:
    name: str = ""
    email: str = ""
    website: str = ""
    remember: bool = False

    def load(self, storage: MutableMapping[str, Any]) -> None:
        raw = storage.get(USER_KEY)
        if not raw:
            return
        try:
            saved = json.loads(raw) if isinstance(raw, str) else dict(raw)
        except (ValueError, TypeError):
            return
        self.name = saved.get("name") or ""
        self.email = saved.get("email") or ""
        self.website = saved.get("website") or ""
        self.remember = bool(saved.get("remember"))

    def save(self, storage: MutableMapping[str, Any]) -> None:
        storage[USER_KEY] = json.dumps(
            {
                "name": self.name.strip(),
                "email": self.email.strip(),
                "website": self.website.strip(),
                "remember": True,
            }
        )

    @staticmethod
    def forget(storage: MutableMapping[str, Any]) -> None:
        storage.pop(USER_KEY, None)


@dataclass
class GuestbookState:
    """
    Newest-first list fed by one fetch and then by the change feed.

    ``seen`` is the cursor: every id already shown.  Rows pushed while the
    fetch is still running wait in ``pending`` and are merged after it.
    """

    comments: list[dict] = field(default_factory=list)
    draft: str = ""
    loading: bool = False
    channel: Any = None
    fetching: bool = False
    seen: set = field(default_factory=set)
    pending: list[dict] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.channel is not None

    def reset(self) -> None:
        self.comments, self.pending, self.seen = [], [], set()
        self.channel, self.fetching, self.loading = None, False, False

    def loaded(self, rows: list[dict]) -> None:
        self.comments = list(rows)
        self.seen = {r.get("id") for r in rows if r.get("id") is not None}
        early, self.pending = self.pending, []
        for row in sorted(early, key=lambda r: r.get("created_at") or ""):
            self.push(row)

    def push(self, row: dict) -> bool:
        """Prepend a pushed row unless it is already shown."""
        if self.fetching:
            self.pending.append(row)
            return False
        rid = row.get("id")
        if rid is not None:
            if rid in self.seen:
                return False
            self.seen.add(rid)
        self.comments = [row, *self.comments]
        return True


@dataclass
class Discussion:
    post_id: Any = None
    comments: list[dict] = field(default_factory=list)
    draft: str = ""

    def clear(self) -> None:
        self.post_id, self.comments, self.draft = None, [], ""


###############################################################################
# Views
###############################################################################
@dataclass(frozen=True)
class Home:
    latest: dict | None


@dataclass(frozen=True)
class About:
    pass


@dataclass(frozen=True)
class BlogList:
    posts: list[dict]
    tags: list[str]
    active_tag: str


@dataclass(frozen=True)
class BlogDetail:
    post: dict
    comments: list[dict]


@dataclass(frozen=True)
class Guestbook:
    comments: list[dict]
    loading: bool


View = Home | About | BlogList | BlogDetail | Guestbook
