#!/usr/bin/env python3
"""
A single-page personal site: a blog, a discussion under every post and
a site-wide guestbook, all kept in a hosted row store.

Every browser session gets its own ``Controller`` (see controller.py);
requests are turned into calls on it and the page is a rendering of
its current view.
"""

import atexit
import os
import queue
import secrets
import threading
import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from zoneinfo import ZoneInfo

import click
import markdown
from flask import (
    Flask,
    Response,
    abort,
    flash,
    redirect,
    render_template_string,
    request,
    session,
    stream_with_context,
    url_for,
)
from markdown.extensions import Extension
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

from hut.controller import Alert, Controller
from hut.realtime import RealtimeClient
from hut.state import (
    ABOUT,
    ALL,
    BLOG,
    GUESTBOOK,
    HOME,
    About,
    BlogDetail,
    BlogList,
    Guestbook,
    Home,
    post_tags,
)
from hut.store import GUESTBOOK as GUESTBOOK_TABLE
from hut.store import POST_COMMENTS, POSTS, RowStore, StoreError

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

PREVIEW_CHARS = 180
SSE_KEEPALIVE_SEC = 15
SWEEP_EVERY_SEC = 30
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

TAB_LABELS = {HOME: "Home", ABOUT: "About", BLOG: "Blog", GUESTBOOK: "Guestbook"}


def _read_env_file() -> dict[str, str]:
    """KEY=value lines; blanks, comments and lines without ``=`` are skipped."""
    if not ENV_FILE.exists():
        return {}
    pairs = {}
    for ln in ENV_FILE.read_text().splitlines():
        key, sep, value = ln.strip().partition("=")
        if sep and key and not key.startswith("#"):
            pairs[key.strip()] = value.strip().strip('"')
    return pairs


_ENV = _read_env_file()


def env(key: str, default: str = "") -> str:
    """Process environment first, then the .env file beside the package."""
    return (os.environ.get(key) or _ENV.get(key) or default).strip()


try:
    __version__ = version("hut")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    SUPABASE_URL=env("SUPABASE_URL"),
    SUPABASE_ANON_KEY=env("SUPABASE_ANON_KEY"),
    ADMIN_PASSWORD=env("ADMIN_PASSWORD"),
    SITE_NAME=env("SITE_NAME", "Bareerah's Hut"),
    SITE_TAGLINE=env("SITE_TAGLINE", "a small personal site"),
    SITE_TZ=env("SITE_TZ", "Asia/Hong_Kong"),
    STORE_TIMEOUT=float(env("STORE_TIMEOUT", "10")),
    VISITOR_IDLE_SECONDS=int(env("VISITOR_IDLE_SECONDS", "120")),
    PERMANENT_SESSION_LIFETIME=timedelta(days=365),
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env("SESSION_COOKIE_SECURE", "1") != "0",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {
        "guess_lang": False,
        "noclasses": True,
        "pygments_style": "default",
    },
}
BASE_MD_EXTENSIONS = [
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.betterem",
    "pymdownx.superfences",
    "pymdownx.highlight",
    "tables",
]


class NoRawHtmlExtension(Extension):
    """Show raw HTML in the source as text instead of passing it through."""

    def extendMarkdown(self, md):
        md.preprocessors.deregister("html_block")
        md.inlinePatterns.deregister("html")


def render_markdown(text: str | None, *, raw_html: bool = True, breaks: bool = False) -> str:
    """Fresh renderer per call; ``markdown.Markdown`` is not thread-safe."""
    exts: list = list(BASE_MD_EXTENSIONS)
    if breaks:
        exts.append("nl2br")
    if not raw_html:
        exts.append(NoRawHtmlExtension())
    return markdown.markdown(
        str(text or ""), extensions=exts, extension_configs=MD_EXTENSION_CONFIGS
    )


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Post bodies: markdown, raw HTML allowed, single newlines kept."""
    return Markup(render_markdown(text, breaks=True))


@app.template_filter("mdguest")
def md_guest_filter(text: str | None) -> Markup:
    """Guestbook messages: markdown plus HTML."""
    return Markup(render_markdown(text))


@app.template_filter("mdcomment")
def md_comment_filter(text: str | None) -> Markup:
    """Post comments: markdown only, HTML shown as text."""
    return Markup(render_markdown(text, raw_html=False))


@app.template_filter("preview")
def preview_filter(text: str | None) -> str:
    text = str(text or "")
    return text[:PREVIEW_CHARS] + ("..." if len(text) > PREVIEW_CHARS else "")


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(str(iso).replace("Z", "+00:00"))
    except ValueError:
        return str(iso)
    if dt.tzinfo is None:
        return dt.strftime("%Y/%m/%d %H:%M:%S")
    return dt.astimezone(ZoneInfo(app.config["SITE_TZ"])).strftime("%Y/%m/%d %H:%M:%S")


@app.template_filter("bare_url")
def bare_url_filter(url: str | None) -> str:
    """https://example.com/me → example.com/me"""
    url = str(url or "")
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            return url[len(prefix):]
    return url


def _csrf_token() -> str:
    """One token per unlocked session."""
    return session.get("csrf", "")


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    tab_labels=TAB_LABELS,
    version=__version__,
    ALL=ALL,
    post_tags=post_tags,
)


###############################################################################
# Remote services + visitors
###############################################################################
def make_store() -> RowStore:
    return RowStore(
        app.config["SUPABASE_URL"],
        app.config["SUPABASE_ANON_KEY"],
        timeout=app.config["STORE_TIMEOUT"],
    )


def make_realtime() -> RealtimeClient:
    """One socket per visitor, like one per browser tab."""
    return RealtimeClient(app.config["SUPABASE_URL"], app.config["SUPABASE_ANON_KEY"])


_visitors: dict[str, Controller] = {}
_last_seen: dict[str, float] = {}
_streams: DefaultDict[str, int] = defaultdict(int)
_visitors_lock = threading.Lock()
_last_sweep = 0.0


def _touch(vid: str) -> None:
    with _visitors_lock:
        _last_seen[vid] = time()


def current_visitor() -> Controller:
    """The controller of this browser session, mounted on first use."""
    vid = session.get("visitor")
    if not vid:
        vid = session["visitor"] = uuid.uuid4().hex
        session.permanent = True

    with _visitors_lock:
        ctl = _visitors.get(vid)
        fresh = ctl is None
        if fresh:
            ctl = Controller(
                make_store(),
                make_realtime(),
                {},
                admin_secret=app.config["ADMIN_PASSWORD"],
            )
            _visitors[vid] = ctl
        _last_seen[vid] = time()

    # the browser's durable storage is its session cookie
    ctl.storage = session._get_current_object()
    if fresh:
        app.logger.info("visitor %s mounted", vid[:8])
        ctl.mount()
    return ctl


def drop_visitor(vid: str) -> None:
    with _visitors_lock:
        ctl = _visitors.pop(vid, None)
        _last_seen.pop(vid, None)
        _streams.pop(vid, None)
    if ctl is not None:
        ctl.unmount()
        app.logger.info("visitor %s unmounted", vid[:8])


def sweep_idle_visitors(now: float | None = None) -> list[str]:
    """Unmount visitors with no request and no open event stream for a while."""
    now = time() if now is None else now
    limit = app.config["VISITOR_IDLE_SECONDS"]
    with _visitors_lock:
        idle = [
            vid
            for vid, seen in _last_seen.items()
            if now - seen > limit and not _streams.get(vid)
        ]
    for vid in idle:
        drop_visitor(vid)
    return idle


@atexit.register
def _unmount_all() -> None:
    for vid in list(_visitors):
        drop_visitor(vid)


@app.before_request
def idle_gate():
    global _last_sweep
    now = time()
    with _visitors_lock:
        due = now - _last_sweep >= SWEEP_EVERY_SEC
        if due:
            _last_sweep = now
    # the sweep takes the lock itself
    if due:
        sweep_idle_visitors(now)


###############################################################################
# CLI – inspect the row store
###############################################################################
@app.cli.command("check")
def cli_check():
    """Ping the row store and print how many rows each table holds."""
    store = make_store()
    try:
        store.ping()
        counts = {
            POSTS: len(store.select(POSTS, order="id")),
            GUESTBOOK_TABLE: len(store.select(GUESTBOOK_TABLE, order="id")),
            POST_COMMENTS: len(store.select(POST_COMMENTS, order="id")),
        }
    except StoreError as exc:
        click.secho(f"\n❌  Row store unreachable: {exc}\n", fg="red")
        raise SystemExit(1)

    click.secho("\n✅  Row store reachable.\n", fg="green")
    for table, n in counts.items():
        click.echo(f"{table:<15}{n:>6}")
    if not app.config["ADMIN_PASSWORD"]:
        click.secho("\nADMIN_PASSWORD is empty – admin mode cannot be unlocked.", fg="yellow")


@app.cli.command("posts")
def cli_posts():
    """List posts, newest first."""
    try:
        rows = make_store().select(POSTS, order="date", ascending=False)
    except StoreError as exc:
        raise click.ClickException(str(exc))
    for p in rows:
        click.echo(f"{p.get('id')!s:>5}  {p.get('date')}  {p.get('views') or 0:>6}  {p.get('title')}")


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


MACROS = """
{% macro guest_entry(c) -%}
<div class="post">
  <div class="meta" style="display:flex;justify-content:space-between;border-bottom:1px solid #ccc;padding-bottom:.4rem;margin-bottom:.6rem;">
    <span><strong>{{ c.name }}</strong>
      {% if c.website %}
        <a href="{{ c.website }}" target="_blank" rel="noopener noreferrer" style="margin-left:.8rem;">{{ c.website|bare_url }}</a>
      {% endif %}
    </span>
    <span>{{ c.created_at|ts }}</span>
  </div>
  <div>{{ c.content|mdguest }}</div>
</div>
{%- endmacro %}
"""

TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ config['SITE_TAGLINE'] }}">
<style>
body{margin:0;background:#c0c0c0;color:#000;font-family:"Courier New",monospace;font-size:16px;line-height:1.55}
a{color:#0000ee}a:hover{color:#c00}
.wrap{max-width:56rem;margin:0 auto;padding:0 1.5rem}
header{background:#000080;color:#fff;padding:1.5rem 0}
header .wrap{display:flex;justify-content:space-between;align-items:center}
header h1{margin:0;font-size:2.2rem;letter-spacing:.15em}
header p{margin:.25rem 0 0;font-size:.85rem;opacity:.9}
header small{text-align:right;font-size:.75rem}
nav{position:sticky;top:0;background:#808080;padding:.6rem 0;z-index:10}
nav .wrap{display:flex;gap:.4rem;overflow-x:auto}
nav a{padding:.4rem 1.6rem;border:2px solid #000;background:#c0c0c0;color:#000;text-decoration:none;white-space:nowrap}
nav a[aria-current=page]{background:#fff;border-bottom:0;font-weight:bold}
main .panel{background:#fff;border:2px solid #000;box-shadow:4px 4px 0 #000;padding:2rem;margin:2rem 0;min-height:60vh}
h2{border-bottom:4px solid #000;padding-bottom:.4rem}
.post{border:2px solid #000;box-shadow:3px 3px 0 #000;padding:1.2rem;margin-bottom:1.4rem;background:#fff}
.post a.title{font-size:1.15rem;font-weight:bold;color:#000080;text-decoration:none}
.meta{font-size:.7rem;color:#555}
.tag{display:inline-block;padding:0 .45rem;margin-left:.2rem;font-size:.65rem;border:1px solid #999;background:#f5f5f5;color:#000;text-decoration:none}
.tag.on{background:#000;color:#fff;border-color:#000}
.box{background:#dfdfdf;border:2px solid #000;box-shadow:3px 3px 0 #000;padding:1.2rem}
.comment{background:#f5f5f5;border:1px solid #000;box-shadow:2px 2px 0 #000;padding:.9rem;margin-bottom:1rem}
.empty{text-align:center;color:#666;font-style:italic;padding:3rem 0;border:2px dashed #999}
input,textarea{width:100%;box-sizing:border-box;padding:.5rem;border:2px solid #000;font:inherit;margin-bottom:.8rem;background:#fff}
input[type=checkbox]{width:auto;margin:0 .4rem 0 0}
button,.button{padding:.45rem 1.6rem;border:2px solid #000;background:#fff;font:inherit;font-weight:bold;cursor:pointer;text-decoration:none;color:#000;display:inline-block}
button.primary{background:#000080;color:#fff}
button.danger{background:#c00;color:#fff}
label{display:block;font-size:.8rem;font-weight:bold;margin-bottom:.2rem}
pre{overflow-x:auto;padding:.8rem;background:#f0f0f0;border:1px solid #999}
.toast{position:fixed;top:1rem;right:1rem;background:#ffffe0;border:2px solid #000;box-shadow:3px 3px 0 #000;padding:.7rem 1rem;z-index:50;font-size:.85rem}
footer{text-align:center;font-size:.75rem;color:#444;border-top:4px solid #808080;padding:2rem 0}
footer a.dot{color:inherit;text-decoration:none;cursor:default}
</style>
<body>
""" + MACROS + """
<header>
  <div class="wrap">
    <div>
      <h1><a href="{{ url_for('home') }}" style="color:#fff;text-decoration:none;">{{ title }}</a></h1>
      <p>{{ config['SITE_TAGLINE'] }}</p>
    </div>
    <small>Welcome<br>Online now: <span id="online">{{ visitor.online }}</span></small>
  </div>
</header>
<nav aria-label="Primary">
  <div class="wrap">
    {% for tab, label in tab_labels.items() %}
      <a href="{{ url_for(tab) }}" {% if visitor.tab == tab %}aria-current="page"{% endif %}>{{ label }}</a>
    {% endfor %}
  </div>
</nav>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
  <div class="toast" role="status" aria-live="polite">{{ msgs|join('<br>'|safe) }}</div>
{% endif %}
{% endwith %}
<main class="wrap"><div class="panel">
"""

TEMPL_EPILOG = """
</div></main>
<footer>
  © {{ year }} {{ config['SITE_NAME'] }} • All Rights Reserved
  {% if visitor.admin %}
    • <form method="post" action="{{ url_for('lock') }}" style="display:inline;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button style="padding:0 .4rem;font-size:.7rem;">leave admin mode</button>
      </form>
  {% else %}
    <a class="dot" href="{{ url_for('unlock') }}" aria-label="admin">.</a>
  {% endif %}
  <br><span style="color:#777;">hut v{{ version }}</span>
</footer>
<script>
(() => {
  if (!window.EventSource) return;
  const es = new EventSource("{{ url_for('events') }}");
  es.addEventListener("online", (e) => {
    const el = document.getElementById("online");
    if (el) el.textContent = e.data;
  });
  es.addEventListener("comment", (e) => {
    const list = document.getElementById("guestbook-list");
    if (!list) return;
    const empty = document.getElementById("guestbook-empty");
    if (empty) empty.remove();
    list.insertAdjacentHTML("afterbegin", e.data);
  });
})();
</script>
</body>
</html>
"""


def page(template: str, ctl: Controller, **ctx):
    return render_template_string(
        template,
        visitor=ctl,
        title=app.config["SITE_NAME"],
        year=datetime.now().year,
        **ctx,
    )


def render_view(ctl: Controller):
    """One template per view variant."""
    view = ctl.view()
    template = VIEW_TEMPLATES[type(view)]
    return page(template, ctl, view=view)


def admin_required(ctl: Controller) -> None:
    try:
        ctl.require_admin()
    except PermissionError:
        abort(403)


def client_ip() -> str:
    # ProxyFix already rewrote remote_addr; access_route[0] is the origin
    route = request.access_route
    return (route[0] if route else request.remote_addr) or "unknown"


def rate_limit(max_requests: int, window: int = 60):
    """At most *max_requests* writes per client IP within *window* seconds."""
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method in SAFE_METHODS:
                return view(*args, **kwargs)

            now = time()
            stamps = hits[client_ip()]
            while stamps and now - stamps[0] > window:
                stamps.popleft()
            if len(stamps) >= max_requests:
                wait = max(1, int(window - (now - stamps[0])))
                app.logger.warning("rate limit hit on %s", request.path)
                return Response(
                    "Slow down a little and try again in a minute.",
                    status=429,
                    headers={"Retry-After": str(wait)},
                )
            stamps.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


# ------------------------------------------------------------------
# Home + About
# ------------------------------------------------------------------
@app.route("/")
def home():
    ctl = current_visitor()
    ctl.select_tab(HOME)
    return render_view(ctl)


TEMPL_HOME = wrap("""
<div style="text-align:center;padding:3rem 0;">
  <div style="margin:0 auto 1.5rem;width:6rem;height:6rem;border-radius:50%;background:#000080;color:#fff;font-size:3rem;line-height:6rem;">🐱</div>
  <h2 style="border:0;">Welcome to my little corner of the web</h2>
  <p>Notes on what I learn and how I live.<br>Say hi in the guestbook.</p>
  {% if view.latest %}
    <p class="meta" style="margin-top:2.5rem;font-size:.85rem;">
      Latest: <a href="{{ url_for('post_detail', post_id=view.latest.id) }}">{{ view.latest.title }}</a>
      • {{ view.latest.date }}
    </p>
  {% endif %}
</div>
""")


@app.route("/about")
def about():
    ctl = current_visitor()
    ctl.select_tab(ABOUT)
    return render_view(ctl)


TEMPL_ABOUT = wrap("""
<h2>About me</h2>
<div style="display:flex;flex-wrap:wrap;gap:2rem;">
  <div style="flex:1 1 12rem;background:#000080;color:#fff;padding:1.5rem;text-align:center;">
    <div style="font-size:3rem;">🐱</div>
    <p style="font-weight:bold;">{{ config['SITE_NAME'] }}</p>
    <p style="font-size:.75rem;opacity:.8;">Shenzhen / Hong Kong</p>
  </div>
  <div style="flex:2 1 20rem;font-size:.9rem;">
    <p>Graduate student, currently in Hong Kong.</p>
    <p>Curious about the Ethereum ecosystem and AI agents; learning Solidity and agent tooling.</p>
    <p><strong>Stack:</strong><br>Python, React<br>Web3 basics, AI agent testing</p>
  </div>
</div>
""")


# ------------------------------------------------------------------
# Blog list + detail
# ------------------------------------------------------------------
@app.route("/blog")
def blog():
    ctl = current_visitor()
    if ctl.tab != BLOG:
        ctl.select_tab(BLOG)
    else:
        ctl.close_post()
        ctl.cancel_edit()
    ctl.set_filter(request.args.get("tag"))
    return render_view(ctl)


TEMPL_BLOG_LIST = wrap("""
<h2>Blog</h2>
<div style="display:flex;flex-wrap:wrap;justify-content:space-between;align-items:center;gap:1rem;margin-bottom:2rem;">
  {% if visitor.admin %}
    <a class="button" href="{{ url_for('new_post') }}" style="background:#000080;color:#fff;">New post +</a>
  {% endif %}
  <div>
    <span style="font-size:.75rem;font-weight:bold;">Filter:</span>
    {% for tag in view.tags %}
      <a class="tag {% if view.active_tag == tag %}on{% endif %}"
         href="{{ url_for('blog', tag=None if tag == ALL else tag) }}">
        {{ 'ALL' if tag == ALL else '#' ~ tag }}</a>
    {% endfor %}
  </div>
</div>
{% for p in view.posts %}
  <div class="post">
    <div style="display:flex;justify-content:space-between;gap:1rem;">
      <div>
        <a class="title" href="{{ url_for('post_detail', post_id=p.id) }}">{{ p.title }}</a>
        <div class="meta">{{ p.date }} • {{ p.views or 0 }} views</div>
      </div>
      <div>
        {% for tag in post_tags(p) %}
          <span class="tag {% if view.active_tag == tag %}on{% endif %}">#{{ tag }}</span>
        {% endfor %}
      </div>
    </div>
    <div style="font-size:.85rem;opacity:.8;max-height:6em;overflow:hidden;">{{ p.content|preview|md }}</div>
    <a href="{{ url_for('post_detail', post_id=p.id) }}" style="font-size:.7rem;font-weight:bold;font-style:italic;">READ MORE →</a>
  </div>
{% else %}
  <div class="empty">Nothing under this tag yet...</div>
{% endfor %}
""")


@app.route("/blog/<int:post_id>")
def post_detail(post_id: int):
    ctl = current_visitor()
    ctl.cancel_edit()
    # re-rendering the open post is not another view
    if ctl.tab != BLOG or ctl.detail is None or ctl.detail.get("id") != post_id:
        try:
            ctl.open_post(post_id)
        except LookupError:
            abort(404)
    return render_view(ctl)


TEMPL_BLOG_DETAIL = wrap("""
<a href="{{ url_for('blog') }}" style="font-size:.85rem;">← Back to the list</a>
<article class="post" style="padding:2rem;margin-top:1.2rem;">
  <div style="font-size:1.5rem;font-weight:bold;border-bottom:2px solid #000;padding-bottom:.8rem;">{{ view.post.title }}</div>
  <div class="meta" style="margin:.4rem 0 2rem;">Published {{ view.post.date }}</div>
  <div class="e-content">{{ view.post.content|md }}</div>

  <section id="discussion" style="margin-top:3rem;border-top:2px solid #000;padding-top:1.5rem;">
    <h3><span style="background:#000080;color:#fff;padding:0 .4rem;font-style:italic;font-size:.8rem;">RE:</span> Discussion</h3>
    {% for c in view.comments %}
      <div class="comment">
        <div class="meta" style="display:flex;justify-content:space-between;border-bottom:1px solid #ccc;margin-bottom:.4rem;">
          <strong style="color:#000080;">{{ c.name }}</strong>
          <span>{{ c.created_at|ts }}</span>
        </div>
        <div style="font-size:.9rem;">{{ c.content|mdcomment }}</div>
      </div>
    {% else %}
      <p class="meta" style="font-style:italic;font-size:.85rem;">No replies yet. Be the first!</p>
    {% endfor %}

    <form class="box" method="post" action="{{ url_for('post_comment', post_id=view.post.id) }}">
      {% if csrf_token() %}<input type="hidden" name="csrf" value="{{ csrf_token() }}">{% endif %}
      <label for="content">Your comment</label>
      <textarea id="content" name="content" rows="4" placeholder="Markdown works...">{{ visitor.discussion.draft }}</textarea>
      <div style="display:flex;gap:1rem;">
        <div style="flex:1;"><label for="name">Name</label>
          <input id="name" name="name" value="{{ visitor.identity.name }}" placeholder="required"></div>
        <div style="flex:1;"><label for="email">Email</label>
          <input id="email" name="email" type="email" value="{{ visitor.identity.email }}" placeholder="not shown"></div>
      </div>
      <div style="text-align:right;"><button>Post comment</button></div>
    </form>
  </section>

  <div class="meta" style="margin-top:2rem;padding-top:1rem;border-top:1px solid #ccc;">
    Last edited {{ view.post.updated_at|ts }} • {{ view.post.views or 0 }} views
  </div>
  {% if visitor.admin %}
    <a class="button" href="{{ url_for('edit_post', post_id=view.post.id) }}" style="margin-top:1rem;background:#000080;color:#fff;">Edit this post</a>
  {% endif %}
</article>
""")


@app.route("/blog/<int:post_id>/comments", methods=["POST"])
@rate_limit(max_requests=10, window=60)
def post_comment(post_id: int):
    ctl = current_visitor()
    if ctl.detail is None or ctl.detail.get("id") != post_id:
        return redirect(url_for("post_detail", post_id=post_id))
    try:
        ctl.submit_post_comment(
            request.form.get("name", ""),
            request.form.get("email", ""),
            request.form.get("content", ""),
        )
    except Alert as exc:
        flash(str(exc))
    return redirect(url_for("post_detail", post_id=post_id, _anchor="discussion"))


# ------------------------------------------------------------------
# Authoring
# ------------------------------------------------------------------
def _save_from_form(ctl: Controller) -> bool:
    try:
        ctl.save_draft(
            title=request.form.get("title", ""),
            content=request.form.get("content", ""),
            date=request.form.get("date", ""),
            tags=request.form.get("tags", ""),
        )
    except Alert as exc:
        app.logger.warning("post not saved: %s", exc)
        flash(str(exc))
        return False
    return True


@app.route("/blog/new", methods=["GET", "POST"])
def new_post():
    ctl = current_visitor()
    admin_required(ctl)
    if request.method == "POST":
        if not ctl.draft.creating:
            ctl.start_new_post()
        if _save_from_form(ctl):
            flash("Post published!")
            return redirect(url_for("blog"))
    else:
        ctl.start_new_post()
    return page(TEMPL_EDITOR, ctl, draft=ctl.draft)


@app.route("/blog/<int:post_id>/edit", methods=["GET", "POST"])
def edit_post(post_id: int):
    ctl = current_visitor()
    admin_required(ctl)
    editing = ctl.draft.editing
    if request.method == "GET" or editing is None or editing.get("id") != post_id:
        try:
            ctl.start_edit(post_id)
        except LookupError:
            abort(404)
    if request.method == "POST" and _save_from_form(ctl):
        flash("Changes saved!")
        if ctl.detail is not None and ctl.detail.get("id") == post_id:
            return redirect(url_for("post_detail", post_id=post_id))
        return redirect(url_for("blog"))
    return page(TEMPL_EDITOR, ctl, draft=ctl.draft)


TEMPL_EDITOR = wrap("""
<h2>{{ 'New post' if draft.creating else 'Edit post' }}</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="title">Title</label>
  <input id="title" name="title" value="{{ draft.title }}" placeholder="Title">
  <label for="date">Date</label>
  <input id="date" name="date" type="date" value="{{ draft.date }}">
  <label for="content">Content</label>
  <textarea id="content" name="content" rows="16" placeholder="Markdown works">{{ draft.content }}</textarea>
  <label for="tags">Tags</label>
  <input id="tags" name="tags" value="{{ draft.tags }}" placeholder="comma separated, e.g. Web3, DevRel">
  <div style="display:flex;gap:1rem;align-items:center;">
    <button class="primary">Save</button>
    {% if draft.creating %}
      <a class="button" href="{{ url_for('blog') }}">Cancel</a>
    {% else %}
      <a class="button" href="{{ url_for('post_detail', post_id=draft.editing.id) }}">Cancel</a>
      <a class="button" href="{{ url_for('delete_post', post_id=draft.editing.id) }}"
         style="margin-left:auto;background:#c00;color:#fff;">Delete this post</a>
    {% endif %}
  </div>
</form>
""")


@app.route("/blog/<int:post_id>/delete", methods=["GET", "POST"])
def delete_post(post_id: int):
    ctl = current_visitor()
    admin_required(ctl)
    post = ctl.posts.get(post_id)
    if post is None:
        abort(404)

    if request.method == "POST":
        confirmed = request.form.get("confirm") == "yes"
        try:
            deleted = ctl.delete_post(post_id, confirmed)
        except Alert as exc:
            app.logger.warning("post %s not deleted: %s", post_id, exc)
            flash(str(exc))
            return redirect(url_for("edit_post", post_id=post_id))
        if not deleted:
            return redirect(url_for("edit_post", post_id=post_id))
        flash("Post deleted.")
        return redirect(url_for("blog"))

    return page(TEMPL_DELETE_POST, ctl, post=post)


TEMPL_DELETE_POST = wrap("""
<h2>Really delete this post?</h2>
<article style="border-left:3px solid #c00;padding-left:1rem;">
  <h3>{{ post.title }}</h3>
  <div class="meta">{{ post.date }}</div>
</article>
<p>This cannot be undone.</p>
<form method="post" style="display:flex;gap:1rem;">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <button class="danger" name="confirm" value="yes">Yes – delete it</button>
  <button name="confirm" value="no">Keep it</button>
</form>
""")


# ------------------------------------------------------------------
# Guestbook
# ------------------------------------------------------------------
@app.route("/guestbook", methods=["GET", "POST"])
@rate_limit(max_requests=30, window=60)
def guestbook():
    ctl = current_visitor()
    if ctl.tab != GUESTBOOK:
        ctl.select_tab(GUESTBOOK)
    if request.method == "POST":
        try:
            ctl.submit_guestbook(
                request.form.get("name", ""),
                request.form.get("email", ""),
                request.form.get("website", ""),
                request.form.get("content", ""),
                request.form.get("remember") == "on",
            )
        except Alert as exc:
            flash(str(exc))
        return redirect(url_for("guestbook"))
    return render_view(ctl)


TEMPL_GUESTBOOK = wrap("""
<div style="max-width:42rem;margin:0 auto;">
<h2>Guestbook</h2>
<form class="box" method="post" style="background:#f8f4e8;">
  {% if csrf_token() %}<input type="hidden" name="csrf" value="{{ csrf_token() }}">{% endif %}
  <label for="content">Your message (Markdown + HTML)</label>
  <textarea id="content" name="content" rows="8"
            placeholder="Say anything... **bold**, *italic*, [links](url) and code blocks work">{{ visitor.guestbook.draft }}</textarea>
  <label for="name">Name <small>(required)</small></label>
  <input id="name" name="name" value="{{ visitor.identity.name }}">
  <label for="email">Email <small>(required, not shown)</small></label>
  <input id="email" name="email" type="email" value="{{ visitor.identity.email }}" placeholder="example@email.com">
  <label for="website">Website <small>(optional)</small></label>
  <input id="website" name="website" value="{{ visitor.identity.website }}" placeholder="https://">
  <label style="font-weight:normal;"><input type="checkbox" name="remember" {% if visitor.identity.remember %}checked{% endif %}>Remember me</label>
  <button style="margin-top:1rem;" {% if view.loading %}disabled{% endif %}>Post</button>
</form>

<h3 style="border-bottom:4px solid #000;margin-top:3rem;">Messages</h3>
{% if view.loading %}
  <div class="empty">Loading...</div>
{% endif %}
<div id="guestbook-list">
  {% for c in view.comments %}{{ guest_entry(c) }}{% endfor %}
</div>
{% if not view.comments and not view.loading %}
  <div class="empty" id="guestbook-empty">No messages yet – be the first!</div>
{% endif %}
</div>
""")

TEMPL_GUEST_ENTRY = MACROS + "{{ guest_entry(c) }}"


# ------------------------------------------------------------------
# Admin gate – hides the authoring buttons, nothing more.  Writes are
# only as protected as the row store's own policies make them.
# ------------------------------------------------------------------
@app.route("/unlock", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def unlock():
    ctl = current_visitor()
    if request.method == "POST":
        if ctl.unlock_admin(request.form.get("password", "")):
            session["csrf"] = secrets.token_hex(16)
            flash("Admin mode on.")
            return redirect(url_for("blog"))
        flash("Wrong password.")
    return page(TEMPL_UNLOCK, ctl)


TEMPL_UNLOCK = wrap("""
<h2>Admin</h2>
<form method="post" style="max-width:24rem;">
  {% if csrf_token() %}<input type="hidden" name="csrf" value="{{ csrf_token() }}">{% endif %}
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password" autofocus>
  <button class="primary">Unlock</button>
</form>
""")


@app.route("/lock", methods=["POST"])
def lock():
    ctl = current_visitor()
    ctl.lock_admin()
    session.pop("csrf", None)
    return redirect(url_for("home"))


# ------------------------------------------------------------------
# Live updates
# ------------------------------------------------------------------
def sse(event: str, data: str) -> str:
    """One Server-Sent-Events frame; every line of *data* gets a prefix."""
    lines = "\n".join(f"data: {ln}" for ln in str(data).splitlines() or [""])
    return f"event: {event}\n{lines}\n\n"


@app.route("/online")
def online():
    ctl = current_visitor()
    return {"online": ctl.online}


@app.route("/events")
def events():
    ctl = current_visitor()
    vid = session["visitor"]
    inbox: queue.Queue = queue.Queue()
    stop = ctl.listen(lambda kind, value: inbox.put((kind, value)))
    with _visitors_lock:
        _streams[vid] += 1

    def generate():
        try:
            yield sse("online", ctl.online)
            while True:
                try:
                    kind, value = inbox.get(timeout=SSE_KEEPALIVE_SEC)
                except queue.Empty:
                    _touch(vid)
                    yield ": keepalive\n\n"
                    continue
                if kind == "online":
                    yield sse("online", value)
                elif kind == "comment":
                    html = render_template_string(TEMPL_GUEST_ENTRY, c=value)
                    yield sse("comment", html)
        finally:
            stop()
            with _visitors_lock:
                if _streams.get(vid):
                    _streams[vid] -= 1
                _last_seen[vid] = time()

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


VIEW_TEMPLATES = {
    Home: TEMPL_HOME,
    About: TEMPL_ABOUT,
    BlogList: TEMPL_BLOG_LIST,
    BlogDetail: TEMPL_BLOG_DETAIL,
    Guestbook: TEMPL_GUESTBOOK,
}


###############################################################################
# Resources
###############################################################################
@app.route("/robots.txt")
def robots():
    rules = "User-agent: *\nAllow: /\nDisallow: /unlock\nDisallow: /events\n"
    return Response(rules, mimetype="text/plain")


@app.before_request
def csrf_protect():
    """Writes from an unlocked session must echo its token."""
    token = session.get("csrf")
    if request.method in SAFE_METHODS or not token:
        return
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not secrets.compare_digest(token, sent):
        app.logger.warning("csrf mismatch on %s", request.path)
        abort(403)


SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "same-origin",
}


@app.after_request
def sec_headers(resp):
    resp.headers.update(SECURITY_HEADERS)
    if resp.mimetype == "text/event-stream":
        resp.headers["Cache-Control"] = "no-cache"
    return resp


###############################################################################
# Error pages
###############################################################################
TEMPL_ERROR = """
<!doctype html>
<html lang="en">
<meta charset="utf-8">
<title>{{ title }}</title>
<body style="background:#c0c0c0;font-family:'Courier New',monospace;">
<div style="max-width:40rem;margin:4rem auto;background:#fff;border:2px solid #000;box-shadow:4px 4px 0 #000;padding:2rem;">
  <h2 style="margin-top:0">{{ heading }}</h2>
  <p>{{ message }}</p>
  <p><a href="/">Back to the front page</a></p>
</div>
</body>
</html>
"""


def _error_page(heading: str, message: str, status: int):
    # no visitor state here: the page must render even when that is what broke
    return render_template_string(
        TEMPL_ERROR, title=app.config["SITE_NAME"], heading=heading, message=message
    ), status


@app.errorhandler(403)
def forbidden(exc):
    return _error_page("Forbidden", "That needs admin mode.", 403)


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return _error_page("Page not found", "The URL you asked for doesn’t exist.", 404)


@app.errorhandler(500)
def internal_error(exc):
    """
    Static fallback for anything that crashed while rendering.
    • In debug mode Flask bypasses this handler and shows the traceback.
    """
    app.logger.error("render failed: %s", getattr(exc, "original_exception", exc))
    return _error_page(
        "Something broke", "This part of the page failed to load. Please try again.", 500
    )


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True, threaded=True)
