#!/usr/bin/env python3
"""
A small personal blog: posts, accounts, and per-author edit rights.
"""

import os
import secrets
import sqlite3
import uuid
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from io import BytesIO
from pathlib import Path
from time import time
from typing import Callable, DefaultDict
from urllib.parse import parse_qs, urlencode, urlparse

import click
import markdown
from bs4 import BeautifulSoup
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "blog.sqlite3"

SECRET_FILE = ROOT / ".secret_key"


def _load_secret_key() -> str:
    """Prefer $SECRET_KEY, else reuse (or create) the on-disk key."""
    key = os.environ.get("SECRET_KEY", "").strip()
    if key:
        return key
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


SECRET_KEY = _load_secret_key()
DATABASE_URL = os.environ.get("DATABASE_URL", f"sqlite:///{DB_FILE}")
HOST = os.environ.get("HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "3000"))
SITE_NAME = os.environ.get("SITE_NAME", "Personal Website")
SESSION_LIFETIME_DAYS = int(os.environ.get("SESSION_LIFETIME_DAYS", "14"))
LOGIN_RATE_LIMIT = int(os.environ.get("LOGIN_RATE_LIMIT", "5"))
LOGIN_RATE_WINDOW = int(os.environ.get("LOGIN_RATE_WINDOW", "60"))

EXCERPT_LEN = 100
OVERRIDE_METHODS = frozenset({"PUT", "PATCH", "DELETE"})
# containers whose content runs instead of being shown
EXECUTABLE_TAGS = ["script", "iframe", "object", "embed"]
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

MSG_LOGIN_REQUIRED = "You must be logged in to do that."
MSG_NOT_OWNER = "You do not have permission to do that."
MSG_BAD_LOGIN = "Invalid username or password."

try:
    __version__ = version("personalweb")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# Errors
################################################################################
class BlogError(Exception):
    """Base class for every failure a route knows how to turn into a page."""


class StoreError(BlogError):
    pass


class NotFound(StoreError):
    pass


class ValidationError(StoreError):
    """The store refused a value (wrong type, constraint violation)."""


class StoreUnavailable(StoreError):
    """The database could not be opened or queried."""


class AuthError(BlogError):
    pass


class AuthFailure(AuthError):
    pass


class DuplicateUsername(AuthError):
    pass


class WeakCredential(AuthError):
    pass


################################################################################
# Method override
################################################################################
class MethodOverride:
    """
    Let plain HTML forms reach PUT / PATCH / DELETE routes.

    A POST is re-dispatched when it carries the wanted verb in
    • the query string (``?_method=DELETE``),
    • the ``X-HTTP-Method-Override`` header, or
    • a url-encoded form field of the same name.
    """

    def __init__(self, wsgi_app, param: str = "_method"):
        self.wsgi_app = wsgi_app
        self.param = param

    def __call__(self, environ, start_response):
        if environ.get("REQUEST_METHOD", "").upper() == "POST":
            wanted = (
                self._from_query(environ)
                or environ.get("HTTP_X_HTTP_METHOD_OVERRIDE", "")
                or self._from_form(environ)
            ).upper()
            if wanted in OVERRIDE_METHODS:
                environ["REQUEST_METHOD"] = wanted
        return self.wsgi_app(environ, start_response)

    def _from_query(self, environ) -> str:
        values = parse_qs(environ.get("QUERY_STRING", "")).get(self.param)
        return values[0] if values else ""

    def _from_form(self, environ) -> str:
        ctype = environ.get("CONTENT_TYPE", "")
        if not ctype.startswith("application/x-www-form-urlencoded"):
            return ""
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            return ""
        if length <= 0:
            return ""
        body = environ["wsgi.input"].read(length)
        # hand the untouched body on to Flask
        environ["wsgi.input"] = BytesIO(body)
        values = parse_qs(body.decode("utf-8", "replace")).get(self.param)
        return values[0] if values else ""


def override_url(endpoint: str, verb: str, **values) -> str:
    """URL a POST form can use to reach the *verb* route of *endpoint*."""
    # url_for() claims `_method` for itself, so the query is added by hand
    return f"{url_for(endpoint, **values)}?{urlencode({'_method': verb})}"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=DATABASE_URL,
    SITE_NAME=SITE_NAME,
    PERMANENT_SESSION_LIFETIME=timedelta(days=SESSION_LIFETIME_DAYS),
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("SESSION_COOKIE_SECURE", "0") == "1",
    LOGIN_RATE_LIMIT=LOGIN_RATE_LIMIT,
    LOGIN_RATE_WINDOW=LOGIN_RATE_WINDOW,
)
app.wsgi_app = MethodOverride(ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1))

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]


def sanitize_html(text: str | None) -> str:
    """
    Strip anything a browser would execute, keep every other tag and all text.

    • <script>, <iframe>, <object>, <embed> go away together with their content
    • on*="…" event attributes are dropped
    • javascript: URLs in href / src / action are dropped
    """
    if not text:
        return ""
    if "<" not in text:
        return text

    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all(EXECUTABLE_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            value = tag.attrs[attr]
            if isinstance(value, list):
                value = " ".join(value)
            if attr.lower().startswith("on"):
                del tag.attrs[attr]
            elif attr.lower() in ("href", "src", "action", "formaction") and (
                "".join(str(value).split()).lower().startswith("javascript:")
            ):
                del tag.attrs[attr]
    return str(soup)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Render a (sanitized) post body as Markdown."""
    if not text:
        return Markup("")
    html = markdown.markdown(text, extensions=MD_EXTENSIONS)
    # link syntax can still produce javascript: hrefs
    return Markup(sanitize_html(html))


@app.template_filter("excerpt")
def excerpt_filter(text: str | None, length: int = EXCERPT_LEN) -> str:
    if not text:
        return ""
    plain = " ".join(BeautifulSoup(text, "html.parser").get_text().split())
    if len(plain) <= length:
        return plain
    return plain[:length].rstrip() + "…"


@app.template_filter("ts")
def ts_filter(dt: datetime | None) -> str:
    if not dt:
        return ""
    return dt.strftime("%Y.%m.%d %H:%M")


###############################################################################
# Records
###############################################################################
@dataclass(frozen=True)
class Author:
    id: str
    username: str


@dataclass(frozen=True)
class Post:
    id: str
    title: str
    body: str
    created: datetime
    author: Author | None = None


@dataclass(frozen=True)
class User:
    id: str
    username: str


@dataclass(frozen=True)
class Identity:
    """Who the current request is authenticated as."""

    user_id: str
    username: str


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


###############################################################################
# Database helpers
###############################################################################
SCHEMA = """
    ------------------------------------------------------------
    -- 1.  Accounts
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS user (
        id             TEXT PRIMARY KEY,
        username       TEXT UNIQUE NOT NULL,
        password_hash  TEXT NOT NULL
    );

    ------------------------------------------------------------
    -- 2.  Posts  (author_* is a loose reference, no FK)
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS post (
        id               TEXT PRIMARY KEY,
        title            TEXT NOT NULL DEFAULT '',
        body             TEXT NOT NULL DEFAULT '',
        created          TEXT NOT NULL,
        author_id        TEXT,
        author_username  TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_post_created ON post(created);
"""


def database_path(url: str) -> str:
    """
    `sqlite:///relative.db`, `sqlite:////abs/path.db` or a bare path → path.
    """
    prefix = "sqlite:///"
    if url.startswith(prefix):
        return url[len(prefix) :]
    return url


class Database:
    """One lazily opened SQLite connection; the schema is ensured on open."""

    def __init__(self, url: str):
        self.url = url
        self.path = database_path(url)
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                conn = sqlite3.connect(self.path)
                conn.row_factory = sqlite3.Row
                conn.executescript(SCHEMA)
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"cannot open {self.url}: {exc}") from exc
            self._conn = conn
        return self._conn

    @contextmanager
    def transaction(self):
        """Commit on success, roll back on error, translate sqlite errors."""
        conn = self.conn
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError as exc:
            raise ValidationError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc

    def ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class Store:
    """Both collections, sharing one database client."""

    def __init__(self, db: Database):
        self.db = db
        self.posts = PostStore(db)
        self.users = UserStore(db)


def get_store() -> Store:
    if "store" not in g:
        g.store = Store(Database(app.config["DATABASE"]))
    return g.store


@app.teardown_appcontext
def close_store(error=None):
    store = g.pop("store", None)
    if store is not None:
        store.db.close()


def init_db() -> None:
    """Create the tables (no-op when they exist)."""
    get_store().db.ensure_schema()


###############################################################################
# Post store
###############################################################################
POST_FIELDS = ("title", "body")


def _clean_fields(fields: dict) -> dict[str, str]:
    clean = {}
    for key in POST_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ValidationError(f"{key} must be text, got {type(value).__name__}")
        clean[key] = value
    return clean


def _row_to_post(row: sqlite3.Row) -> Post:
    author = None
    if row["author_id"] is not None:
        author = Author(id=row["author_id"], username=row["author_username"] or "")
    return Post(
        id=row["id"],
        title=row["title"],
        body=row["body"],
        created=datetime.fromisoformat(row["created"]),
        author=author,
    )


class PostStore:
    def __init__(self, db: Database):
        self.db = db

    def list_all(self) -> list[Post]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM post ORDER BY created DESC, rowid DESC"
            ).fetchall()
        return [_row_to_post(r) for r in rows]

    def create(self, fields: dict, author: Author | None = None) -> Post:
        clean = _clean_fields(fields)
        post = Post(
            id=new_id(),
            title=clean.get("title", ""),
            body=clean.get("body", ""),
            created=utc_now(),
            author=author,
        )
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO post
                       (id, title, body, created, author_id, author_username)
                   VALUES (?,?,?,?,?,?)""",
                (
                    post.id,
                    post.title,
                    post.body,
                    post.created.isoformat(),
                    author.id if author else None,
                    author.username if author else None,
                ),
            )
        return post

    def find_by_id(self, post_id: str) -> Post:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM post WHERE id=?", (post_id,)).fetchone()
        if row is None:
            raise NotFound(f"no post {post_id!r}")
        return _row_to_post(row)

    def update(self, post_id: str, fields: dict) -> Post:
        """Replace title and/or body; id, created and author never change."""
        clean = _clean_fields(fields)
        if clean:
            assignments = ", ".join(f"{k}=?" for k in clean)
            with self.db.transaction() as conn:
                cur = conn.execute(
                    f"UPDATE post SET {assignments} WHERE id=?",
                    (*clean.values(), post_id),
                )
            if cur.rowcount == 0:
                raise NotFound(f"no post {post_id!r}")
        return self.find_by_id(post_id)

    def remove(self, post_id: str) -> None:
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM post WHERE id=?", (post_id,))
        if cur.rowcount == 0:
            raise NotFound(f"no post {post_id!r}")


###############################################################################
# User store
###############################################################################
# compared against when the username is unknown, so both failures cost the same
_DUMMY_HASH = generate_password_hash(secrets.token_hex(16))


class UserStore:
    def __init__(self, db: Database):
        self.db = db

    def register(self, username: str, password: str) -> User:
        username = (username or "").strip()
        if not username:
            raise WeakCredential("No username was given")
        if not password:
            raise WeakCredential("No password was given")

        user = User(id=new_id(), username=username)
        with self.db.transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO user (id, username, password_hash) VALUES (?,?,?)",
                    (user.id, user.username, generate_password_hash(password)),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateUsername(
                    "A user with the given username is already registered"
                ) from exc
        return user

    def authenticate(self, username: str, password: str) -> User:
        username = (username or "").strip()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM user WHERE username=?", (username,)
            ).fetchone()
        if row is None:
            check_password_hash(_DUMMY_HASH, password or "")
            raise AuthFailure(MSG_BAD_LOGIN)
        if not password or not check_password_hash(row["password_hash"], password):
            raise AuthFailure(MSG_BAD_LOGIN)
        return User(id=row["id"], username=row["username"])

    def get(self, user_id: str) -> User:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id, username FROM user WHERE id=?", (user_id,)
            ).fetchone()
        if row is None:
            raise NotFound(f"no user {user_id!r}")
        return User(id=row["id"], username=row["username"])


###############################################################################
# Session + flash bridge
###############################################################################
@dataclass(frozen=True)
class RequestContext:
    """What a handler gets instead of reaching for globals."""

    store: Store
    identity: Identity | None

    @property
    def author(self) -> Author | None:
        if self.identity is None:
            return None
        return Author(id=self.identity.user_id, username=self.identity.username)


def _identity_from_session() -> Identity | None:
    user_id = session.get("user_id")
    if not user_id:
        return None
    return Identity(user_id=str(user_id), username=session.get("username", ""))


@app.before_request
def resolve_identity():
    g.identity = _identity_from_session()


def log_in(user: User) -> None:
    """Start a fresh authenticated session (drops anything queued before)."""
    session.clear()
    session.permanent = True
    session["user_id"] = user.id
    session["username"] = user.username
    session["csrf"] = secrets.token_hex(16)


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return

    # anonymous posts (login / register) carry no token yet
    if not session.get("user_id"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


def can_edit(post: Post) -> bool:
    identity = g.get("identity")
    return is_owner(identity, post)


@app.context_processor
def inject_user():
    return {"current_user": g.get("identity")}


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["can_edit"] = can_edit
app.jinja_env.globals["override_url"] = override_url
app.jinja_env.globals["version"] = __version__


###############################################################################
# Guards
###############################################################################
@dataclass(frozen=True)
class Reject:
    location: str
    message: str | None = None
    category: str = "error"


Guard = Callable[..., Reject | None]


def back_or(default: str) -> str:
    """The referring page when it is on this site, else *default*."""
    ref = request.referrer
    if ref:
        parts = urlparse(ref)
        if not parts.netloc or parts.netloc == request.host:
            return ref
    return default


def is_owner(identity: Identity | None, post: Post) -> bool:
    if identity is None or post.author is None:
        return False
    return post.author.id == identity.user_id


def login_required(ctx: RequestContext, **_view_args) -> Reject | None:
    if ctx.identity is None:
        return Reject(url_for("login_form"), MSG_LOGIN_REQUIRED)
    return None


def owner_required(missing: str | None = None) -> Guard:
    """
    Only the post's author gets through.

    Anonymous visitors, other users and author-less posts are all turned
    away the same way. A missing post goes back to the referrer, or to the
    endpoint named by *missing*.
    """

    def guard(ctx: RequestContext, post_id: str, **_view_args) -> Reject | None:
        fallback = url_for("list_posts")
        try:
            post = ctx.store.posts.find_by_id(post_id)
        except NotFound:
            if missing:
                return Reject(url_for(missing))
            return Reject(back_or(fallback))
        except StoreUnavailable:
            app.logger.exception("ownership check for post %s failed", post_id)
            return Reject(fallback)
        if not is_owner(ctx.identity, post):
            return Reject(back_or(fallback), MSG_NOT_OWNER)
        return None

    return guard


def handler(*guards: Guard):
    """Run *guards* in order; the first rejection wins, else call the view."""

    def decorator(view):
        @wraps(view)
        def wrapped(**view_args):
            ctx = RequestContext(store=get_store(), identity=g.get("identity"))
            for guard in guards:
                rejected = guard(ctx, **view_args)
                if rejected is not None:
                    if rejected.message:
                        flash(rejected.message, rejected.category)
                    return redirect(rejected.location)
            return view(ctx, **view_args)

        return wrapped

    return decorator


def rate_limit(max_requests: int | None = None, window: int | None = None):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            limit = max_requests or app.config["LOGIN_RATE_LIMIT"]
            span = window or app.config["LOGIN_RATE_WINDOW"]
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            # forget clients whose last hit has left the window
            for stale in [k for k, q in hits.items() if not q or now - q[-1] > span]:
                del hits[stale]

            dq = hits[ip]
            while dq and now - dq[0] > span:
                dq.popleft()

            if len(dq) >= limit:
                retry_after = int(span - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.rate_hits = hits
        return wrapped

    return decorator


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or config['SITE_NAME'] }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1, shrink-to-fit=no">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background-color:#222;padding:13px}
h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem;overflow-wrap:break-word}
a{color:#fff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}
textarea,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background-color:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box;width:100%}
textarea{min-height:14rem}
button{display:inline-block;padding:5px 10px;background-color:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer}
.nav{display:flex;justify-content:space-between;gap:1rem;font-size:.9em;margin-bottom:1rem}
.nav-auth{display:flex;gap:1rem}
.meta{color:#888;font-size:.75em}
.toast{position:fixed;top:1rem;right:1rem;padding:.75rem 1rem;border-radius:.4rem;font-size:.9rem;max-width:24rem;z-index:999;color:#fff}
.toast-error{background:#7a2323}
.toast-success{background:#2f5a2f}
</style>
<body>
<div class="container" style="max-width:60rem;margin:3rem auto;">
    <h1 style="margin-top:0;">
        <a href="{{ url_for('list_posts') }}" style="text-decoration:none;">{{ config['SITE_NAME'] }}</a>
    </h1>
    <nav class="nav" aria-label="Primary">
        <div>
            <a href="{{ url_for('list_posts') }}">Blog</a>
            {% if current_user %}&nbsp;<a href="{{ url_for('new_post') }}">New post</a>{% endif %}
        </div>
        <div class="nav-auth">
        {% if current_user %}
            <span>Signed in as {{ current_user.username }}</span>
            <form method="post" action="{{ url_for('logout') }}" style="margin:0;">
                <input type="hidden" name="csrf" value="{{ csrf_token() }}">
                <button style="padding:0 6px;">Logout</button>
            </form>
        {% else %}
            <a href="{{ url_for('login_form') }}">Login</a>
            <a href="{{ url_for('register_form') }}">Sign up</a>
        {% endif %}
        </div>
    </nav>
    {% with msgs = get_flashed_messages(with_categories=true) %}
    {% for category, msg in msgs %}
        <div role="status" aria-live="polite" class="toast toast-{{ category }}">{{ msg }}</div>
    {% endfor %}
    {% endwith %}
    <main id="main-content" role="main">
"""

TEMPL_EPILOG = """
    </main>
    <footer style="margin-top:1.875em;padding-top:1.5em;font-size:.8em;color:#888;border-top:1px solid #444;">
        personalweb <span>v{{ version }}</span>
    </footer>
</div>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
{% block body %}
<hr>
{% for p in posts %}
    <article class="h-entry" style="margin-bottom:2.5rem;">
        <h2 style="margin-bottom:.5rem;">
            <a href="{{ url_for('show_post', post_id=p.id) }}">{{ p.title or 'Untitled' }}</a>
        </h2>
        <div class="meta">
            <time datetime="{{ p.created.isoformat() }}">{{ p.created|ts }}</time>
            {% if p.author %} · {{ p.author.username }}{% endif %}
        </div>
        <p>{{ p.body|excerpt }}</p>
        <a href="{{ url_for('show_post', post_id=p.id) }}">Read more</a>
    </article>
{% else %}
    <p>No posts yet.</p>
{% endfor %}
{% endblock %}
""")

TEMPL_SHOW = wrap("""
{% block body %}
<hr>
<article class="h-entry">
    <h2>{{ post.title or 'Untitled' }}</h2>
    <div class="meta">
        <time datetime="{{ post.created.isoformat() }}">{{ post.created|ts }}</time>
        {% if post.author %} · {{ post.author.username }}{% endif %}
    </div>
    <div class="e-content" style="margin-top:1.5em;">{{ post.body|md }}</div>
</article>
{% if can_edit(post) %}
<div style="display:flex;gap:1rem;align-items:center;">
    <a href="{{ url_for('edit_post', post_id=post.id) }}">Edit</a>
    <form method="post" action="{{ override_url('delete_post', 'DELETE', post_id=post.id) }}" style="margin:0;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button style="background:#c00;color:#fff;border-color:#c00;">Delete</button>
    </form>
</div>
{% endif %}
{% endblock %}
""")

TEMPL_POST_FORM = wrap("""
{% block body %}
<hr>
<h2>{{ heading }}</h2>
<form method="post" action="{{ action }}">
    {% if csrf_token() %}
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <label for="blog-title">Title</label>
    <input id="blog-title" name="blog[title]" value="{{ blog.title }}">
    <label for="blog-body">Body</label>
    <textarea id="blog-body" name="blog[body]" rows="10">{{ blog.body }}</textarea>
    <button type="submit">Save</button>
    <a href="{{ cancel }}" style="margin-left:1rem;">Cancel</a>
</form>
{% endblock %}
""")

TEMPL_AUTH_FORM = wrap("""
{% block body %}
<hr>
<h2>{{ heading }}</h2>
<form method="post" action="{{ action }}">
    {% if csrf_token() %}
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <label for="username">Username</label>
    <input id="username" name="username" autocomplete="username" value="{{ username }}">
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="{{ autocomplete }}">
    <button type="submit">{{ heading }}</button>
</form>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('list_posts') }}">Back to the blog</a>.</p>
{% endblock %}
""")

TEMPL_403 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Forbidden</h2>
  <p>That request could not be verified. Reload the page and try again.
     <a href="{{ url_for('list_posts') }}">Back to the blog</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# Posts
###############################################################################
def _blog_fields(form, *, partial: bool = False) -> dict[str, str]:
    """
    Pull `blog[title]` / `blog[body]` out of a form, sanitizing the body.
    With *partial* only the fields actually sent are returned.
    """
    fields = {}
    for key in POST_FIELDS:
        name = f"blog[{key}]"
        if partial and name not in form:
            continue
        fields[key] = form.get(name, "")
    if "body" in fields:
        fields["body"] = sanitize_html(fields["body"])
    return fields


def _render_post_form(*, heading: str, action: str, cancel: str, blog: dict):
    return render_template_string(
        TEMPL_POST_FORM,
        heading=heading,
        action=action,
        cancel=cancel,
        blog={"title": blog.get("title", ""), "body": blog.get("body", "")},
    )


@app.route("/")
def index():
    return redirect(url_for("list_posts"))


@app.route("/blogs")
@handler()
def list_posts(ctx: RequestContext):
    try:
        posts = ctx.store.posts.list_all()
    except StoreUnavailable:
        app.logger.exception("could not list posts")
        posts = []
    return render_template_string(TEMPL_INDEX, posts=posts)


@app.route("/blogs/new")
@handler(login_required)
def new_post(ctx: RequestContext):
    return _render_post_form(
        heading="New post",
        action=url_for("create_post"),
        cancel=url_for("list_posts"),
        blog={},
    )


@app.route("/blogs", methods=["POST"])
@handler(login_required)
def create_post(ctx: RequestContext):
    fields = _blog_fields(request.form)
    try:
        post = ctx.store.posts.create(fields, author=ctx.author)
    except (ValidationError, StoreUnavailable) as exc:
        app.logger.exception("could not create post")
        flash(_store_message(exc), "error")
        return _render_post_form(
            heading="New post",
            action=url_for("create_post"),
            cancel=url_for("list_posts"),
            blog=fields,
        )
    app.logger.info("post %s created by %s", post.id, ctx.identity.username)
    return redirect(url_for("list_posts"))


@app.route("/blogs/<post_id>")
@handler()
def show_post(ctx: RequestContext, post_id: str):
    try:
        post = ctx.store.posts.find_by_id(post_id)
    except NotFound:
        return redirect(url_for("list_posts"))
    except StoreUnavailable:
        app.logger.exception("could not load post %s", post_id)
        return redirect(url_for("list_posts"))
    return render_template_string(TEMPL_SHOW, post=post, title=post.title or None)


@app.route("/blogs/<post_id>/edit")
@handler(owner_required())
def edit_post(ctx: RequestContext, post_id: str):
    try:
        post = ctx.store.posts.find_by_id(post_id)
    except (NotFound, StoreUnavailable):
        return redirect(url_for("list_posts"))
    return _render_post_form(
        heading="Edit post",
        action=override_url("update_post", "PUT", post_id=post.id),
        cancel=url_for("show_post", post_id=post.id),
        blog={"title": post.title, "body": post.body},
    )


@app.route("/blogs/<post_id>", methods=["PUT", "PATCH"])
@handler(owner_required())
def update_post(ctx: RequestContext, post_id: str):
    fields = _blog_fields(request.form, partial=True)
    try:
        ctx.store.posts.update(post_id, fields)
    except NotFound:
        return redirect(url_for("list_posts"))
    except (ValidationError, StoreUnavailable) as exc:
        app.logger.exception("could not update post %s", post_id)
        flash(_store_message(exc), "error")
        return _render_post_form(
            heading="Edit post",
            action=override_url("update_post", "PUT", post_id=post_id),
            cancel=url_for("show_post", post_id=post_id),
            blog=fields,
        )
    return redirect(url_for("show_post", post_id=post_id))


@app.route("/blogs/<post_id>", methods=["DELETE"])
@handler(owner_required(missing="list_posts"))
def delete_post(ctx: RequestContext, post_id: str):
    try:
        ctx.store.posts.remove(post_id)
    except NotFound:
        pass  # already gone – same page either way
    except StoreUnavailable:
        app.logger.exception("could not delete post %s", post_id)
    return redirect(url_for("list_posts"))


def _store_message(exc: StoreError) -> str:
    if isinstance(exc, StoreUnavailable):
        return "The blog is unavailable right now. Please try again."
    return f"Could not save: {exc}"


###############################################################################
# Authentication
###############################################################################
def _render_auth_form(kind: str, username: str = ""):
    if kind == "register":
        return render_template_string(
            TEMPL_AUTH_FORM,
            heading="Sign up",
            action=url_for("register"),
            autocomplete="new-password",
            username=username,
        )
    return render_template_string(
        TEMPL_AUTH_FORM,
        heading="Login",
        action=url_for("login"),
        autocomplete="current-password",
        username=username,
    )


@app.route("/register")
def register_form():
    return _render_auth_form("register")


@app.route("/register", methods=["POST"])
@handler()
def register(ctx: RequestContext):
    username = request.form.get("username", "")
    password = request.form.get("password", "")
    try:
        user = ctx.store.users.register(username, password)
    except (DuplicateUsername, WeakCredential) as exc:
        flash(str(exc), "error")
        return _render_auth_form("register", username=username)
    except StoreUnavailable:
        app.logger.exception("registration failed")
        flash("Registration is unavailable right now. Please try again.", "error")
        return _render_auth_form("register", username=username)

    log_in(user)
    app.logger.info("registered %s", user.username)
    flash(f"Welcome, {user.username}", "success")
    return redirect(url_for("list_posts"))


@app.route("/login")
def login_form():
    return _render_auth_form("login")


@app.route("/login", methods=["POST"])
@rate_limit()
@handler()
def login(ctx: RequestContext):
    username = request.form.get("username", "")
    password = request.form.get("password", "")
    try:
        user = ctx.store.users.authenticate(username, password)
    except AuthFailure as exc:
        app.logger.warning("failed login for %r", username)
        flash(str(exc), "error")
        return redirect(url_for("login_form"))
    except StoreUnavailable:
        app.logger.exception("login failed")
        flash("Login is unavailable right now. Please try again.", "error")
        return redirect(url_for("login_form"))

    log_in(user)
    app.logger.info("%s logged in", user.username)
    return redirect(url_for("list_posts"))


@app.route("/logout", methods=["POST"])
def logout():
    session.clear()
    flash("Logged you out!", "success")
    return redirect(url_for("list_posts"))


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(403)
def forbidden(exc):
    return render_template_string(TEMPL_403), 403


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.
    In debug mode Flask bypasses this handler and shows the traceback.
    """
    return render_template_string(TEMPL_500), 500


###############################################################################
# CLI – schema + accounts
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database tables (safe to run twice)."""
    try:
        init_db()
    except StoreUnavailable as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho(f"\n✅  Database ready at {app.config['DATABASE']}", fg="green")


@app.cli.command("create-user")
@click.option("--username", prompt=True, help="Name to sign in with")
@click.password_option()
def cli_create_user(username: str, password: str):
    """Register an account without going through the web form."""
    try:
        user = get_store().users.register(username, password)
    except (AuthError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho(f"\n✅  User {user.username} created.", fg="green")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            init_db()
    else:
        app.run(host=HOST, port=PORT, debug=True)
