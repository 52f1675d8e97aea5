#!/usr/bin/env python3
"""
A single-file multi-user blog API.
"""

import math
import os
import re
import secrets
import sqlite3
import sys
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlencode

import boto3
import click
import requests
from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, g, redirect, request, session, url_for
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from inkpost.client import (
    AppState,
    ApiClient,
    HttpTransport,
    WsgiTransport,
    authenticate,
    load_page,
    navigate,
    render_page,
    render_shell,
)

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "blog.sqlite3"
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def config_value(key: str, default: str = "") -> str:
    """Process env first, then the .env file next to the package."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


SECRET_KEY = config_value("SECRET_KEY")
if not SECRET_KEY:
    SECRET_KEY = (
        SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
    )
    SECRET_FILE.write_text(SECRET_KEY)

TOKEN_MAX_AGE = 7 * 24 * 60 * 60  # seconds
serializer = URLSafeTimedSerializer(SECRET_KEY, salt="auth-token")

TITLE_MAX = 200
CONTENT_MIN = 10
SUMMARY_MAX = 300
BIO_MAX = 500
TAG_MAX = 30
WORDS_PER_MINUTE = 200
PAGE_DEFAULT = 10
PAGE_MAX = 100
SQLITE_INT_MAX = 2**63 - 1   # larger ints overflow sqlite3 parameter binding
SORT_SQL = {
    "newest": "b.created_at DESC, b.id DESC",
    "oldest": "b.created_at ASC, b.id ASC",
    "popular": "b.views DESC, b.created_at DESC",
}
IMAGE_URL_RE = re.compile(r"^https?://.+\.(jpg|jpeg|png|webp|gif)$", re.I)

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_FOLDER = "blog-app"
UPLOAD_MAX_BYTES = 5 * 1024 * 1024  # per file
UPLOAD_MAX_FILES = 5
IMAGE_MIMES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_SCOPES = "openid email profile"

_SCHEMA_READY: set[str] = set()

try:
    __version__ = version("inkpost")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=config_value("DATABASE_PATH") or str(DB_FILE),
    MAX_CONTENT_LENGTH=10 * 1024 * 1024,
    PRODUCTION=config_value("APP_ENV", "production") == "production",
    DETAIL_REQUIRES_AUTH=config_value("DETAIL_REQUIRES_AUTH", "0") == "1",
    FRONTEND_URL=config_value("FRONTEND_URL").rstrip("/"),
    API_BASE=config_value("API_BASE"),
    GOOGLE_CLIENT_ID=config_value("GOOGLE_CLIENT_ID"),
    GOOGLE_CLIENT_SECRET=config_value("GOOGLE_CLIENT_SECRET"),
    GOOGLE_CALLBACK_URL=config_value("GOOGLE_CALLBACK_URL"),
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # the OAuth state lives in the session
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=app.config["PRODUCTION"],
)
app.logger.setLevel(config_value("LOG_LEVEL", "INFO").upper())
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


###############################################################################
# Errors
###############################################################################
class ApiError(Exception):
    """Base for every failure a route maps onto an HTTP status."""

    status = 500
    message = "Something went wrong!"

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(ApiError):
    status = 400
    message = "Invalid request"


class Unauthenticated(ApiError):
    status = 401
    message = "Authentication required"


class Forbidden(ApiError):
    status = 403
    message = "Forbidden"


class NotFound(ApiError):
    status = 404
    message = "Not found"


class PayloadTooLarge(ApiError):
    status = 413
    message = f"File too large ({UPLOAD_MAX_BYTES // (1024 * 1024)} MiB max)."


class UnsupportedMedia(ApiError):
    status = 415
    message = "Only image uploads are allowed."


class Internal(ApiError):
    status = 500


def fails_with(message: str):
    """Log storage failures inside *view* and answer 500 with *message*."""

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except sqlite3.Error as exc:
                app.logger.exception(message)
                raise Internal(message) from exc

        return wrapped

    return decorator


@app.errorhandler(ApiError)
def api_error(exc: ApiError):
    return {"error": exc.message}, exc.status


@app.errorhandler(404)
def not_found(exc):
    return {"error": "Not found"}, 404


@app.errorhandler(413)
def too_large(exc):
    return {"error": PayloadTooLarge.message}, 413


@app.errorhandler(HTTPException)
def http_error(exc: HTTPException):
    return {"error": exc.description or exc.name}, exc.code


@app.errorhandler(500)
def internal_error(exc):
    """
    Flask has already logged the traceback by the time we get here.
    The message is only exposed outside production.
    """
    original = getattr(exc, "original_exception", None)
    if app.config["PRODUCTION"] or original is None:
        return {"error": "Something went wrong!"}, 500
    return {"error": str(original)}, 500


###############################################################################
# Database helpers
###############################################################################
SCHEMA = """
    ------------------------------------------------------------
    -- 1.  Accounts
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS user (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        google_id   TEXT UNIQUE,
        email       TEXT UNIQUE NOT NULL,
        username    TEXT NOT NULL,
        avatar      TEXT NOT NULL DEFAULT '',
        bio         TEXT NOT NULL DEFAULT '',
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    ------------------------------------------------------------
    -- 2.  Blogs
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS blog (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        title       TEXT NOT NULL,
        content     TEXT NOT NULL,
        summary     TEXT,
        author_id   INTEGER NOT NULL,
        is_public   INTEGER NOT NULL DEFAULT 0,
        read_time   INTEGER NOT NULL DEFAULT 1,
        views       INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        FOREIGN KEY (author_id) REFERENCES user(id)
    );

    CREATE INDEX IF NOT EXISTS idx_blog_author ON blog(author_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_blog_public ON blog(is_public, created_at);

    CREATE TABLE IF NOT EXISTS blog_image (
        blog_id INTEGER NOT NULL,
        ord     INTEGER NOT NULL,
        url     TEXT NOT NULL,
        PRIMARY KEY (blog_id, ord),
        FOREIGN KEY (blog_id) REFERENCES blog(id) ON DELETE CASCADE
    );

    ------------------------------------------------------------
    -- 3.  Tags
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS tag (
        id   INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL
    );

    CREATE TABLE IF NOT EXISTS blog_tag (
        blog_id INTEGER NOT NULL,
        tag_id  INTEGER NOT NULL,
        PRIMARY KEY (blog_id, tag_id),
        FOREIGN KEY (blog_id) REFERENCES blog(id) ON DELETE CASCADE,
        FOREIGN KEY (tag_id)  REFERENCES tag(id)  ON DELETE CASCADE
    );

    ------------------------------------------------------------
    -- 4.  Likes (one row per user, never a multiset)
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS blog_like (
        blog_id    INTEGER NOT NULL,
        user_id    INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (blog_id, user_id),
        FOREIGN KEY (blog_id) REFERENCES blog(id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
    );

    ------------------------------------------------------------
    -- 5.  Full-text search
    ------------------------------------------------------------
    CREATE VIRTUAL TABLE IF NOT EXISTS blog_fts USING fts5(
        title, content,
        content='blog',
        content_rowid='id',
        tokenize = 'trigram'
    );

    CREATE TRIGGER IF NOT EXISTS blog_ai AFTER INSERT ON blog BEGIN
        INSERT INTO blog_fts(rowid, title, content)
            VALUES (new.id, new.title, new.content);
    END;

    CREATE TRIGGER IF NOT EXISTS blog_au AFTER UPDATE OF title, content ON blog BEGIN
        INSERT INTO blog_fts(blog_fts, rowid, title, content)
            VALUES ('delete', old.id, old.title, old.content);
        INSERT INTO blog_fts(rowid, title, content)
            VALUES (new.id, new.title, new.content);
    END;

    CREATE TRIGGER IF NOT EXISTS blog_ad AFTER DELETE ON blog BEGIN
        INSERT INTO blog_fts(blog_fts, rowid, title, content)
            VALUES ('delete', old.id, old.title, old.content);
    END;
"""


def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
        ensure_schema(g.db)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


def ensure_schema(db) -> None:
    """Create the tables on first use of a fresh database file."""
    path = app.config["DATABASE"]
    if path in _SCHEMA_READY:
        return
    row = db.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name='blog'"
    ).fetchone()
    if row is None:
        db.executescript(SCHEMA)
        db.commit()
    _SCHEMA_READY.add(path)


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# Records
###############################################################################
BLOG_SELECT = """
    SELECT b.*,
           u.username AS author_username,
           u.avatar   AS author_avatar,
           u.bio      AS author_bio
      FROM blog b
      JOIN user u ON u.id = b.author_id
"""


def fetch_user(user_id: int, *, db):
    if not 0 < user_id <= SQLITE_INT_MAX:
        return None
    return db.execute("SELECT * FROM user WHERE id=?", (user_id,)).fetchone()


def fetch_blog(blog_id: int, *, db):
    if not 0 < blog_id <= SQLITE_INT_MAX:
        return None
    return db.execute(f"{BLOG_SELECT} WHERE b.id=?", (blog_id,)).fetchone()


def blog_images(blog_id: int, *, db) -> list[str]:
    return [
        r["url"]
        for r in db.execute(
            "SELECT url FROM blog_image WHERE blog_id=? ORDER BY ord", (blog_id,)
        )
    ]


def blog_tags(blog_id: int, *, db) -> list[str]:
    return [
        r["name"]
        for r in db.execute(
            "SELECT t.name FROM tag t JOIN blog_tag bt ON t.id=bt.tag_id "
            "WHERE bt.blog_id=? ORDER BY t.name",
            (blog_id,),
        )
    ]


def blog_likes(blog_id: int, *, db) -> list[int]:
    return [
        r["user_id"]
        for r in db.execute(
            "SELECT user_id FROM blog_like WHERE blog_id=? ORDER BY created_at, user_id",
            (blog_id,),
        )
    ]


def user_json(row) -> dict:
    """Public view of a user; the Google id never leaves the server."""
    return {
        "id": row["id"],
        "email": row["email"],
        "username": row["username"],
        "avatar": row["avatar"],
        "bio": row["bio"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def blog_json(row, *, db) -> dict:
    likes = blog_likes(row["id"], db=db)
    return {
        "id": row["id"],
        "title": row["title"],
        "content": row["content"],
        "summary": row["summary"],
        "images": blog_images(row["id"], db=db),
        "tags": blog_tags(row["id"], db=db),
        "isPublic": bool(row["is_public"]),
        "readTime": row["read_time"],
        "views": row["views"],
        "likes": likes,
        "likeCount": len(likes),
        "author": {
            "id": row["author_id"],
            "username": row["author_username"],
            "avatar": row["author_avatar"],
            "bio": row["author_bio"],
        },
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def create_user(*, email: str, username: str, db, google_id=None, avatar: str = ""):
    now = now_iso()
    cur = db.execute(
        "INSERT INTO user (google_id, email, username, avatar, created_at, updated_at) "
        "VALUES (?,?,?,?,?,?)",
        (google_id, email.strip().lower(), username.strip(), avatar or "", now, now),
    )
    db.commit()
    app.logger.info("Created user %s <%s>", cur.lastrowid, email)
    return fetch_user(cur.lastrowid, db=db)


def upsert_oauth_user(profile: dict, *, db):
    """
    Resolve a Google profile to a user row:
    known Google id → that user; same email → link it; otherwise create.
    """
    google_id = str(profile["id"])
    email = (profile.get("email") or "").strip().lower()
    if not email:
        raise ValidationError("Google account has no email address")

    user = db.execute("SELECT * FROM user WHERE google_id=?", (google_id,)).fetchone()
    if user:
        return user

    user = db.execute("SELECT * FROM user WHERE email=?", (email,)).fetchone()
    if user:
        db.execute(
            "UPDATE user SET google_id=?, "
            "avatar=CASE WHEN avatar='' THEN ? ELSE avatar END, updated_at=? "
            "WHERE id=?",
            (google_id, profile.get("avatar") or "", now_iso(), user["id"]),
        )
        db.commit()
        app.logger.info("Linked Google account to user %s", user["id"])
        return fetch_user(user["id"], db=db)

    return create_user(
        email=email,
        username=profile.get("name") or email.split("@", 1)[0],
        avatar=profile.get("avatar") or "",
        google_id=google_id,
        db=db,
    )


###############################################################################
# Content helpers
###############################################################################
def read_time(content: str) -> int:
    """Minutes at 200 words per minute, never below one."""
    return max(1, math.ceil(len(content.split()) / WORDS_PER_MINUTE))


def clean_tags(raw) -> list[str]:
    """Lower-case, trim, drop empties and duplicates (first one wins)."""
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        raise ValidationError("Tags must be a list of strings")
    out: dict[str, None] = {}
    for t in raw:
        if not isinstance(t, str):
            raise ValidationError("Tags must be a list of strings")
        t = t.strip().lower()
        if not t:
            continue
        if len(t) > TAG_MAX:
            raise ValidationError(f"Tags must be at most {TAG_MAX} characters")
        out[t] = None
    return list(out)


def clean_images(raw) -> list[str]:
    if not isinstance(raw, list):
        raise ValidationError("Images must be a list of URLs")
    for url in raw:
        if not isinstance(url, str) or not IMAGE_URL_RE.match(url):
            raise ValidationError("Invalid image URL format")
    return list(raw)


def _text(data: dict, key: str):
    val = data.get(key)
    if val is not None and not isinstance(val, str):
        raise ValidationError(f"{key.capitalize()} must be a string")
    return val


def clean_blog_fields(data, *, creating: bool) -> dict:
    """
    Validate a create/update body and return column-ready values.

    On update a missing or empty title/content keeps the stored value,
    ``summary`` may be cleared with null, and any list replaces the old one.
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")

    title, content = _text(data, "title"), _text(data, "content")
    if creating and (not title or not content):
        raise ValidationError("Title and content are required")

    out: dict = {}
    if title:
        title = title.strip()
        if not title:
            raise ValidationError("Title is required")
        if len(title) > TITLE_MAX:
            raise ValidationError(f"Title must be at most {TITLE_MAX} characters")
        out["title"] = title

    if content:
        if len(content) < CONTENT_MIN:
            raise ValidationError(f"Content must be at least {CONTENT_MIN} characters")
        out["content"] = content
        out["read_time"] = read_time(content)

    if "summary" in data:
        summary = (_text(data, "summary") or "").strip() or None
        if summary and len(summary) > SUMMARY_MAX:
            raise ValidationError(f"Summary must be at most {SUMMARY_MAX} characters")
        out["summary"] = summary

    if data.get("images") is not None:
        out["images"] = clean_images(data["images"])
    if data.get("tags") is not None:
        out["tags"] = clean_tags(data["tags"])
    if data.get("isPublic") is not None:
        if not isinstance(data["isPublic"], bool):
            raise ValidationError("isPublic must be a boolean")
        out["is_public"] = int(data["isPublic"])
    return out


def sync_tags(blog_id: int, tags: set[str], *, db):
    """
    Bring `blog_tag` + `tag` tables in sync with *tags* for *blog_id*.
    The caller commits.
    """
    cur = set(blog_tags(blog_id, db=db))
    add = tags - cur
    remove = cur - tags

    for t in add:
        db.execute("INSERT OR IGNORE INTO tag(name) VALUES(?)", (t,))
        tag_id = db.execute("SELECT id FROM tag WHERE name=?", (t,)).fetchone()["id"]
        db.execute("INSERT OR IGNORE INTO blog_tag VALUES (?,?)", (blog_id, tag_id))

    for t in remove:
        tag_id = db.execute("SELECT id FROM tag WHERE name=?", (t,)).fetchone()["id"]
        db.execute(
            "DELETE FROM blog_tag WHERE blog_id=? AND tag_id=?", (blog_id, tag_id)
        )

    prune_tags(db=db)


def prune_tags(*, db):
    db.execute(
        "DELETE FROM tag WHERE id NOT IN (SELECT DISTINCT tag_id FROM blog_tag)"
    )


def sync_images(blog_id: int, images: list[str], *, db):
    db.execute("DELETE FROM blog_image WHERE blog_id=?", (blog_id,))
    db.executemany(
        "INSERT INTO blog_image (blog_id, ord, url) VALUES (?,?,?)",
        [(blog_id, i, url) for i, url in enumerate(images)],
    )


def record_view(blog_id: int, *, db):
    db.execute("UPDATE blog SET views = views + 1 WHERE id=?", (blog_id,))
    db.commit()


def toggle_like(blog_id: int, user_id: int, *, db) -> tuple[int, bool]:
    """
    Flip *user_id*'s membership in the blog's likes.
    Returns (like_count, liked_now).
    """
    cur = db.execute(
        "DELETE FROM blog_like WHERE blog_id=? AND user_id=?", (blog_id, user_id)
    )
    liked = cur.rowcount == 0
    if liked:
        db.execute(
            "INSERT OR IGNORE INTO blog_like (blog_id, user_id, created_at) "
            "VALUES (?,?,?)",
            (blog_id, user_id, now_iso()),
        )
    db.commit()
    count = db.execute(
        "SELECT COUNT(*) FROM blog_like WHERE blog_id=?", (blog_id,)
    ).fetchone()[0]
    return count, liked


# Pagination helpers
def _int_arg(name: str, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def page_args() -> tuple[int, int]:
    # keeps (page - 1) * per_page inside SQLite's integer range
    page = min(max(1, _int_arg("page", 1)), SQLITE_INT_MAX // PAGE_MAX)
    per_page = _int_arg("limit", PAGE_DEFAULT)
    if per_page < 1:
        per_page = PAGE_DEFAULT
    return page, min(per_page, PAGE_MAX)


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, total


def listing_response(rows, total: int, *, page: int, per_page: int, db) -> dict:
    return {
        "blogs": [blog_json(r, db=db) for r in rows],
        "pagination": {
            "current": page,
            "pages": math.ceil(total / per_page),
            "total": total,
            "limit": per_page,
        },
    }


###############################################################################
# Search
###############################################################################
_SAFE_TOKEN_RE = re.compile(r"^\w+$", re.UNICODE)


def _auto_quote(q: str) -> str:
    """Wrap every token that contains punctuation in double quotes."""
    out = []
    for tok in q.split():
        # leave trailing * outside the quotes so prefix-search still works
        star = tok.endswith("*")
        core = tok[:-1] if star else tok
        if not _SAFE_TOKEN_RE.fullmatch(core):
            core = core.replace('"', '""')
            tok = f'"{core}"' + ("*" if star else "")
        out.append(tok)
    return " ".join(out)


def search_clause(q: str) -> tuple[str, tuple]:
    """
    1-2 characters → LIKE over title + content;
    ≥3 characters → FTS5 trigram index.
    """
    q = q.strip()
    if len(q) < 3:
        like = f"%{q}%"
        return "(b.title LIKE ? OR b.content LIKE ?)", (like, like)
    return (
        "b.id IN (SELECT rowid FROM blog_fts WHERE blog_fts MATCH ?)",
        (_auto_quote(q).lower(),),
    )


def query_blogs(
    where: str,
    params: tuple,
    *,
    db,
    page: int,
    per_page: int,
    search: str = "",
    tag: str = "",
    author: int | None = None,
    sort: str = "newest",
):
    clauses, args = [where], list(params)
    if search.strip():
        sql, extra = search_clause(search)
        clauses.append(sql)
        args.extend(extra)
    if tag.strip():
        clauses.append(
            "b.id IN (SELECT bt.blog_id FROM blog_tag bt "
            "JOIN tag t ON t.id = bt.tag_id WHERE t.name = ?)"
        )
        args.append(tag.strip().lower())
    if author is not None:
        clauses.append("b.author_id = ?")
        args.append(author)

    order_sql = SORT_SQL.get(sort, SORT_SQL["newest"])
    base_sql = f"{BLOG_SELECT} WHERE {' AND '.join(clauses)} ORDER BY {order_sql}"
    try:
        return paginate(base_sql, tuple(args), page=page, per_page=per_page, db=db)
    except sqlite3.OperationalError as exc:
        if "fts5" in str(exc).lower():
            raise ValidationError("Invalid search query") from exc
        raise


###############################################################################
# Authentication
###############################################################################
def issue_token(user_id: int) -> str:
    """Signed bearer credential whose subject is *user_id*."""
    return serializer.dumps({"sub": user_id})


def resolve_token(token: str, *, db):
    """
    Verify signature + age (7 days) and load the subject.
    Any failure yields None; the caller decides whether that is fatal.
    """
    try:
        payload = serializer.loads(token, max_age=TOKEN_MAX_AGE)
    except SignatureExpired:
        app.logger.debug("Rejected expired token")
        return None
    except BadSignature:
        app.logger.debug("Rejected forged token")
        return None

    sub = payload.get("sub") if isinstance(payload, dict) else None
    if not isinstance(sub, int):
        return None
    return fetch_user(sub, db=db)


def bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer ") :].strip() or None


def require_user():
    """Strict mode: no resolvable credential → 401."""
    token = bearer_token()
    if token is None:
        raise Unauthenticated("Authentication required")
    user = resolve_token(token, db=get_db())
    if user is None:
        raise Unauthenticated("Invalid authentication token")
    g.user = user
    return user


def optional_user():
    """Optional mode: a missing or bad credential just means anonymous."""
    token = bearer_token()
    g.user = resolve_token(token, db=get_db()) if token else None
    return g.user


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()
            # forget clients whose whole window has expired
            idle = [k for k, v in hits.items() if not v or now - v[-1] > window]
            for key in idle:
                if key != ip:
                    del hits[key]

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return (
                    {"error": "Too many requests - try again later."},
                    429,
                    {"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


###############################################################################
# Visibility / ownership policy
###############################################################################
def is_owner(blog, user) -> bool:
    return user is not None and user["id"] == blog["author_id"]


def can_read(blog, user) -> bool:
    return bool(blog["is_public"]) or is_owner(blog, user)


def can_write(blog, user) -> bool:
    return is_owner(blog, user)


def ensure_readable(blog, user) -> None:
    if can_read(blog, user):
        return
    if user is None:
        raise Unauthenticated("Authentication required")
    raise Forbidden("This blog is private")


def ensure_writable(blog, user, action: str = "edit") -> None:
    if not can_write(blog, user):
        raise Forbidden(f"Not authorized to {action} this blog")


def listing_filter(user, *, mine: bool) -> tuple[str, tuple]:
    """
    Query-level form of `can_read` for list endpoints: the public feed
    only ever shows public blogs, the owner's own listing shows everything
    they wrote.
    """
    if mine:
        if user is None:
            raise Unauthenticated("Authentication required")
        return "b.author_id = ?", (user["id"],)
    return "b.is_public = 1", ()


###############################################################################
# Blogs
###############################################################################
@app.route("/api/blogs", methods=["GET"])
@fails_with("Failed to fetch blogs")
def list_blogs():
    user = optional_user()
    page, per_page = page_args()

    author = request.args.get("author", "").strip()
    if author:
        try:
            author = int(author)
        except ValueError:
            raise ValidationError("Invalid author id") from None
        if abs(author) > SQLITE_INT_MAX:
            raise ValidationError("Invalid author id")
    else:
        author = None

    where, params = listing_filter(user, mine=False)
    db = get_db()
    rows, total = query_blogs(
        where,
        params,
        db=db,
        page=page,
        per_page=per_page,
        search=request.args.get("search", ""),
        tag=request.args.get("tag", ""),
        author=author,
        sort=request.args.get("sort", "newest"),
    )
    return listing_response(rows, total, page=page, per_page=per_page, db=db)


@app.route("/api/blogs/my", methods=["GET"])
@fails_with("Failed to fetch your blogs")
def my_blogs():
    user = require_user()
    page, per_page = page_args()
    where, params = listing_filter(user, mine=True)
    db = get_db()
    rows, total = query_blogs(
        where,
        params,
        db=db,
        page=page,
        per_page=per_page,
        search=request.args.get("search", ""),
        tag=request.args.get("tag", ""),
        sort=request.args.get("sort", "newest"),
    )
    return listing_response(rows, total, page=page, per_page=per_page, db=db)


@app.route("/api/blogs/<int:blog_id>", methods=["GET"])
@fails_with("Failed to fetch blog")
def get_blog(blog_id):
    user = optional_user()
    db = get_db()
    blog = fetch_blog(blog_id, db=db)
    if blog is None:
        raise NotFound("Blog not found")
    if user is None and app.config["DETAIL_REQUIRES_AUTH"]:
        raise Unauthenticated("Unauthorized")

    ensure_readable(blog, user)
    if not is_owner(blog, user):
        record_view(blog_id, db=db)
        blog = fetch_blog(blog_id, db=db)
    return blog_json(blog, db=db)


@app.route("/api/blogs", methods=["POST"])
@fails_with("Failed to create blog")
def create_blog():
    user = require_user()
    fields = clean_blog_fields(request.get_json(silent=True) or {}, creating=True)

    db = get_db()
    now = now_iso()
    cur = db.execute(
        """
        INSERT INTO blog (title, content, summary, author_id, is_public,
                          read_time, created_at, updated_at)
             VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            fields["title"],
            fields["content"],
            fields.get("summary"),
            user["id"],
            fields.get("is_public", 0),
            fields["read_time"],
            now,
            now,
        ),
    )
    blog_id = cur.lastrowid
    sync_images(blog_id, fields.get("images", []), db=db)
    sync_tags(blog_id, set(fields.get("tags", [])), db=db)
    db.commit()
    return blog_json(fetch_blog(blog_id, db=db), db=db), 201


@app.route("/api/blogs/<int:blog_id>", methods=["PUT"])
@fails_with("Failed to update blog")
def update_blog(blog_id):
    user = require_user()
    db = get_db()
    blog = fetch_blog(blog_id, db=db)
    if blog is None:
        raise NotFound("Blog not found")
    ensure_writable(blog, user, "edit")

    fields = clean_blog_fields(request.get_json(silent=True) or {}, creating=False)
    columns = {
        k: fields[k]
        for k in ("title", "content", "summary", "is_public", "read_time")
        if k in fields
    }
    columns["updated_at"] = now_iso()
    assignments = ", ".join(f"{col}=?" for col in columns)
    db.execute(
        f"UPDATE blog SET {assignments} WHERE id=?", (*columns.values(), blog_id)
    )
    if "images" in fields:
        sync_images(blog_id, fields["images"], db=db)
    if "tags" in fields:
        sync_tags(blog_id, set(fields["tags"]), db=db)
    db.commit()
    return blog_json(fetch_blog(blog_id, db=db), db=db)


@app.route("/api/blogs/<int:blog_id>", methods=["DELETE"])
@fails_with("Failed to delete blog")
def delete_blog(blog_id):
    user = require_user()
    db = get_db()
    blog = fetch_blog(blog_id, db=db)
    if blog is None:
        raise NotFound("Blog not found")
    ensure_writable(blog, user, "delete")

    # uploaded images stay in the bucket
    db.execute("DELETE FROM blog WHERE id=?", (blog_id,))
    prune_tags(db=db)
    db.commit()
    app.logger.info("User %s deleted blog %s", user["id"], blog_id)
    return {"message": "Blog deleted successfully"}


@app.route("/api/blogs/<int:blog_id>/like", methods=["POST"])
@fails_with("Failed to toggle like")
def like_blog(blog_id):
    user = require_user()
    db = get_db()
    blog = fetch_blog(blog_id, db=db)
    if blog is None:
        raise NotFound("Blog not found")
    ensure_readable(blog, user)

    count, liked = toggle_like(blog_id, user["id"], db=db)
    return {"likes": count, "liked": liked}


###############################################################################
# Uploads
###############################################################################
def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        base = base.rstrip("/")
        return f"{base}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def upload_prefix(user_id: int) -> str:
    return f"{UPLOAD_FOLDER}/{user_id}/"


def check_image(f) -> str:
    """Return the mime type of an acceptable upload or raise."""
    mime = (f.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        raise UnsupportedMedia()
    f.stream.seek(0, os.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    if size > UPLOAD_MAX_BYTES:
        raise PayloadTooLarge()
    return mime


def put_image(client, f, mime: str, *, cfg: dict[str, str], user_id: int) -> dict:
    key = (
        f"{upload_prefix(user_id)}{utc_now().strftime('%Y/%m/%d')}/"
        f"{uuid.uuid4().hex}{IMAGE_MIMES[mime]}"
    )
    f.stream.seek(0)
    client.upload_fileobj(
        f.stream,
        cfg["R2_BUCKET"],
        key,
        ExtraArgs={"ContentType": mime},
    )
    return {"url": r2_object_url(cfg, key), "publicId": key}


@app.route("/api/upload/image", methods=["POST"])
@rate_limit(max_requests=30, window=60)
def upload_image():
    user = require_user()

    cfg = r2_config()
    if not r2_is_configured(cfg):
        return {"error": "Image uploads are not configured."}, 400

    f = request.files.get("image")
    if f is None or not f.filename:
        raise ValidationError("No image file provided")
    mime = check_image(f)

    try:
        return put_image(_r2_client(cfg), f, mime, cfg=cfg, user_id=user["id"])
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        raise Internal("Failed to upload image") from None


@app.route("/api/upload/images", methods=["POST"])
@rate_limit(max_requests=30, window=60)
def upload_images():
    user = require_user()

    cfg = r2_config()
    if not r2_is_configured(cfg):
        return {"error": "Image uploads are not configured."}, 400

    files = [f for f in request.files.getlist("images") if f.filename]
    if not files:
        raise ValidationError("No image files provided")
    if len(files) > UPLOAD_MAX_FILES:
        raise ValidationError(f"Too many files ({UPLOAD_MAX_FILES} max).")
    mimes = [check_image(f) for f in files]

    try:
        client = _r2_client(cfg)
        images = [
            put_image(client, f, mime, cfg=cfg, user_id=user["id"])
            for f, mime in zip(files, mimes)
        ]
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        raise Internal("Failed to upload images") from None
    return {"images": images}


@app.route("/api/upload/image/<path:public_id>", methods=["DELETE"])
def delete_image(public_id):
    user = require_user()

    cfg = r2_config()
    if not r2_is_configured(cfg):
        return {"error": "Image uploads are not configured."}, 400
    if not public_id.startswith(upload_prefix(user["id"])) or ".." in public_id:
        raise Forbidden("Not authorized to delete this image")

    try:
        _r2_client(cfg).delete_object(Bucket=cfg["R2_BUCKET"], Key=public_id)
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 delete failed")
        raise Internal("Failed to delete image") from None
    return {"message": "Image deleted successfully"}


###############################################################################
# OAuth (Google)
###############################################################################
def frontend_url(path: str = "/") -> str:
    return f"{app.config['FRONTEND_URL']}{path}"


def oauth_callback_url() -> str:
    return app.config["GOOGLE_CALLBACK_URL"] or url_for(
        "google_callback", _external=True
    )


def fetch_google_profile(code: str) -> dict:
    """Exchange the authorization *code* and read the user's profile."""
    resp = requests.post(
        GOOGLE_TOKEN_URL,
        data={
            "code": code,
            "client_id": app.config["GOOGLE_CLIENT_ID"],
            "client_secret": app.config["GOOGLE_CLIENT_SECRET"],
            "redirect_uri": oauth_callback_url(),
            "grant_type": "authorization_code",
        },
        headers={"Accept": "application/json"},
        timeout=10,
    )
    resp.raise_for_status()
    access_token = resp.json().get("access_token")
    if not access_token:
        raise ValueError("token response carried no access_token")

    info = requests.get(
        GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=10,
    )
    info.raise_for_status()
    data = info.json()
    return {
        "id": data["sub"],
        "email": data.get("email"),
        "name": data.get("name"),
        "avatar": data.get("picture"),
    }


@app.route("/auth/google")
def google_login():
    if not app.config["GOOGLE_CLIENT_ID"]:
        return {"error": "Google sign-in is not configured."}, 400

    state = secrets.token_urlsafe(32)
    session["oauth_state"] = state
    params = {
        "client_id": app.config["GOOGLE_CLIENT_ID"],
        "redirect_uri": oauth_callback_url(),
        "response_type": "code",
        "scope": GOOGLE_SCOPES,
        "state": state,
        "prompt": "select_account",
    }
    return redirect(f"{GOOGLE_AUTH_URL}?{urlencode(params)}")


@app.route("/auth/google/callback")
@rate_limit(max_requests=10, window=60)
def google_callback():
    failed = redirect(frontend_url("/?error=auth_failed"))

    expected = session.pop("oauth_state", None)
    code = request.args.get("code", "")
    sent = request.args.get("state", "")
    if request.args.get("error") or not code or not expected:
        app.logger.warning(
            "OAuth callback rejected: %s", request.args.get("error") or "missing code"
        )
        return failed
    if not secrets.compare_digest(expected, sent):
        app.logger.warning("OAuth callback rejected: state mismatch")
        return failed

    try:
        profile = fetch_google_profile(code)
    except (requests.RequestException, KeyError, ValueError) as exc:
        app.logger.warning("Google token exchange failed: %s", exc)
        return failed

    try:
        user = upsert_oauth_user(profile, db=get_db())
    except (ApiError, sqlite3.Error):
        app.logger.exception("Could not resolve Google profile to a user")
        return redirect(frontend_url("/"))

    token = issue_token(user["id"])
    return redirect(frontend_url(f"/auth/callback?{urlencode({'token': token})}"))


@app.route("/auth/me")
@fails_with("Failed to load user")
def auth_me():
    return {"user": user_json(require_user())}


@app.route("/auth/logout", methods=["POST"])
def logout():
    # bearer tokens are stateless; the client drops its copy
    session.clear()
    return {"message": "Logged out successfully"}


###############################################################################
# Users
###############################################################################
@app.route("/api/users/<int:user_id>")
@fails_with("Failed to fetch user")
def get_user(user_id):
    row = fetch_user(user_id, db=get_db())
    if row is None:
        raise NotFound("User not found")
    return user_json(row)


@app.route("/api/users/profile", methods=["PUT"])
@fails_with("Failed to update profile")
def update_profile():
    user = require_user()
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")

    changes = {}
    name = _text(data, "name")
    if name and name.strip():
        changes["username"] = name.strip()
    bio = _text(data, "bio")
    if bio is not None:
        if len(bio) > BIO_MAX:
            raise ValidationError(f"Bio must be at most {BIO_MAX} characters")
        changes["bio"] = bio
    avatar = _text(data, "avatar")
    if avatar:
        changes["avatar"] = avatar.strip()

    db = get_db()
    if changes:
        changes["updated_at"] = now_iso()
        assignments = ", ".join(f"{col}=?" for col in changes)
        db.execute(
            f"UPDATE user SET {assignments} WHERE id=?", (*changes.values(), user["id"])
        )
        db.commit()
    return user_json(fetch_user(user["id"], db=db))


###############################################################################
# Client shell + rendered pages
###############################################################################
def api_client(token: str | None) -> ApiClient:
    base = app.config["API_BASE"]
    transport = HttpTransport(base) if base else WsgiTransport(app)
    return ApiClient(transport, token=token)


@app.route("/")
@app.route("/auth/callback")
def shell():
    return render_shell()


@app.route("/ui/<page>")
def ui_page(page):
    token = bearer_token()
    api = api_client(token)
    state = authenticate(AppState(token=token), api)
    state = navigate(
        state,
        page,
        blog_id=_int_arg("id", None),
        list_page=_int_arg("p", 1),
        search=request.args.get("search", ""),
        tag=request.args.get("tag", ""),
        sort=request.args.get("sort", "newest"),
    )
    state, context = load_page(state, api)
    return render_page(state, context)


@app.route("/health")
def health():
    return {"status": "OK", "message": "Blog App API is running"}


@app.route("/<path:path>")
def fallback(path):
    """Unknown API paths are JSON 404s; anything else boots the client."""
    if path.startswith(("api/", "auth/", "ui/")):
        raise NotFound("Not found")
    return render_shell()


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    origin = app.config["FRONTEND_URL"]
    if origin:
        resp.headers.update(
            {
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type, Authorization",
                "Vary": "Origin",
            }
        )
    return resp


###############################################################################
# CLI – schema + development tokens
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op if it is already there)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")


@app.cli.command("create-user")
@click.option("--email", prompt=True, help="Email of the account")
@click.option("--username", prompt=True, help="Display name")
def cli_create_user(email: str, username: str):
    """Create a local account (or reuse one) and print a bearer token."""
    db = get_db()
    user = db.execute(
        "SELECT * FROM user WHERE email=?", (email.strip().lower(),)
    ).fetchone()
    if user is None:
        user = create_user(email=email, username=username, db=db)
        click.secho(f"\n✅  User {user['id']} created.", fg="green")
    else:
        click.secho(f"\nUser {user['id']} already exists.", fg="yellow")
    click.echo(f"\nBearer token (valid 7 days):\n\n{issue_token(user['id'])}\n")


@app.cli.command("token")
@click.option("--email", prompt=True, help="Email of an existing account")
def cli_token(email: str):
    """Print a fresh 7-day bearer token for an existing account."""
    user = get_db().execute(
        "SELECT * FROM user WHERE email=?", (email.strip().lower(),)
    ).fetchone()
    if user is None:
        raise click.ClickException(f"No user with email {email!r}.")
    click.secho("\n🔑  Fresh bearer token generated.\n", fg="yellow")
    click.echo(f"{issue_token(user['id'])}\n")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        try:
            init_db()
        except sqlite3.Error as exc:
            app.logger.critical("Cannot open database %s: %s", app.config["DATABASE"], exc)
            sys.exit(1)
    app.run(debug=not app.config["PRODUCTION"])
