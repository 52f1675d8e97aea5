"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from inkpost.blog import app, create_user, get_db, init_db, issue_token

_emails = itertools.count(1)


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        PRODUCTION=True,
        DETAIL_REQUIRES_AUTH=False,
        FRONTEND_URL="",
        API_BASE="",
        GOOGLE_CLIENT_ID="test-client-id",
        GOOGLE_CLIENT_SECRET="test-client-secret",
        GOOGLE_CALLBACK_URL="",
        # plain http test client still needs the session cookie back
        SESSION_COOKIE_SECURE=False,
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def make_user(client) -> Callable[..., tuple[dict, dict]]:
    """
    Factory: create a fresh account and return ``(user_row, auth_headers)``.
    Every call uses a new email so tests never collide in the shared DB.
    """

    def _make(username: str = "writer") -> tuple[dict, dict]:
        n = next(_emails)
        user = create_user(email=f"user{n}@example.com", username=username, db=get_db())
        return dict(user), {"Authorization": f"Bearer {issue_token(user['id'])}"}

    return _make


@pytest.fixture
def make_blog(client) -> Callable[..., dict]:
    """Factory: POST a blog as *headers* and return the JSON body."""

    def _make(headers: dict, **fields) -> dict:
        payload = {
            "title": "A title",
            "content": "Some content that is long enough.",
            "isPublic": True,
            **fields,
        }
        rv = client.post("/api/blogs", json=payload, headers=headers)
        assert rv.status_code == 201, rv.get_json()
        return rv.get_json()

    return _make


@pytest.fixture(autouse=True, scope="session")
def _monotonic_clock():
    """
    Patch inkpost.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from inkpost import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
