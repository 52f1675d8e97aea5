"""
tests/test_client.py
"""
from __future__ import annotations

import uuid

import pytest
import requests

from inkpost.blog import api_client, app
from inkpost.client import (
    ApiCallError,
    ApiClient,
    AppState,
    HttpTransport,
    WsgiTransport,
    authenticate,
    load_page,
    navigate,
    page_window,
    render_markdown,
    render_page,
)


# ───────────────────────── helpers ────────────────────────────────────
def _api(token: str | None = None) -> ApiClient:
    return ApiClient(WsgiTransport(app), token=token)


def _token(headers: dict) -> str:
    return headers["Authorization"].split()[1]


class _Resp:
    def __init__(self, status: int, payload=None):
        self.status_code = status
        self.payload = payload

    def json(self):
        if self.payload is None:
            raise ValueError("not json")
        return self.payload


class _FakeSession:
    def __init__(self, status: int, payload=None):
        self.resp = _Resp(status, payload)
        self.calls: list[tuple] = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.resp


class _DownTransport:
    def request(self, method, path, **kwargs):
        return 500, {"error": "Failed to fetch blogs"}


# ───────────────────────── navigation ─────────────────────────────────
def test_unknown_page_leaves_state_alone():
    state = AppState(page="profile", user={"id": 1})
    assert navigate(state, "settings") is state


@pytest.mark.parametrize("page", ["my-blogs", "create", "edit", "profile"])
def test_signed_in_pages_fall_back_home(page):
    assert navigate(AppState(), page, blog_id=3).page == "home"


def test_edit_without_id_opens_empty_editor():
    state = navigate(AppState(user={"id": 1}), "edit")
    assert state.page == "create"
    assert state.blog_id is None


def test_detail_without_id_goes_home():
    assert navigate(AppState(), "blog-detail").page == "home"


def test_navigation_resets_listing_params():
    state = AppState(list_page=4, search="x", tag="t", sort="oldest")
    state = navigate(state, "blog-detail", blog_id=7)
    assert (state.page, state.blog_id) == ("blog-detail", 7)
    assert (state.list_page, state.search, state.tag, state.sort) == (1, "", "", "newest")


def test_navigation_keeps_notifications():
    state = AppState().notify("hello", "info")
    assert navigate(state, "home").notifications == state.notifications


def test_page_window():
    assert page_window(5, 10) == [1, None, 4, 5, 6, None, 10]
    assert page_window(1, 3) == [1, 2, 3]
    assert page_window(1, 0) == []


# ───────────────────────── loading ────────────────────────────────────
def test_authenticate_attaches_user(client, make_user):
    user, headers = make_user("rita")
    state = authenticate(AppState(token=_token(headers)), _api(_token(headers)))
    assert state.user["id"] == user["id"]


def test_authenticate_forgets_rejected_token(client):
    state = authenticate(AppState(token="garbage"), _api("garbage"))
    assert state.token is None
    assert state.user is None


def test_home_loads_public_blogs(client, make_user, make_blog):
    _, headers = make_user()
    word = "w" + uuid.uuid4().hex[:10]
    blog = make_blog(headers, title=f"Visible {word}")

    state, ctx = load_page(navigate(AppState(), "home", search=word), _api())
    assert [b["id"] for b in ctx["blogs"]] == [blog["id"]]

    html = render_page(state, ctx)
    assert 'data-page="home"' in html
    assert f'href="#blog-detail/{blog["id"]}"' in html


def test_missing_blog_falls_back_home(client):
    state, ctx = load_page(navigate(AppState(), "blog-detail", blog_id=999999), _api())
    assert state.page == "home"
    assert state.notifications[0].message == "Blog not found"
    assert "blogs" in ctx


def test_failed_edit_load_goes_to_my_blogs(client, make_user, make_blog):
    _, owner = make_user()
    _, headers = make_user()
    draft = make_blog(owner, isPublic=False)
    api = _api(_token(headers))

    state = authenticate(AppState(token=_token(headers)), api)
    state, ctx = load_page(navigate(state, "edit", blog_id=draft["id"]), api)
    assert state.page == "my-blogs"
    assert state.notifications[0].message == "Failed to load blog for editing"
    assert ctx["blogs"] == []


def test_editing_someone_elses_public_blog_goes_to_my_blogs(client, make_user, make_blog):
    _, owner = make_user()
    _, headers = make_user()
    public = make_blog(owner, isPublic=True)
    mine = make_blog(headers)
    api = _api(_token(headers))

    state = authenticate(AppState(token=_token(headers)), api)
    state, ctx = load_page(navigate(state, "edit", blog_id=public["id"]), api)
    assert state.page == "my-blogs"
    assert state.notifications[0].message == "Failed to load blog for editing"
    assert [b["id"] for b in ctx["blogs"]] == [mine["id"]]
    # the refused edit did not count as a read
    assert client.get(f"/api/blogs/{public['id']}", headers=owner).get_json()["views"] == 0


def test_edit_loads_own_blog_without_a_view(client, make_user, make_blog):
    _, headers = make_user()
    blog = make_blog(headers, isPublic=False)
    api = _api(_token(headers))

    state = authenticate(AppState(token=_token(headers)), api)
    state, ctx = load_page(navigate(state, "edit", blog_id=blog["id"]), api)
    assert state.page == "edit"
    assert ctx["blog"]["id"] == blog["id"]
    assert ctx["blog"]["views"] == 0


def test_listing_failure_renders_empty_page(client):
    state, ctx = load_page(AppState(), ApiClient(_DownTransport()))
    assert state.page == "home"
    assert ctx["blogs"] == []
    assert state.notifications[0].message == "Failed to load blogs"
    assert "Failed to load blogs" in render_page(state, ctx)


# ───────────────────────── /ui fragments ──────────────────────────────
def test_ui_detail_for_owner(client, make_user, make_blog):
    _, headers = make_user()
    blog = make_blog(headers, content="Hello **bold** <script>alert(1)</script>")

    rv = client.get(f"/ui/blog-detail?id={blog['id']}", headers=headers)
    assert rv.status_code == 200
    html = rv.get_data(as_text=True)
    assert "<strong>bold</strong>" in html
    assert "<script>" not in html
    assert 'data-action="delete"' in html


def test_ui_detail_for_visitor(client, make_user, make_blog):
    _, owner = make_user()
    _, visitor = make_user()
    blog = make_blog(owner)

    html = client.get(f"/ui/blog-detail?id={blog['id']}", headers=visitor).get_data(as_text=True)
    assert 'data-action="like"' in html
    assert 'data-action="delete"' not in html


@pytest.mark.parametrize("page", ["my-blogs", "profile", "create"])
def test_ui_signed_in_pages_need_a_user(client, page):
    html = client.get(f"/ui/{page}").get_data(as_text=True)
    assert 'data-page="home"' in html
    assert 'data-signed-in="0"' in html


def test_ui_profile(client, make_user):
    _, headers = make_user("profiled")
    html = client.get("/ui/profile", headers=headers).get_data(as_text=True)
    assert 'data-page="profile"' in html
    assert 'value="profiled"' in html


def test_ui_edit_prefills_form(client, make_user, make_blog):
    _, headers = make_user()
    blog = make_blog(headers, tags=["one", "two"])
    html = client.get(f"/ui/edit?id={blog['id']}", headers=headers).get_data(as_text=True)
    assert 'data-page="edit"' in html
    assert 'value="one, two"' in html


def test_shell_keeps_token_handling(client):
    html = client.get("/auth/callback?token=abc").get_data(as_text=True)
    assert "localStorage.setItem(TOKEN" in html


def test_shell_like_updates_button_in_place(client, make_user, make_blog):
    html = client.get("/").get_data(as_text=True)
    like_case = html.split("case 'like':", 1)[1].split("break;", 1)[0]
    assert "res.liked" in like_case and "res.likes" in like_case
    assert "show()" not in like_case

    # liking a blog leaves its view count alone
    _, owner = make_user()
    _, fan = make_user()
    blog = make_blog(owner)
    client.post(f"/api/blogs/{blog['id']}/like", headers=fan)
    detail = client.get(f"/api/blogs/{blog['id']}", headers=owner).get_json()
    assert detail["views"] == 0
    assert detail["likeCount"] == 1


# ───────────────────────── markdown ───────────────────────────────────
def test_markdown_escapes_raw_html():
    html = str(render_markdown("<b>hi</b>"))
    assert "<b>" not in html
    assert "&lt;b&gt;" in html


def test_markdown_scrubs_script_links():
    assert "javascript:" not in str(render_markdown("[x](javascript:alert(1))"))
    assert 'href="https://e.example"' in str(render_markdown("[x](https://e.example)"))


# ───────────────────────── transports ─────────────────────────────────
def test_http_transport_request():
    session = _FakeSession(200, {"user": {"id": 3}})
    api = ApiClient(HttpTransport("https://api.example/", session=session), token="tok")
    assert api.me() == {"id": 3}

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "https://api.example/auth/me")
    assert kwargs["headers"] == {"Authorization": "Bearer tok"}


def test_http_transport_maps_error_body():
    session = _FakeSession(403, {"error": "This blog is private"})
    api = ApiClient(HttpTransport("https://api.example", session=session))
    with pytest.raises(ApiCallError) as exc:
        api.blog(1)
    assert exc.value.status == 403
    assert exc.value.message == "This blog is private"


def test_http_transport_non_json_error():
    api = ApiClient(HttpTransport("https://api.example", session=_FakeSession(502)))
    with pytest.raises(ApiCallError, match="Request failed"):
        api.blog(1)


def test_http_transport_network_error():
    class _Refusing:
        def request(self, *args, **kwargs):
            raise requests.ConnectionError("refused")

    api = ApiClient(HttpTransport("https://api.example", session=_Refusing()))
    with pytest.raises(ApiCallError) as exc:
        api.me()
    assert exc.value.status == 0


def test_api_client_transport_choice(monkeypatch):
    assert isinstance(api_client(None).transport, WsgiTransport)
    monkeypatch.setitem(app.config, "API_BASE", "https://api.example")
    assert isinstance(api_client("t").transport, HttpTransport)
