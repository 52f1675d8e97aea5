"""
Client for the blog API: page state machine, API access and HTML rendering.

The browser shell only swaps fragments produced here; every page change goes
through `navigate` → `load_page` → `render_page` with an explicit `AppState`.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from urllib.parse import urlsplit

import markdown
import requests
from flask import render_template_string
from markdown.extensions import Extension
from markdown.treeprocessors import Treeprocessor
from markupsafe import Markup
from werkzeug.test import Client as WsgiClient

PAGES = ("home", "my-blogs", "create", "edit", "blog-detail", "profile")
AUTH_PAGES = {"my-blogs", "create", "edit", "profile"}
SORTS = ("newest", "oldest", "popular")
UI_PAGE_SIZE = 9
EXCERPT_CHARS = 150

# page → where to go when its data cannot be loaded
FALLBACK = {"blog-detail": "home", "edit": "my-blogs"}
LOAD_ERRORS = {
    "home": "Failed to load blogs",
    "my-blogs": "Failed to load your blogs",
    "edit": "Failed to load blog for editing",
}
EMPTY_LISTING = {"blogs": [], "pagination": {"current": 1, "pages": 0, "total": 0}}


################################################################################
# State
################################################################################
@dataclass(frozen=True)
class Notification:
    message: str
    kind: str = "error"  # error | success | info


@dataclass(frozen=True)
class AppState:
    page: str = "home"
    token: str | None = None
    user: dict | None = None
    blog_id: int | None = None
    list_page: int = 1
    search: str = ""
    tag: str = ""
    sort: str = "newest"
    notifications: tuple[Notification, ...] = ()

    def notify(self, message: str, kind: str = "error") -> "AppState":
        return replace(
            self, notifications=self.notifications + (Notification(message, kind),)
        )


def navigate(
    state: AppState,
    page: str,
    *,
    blog_id: int | None = None,
    list_page: int | None = None,
    search: str | None = None,
    tag: str | None = None,
    sort: str | None = None,
) -> AppState:
    """
    Return the state after moving to *page*.

    Unknown pages leave the state untouched. Pages that need a signed-in
    user fall back to home, an edit without a blog id becomes a fresh
    editor, and a detail view without one goes home.
    """
    if page not in PAGES:
        return state
    if page in AUTH_PAGES and state.user is None:
        page = "home"
    if blog_id is None and page == "edit":
        page = "create"
    if blog_id is None and page == "blog-detail":
        page = "home"

    return replace(
        state,
        page=page,
        blog_id=blog_id if page in ("edit", "blog-detail") else None,
        list_page=max(1, list_page or 1),
        search=(search or "").strip(),
        tag=(tag or "").strip(),
        sort=sort if sort in SORTS else "newest",
    )


################################################################################
# API access
################################################################################
class ApiCallError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class HttpTransport:
    """Talks to a remote API over HTTP."""

    def __init__(self, base_url: str, session: requests.Session | None = None, timeout=10):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def request(self, method, path, *, headers=None, params=None, json=None):
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ApiCallError(0, f"Network error: {exc}") from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        return resp.status_code, data


class WsgiTransport:
    """Dispatches straight into a WSGI app in the same process."""

    def __init__(self, wsgi_app):
        self.client = WsgiClient(wsgi_app)

    def request(self, method, path, *, headers=None, params=None, json=None):
        resp = self.client.open(
            path, method=method, headers=headers, query_string=params, json=json
        )
        return resp.status_code, resp.get_json(silent=True) or {}


class ApiClient:
    def __init__(self, transport, token: str | None = None):
        self.transport = transport
        self.token = token

    def call(self, method: str, path: str, *, params=None, json=None) -> dict:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        status, data = self.transport.request(
            method, path, headers=headers, params=params, json=json
        )
        if status >= 400:
            msg = data.get("error") if isinstance(data, dict) else None
            raise ApiCallError(status, msg or f"Request failed ({status})")
        return data

    def me(self) -> dict:
        return self.call("GET", "/auth/me")["user"]

    def public_blogs(self, *, page=1, search="", tag="", sort="newest") -> dict:
        params = {"page": page, "limit": UI_PAGE_SIZE, "sort": sort}
        if search:
            params["search"] = search
        if tag:
            params["tag"] = tag
        return self.call("GET", "/api/blogs", params=params)

    def my_blogs(self, *, page=1, limit=UI_PAGE_SIZE) -> dict:
        return self.call("GET", "/api/blogs/my", params={"page": page, "limit": limit})

    def blog(self, blog_id: int) -> dict:
        return self.call("GET", f"/api/blogs/{blog_id}")

    def create_blog(self, payload: dict) -> dict:
        return self.call("POST", "/api/blogs", json=payload)

    def update_blog(self, blog_id: int, payload: dict) -> dict:
        return self.call("PUT", f"/api/blogs/{blog_id}", json=payload)

    def delete_blog(self, blog_id: int) -> dict:
        return self.call("DELETE", f"/api/blogs/{blog_id}")

    def toggle_like(self, blog_id: int) -> dict:
        return self.call("POST", f"/api/blogs/{blog_id}/like")

    def update_profile(self, payload: dict) -> dict:
        return self.call("PUT", "/api/users/profile", json=payload)


def authenticate(state: AppState, api: ApiClient) -> AppState:
    """Attach the current user; a rejected token is forgotten."""
    if not state.token:
        return replace(state, user=None)
    try:
        user = api.me()
    except ApiCallError as exc:
        if exc.status == 401:
            return replace(state, token=None, user=None)
        return replace(state, user=None).notify(exc.message)
    return replace(state, user=user)


################################################################################
# Page loaders
################################################################################
def _load_home(state, api):
    return api.public_blogs(
        page=state.list_page, search=state.search, tag=state.tag, sort=state.sort
    )


def _load_my_blogs(state, api):
    return api.my_blogs(page=state.list_page)


def _load_blog(state, api):
    return {"blog": api.blog(state.blog_id)}


def _load_edit(state, api):
    """
    Look the blog up in the user's own listing: someone else's blog is
    refused, and reading it here never counts as a view.
    """
    page = pages = 1
    while page <= pages:
        data = api.my_blogs(page=page, limit=100)
        for blog in data["blogs"]:
            if blog["id"] == state.blog_id:
                return {"blog": blog}
        pages = data["pagination"]["pages"]
        page += 1
    raise ApiCallError(403, "Not authorized to edit this blog")


LOADERS = {
    "home": _load_home,
    "my-blogs": _load_my_blogs,
    "create": lambda state, api: {"blog": None},
    "edit": _load_edit,
    "blog-detail": _load_blog,
    "profile": lambda state, api: {},
}


def load_page(state: AppState, api: ApiClient) -> tuple[AppState, dict]:
    """
    Fetch the data *state.page* needs. On failure a notification is queued
    and the state moves to the page's fallback (if it has one).
    """
    try:
        return state, LOADERS[state.page](state, api)
    except ApiCallError as exc:
        state = state.notify(LOAD_ERRORS.get(state.page) or exc.message)
        fallback = FALLBACK.get(state.page)
        if fallback is None:
            listing = state.page in ("home", "my-blogs")
            return state, (dict(EMPTY_LISTING) if listing else {})
        return load_page(navigate(state, fallback), api)


################################################################################
# Markdown
################################################################################
SAFE_SCHEMES = {"", "http", "https", "mailto"}


class LinkScrubber(Treeprocessor):
    """Drop href/src values with a scheme we do not serve (javascript:, data:…)."""

    def run(self, root):
        for el in root.iter():
            for attr in ("href", "src"):
                val = el.get(attr)
                if val is None:
                    continue
                if urlsplit(val.strip()).scheme.lower() not in SAFE_SCHEMES:
                    del el.attrib[attr]


class NoRawHtmlExtension(Extension):
    """Raw HTML in a post is shown as text, never passed through."""

    def extendMarkdown(self, md_inst):
        md_inst.preprocessors.deregister("html_block", strict=False)
        md_inst.inlinePatterns.deregister("html", strict=False)
        md_inst.treeprocessors.register(LinkScrubber(md_inst), "link_scrubber", 1)


MD_EXTENSIONS = [
    "tables",
    "sane_lists",
    "nl2br",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.superfences",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]


def render_markdown(text: str | None) -> Markup:
    md = markdown.Markdown(extensions=[*MD_EXTENSIONS, NoRawHtmlExtension()])
    return Markup(md.convert(text or ""))


################################################################################
# Rendering
################################################################################
def page_window(current: int, pages: int) -> list[int | None]:
    """First, last and current±1 page numbers; None marks a gap."""
    out: list[int | None] = []
    for n in range(1, pages + 1):
        if n in (1, pages) or abs(n - current) <= 1:
            out.append(n)
        elif out[-1] is not None:
            out.append(None)
    return out


def fmt_date(value: str | None) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(value).strftime("%b %d, %Y")
    except ValueError:
        return value


def excerpt(blog: dict) -> str:
    if blog.get("summary"):
        return blog["summary"]
    content = blog.get("content") or ""
    return content if len(content) <= EXCERPT_CHARS else content[:EXCERPT_CHARS] + "..."


def render_page(state: AppState, context: dict) -> str:
    pagination = context.get("pagination") or {}
    return render_template_string(
        fragment(PAGE_BODIES[state.page]),
        state=state,
        sorts=SORTS,
        window=page_window(pagination.get("current", 1), pagination.get("pages", 0)),
        md=render_markdown,
        fmt_date=fmt_date,
        excerpt=excerpt,
        **context,
    )


def render_shell() -> str:
    return render_template_string(TEMPL_SHELL, title="Inkpost")


def fragment(body: str) -> str:
    """Wrap a page body in the nav bar + toasts every page shares."""
    return TEMPL_FRAGMENT_OPEN + body + TEMPL_FRAGMENT_CLOSE


TEMPL_FRAGMENT_OPEN = """
<section class="page" data-page="{{ state.page }}"
         data-blog-id="{{ state.blog_id or '' }}"
         data-signed-in="{{ 1 if state.user else 0 }}">
<nav class="nav">
  <a href="#home">Inkpost</a>
  {% if state.user %}
    <a href="#my-blogs">My blogs</a>
    <a href="#create">Write</a>
    <a href="#profile">{{ state.user.username }}</a>
    <button type="button" data-action="logout">Log out</button>
  {% else %}
    <button type="button" data-action="login">Sign in with Google</button>
  {% endif %}
</nav>
{% for n in state.notifications %}
  <div class="toast toast-{{ n.kind }}" role="status">{{ n.message }}</div>
{% endfor %}
{% macro card(b) %}
<article class="card">
  {% if b.images %}<img src="{{ b.images[0] }}" alt="">{% endif %}
  <h2><a href="#blog-detail/{{ b.id }}">{{ b.title }}</a></h2>
  <p>{{ excerpt(b) }}</p>
  <p class="meta">
    {{ b.author.username }} · {{ fmt_date(b.createdAt) }} · {{ b.readTime }} min read
    · {{ b.views }} views · {{ b.likeCount }} likes
    {% if not b.isPublic %}<span class="pill">Draft</span>{% endif %}
  </p>
  {% if b.tags %}<p class="tags">{% for t in b.tags %}<span class="pill">{{ t }}</span>{% endfor %}</p>{% endif %}
</article>
{% endmacro %}
{% macro pager() %}
{% if window|length > 1 %}
<nav class="pager">
  {% for n in window %}
    {% if n is none %}<span>…</span>
    {% elif n == pagination.current %}<strong>{{ n }}</strong>
    {% else %}<button type="button" data-action="goto-page" data-list-page="{{ n }}">{{ n }}</button>
    {% endif %}
  {% endfor %}
</nav>
{% endif %}
{% endmacro %}
"""

TEMPL_FRAGMENT_CLOSE = """
</section>
"""

TEMPL_HOME = """
<form class="filters" data-action="search">
  <input name="search" value="{{ state.search }}" placeholder="Search blogs">
  <input name="tag" value="{{ state.tag }}" placeholder="Tag">
  <select name="sort">
    {% for s in sorts %}<option value="{{ s }}" {% if s == state.sort %}selected{% endif %}>{{ s }}</option>{% endfor %}
  </select>
  <button>Search</button>
</form>
{% for b in blogs %}{{ card(b) }}{% else %}<p class="empty">No blogs found</p>{% endfor %}
{{ pager() }}
"""

TEMPL_MY_BLOGS = """
<h1>My blogs</h1>
{% for b in blogs %}
  {{ card(b) }}
  <p class="owner-actions">
    <a href="#edit/{{ b.id }}">Edit</a>
    <button type="button" data-action="delete" data-blog-id="{{ b.id }}">Delete</button>
  </p>
{% else %}
  <p class="empty">You have not written anything yet. <a href="#create">Write your first blog</a></p>
{% endfor %}
{{ pager() }}
"""

TEMPL_EDITOR = """
<h1>{{ 'Edit blog' if blog else 'New blog' }}</h1>
<form class="editor" data-action="save" data-blog-id="{{ blog.id if blog else '' }}">
  <label>Title <input name="title" maxlength="200" value="{{ blog.title if blog else '' }}" required></label>
  <label>Summary <input name="summary" maxlength="300" value="{{ blog.summary or '' if blog else '' }}"></label>
  <label>Content <textarea name="content" rows="16" required>{{ blog.content if blog else '' }}</textarea></label>
  <label>Tags <input name="tags" value="{{ blog.tags|join(', ') if blog else '' }}" placeholder="comma, separated"></label>
  <div class="images">
    {% for url in (blog.images if blog else []) %}
    <figure class="image">
      <img src="{{ url }}" alt="">
      <input type="hidden" name="images" value="{{ url }}">
      <button type="button" data-action="remove-image">Remove</button>
    </figure>
    {% endfor %}
  </div>
  <label>Add images <input type="file" accept="image/*" multiple data-action="upload"></label>
  <button data-public="false">Save draft</button>
  <button data-public="true">Publish</button>
</form>
"""

TEMPL_DETAIL = """
<article class="blog">
  <h1>{{ blog.title }}</h1>
  <p class="meta">
    {% if blog.author.avatar %}<img class="avatar" src="{{ blog.author.avatar }}" alt="">{% endif %}
    {{ blog.author.username }} · {{ fmt_date(blog.createdAt) }} · {{ blog.readTime }} min read
    · {{ blog.views }} views
  </p>
  {% if blog.tags %}<p class="tags">{% for t in blog.tags %}<span class="pill">{{ t }}</span>{% endfor %}</p>{% endif %}
  {% for url in blog.images %}<img src="{{ url }}" alt="">{% endfor %}
  <div class="content">{{ md(blog.content) }}</div>
  <p class="actions">
    {% set liked = state.user and state.user.id in blog.likes %}
    {% if state.user %}
      <button type="button" data-action="like" data-blog-id="{{ blog.id }}"
              aria-pressed="{{ 'true' if liked else 'false' }}">{{ '♥' if liked else '♡' }} {{ blog.likeCount }}</button>
    {% else %}
      <span>♡ {{ blog.likeCount }}</span>
    {% endif %}
    {% if state.user and state.user.id == blog.author.id %}
      <a href="#edit/{{ blog.id }}">Edit</a>
      <button type="button" data-action="delete" data-blog-id="{{ blog.id }}">Delete</button>
    {% endif %}
  </p>
</article>
"""

TEMPL_PROFILE = """
<h1>Profile</h1>
{% if state.user.avatar %}<img class="avatar" src="{{ state.user.avatar }}" alt="">{% endif %}
<p>{{ state.user.email }}</p>
<form class="profile" data-action="save-profile">
  <label>Name <input name="name" value="{{ state.user.username }}"></label>
  <label>Bio <textarea name="bio" maxlength="500" rows="4">{{ state.user.bio }}</textarea></label>
  <label>Avatar URL <input name="avatar" value="{{ state.user.avatar }}"></label>
  <button>Save</button>
</form>
"""

PAGE_BODIES = {
    "home": TEMPL_HOME,
    "my-blogs": TEMPL_MY_BLOGS,
    "create": TEMPL_EDITOR,
    "edit": TEMPL_EDITOR,
    "blog-detail": TEMPL_DETAIL,
    "profile": TEMPL_PROFILE,
}

TEMPL_SHELL = """
<!doctype html>
<html lang="en">
<title>{{ title }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:46em;margin:auto;padding:13px;line-height:1.6;color:#c9c9c9;background:#222}
a{color:#fff}img{max-width:100%;height:auto}
.nav{display:flex;gap:1.25rem;align-items:center;margin-bottom:1.5rem}
.card{border-bottom:1px solid #444;padding:1rem 0}.meta{color:#999;font-size:.85em}
.pill{display:inline-block;padding:.1em .6em;margin-right:.4em;background:#444;color:#fff;border-radius:1em;font-size:.75em}
.pager{display:flex;gap:.5rem;margin:1.5rem 0}.avatar{width:2rem;height:2rem;border-radius:50%;vertical-align:middle}
.toast{position:fixed;right:1rem;bottom:1rem;padding:.6rem 1rem;border-radius:4px;background:#444;color:#fff;z-index:1000}
.toast-error{background:#7a1f1f}.toast-success{background:#1f5a2a}
input,textarea,select{display:block;width:100%;margin-bottom:10px;padding:6px 10px;color:#c9c9c9;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box}
.filters{display:flex;gap:.5rem}.filters input,.filters select{margin:0}
button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer}
</style>
<main id="view"><p>Loading…</p></main>
<script>
(() => {
  const view = document.getElementById('view');
  const TOKEN = 'authToken';
  let list = {p: 1, search: '', tag: '', sort: 'newest'};

  const toast = (msg, kind) => {
    const el = document.createElement('div');
    el.className = 'toast toast-' + (kind || 'info');
    el.textContent = msg;
    document.body.appendChild(el);
    setTimeout(() => el.remove(), 3000);
  };

  const q = new URLSearchParams(location.search);
  if (q.get('token')) localStorage.setItem(TOKEN, q.get('token'));
  if (q.get('error')) toast('Sign-in failed, please try again', 'error');
  if (location.pathname !== '/' || location.search) history.replaceState(null, '', '/' + location.hash);

  const auth = () => {
    const t = localStorage.getItem(TOKEN);
    return t ? {Authorization: 'Bearer ' + t} : {};
  };

  const api = async (method, path, body, isForm) => {
    const headers = auth();
    if (body && !isForm) headers['Content-Type'] = 'application/json';
    const r = await fetch(path, {method, headers, body: isForm ? body : (body ? JSON.stringify(body) : undefined)});
    const data = await r.json().catch(() => ({}));
    if (!r.ok) throw new Error(data.error || 'Request failed');
    return data;
  };

  const show = async () => {
    const [page, id] = (location.hash.slice(1) || 'home').split('/');
    const params = new URLSearchParams(Object.assign({}, list, {id: id || ''}));
    const r = await fetch('/ui/' + encodeURIComponent(page) + '?' + params, {headers: auth()});
    view.innerHTML = await r.text();
    const root = view.querySelector('[data-page]');
    if (!root) return;
    if (root.dataset.signedIn === '0') localStorage.removeItem(TOKEN);
    const want = root.dataset.page + (root.dataset.blogId ? '/' + root.dataset.blogId : '');
    if (want !== (location.hash.slice(1) || 'home')) history.replaceState(null, '', '#' + want);
    view.querySelectorAll('.toast').forEach((el) => setTimeout(() => el.remove(), 3000));
  };

  const go = (hash) => {
    list = {p: 1, search: '', tag: '', sort: 'newest'};
    if (location.hash === hash) show(); else location.hash = hash;
  };

  view.addEventListener('click', async (ev) => {
    const el = ev.target.closest('[data-action]');
    if (!el || el.tagName === 'FORM' || el.tagName === 'INPUT') return;
    const id = el.dataset.blogId;
    try {
      switch (el.dataset.action) {
        case 'login':
          location.href = '/auth/google';
          break;
        case 'logout':
          await api('POST', '/auth/logout');
          localStorage.removeItem(TOKEN);
          toast('Logged out', 'success');
          go('#home');
          break;
        case 'like':
          const res = await api('POST', '/api/blogs/' + id + '/like');
          el.setAttribute('aria-pressed', res.liked ? 'true' : 'false');
          el.textContent = (res.liked ? '♥ ' : '♡ ') + res.likes;
          break;
        case 'delete':
          if (!confirm('Delete this blog?')) return;
          await api('DELETE', '/api/blogs/' + id);
          toast('Blog deleted', 'success');
          go('#my-blogs');
          break;
        case 'goto-page':
          list.p = Number(el.dataset.listPage);
          show();
          break;
        case 'remove-image':
          el.closest('.image').remove();
          break;
      }
    } catch (e) {
      toast(e.message, 'error');
    }
  });

  view.addEventListener('submit', async (ev) => {
    ev.preventDefault();
    const form = ev.target;
    const fd = new FormData(form);
    try {
      if (form.dataset.action === 'search') {
        list = {p: 1, search: fd.get('search') || '', tag: fd.get('tag') || '', sort: fd.get('sort') || 'newest'};
        show();
      } else if (form.dataset.action === 'save') {
        const id = form.dataset.blogId;
        const body = {
          title: fd.get('title'), summary: fd.get('summary'), content: fd.get('content'),
          tags: fd.get('tags'), images: fd.getAll('images'),
          isPublic: !!ev.submitter && ev.submitter.dataset.public === 'true',
        };
        await api(id ? 'PUT' : 'POST', id ? '/api/blogs/' + id : '/api/blogs', body);
        toast(id ? 'Blog updated' : 'Blog created', 'success');
        go('#my-blogs');
      } else if (form.dataset.action === 'save-profile') {
        await api('PUT', '/api/users/profile', {name: fd.get('name'), bio: fd.get('bio'), avatar: fd.get('avatar')});
        toast('Profile updated', 'success');
        show();
      }
    } catch (e) {
      toast(e.message, 'error');
    }
  });

  view.addEventListener('change', async (ev) => {
    if (ev.target.dataset.action !== 'upload') return;
    const fd = new FormData();
    for (const f of ev.target.files) fd.append('images', f);
    try {
      const data = await api('POST', '/api/upload/images', fd, true);
      const box = view.querySelector('.images');
      for (const img of data.images) {
        const fig = document.createElement('figure');
        fig.className = 'image';
        fig.innerHTML = '<img alt=""><input type="hidden" name="images"><button type="button" data-action="remove-image">Remove</button>';
        fig.querySelector('img').src = img.url;
        fig.querySelector('input').value = img.url;
        box.appendChild(fig);
      }
      toast('Images uploaded', 'success');
    } catch (e) {
      toast(e.message, 'error');
    }
    ev.target.value = '';
  });

  window.addEventListener('hashchange', show);
  show();
})();
</script>
</html>
"""
