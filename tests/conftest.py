"""
tests/conftest.py
"""
from __future__ import annotations

import itertools
import os
import tempfile
from typing import Any, Callable, Generator
from urllib.parse import urlsplit

import pytest
import requests
from flask import Flask, jsonify, request
from flask.testing import FlaskClient
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

# keep the secret key + token file out of the real home directory
os.environ.setdefault("BLOGHUB_HOME", tempfile.mkdtemp(prefix="bloghub-test-"))

from bloghub.app import (  # noqa: E402
    ApiClient,
    BlogApi,
    BlogHub,
    TokenStore,
    app,
    build_hub,
)

FAKE_URL = "http://blog.test"
CSRF = "test-token"


# ───────────────────────── fake remote API ────────────────────────────
def _blog(id_, title, content, *, author, published=True) -> dict[str, Any]:
    return {
        "id": id_,
        "title": title,
        "content": content,
        "author_id": author,
        "author_name": "alice" if author == 1 else "bob",
        "created_at": f"2024-03-{id_ % 28 + 1:02d}T09:00:00Z",
        "published": published,
    }


class FakeBlogBackend:
    """
    In-memory stand-in for the remote blog server.

    • alice (id 1) is an admin and wrote every seeded article
    • bob   (id 2) is a member and wrote the one seeded comment
    • ``calls`` records (METHOD, path) for every request that reached it
    • ``failures[(METHOD, path)] = (status, body)`` forces an error reply
    """

    def __init__(self):
        self.users = {
            "1": {"id": 1, "username": "alice", "role": "admin"},
            "2": {"id": 2, "username": "bob", "role": "member"},
        }
        self.passwords = {"alice": "wonderland", "bob": "builder"}
        self.tokens = {"tok-alice": "1", "tok-bob": "2"}
        self.blogs = [
            _blog(1, "Hello World", "First line.\nSecond line.", author=1),
            _blog(2, "Gardening Notes", "Tomatoes need sun.", author=1),
            _blog(3, "Half-finished thoughts", "tbd", author=1, published=False),
        ]
        self.comments = [
            {
                "id": 10,
                "blog_id": 1,
                "user_id": 2,
                "username": "bob",
                "content": "Nice post!",
                "created_at": "2024-03-02T10:00:00Z",
            }
        ]
        self.ids = itertools.count(100)
        self.calls: list[tuple[str, str]] = []
        self.headers: list[dict[str, str]] = []
        self.failures: dict[tuple[str, str], tuple[int, Any]] = {}
        self.app = self._build_app()

    # ── helpers ────────────────────────────────────────────────────
    def _me(self):
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            return None
        uid = self.tokens.get(auth[len("Bearer "):])
        return self.users.get(uid) if uid else None

    def _find(self, blog_id: str):
        return next((b for b in self.blogs if str(b["id"]) == blog_id), None)

    def count(self, method: str, path: str) -> int:
        return self.calls.count((method, path))

    # ── routes ─────────────────────────────────────────────────────
    def _build_app(self) -> Flask:  # noqa: C901
        api = Flask("fake_blog_api")

        def unauthorized():
            return jsonify({"message": "Unauthorized"}), 401

        @api.before_request
        def _record():
            self.calls.append((request.method, request.path))
            self.headers.append(dict(request.headers))
            fail = self.failures.get((request.method, request.path))
            if fail:
                status, body = fail
                if body is None:
                    return "", status
                if isinstance(body, str):
                    return body, status
                return jsonify(body), status
            return None

        @api.post("/api/auth/login")
        def login():
            data = request.get_json(silent=True) or {}
            name = data.get("username", "")
            if name not in self.passwords or self.passwords[name] != data.get("password"):
                return jsonify({"message": "Invalid credentials"}), 401
            user = next(u for u in self.users.values() if u["username"] == name)
            return jsonify({"token": f"tok-{name}", "user": user})

        @api.post("/api/auth/signup")
        def signup():
            data = request.get_json(silent=True) or {}
            name = data.get("username", "")
            if not name or name in self.passwords:
                return jsonify({"message": "Username already taken"}), 409
            uid = str(next(self.ids))
            self.users[uid] = {"id": int(uid), "username": name, "role": "member"}
            self.passwords[name] = data.get("password", "")
            self.tokens[f"tok-{name}"] = uid
            return jsonify({"token": f"tok-{name}", "user": self.users[uid]}), 201

        @api.get("/api/auth/me")
        def me():
            user = self._me()
            if user is None:
                return jsonify({"message": "Invalid token"}), 401
            return jsonify(user)

        @api.get("/api/blogs")
        def list_blogs():
            return jsonify([b for b in self.blogs if b["published"]])

        @api.get("/api/blogs/my")
        def my_blogs():
            user = self._me()
            if user is None:
                return unauthorized()
            return jsonify([b for b in self.blogs if b["author_id"] == user["id"]])

        @api.get("/api/blogs/<blog_id>")
        def get_blog(blog_id):
            blog = self._find(blog_id)
            if blog is None:
                return jsonify({"message": "Blog not found"}), 404
            return jsonify(blog)

        @api.post("/api/blogs")
        def create_blog():
            user = self._me()
            if user is None:
                return unauthorized()
            data = request.get_json(silent=True) or {}
            blog = _blog(
                next(self.ids),
                data.get("title", ""),
                data.get("content", ""),
                author=user["id"],
                published=bool(data.get("published")),
            )
            self.blogs.append(blog)
            return jsonify(blog), 201

        @api.put("/api/blogs/<blog_id>")
        def update_blog(blog_id):
            user, blog = self._me(), self._find(blog_id)
            if user is None:
                return unauthorized()
            if blog is None:
                return jsonify({"message": "Blog not found"}), 404
            if blog["author_id"] != user["id"]:
                return jsonify({"message": "Not your blog"}), 403
            data = request.get_json(silent=True) or {}
            blog.update({k: data[k] for k in ("title", "content", "published") if k in data})
            return jsonify(blog)

        @api.delete("/api/blogs/<blog_id>")
        def delete_blog(blog_id):
            user, blog = self._me(), self._find(blog_id)
            if user is None:
                return unauthorized()
            if blog is None or blog["author_id"] != user["id"]:
                return jsonify({"message": "Not your blog"}), 403
            self.blogs.remove(blog)
            return "", 204

        @api.get("/api/blogs/<blog_id>/comments")
        def list_comments(blog_id):
            return jsonify([c for c in self.comments if str(c["blog_id"]) == blog_id])

        @api.post("/api/blogs/<blog_id>/comments")
        def create_comment(blog_id):
            user = self._me()
            if user is None:
                return unauthorized()
            data = request.get_json(silent=True) or {}
            if not str(data.get("content", "")).strip():
                return jsonify({"message": "Comment cannot be empty"}), 400
            comment = {
                "id": next(self.ids),
                "blog_id": int(blog_id),
                "user_id": user["id"],
                "username": user["username"],
                "content": data["content"],
                "created_at": "2024-03-05T12:00:00Z",
            }
            self.comments.append(comment)
            return jsonify(comment), 201

        @api.delete("/api/blogs/<blog_id>/comments/<comment_id>")
        def delete_comment(blog_id, comment_id):
            user, blog = self._me(), self._find(blog_id)
            if user is None:
                return unauthorized()
            if blog is None or blog["author_id"] != user["id"]:
                return jsonify({"message": "Only the author can moderate"}), 403
            self.comments = [c for c in self.comments if str(c["id"]) != comment_id]
            return "", 204

        return api


class FlaskAdapter(BaseAdapter):
    """requests transport that hands every request to a Flask test client."""

    def __init__(self, flask_app: Flask):
        super().__init__()
        self.client = flask_app.test_client()

    def send(self, request, **kwargs):
        parts = urlsplit(request.url)
        headers = {
            k: v for k, v in request.headers.items() if k.lower() != "content-length"
        }
        rv = self.client.open(
            parts.path,
            method=request.method,
            headers=headers,
            data=request.body,
            query_string=parts.query,
        )
        resp = requests.Response()
        resp.status_code = rv.status_code
        resp.reason = rv.status
        resp.headers = CaseInsensitiveDict(rv.headers)
        resp._content = rv.get_data()
        resp.encoding = "utf-8"
        resp.url = request.url
        resp.request = request
        return resp

    def close(self):
        pass


# ───────────────────────── fixtures ───────────────────────────────────
@pytest.fixture
def backend() -> FakeBlogBackend:
    return FakeBlogBackend()


@pytest.fixture
def http(backend: FakeBlogBackend) -> requests.Session:
    s = requests.Session()
    s.mount(FAKE_URL, FlaskAdapter(backend.app))
    return s


@pytest.fixture
def api(http: requests.Session) -> BlogApi:
    return BlogApi(ApiClient(FAKE_URL, http=http))


@pytest.fixture
def tokens(tmp_path) -> TokenStore:
    return TokenStore(tmp_path / ".env")


@pytest.fixture(autouse=True)
def _drop_hub() -> Generator[None, None, None]:
    """Never let one test's client state leak into the next."""
    yield
    app.extensions.pop("bloghub", None)


@pytest.fixture
def hub(api: BlogApi, tokens: TokenStore) -> BlogHub:
    """A signed-out client installed as the app's process-wide hub."""
    h = build_hub(api, tokens)
    app.extensions["bloghub"] = h
    return h


@pytest.fixture
def sign_in(api: BlogApi, tokens: TokenStore) -> Callable[[str], BlogHub]:
    """
    Persist ``tok-<username>`` and cold-start a hub from it, exactly as a
    restarted client would.
    """

    def _sign_in(username: str) -> BlogHub:
        tokens.save(f"tok-{username}")
        h = build_hub(api, tokens)
        app.extensions["bloghub"] = h
        return h

    return _sign_in


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    app.config.update(TESTING=True)
    with app.test_client() as c:
        yield c


@pytest.fixture
def csrf(client: FlaskClient) -> str:
    """Seed the browser session with a known CSRF token."""
    with client.session_transaction() as sess:
        sess["csrf"] = CSRF
    return CSRF
