#!/usr/bin/env python3
"""
A single-file reader + admin console for a remote blog API.
"""

import logging
import os
import secrets
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import monotonic
from typing import Callable, Union
from urllib.parse import quote, urlencode

import click
import requests
from flask import (
    Flask,
    abort,
    flash,
    has_request_context,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from flask.cli import FlaskGroup

################################################################################
# Imports & constants
################################################################################

HOME = Path(os.environ.get("BLOGHUB_HOME") or Path.home() / ".bloghub")
HOME.mkdir(parents=True, exist_ok=True)
ENV_FILE = HOME / ".env"
SECRET_FILE = HOME / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

TOKEN_KEY = "BLOGHUB_TOKEN"
DEFAULT_API_URL = "http://localhost:4000"
DEFAULT_SITE_URL = "http://localhost:5000"
COPIED_RESET_SECONDS = 2
CLIPBOARD_COMMANDS = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
    ("clip",),
)
ROLES = ("member", "admin")
NO_BODY_METHODS = {"GET", "DELETE", "HEAD"}
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

NO_ARTICLES_MSG = "No articles have been published yet."
NO_MATCHES_MSG = "No articles match “{term}”."
POST_COMMENT_FAILED = "Failed to post comment. Please try again."
DELETE_COMMENT_FAILED = "Failed to delete comment."
DELETE_COMMENT_PROMPT = "Delete this comment?"
SAVE_FAILED = "Save failed"
DELETE_FAILED = "Delete failed"
DELETE_ARTICLE_PROMPT = "Permanently remove this record?"

try:
    __version__ = version("bloghub")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=False,  # served on localhost over plain http
)


# -------------------------------------------------------------------------
# .env helpers
# -------------------------------------------------------------------------
def _read_env_file(path: Path = ENV_FILE) -> dict[str, str]:
    env = {}
    if not path.exists():
        return env
    for ln in path.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def _write_env_file(env: dict[str, str], path: Path = ENV_FILE) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if env:
        lines = [f"{k}={v}" for k, v in sorted(env.items()) if v]
        path.write_text("\n".join(lines) + "\n")
    elif path.exists():
        path.write_text("")
    try:
        path.chmod(0o600)
    except OSError:
        pass


def env_value(key: str, default: str | None = None) -> str | None:
    """Process env first, then ``$BLOGHUB_HOME/.env``."""
    val = os.environ.get(key) or _read_env_file().get(key) or ""
    return val.strip() or default


def api_base_url() -> str:
    return env_value("BLOGHUB_API_URL", DEFAULT_API_URL).rstrip("/")


def site_url() -> str:
    return env_value("BLOGHUB_SITE_URL", DEFAULT_SITE_URL).rstrip("/")


def api_timeout() -> float | None:
    raw = env_value("BLOGHUB_API_TIMEOUT")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        app.logger.warning("Ignoring non-numeric BLOGHUB_API_TIMEOUT=%r", raw)
        return None


################################################################################
# Result types
################################################################################
class RequestFailed(Exception):
    """The one and only transport error: a message and maybe a status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


def _require(data, *keys: str, what: str) -> dict:
    if not isinstance(data, dict):
        raise RequestFailed(f"Malformed response: expected {what} object")
    for k in keys:
        if data.get(k) is None:
            raise RequestFailed(f"Malformed response: {what} without “{k}”")
    return data


def _list_of(data, parse: Callable, *, what: str) -> list:
    if not isinstance(data, list):
        raise RequestFailed(f"Malformed response: expected a list of {what}")
    return [parse(row) for row in data]


def _opt_str(val) -> str | None:
    return None if val is None else str(val)


@dataclass(frozen=True)
class User:
    id: str
    username: str
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_json(cls, data) -> "User":
        _require(data, "id", "username", what="user")
        role = data.get("role")
        return cls(
            id=str(data["id"]),
            username=str(data["username"]),
            role=role if role in ROLES else "member",
        )


@dataclass(frozen=True)
class Article:
    id: str
    title: str
    content: str = ""
    author_id: str | None = None
    author_name: str = ""
    created_at: str | None = None
    published: bool = False

    @property
    def paragraphs(self) -> list[str]:
        return [p for p in self.content.split("\n") if p.strip()]

    @classmethod
    def from_json(cls, data) -> "Article":
        _require(data, "id", "title", what="article")
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            content=str(data.get("content") or ""),
            author_id=_opt_str(data.get("author_id")),
            author_name=str(data.get("author_name") or ""),
            created_at=_opt_str(data.get("created_at")),
            published=bool(data.get("published")),
        )


@dataclass(frozen=True)
class Comment:
    id: str
    article_id: str
    username: str
    content: str
    created_at: str | None = None

    @classmethod
    def from_json(cls, data, article_id: str | None = None) -> "Comment":
        _require(data, "id", "content", what="comment")
        owner = data.get("blog_id") or data.get("article_id") or article_id
        if owner is None:
            raise RequestFailed("Malformed response: comment without an article id")
        return cls(
            id=str(data["id"]),
            article_id=str(owner),
            username=str(data.get("username") or ""),
            content=str(data["content"]),
            created_at=_opt_str(data.get("created_at")),
        )


@dataclass(frozen=True)
class AuthResult:
    token: str
    user: User

    @classmethod
    def from_json(cls, data) -> "AuthResult":
        _require(data, "token", "user", what="auth result")
        return cls(token=str(data["token"]), user=User.from_json(data["user"]))


@dataclass
class ArticleDraft:
    """The admin form's working copy; ``id`` is None for a new article."""

    id: str | None = None
    title: str = ""
    content: str = ""
    published: bool = False

    @property
    def is_new(self) -> bool:
        return self.id is None

    @classmethod
    def from_article(cls, a: Article) -> "ArticleDraft":
        return cls(id=a.id, title=a.title, content=a.content, published=a.published)

    def payload(self) -> dict:
        return {
            "title": self.title,
            "content": self.content,
            "published": self.published,
        }


################################################################################
# Request client
################################################################################
def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return f"Error {resp.status_code}"


class ApiClient:
    """
    Thin JSON-over-HTTP wrapper.

    • exactly one attempt per call: no retry, no backoff
    • bearer auth iff a token is handed in
    • every failure surfaces as ``RequestFailed``
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        http: requests.Session | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or api_base_url()).rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout if timeout is not None else api_timeout()

    def call(self, endpoint: str, method: str = "GET", body=None, token=None):
        method = method.upper()
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        kwargs = {"headers": headers, "timeout": self.timeout}
        if body is not None and method not in NO_BODY_METHODS:
            kwargs["json"] = body

        app.logger.debug("%s %s", method, endpoint)
        try:
            resp = self.http.request(method, f"{self.base_url}{endpoint}", **kwargs)
        except requests.RequestException as exc:
            raise RequestFailed(str(exc) or "Network error") from None

        if not 200 <= resp.status_code < 300:
            raise RequestFailed(_error_message(resp), status=resp.status_code)

        if resp.status_code == 204:
            return {}

        try:
            return resp.json()
        except ValueError:
            raise RequestFailed(
                f"Malformed response from {endpoint}", status=resp.status_code
            ) from None


def _seg(val) -> str:
    return quote(str(val), safe="")


class BlogApi:
    """One typed method per remote endpoint."""

    def __init__(self, client: ApiClient):
        self.client = client

    # ── auth ───────────────────────────────────────────────────────
    def login(self, username: str, password: str) -> AuthResult:
        data = self.client.call(
            "/api/auth/login", "POST", {"username": username, "password": password}
        )
        return AuthResult.from_json(data)

    def signup(self, username: str, password: str) -> AuthResult:
        data = self.client.call(
            "/api/auth/signup", "POST", {"username": username, "password": password}
        )
        return AuthResult.from_json(data)

    def me(self, token: str) -> User:
        return User.from_json(self.client.call("/api/auth/me", token=token))

    # ── articles ───────────────────────────────────────────────────
    def list_articles(self) -> list[Article]:
        data = self.client.call("/api/blogs")
        return _list_of(data, Article.from_json, what="articles")

    def my_articles(self, token: str) -> list[Article]:
        data = self.client.call("/api/blogs/my", token=token)
        return _list_of(data, Article.from_json, what="articles")

    def get_article(self, article_id, token: str | None = None) -> Article:
        data = self.client.call(f"/api/blogs/{_seg(article_id)}", token=token)
        return Article.from_json(data)

    def create_article(self, draft: ArticleDraft, token: str):
        return self.client.call("/api/blogs", "POST", draft.payload(), token)

    def update_article(self, draft: ArticleDraft, token: str):
        return self.client.call(
            f"/api/blogs/{_seg(draft.id)}", "PUT", draft.payload(), token
        )

    def delete_article(self, article_id, token: str) -> None:
        self.client.call(f"/api/blogs/{_seg(article_id)}", "DELETE", token=token)

    # ── comments ───────────────────────────────────────────────────
    def list_comments(self, article_id, token: str | None = None) -> list[Comment]:
        data = self.client.call(f"/api/blogs/{_seg(article_id)}/comments", token=token)
        return _list_of(
            data,
            lambda row: Comment.from_json(row, article_id=str(article_id)),
            what="comments",
        )

    def create_comment(self, article_id, content: str, token: str):
        return self.client.call(
            f"/api/blogs/{_seg(article_id)}/comments",
            "POST",
            {"content": content},
            token,
        )

    def delete_comment(self, article_id, comment_id, token: str) -> None:
        self.client.call(
            f"/api/blogs/{_seg(article_id)}/comments/{_seg(comment_id)}",
            "DELETE",
            token=token,
        )


################################################################################
# Session
################################################################################
class TokenStore:
    """Persist the bearer token under one well-known key of an env file."""

    def __init__(self, path: Path = ENV_FILE, key: str = TOKEN_KEY):
        self.path = Path(path)
        self.key = key

    def load(self) -> str | None:
        return _read_env_file(self.path).get(self.key) or None

    def save(self, token: str) -> None:
        env = _read_env_file(self.path)
        env[self.key] = token
        _write_env_file(env, self.path)

    def clear(self) -> None:
        env = _read_env_file(self.path)
        if env.pop(self.key, None) is not None:
            _write_env_file(env, self.path)


class SessionStore:
    """
    Holds the one token + profile of this process.

    Only ``login`` / ``logout`` mutate it; listeners hear ``"login"`` or
    ``"logout"`` after the fact.
    """

    def __init__(self, api: BlogApi, tokens: TokenStore):
        self.api = api
        self.tokens = tokens
        self.token: str | None = tokens.load()
        self.user: User | None = None
        self._listeners: list[Callable[[str], None]] = []

    @property
    def has_token(self) -> bool:
        return bool(self.token)

    @property
    def authenticated(self) -> bool:
        return self.has_token and self.user is not None

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.is_admin

    def subscribe(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners):
            listener(event)

    def resolve(self) -> bool:
        """Turn the persisted token into a user, or tear the session down."""
        if not self.token:
            return False
        try:
            self.user = self.api.me(self.token)
        except RequestFailed as exc:
            app.logger.info("Stored token rejected (%s); logging out", exc.message)
            self.logout()
            return False
        return True

    def login(self, token: str, user: User) -> None:
        self.tokens.save(token)
        self.token = token
        self.user = user
        self._emit("login")

    def logout(self) -> None:
        self.tokens.clear()
        self.token = None
        self.user = None
        self._emit("logout")

    def authenticate(self, username: str, password: str, *, signup=False) -> User:
        result = (self.api.signup if signup else self.api.login)(username, password)
        self.login(result.token, result.user)
        return result.user


################################################################################
# View router
################################################################################
@dataclass(frozen=True)
class Unauthenticated:
    path = "/login"


@dataclass(frozen=True)
class ArticleList:
    path = "/"


@dataclass(frozen=True)
class ArticleDetail:
    article_id: str

    @property
    def path(self) -> str:
        return f"/blog/{_seg(self.article_id)}"


@dataclass(frozen=True)
class AdminConsole:
    path = "/admin"


@dataclass(frozen=True)
class AdminEditor:
    draft: ArticleDraft | None = None

    @property
    def path(self) -> str:
        if self.draft is None or self.draft.is_new:
            return "/admin/new"
        return f"/admin/{_seg(self.draft.id)}/edit"


View = Union[Unauthenticated, ArticleList, ArticleDetail, AdminConsole, AdminEditor]


class ViewRouter:
    """Decides which screen is on, given the session and where we want to go."""

    def __init__(self, session: SessionStore):
        self.session = session
        self.current: View = ArticleList() if session.has_token else Unauthenticated()
        session.subscribe(self._on_session)

    def _on_session(self, event: str) -> None:
        self.current = ArticleList() if event == "login" else Unauthenticated()

    def resolve(self, path: str) -> View:
        """Map *path* to a screen; unknown targets fall back, never error."""
        if not self.session.has_token:
            return Unauthenticated()

        parts = [p for p in path.split("?", 1)[0].split("/") if p]
        if not parts:
            return ArticleList()

        head, rest = parts[0], parts[1:]
        if head == "blog" and rest:
            return ArticleDetail(rest[0])

        if head == "admin":
            if not self.session.is_admin:
                return ArticleList()
            if rest == ["new"]:
                return AdminEditor()
            if len(rest) == 2 and rest[1] == "edit":
                cur = self.current
                if isinstance(cur, AdminEditor) and cur.draft and cur.draft.id == rest[0]:
                    return cur
                return AdminEditor(ArticleDraft(id=rest[0]))
            return AdminConsole()

        return ArticleList()

    def navigate(self, path: str) -> View:
        self.current = self.resolve(path)
        return self.current

    def select_article(self, article_id) -> View:
        if isinstance(self.current, ArticleList):
            self.current = ArticleDetail(str(article_id))
        return self.current

    def back(self) -> View:
        if isinstance(self.current, ArticleDetail):
            self.current = ArticleList()
        return self.current

    def open_editor(self, draft: ArticleDraft | None = None) -> View:
        if not self.session.is_admin:
            self.current = ArticleList() if self.session.has_token else Unauthenticated()
        elif isinstance(self.current, (AdminConsole, AdminEditor)):
            self.current = AdminEditor(draft)
        return self.current

    def close_editor(self) -> View:
        if isinstance(self.current, AdminEditor):
            self.current = AdminConsole()
        return self.current


################################################################################
# Sharing
################################################################################
def article_url(site: str, article_id) -> str:
    return f"{site.rstrip('/')}/blog/{_seg(article_id)}"


def share_links(site: str, article: Article) -> dict[str, str]:
    url = article_url(site, article.id)
    return {
        "X": "https://twitter.com/intent/tweet?"
        + urlencode({"url": url, "text": article.title}),
        "Facebook": "https://www.facebook.com/sharer/sharer.php?"
        + urlencode({"u": url}),
        "LinkedIn": "https://www.linkedin.com/sharing/share-offsite/?"
        + urlencode({"url": url}),
        "WhatsApp": "https://wa.me/?" + urlencode({"text": f"{article.title} {url}"}),
        "Email": "mailto:?"
        + urlencode({"subject": article.title, "body": url}, quote_via=quote),
    }


def system_clipboard(text: str) -> None:
    """Hand *text* to the first clipboard tool found on PATH."""
    for cmd in CLIPBOARD_COMMANDS:
        if shutil.which(cmd[0]):
            subprocess.run(cmd, input=text, text=True, check=True, timeout=5)
            return
    names = ", ".join(cmd[0] for cmd in CLIPBOARD_COMMANDS)
    raise FileNotFoundError(f"No clipboard tool found ({names})")


class ShareMenu:
    """At most one open popover, plus a “copied” flag that fades by itself."""

    def __init__(self, clock: Callable[[], float] = monotonic):
        self.clock = clock
        self.open_for: str | None = None
        self._copied_at: float | None = None

    def toggle(self, key) -> str | None:
        key = str(key)
        self.open_for = None if self.open_for == key else key
        return self.open_for

    def close(self) -> None:
        self.open_for = None

    def is_open(self, key) -> bool:
        return self.open_for == str(key)

    def copy(self, url: str, clipboard: Callable[[str], None] | None = None) -> str:
        if clipboard is not None:
            clipboard(url)
        self._copied_at = self.clock()
        return url

    @property
    def copied(self) -> bool:
        if self._copied_at is None:
            return False
        if self.clock() - self._copied_at >= COPIED_RESET_SECONDS:
            self._copied_at = None
            return False
        return True


################################################################################
# Controllers
################################################################################
def notify(message: str) -> None:
    """Blocking notice: a toast in the browser, stderr on the command line."""
    if has_request_context():
        flash(message)
    else:
        click.secho(message, fg="red", err=True)


def _decline(prompt: str) -> bool:
    return False


def filter_by_title(articles: list[Article], term: str) -> list[Article]:
    needle = (term or "").lower()
    if not needle:
        return list(articles)
    return [a for a in articles if needle in a.title.lower()]


class ArticleListController:
    def __init__(self, api: BlogApi):
        self.api = api
        self.articles: list[Article] = []
        self.search_term = ""
        self.loading = False

    def load(self) -> list[Article]:
        self.loading = True
        try:
            self.articles = self.api.list_articles()
        except RequestFailed as exc:
            app.logger.warning("Fetching articles failed: %s", exc.message)
        finally:
            self.loading = False
        return self.articles

    def search(self, term: str) -> list[Article]:
        self.search_term = term or ""
        return self.visible

    @property
    def visible(self) -> list[Article]:
        return filter_by_title(self.articles, self.search_term)

    @property
    def empty_message(self) -> str | None:
        if not self.articles:
            return NO_ARTICLES_MSG
        if not self.visible:
            return NO_MATCHES_MSG.format(term=self.search_term)
        return None


class ArticleDetailController:
    """
    One article + its comments.

    Writes are followed by a full re-fetch of the comments; nothing is
    patched locally except the removal of a deleted comment.
    """

    def __init__(
        self,
        api: BlogApi,
        session: SessionStore,
        *,
        notify: Callable[[str], None] = notify,
        confirm: Callable[[str], bool] = _decline,
        clock: Callable[[], float] = monotonic,
    ):
        self.api = api
        self.session = session
        self.notify = notify
        self.confirm = confirm
        self.article_id: str | None = None
        self.article: Article | None = None
        self.comments: list[Comment] = []
        self.draft_comment = ""
        self.loading = False
        self.submitting = False
        self.share = ShareMenu(clock=clock)

    def open(self, article_id) -> Article | None:
        article_id = str(article_id)
        if article_id != self.article_id:
            self.draft_comment = ""
            self.share.close()
        self.article_id = article_id
        self.article = None
        self.comments = []
        self.loading = True
        try:
            self.article = self.api.get_article(article_id, self.session.token)
            self.comments = self.api.list_comments(article_id, self.session.token)
        except RequestFailed as exc:
            app.logger.warning("Fetching article %s failed: %s", article_id, exc.message)
        finally:
            self.loading = False
        return self.article

    @property
    def not_found(self) -> bool:
        return not self.loading and self.article_id is not None and self.article is None

    @property
    def can_moderate(self) -> bool:
        user = self.session.user
        return (
            user is not None
            and self.article is not None
            and self.article.author_id is not None
            and user.id == self.article.author_id
        )

    def post_comment(self, content: str | None = None) -> bool:
        if content is not None:
            self.draft_comment = content
        if self.article_id is None or not self.draft_comment.strip():
            return False

        self.submitting = True
        try:
            self.api.create_comment(
                self.article_id, self.draft_comment, self.session.token
            )
            self.comments = self.api.list_comments(self.article_id, self.session.token)
        except RequestFailed as exc:
            app.logger.warning("Posting comment failed: %s", exc.message)
            self.notify(POST_COMMENT_FAILED)
            return False
        finally:
            self.submitting = False

        self.draft_comment = ""
        return True

    def delete_comment(self, comment_id, *, confirm=None) -> bool:
        # article ownership governs moderation, not comment authorship
        if not self.can_moderate:
            return False
        if not (confirm or self.confirm)(DELETE_COMMENT_PROMPT):
            return False

        comment_id = str(comment_id)
        try:
            self.api.delete_comment(self.article_id, comment_id, self.session.token)
        except RequestFailed as exc:
            app.logger.warning("Deleting comment %s failed: %s", comment_id, exc.message)
            self.notify(DELETE_COMMENT_FAILED)
            return False

        self.comments = [c for c in self.comments if c.id != comment_id]
        return True

    def share_links(self, site: str) -> dict[str, str]:
        return share_links(site, self.article) if self.article else {}

    def copy_link(self, site: str, clipboard=None) -> str | None:
        if self.article is None:
            return None
        return self.share.copy(article_url(site, self.article.id), clipboard)


class AdminConsoleController:
    """The acting user's own articles: list, create/update, delete."""

    def __init__(
        self,
        api: BlogApi,
        session: SessionStore,
        router: ViewRouter,
        *,
        notify: Callable[[str], None] = notify,
        confirm: Callable[[str], bool] = _decline,
    ):
        self.api = api
        self.session = session
        self.router = router
        self.notify = notify
        self.confirm = confirm
        self.articles: list[Article] = []
        self.draft = ArticleDraft()
        self.loading = False
        self.share = ShareMenu()

    def load(self) -> list[Article]:
        self.loading = True
        try:
            self.articles = self.api.my_articles(self.session.token)
        except RequestFailed as exc:
            app.logger.warning("Fetching own articles failed: %s", exc.message)
        finally:
            self.loading = False
        return self.articles

    def find(self, article_id) -> Article | None:
        article_id = str(article_id)
        return next((a for a in self.articles if a.id == article_id), None)

    def start_new(self) -> ArticleDraft:
        self.draft = ArticleDraft()
        self.router.open_editor(None)
        return self.draft

    def start_edit(self, article: Article) -> ArticleDraft:
        self.draft = ArticleDraft.from_article(article)
        self.router.open_editor(self.draft)
        return self.draft

    def cancel(self) -> None:
        self.draft = ArticleDraft()
        self.router.close_editor()

    def save(self, draft: ArticleDraft | None = None) -> bool:
        if draft is not None:
            self.draft = draft
        try:
            if self.draft.is_new:
                self.api.create_article(self.draft, self.session.token)
            else:
                self.api.update_article(self.draft, self.session.token)
        except RequestFailed as exc:
            app.logger.warning("Saving article failed: %s", exc.message)
            self.notify(SAVE_FAILED)
            return False

        self.draft = ArticleDraft()
        self.router.close_editor()
        self.load()
        return True

    def delete(self, article_id, *, confirm=None) -> bool:
        if not (confirm or self.confirm)(DELETE_ARTICLE_PROMPT):
            return False
        article_id = str(article_id)
        try:
            self.api.delete_article(article_id, self.session.token)
        except RequestFailed as exc:
            app.logger.warning("Deleting article %s failed: %s", article_id, exc.message)
            self.notify(DELETE_FAILED)
            return False
        self.articles = [a for a in self.articles if a.id != article_id]
        if self.share.is_open(article_id):
            self.share.close()
        return True


@dataclass
class BlogHub:
    """Everything one running client owns, wired together once."""

    api: BlogApi
    session: SessionStore
    router: ViewRouter
    articles: ArticleListController
    reader: ArticleDetailController
    console: AdminConsoleController


def build_hub(
    api: BlogApi | None = None,
    tokens: TokenStore | None = None,
    *,
    resolve: bool = True,
    clock: Callable[[], float] = monotonic,
) -> BlogHub:
    api = api or BlogApi(ApiClient())
    store = SessionStore(api, tokens or TokenStore())
    router = ViewRouter(store)  # initial screen: token present or not
    hub = BlogHub(
        api=api,
        session=store,
        router=router,
        articles=ArticleListController(api),
        reader=ArticleDetailController(api, store, clock=clock),
        console=AdminConsoleController(api, store, router),
    )
    if resolve:
        store.resolve()
    return hub


def get_hub() -> BlogHub:
    hub = app.extensions.get("bloghub")
    if hub is None:
        hub = app.extensions["bloghub"] = build_hub()
    return hub


################################################################################
# Template filters + globals
################################################################################
@app.template_filter("date")
def date_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return iso
    return f"{dt:%B} {dt.day}, {dt.year}"


def _csrf_token() -> str:
    """One token per browser session."""
    if "csrf" not in session:
        session["csrf"] = secrets.token_hex(16)
    return session["csrf"]


def _current_user() -> User | None:
    hub = app.extensions.get("bloghub")
    return hub.session.user if hub else None


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_user=_current_user,
    version=__version__,
    copied_reset_ms=COPIED_RESET_SECONDS * 1000,
)


################################################################################
# Routing gate + security
################################################################################
# endpoint → screen it renders; anything else gets redirected by the router
SCREEN_FOR_ENDPOINT = {
    "login": Unauthenticated,
    "index": ArticleList,
    "article_detail": ArticleDetail,
    "post_comment": ArticleDetail,
    "delete_comment": ArticleDetail,
    "admin": AdminConsole,
    "admin_delete": AdminConsole,
    "admin_new": AdminEditor,
    "admin_edit": AdminEditor,
}


@app.before_request
def route_gate():
    if request.endpoint in ("logout", "catch_all"):
        return None
    state = get_hub().router.navigate(request.path)
    expected = SCREEN_FOR_ENDPOINT.get(request.endpoint)
    if expected is None or not isinstance(state, expected):
        return redirect(state.path)
    return None


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return None
    if request.endpoint in ("login", "catch_all", None):
        return None
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)
    return None


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


def _form_confirmed(prompt: str) -> bool:
    return request.form.get("confirm") == "yes"


def _site() -> str:
    return request.url_root.rstrip("/")


################################################################################
# Templates
################################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'BlogHub' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:Georgia,"Times New Roman",serif}
body{font-size:1.8rem;line-height:1.6;max-width:42em;margin:auto;color:#d0d0d0;background:#111;padding:13px}
a{color:#fff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{text-decoration-color:#2dd4bf}
h1,h2,h3{font-family:"Playfair Display",Georgia,serif;line-height:1.15}
input,textarea{color:#d0d0d0;background:#1f1f1f;border:1px solid #444;border-radius:4px;padding:6px 10px;margin-bottom:10px;box-sizing:border-box;width:100%}
input[type=checkbox]{width:auto}
button,.button{display:inline-block;padding:5px 12px;background:#eee;color:#111;border:1px solid #eee;border-radius:1px;cursor:pointer;text-decoration:none}
.danger{background:#900;color:#fff;border-color:#900}
.muted{color:#888;font-size:.8em}
.card{border-bottom:1px solid #333;padding:1rem 0}
.nav{display:flex;justify-content:space-between;align-items:center;border-bottom:1px solid #333;margin-bottom:2rem}
.nav-right{display:flex;gap:1.5rem;align-items:center;font-size:.85em}
.comment{border-left:2px solid #2dd4bf;padding-left:1rem;margin-bottom:1.2rem}
.share{display:flex;gap:1rem;flex-wrap:wrap;font-size:.85em;margin:1rem 0}
.error{color:#f87171;border-left:2px solid #ef4444;padding-left:.75rem}
</style>
<body>
<nav class="nav" aria-label="Primary">
  <h1 style="margin:.6em 0;"><a href="/">BLOGHUB</a></h1>
  {% set me = current_user() %}
  {% if me %}
  <div class="nav-right">
    <span>Signed in as <em>{{ me.username }}</em></span>
    {% if me.is_admin %}<a href="{{ url_for('admin') }}">Console</a>{% endif %}
    <a href="{{ url_for('logout') }}">Log out</a>
  </div>
  {% endif %}
</nav>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
<div role="alert" style="position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9em;max-width:24rem;z-index:999;">
  {% for m in msgs %}{{ m }}{% if not loop.last %}<br>{% endif %}{% endfor %}
</div>
{% endif %}
{% endwith %}
<main id="main-content" role="main">
"""

TEMPL_EPILOG = """
</main>
<footer class="muted" style="margin-top:3rem;border-top:1px solid #333;padding-top:1rem;">
  bloghub v{{ version }}
</footer>
<script>
document.querySelectorAll('.copy-btn').forEach(btn => {
  btn.addEventListener('click', async () => {
    try {
      await navigator.clipboard.writeText(btn.dataset.url);
    } catch (err) {
      console.log('copy failed', err);
      return;
    }
    const label = btn.textContent;
    btn.textContent = 'Copied!';
    setTimeout(() => { btn.textContent = label; }, {{ copied_reset_ms }});
  });
});
</script>
"""

TEMPL_LOGIN = wrap("""
{% block body %}
<h2>{{ 'The Daily Log' if mode == 'login' else 'New Subscription' }}</h2>
<form method="post" action="{{ url_for('login', mode=mode) }}">
  <label for="username">Username</label>
  <input id="username" name="username" required value="{{ username }}">
  <label for="password">Password</label>
  <input id="password" name="password" type="password" required>
  {% if error %}<p class="error">{{ error }}</p>{% endif %}
  <button type="submit">{{ 'Access Archives' if mode == 'login' else 'Register' }}</button>
</form>
<p class="muted">
  {% if mode == 'login' %}
    <a href="{{ url_for('login', mode='signup') }}">No credentials? Apply here.</a>
  {% else %}
    <a href="{{ url_for('login') }}">Already subscribed? Login.</a>
  {% endif %}
</p>
{% endblock %}
""")

TEMPL_INDEX = wrap("""
{% block body %}
<form method="get" action="{{ url_for('index') }}" role="search">
  <input type="search" name="q" value="{{ ctrl.search_term }}"
         placeholder="Search by headline..." aria-label="Search by headline">
  {% if ctrl.search_term %}<a href="{{ url_for('index') }}" class="muted">Clear search</a>{% endif %}
</form>
{% if ctrl.empty_message %}
  <p class="muted">{{ ctrl.empty_message }}</p>
{% else %}
  {% for a in ctrl.visible %}
  <article class="card">
    <span class="muted">{{ a.created_at|date }}</span>
    <h3 style="margin:.3em 0;"><a href="{{ url_for('article_detail', article_id=a.id) }}">{{ a.title }}</a></h3>
  </article>
  {% endfor %}
{% endif %}
{% endblock %}
""")

TEMPL_DETAIL = wrap("""
{% block body %}
<p><a href="{{ url_for('index') }}">← Back to articles</a></p>
{% if ctrl.not_found %}
  <h2>Article not found</h2>
  <p class="muted">It may have been removed, or it never existed.</p>
{% else %}
  {% set a = ctrl.article %}
  <article>
    <h2>{{ a.title }}</h2>
    <p class="muted">By {{ a.author_name }} · {{ a.created_at|date }}</p>
    {% for p in a.paragraphs %}<p>{{ p }}</p>{% endfor %}
  </article>
  <div class="share">
    {% for name, href in links.items() %}
      <a href="{{ href }}" target="_blank" rel="noopener">{{ name }}</a>
    {% endfor %}
    <button type="button" class="copy-btn" data-url="{{ url }}">Copy link</button>
  </div>
  <section>
    <h3>Comments ({{ ctrl.comments|length }})</h3>
    <form method="post" action="{{ url_for('post_comment', article_id=a.id) }}">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <textarea name="content" rows="3" placeholder="Write a respectful comment...">{{ ctrl.draft_comment }}</textarea>
      <button type="submit">Post comment</button>
    </form>
    {% for c in ctrl.comments %}
    <div class="comment">
      <span class="muted">@{{ c.username }} · {{ c.created_at|date }}</span>
      <p style="margin:.3em 0;">{{ c.content }}</p>
      {% if ctrl.can_moderate %}
        <a class="muted" href="{{ url_for('delete_comment', article_id=a.id, comment_id=c.id) }}">Delete</a>
      {% endif %}
    </div>
    {% else %}
    <p class="muted">No comments yet. Be the first to share your thoughts.</p>
    {% endfor %}
  </section>
{% endif %}
{% endblock %}
""")

TEMPL_CONFIRM = wrap("""
{% block body %}
<h2>{{ heading }}</h2>
<blockquote style="border-left:3px solid #c00;padding-left:1rem;">{{ subject }}</blockquote>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="confirm" value="yes">
  <button class="danger">Yes – delete it</button>
  <a href="{{ cancel }}" style="margin-left:1rem;">Cancel</a>
</form>
{% endblock %}
""")

TEMPL_ADMIN = wrap("""
{% block body %}
<div style="display:flex;justify-content:space-between;align-items:center;">
  <h2>Your articles</h2>
  <a class="button" href="{{ url_for('admin_new') }}">+ New article</a>
</div>
{% for a in ctrl.articles %}
<div class="card">
  <strong>{{ a.title }}</strong>
  <span class="muted">{{ a.created_at|date }}{% if not a.published %} · draft{% endif %}</span>
  <div class="share">
    <a href="{{ url_for('article_detail', article_id=a.id) }}">View</a>
    <a href="{{ url_for('admin_edit', article_id=a.id) }}">Edit</a>
    <a href="{{ url_for('admin_delete', article_id=a.id) }}">Delete</a>
    {% if ctrl.share.is_open(a.id) %}
      <a href="{{ url_for('admin') }}">Close share</a>
    {% else %}
      <a href="{{ url_for('admin', share=a.id) }}">Share</a>
    {% endif %}
  </div>
  {% if ctrl.share.is_open(a.id) %}
  <div class="share" id="share-{{ a.id }}">
    {% for name, href in share_links(site, a).items() %}
      <a href="{{ href }}" target="_blank" rel="noopener">{{ name }}</a>
    {% endfor %}
    <button type="button" class="copy-btn" data-url="{{ article_url(site, a.id) }}">Copy link</button>
  </div>
  {% endif %}
</div>
{% else %}
<p class="muted">You haven’t written anything yet.</p>
{% endfor %}
{% endblock %}
""")

TEMPL_EDITOR = wrap("""
{% block body %}
<h2>{{ 'New article' if draft.is_new else 'Edit article' }}</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="title">Title</label>
  <input id="title" name="title" required value="{{ draft.title }}">
  <label for="content">Content</label>
  <textarea id="content" name="content" rows="14" required>{{ draft.content }}</textarea>
  <label><input type="checkbox" name="published" {% if draft.published %}checked{% endif %}> Published</label>
  <button type="submit">Save</button>
  <a href="{{ url_for('admin') }}" style="margin-left:1rem;">Cancel</a>
</form>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Something broke on our side. Please try again in a minute.</p>
{% endblock %}
""")

app.jinja_env.globals.update(share_links=share_links, article_url=article_url)


################################################################################
# Authentication views
################################################################################
@app.route("/login", methods=["GET", "POST"])
def login():
    mode = "signup" if request.values.get("mode") == "signup" else "login"
    username = request.form.get("username", "").strip()
    error = ""

    if request.method == "POST":
        try:
            get_hub().session.authenticate(
                username, request.form.get("password", ""), signup=mode == "signup"
            )
        except RequestFailed as exc:
            error = exc.message or "Authentication failed"
        else:
            session["csrf"] = secrets.token_hex(16)
            return redirect(url_for("index"))

    return render_template_string(
        TEMPL_LOGIN, title="Sign in", mode=mode, error=error, username=username
    )


@app.route("/logout")
def logout():
    get_hub().session.logout()
    session.clear()
    return redirect(url_for("login"))


################################################################################
# Articles
################################################################################
@app.route("/")
def index():
    ctrl = get_hub().articles
    ctrl.load()
    ctrl.search(request.args.get("q", ""))
    return render_template_string(TEMPL_INDEX, title="BlogHub", ctrl=ctrl)


@app.route("/blog/<article_id>")
def article_detail(article_id):
    ctrl = get_hub().reader
    ctrl.open(article_id)
    title = ctrl.article.title if ctrl.article else "Not found"
    return render_template_string(
        TEMPL_DETAIL,
        title=title,
        ctrl=ctrl,
        links=ctrl.share_links(_site()),
        url=article_url(_site(), article_id),
    )


def _reader_for(article_id) -> ArticleDetailController:
    ctrl = get_hub().reader
    if ctrl.article_id != str(article_id) or ctrl.article is None:
        ctrl.open(article_id)
    return ctrl


@app.route("/blog/<article_id>/comments", methods=["POST"])
def post_comment(article_id):
    ctrl = _reader_for(article_id)
    ctrl.post_comment(request.form.get("content", ""))
    return redirect(url_for("article_detail", article_id=article_id))


@app.route(
    "/blog/<article_id>/comments/<comment_id>/delete", methods=["GET", "POST"]
)
def delete_comment(article_id, comment_id):
    ctrl = _reader_for(article_id)
    back = url_for("article_detail", article_id=article_id)
    if not ctrl.can_moderate:
        flash("Only the article’s author can remove comments.")
        return redirect(back)

    if request.method == "POST":
        ctrl.delete_comment(comment_id, confirm=_form_confirmed)
        return redirect(back)

    comment = next((c for c in ctrl.comments if c.id == str(comment_id)), None)
    if comment is None:
        return redirect(back)
    return render_template_string(
        TEMPL_CONFIRM,
        title="Delete comment?",
        heading=DELETE_COMMENT_PROMPT,
        subject=f"@{comment.username}: {comment.content}",
        cancel=back,
    )


################################################################################
# Admin console
################################################################################
@app.route("/admin")
def admin():
    ctrl = get_hub().console
    ctrl.load()
    key = request.args.get("share")
    if not key:
        ctrl.share.close()
    elif not ctrl.share.is_open(key):
        ctrl.share.toggle(key)
    return render_template_string(TEMPL_ADMIN, title="Console", ctrl=ctrl, site=_site())


def _draft_from_form(article_id=None) -> ArticleDraft:
    return ArticleDraft(
        id=None if article_id is None else str(article_id),
        title=request.form.get("title", ""),
        content=request.form.get("content", ""),
        published="published" in request.form,
    )


def _editor(ctrl: AdminConsoleController, article_id=None):
    if request.method == "POST":
        if ctrl.save(_draft_from_form(article_id)):
            return redirect(url_for("admin"))
    return render_template_string(TEMPL_EDITOR, title="Editor", draft=ctrl.draft)


@app.route("/admin/new", methods=["GET", "POST"])
def admin_new():
    ctrl = get_hub().console
    if request.method == "GET":
        ctrl.start_new()
    return _editor(ctrl)


@app.route("/admin/<article_id>/edit", methods=["GET", "POST"])
def admin_edit(article_id):
    ctrl = get_hub().console
    if request.method == "GET":
        article = ctrl.find(article_id)
        if article is None:
            ctrl.load()
            article = ctrl.find(article_id)
        if article is None:
            flash("That article is not one of yours.")
            ctrl.cancel()
            return redirect(url_for("admin"))
        ctrl.start_edit(article)
    return _editor(ctrl, article_id)


@app.route("/admin/<article_id>/delete", methods=["GET", "POST"])
def admin_delete(article_id):
    ctrl = get_hub().console
    if request.method == "POST":
        ctrl.delete(article_id, confirm=_form_confirmed)
        return redirect(url_for("admin"))

    article = ctrl.find(article_id)
    if article is None:
        ctrl.load()
        article = ctrl.find(article_id)
    if article is None:
        return redirect(url_for("admin"))
    return render_template_string(
        TEMPL_CONFIRM,
        title="Delete article?",
        heading=DELETE_ARTICLE_PROMPT,
        subject=article.title,
        cancel=url_for("admin"),
    )


################################################################################
# Catch-all + error pages
################################################################################
@app.route("/<path:path>", methods=["GET", "POST"])
def catch_all(path):
    return redirect(get_hub().router.navigate(request.path).path)


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500, title="Error"), 500


################################################################################
# CLI
################################################################################
@app.cli.command("login")
@click.option("--username", prompt=True, help="Account name on the blog server.")
@click.option("--password", prompt=True, hide_input=True)
@click.option("--signup", is_flag=True, help="Register a new account instead.")
def cli_login(username: str, password: str, signup: bool):
    """Sign in and remember the token for later runs."""
    hub = get_hub()
    try:
        user = hub.session.authenticate(username.strip(), password, signup=signup)
    except RequestFailed as exc:
        raise click.ClickException(exc.message) from None
    click.secho(f"\n✅  Signed in as {user.username} ({user.role}).", fg="green")


@app.cli.command("logout")
def cli_logout():
    """Forget the stored token."""
    get_hub().session.logout()
    click.secho("👋  Signed out.", fg="yellow")


@app.cli.command("whoami")
def cli_whoami():
    """Resolve the stored token to a user."""
    hub = get_hub()
    if not hub.session.authenticated:
        raise click.ClickException("Not signed in.")
    u = hub.session.user
    click.echo(f"{u.username} (id {u.id}, {u.role})")


@app.cli.command("articles")
@click.option("--search", "term", default="", help="Case-insensitive title filter.")
def cli_articles(term: str):
    """List published articles."""
    ctrl = get_hub().articles
    ctrl.load()
    ctrl.search(term)
    if ctrl.empty_message:
        click.echo(ctrl.empty_message)
        return
    for a in ctrl.visible:
        click.echo(f"{a.id:>6}  {date_filter(a.created_at):<20}  {a.title}")


@app.cli.command("share")
@click.argument("article_id")
@click.option("--site", default=None, help="Public base URL of this front-end.")
@click.option("--copy", is_flag=True, help="Also put the article URL on the clipboard.")
def cli_share(article_id: str, site: str | None, copy: bool):
    """Print share links for one article."""
    ctrl = get_hub().reader
    if ctrl.open(article_id) is None:
        raise click.ClickException("Article not found.")
    site = site or site_url()
    click.echo(article_url(site, ctrl.article.id))
    for name, href in ctrl.share_links(site).items():
        click.echo(f"{name:<9} {href}")

    if copy:
        try:
            ctrl.copy_link(site, system_clipboard)
        except (OSError, subprocess.SubprocessError) as exc:
            raise click.ClickException(f"Copy failed: {exc}") from None
        if ctrl.share.copied:
            click.secho("📋  Copied!", fg="green")


cli = FlaskGroup(create_app=lambda: app, help="BlogHub – a local client for a remote blog API.")


def main():
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "WARNING").upper())
    cli()


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    main()
