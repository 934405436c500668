"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
import itertools
import json
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shelf_sync.bookmark import BookmarkData, BookmarkEntry, BookmarkGroup
from shelf_sync.config import Config
from shelf_sync.local_store import LocalStore
from shelf_sync.sync.gist_client import GistClient


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


BASE = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TOKEN = "ghp_testtoken"
RAW_HOST = "https://gist.githubusercontent.com"


def at(seconds: float) -> datetime:
    """A fixed point in time, ``seconds`` after the test epoch."""
    return BASE + timedelta(seconds=seconds)


def make_snapshot(*titles: str, updated: float = 0, group_updated: Optional[float] = None) -> BookmarkData:
    """Snapshot with one group and one bookmark per title, all stamped ``updated``."""
    stamp = at(updated)
    group = BookmarkGroup(
        id="g1",
        name="Reading",
        order=0,
        updated_at=at(group_updated) if group_updated is not None else None,
    )
    entries = []
    for index, title in enumerate(titles):
        entries.append(BookmarkEntry(
            id=f"b-{title.lower()}",
            group_id="g1",
            title=title,
            url=f"https://example.com/{title.lower()}",
            order=index,
            created_at=BASE,
            updated_at=stamp,
        ))
    return BookmarkData(groups=[group], entries=entries, last_updated=stamp)


class FakeGistServer:
    """In-memory stand-in for the GitHub Gist API behind an ``httpx.MockTransport``.

    Several clients may share one server to play different devices.
    """

    def __init__(self, token: str = TOKEN, login: str = "octocat"):
        self.token = token
        self.login = login
        self.gists: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.truncated_files = set()
        self.rate_limit = {"limit": 5000, "remaining": 4999, "reset": int(time.time()) + 3600}
        self._queued = []
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)

    # Setup helpers

    def add_gist(self, files: Dict[str, str], description: str = "", gist_id: Optional[str] = None) -> str:
        gist_id = gist_id or f"gist{next(self._ids)}"
        stamp = self._stamp()
        self.gists[gist_id] = {
            "id": gist_id,
            "description": description,
            "public": False,
            "files": dict(files),
            "created_at": stamp,
            "updated_at": stamp,
        }
        return gist_id

    def queue_response(self, status_code: int, body=None, headers: Optional[Dict[str, str]] = None):
        """Answer the next request with a canned response."""
        self._queued.append(httpx.Response(status_code, json=body or {}, headers=headers or {}))

    def queue_error(self, error: Exception):
        """Raise ``error`` for the next request."""
        self._queued.append(error)

    def file(self, gist_id: str, filename: str) -> str:
        return self.gists[gist_id]["files"][filename]

    def json_file(self, gist_id: str, filename: str):
        return json.loads(self.file(gist_id, filename))

    def count(self, method: str, path_prefix: str = "") -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path.startswith(path_prefix))

    # Transport

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._queued:
            queued = self._queued.pop(0)
            if isinstance(queued, Exception):
                raise queued
            return queued

        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return self._respond(401, {"message": "Bad credentials"})

        if request.url.host == "gist.githubusercontent.com":
            gist_id, filename = request.url.path.strip("/").split("/", 1)
            return httpx.Response(200, text=self.file(gist_id, filename), headers=self._rate_headers())

        path = request.url.path
        if path == "/user" and request.method == "GET":
            return self._respond(200, {"login": self.login, "id": 1})
        if path == "/gists":
            if request.method == "GET":
                return self._list(request)
            if request.method == "POST":
                return self._create(json.loads(request.content))
        if path.startswith("/gists/"):
            gist_id = path.split("/")[2]
            if gist_id not in self.gists:
                return self._respond(404, {"message": "Not Found"})
            if request.method == "GET":
                return self._respond(200, self._full(gist_id))
            if request.method == "PATCH":
                return self._update(gist_id, json.loads(request.content))
            if request.method == "DELETE":
                del self.gists[gist_id]
                return httpx.Response(204, headers=self._rate_headers())
        return self._respond(404, {"message": "Not Found"})

    # Handlers

    def _list(self, request: httpx.Request) -> httpx.Response:
        page = int(request.url.params.get("page", 1))
        per_page = int(request.url.params.get("per_page", 30))
        ordered = sorted(self.gists.values(), key=lambda g: g["updated_at"], reverse=True)
        batch = ordered[(page - 1) * per_page:page * per_page]
        return self._respond(200, [self._summary(g["id"]) for g in batch])

    def _create(self, payload: dict) -> httpx.Response:
        files = {name: body["content"] for name, body in payload["files"].items()}
        gist_id = self.add_gist(files, payload.get("description", ""))
        return self._respond(201, self._full(gist_id))

    def _update(self, gist_id: str, payload: dict) -> httpx.Response:
        gist = self.gists[gist_id]
        for name, body in payload.get("files", {}).items():
            if body is None:
                gist["files"].pop(name, None)
            else:
                gist["files"][name] = body["content"]
        if "description" in payload:
            gist["description"] = payload["description"]
        gist["updated_at"] = self._stamp()
        return self._respond(200, self._full(gist_id))

    # Serialization

    def _file_info(self, gist_id: str, name: str, content: str) -> dict:
        return {
            "filename": name,
            "type": "application/json",
            "size": len(content.encode("utf-8")),
            "raw_url": f"{RAW_HOST}/{gist_id}/{name}",
        }

    def _summary(self, gist_id: str) -> dict:
        gist = self.gists[gist_id]
        files = {name: self._file_info(gist_id, name, content) for name, content in gist["files"].items()}
        return {
            "id": gist_id,
            "description": gist["description"],
            "html_url": f"https://gist.github.com/{gist_id}",
            "files": files,
            "created_at": gist["created_at"],
            "updated_at": gist["updated_at"],
        }

    def _full(self, gist_id: str) -> dict:
        data = self._summary(gist_id)
        for name, content in self.gists[gist_id]["files"].items():
            truncated = name in self.truncated_files
            data["files"][name]["content"] = content[:10] if truncated else content
            data["files"][name]["truncated"] = truncated
        return data

    def _rate_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.rate_limit["limit"]),
            "X-RateLimit-Remaining": str(self.rate_limit["remaining"]),
            "X-RateLimit-Reset": str(self.rate_limit["reset"]),
        }

    def _respond(self, status_code: int, body) -> httpx.Response:
        return httpx.Response(status_code, json=body, headers=self._rate_headers())

    def _stamp(self) -> str:
        return (BASE + timedelta(seconds=next(self._clock))).isoformat().replace("+00:00", "Z")


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_client(server: FakeGistServer, sleep=None, authenticate: bool = True, **kwargs) -> GistClient:
    client = GistClient(transport=server.transport(), sleep=sleep or RecordingSleep(), **kwargs)
    if authenticate:
        client.authenticate(server.token)
    return client


@pytest.fixture
def server():
    """Fake Gist API shared by every client in a test."""
    return FakeGistServer()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def client(server, sleeper):
    """Authenticated client talking to the fake server."""
    return make_client(server, sleep=sleeper)


@pytest.fixture
def store(tmp_path):
    """Local store for the device under test."""
    return LocalStore(tmp_path / "state.json")


@pytest.fixture
def other_store(tmp_path):
    """Local store for a second device."""
    return LocalStore(tmp_path / "other" / "state.json")


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep configuration and token lookups away from the real home directory."""
    monkeypatch.setenv("SHELF_DATA_DIR", str(tmp_path / "shelf"))
    monkeypatch.delenv("SHELF_GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    Config.reset()
    yield
    Config.reset()
