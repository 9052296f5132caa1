"""
Shared fixtures: a fake static content host, a fake backend, a controllable
clock, and cache/queue instances on temporary SQLite files.
"""

import asyncio
from typing import Any, Optional

import httpx
import pytest
import pytest_asyncio

from playsync.cache import LocalCache
from playsync.config import SyncSettings
from playsync.content import ContentFetcher
from playsync.engine import SyncEngine
from playsync.models import PendingMutation, SyncSnapshot
from playsync.queue import OfflineQueue
from playsync.remote import RemoteClient

CONTENT_BASE = "https://content.test/kids-content"


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticHost:
    """In-memory stand-in for the static content host."""

    def __init__(self):
        self.manifest: dict = {"publishedAt": 1000, "levelVersions": {}}
        self.levels_meta: list = []
        self.questions: dict[str, Any] = {}
        self.fail_paths: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    def set_levels(self, versions: dict[str, int], published_at: int = 1000) -> None:
        self.manifest = {"publishedAt": published_at, "levelVersions": dict(versions)}
        self.levels_meta = [
            {
                "_id": level_id,
                "levelNumber": i + 1,
                "name": f"Level {level_id}",
                "isEnabled": True,
                "difficulties": [
                    {"name": "easy", "displayName": "Easy", "requiredScore": 60, "order": 1},
                ],
            }
            for i, level_id in enumerate(versions)
        ]
        self.questions = {
            level_id: {"levelId": level_id, "version": version, "questions": {"easy": [{"q": level_id}]}}
            for level_id, version in versions.items()
        }

    def paths(self) -> list[str]:
        return [request.url.path.replace("/kids-content/", "", 1) for request in self.requests]

    def level_fetches(self) -> list[str]:
        return [
            path[len("questions/level_"):-len(".json")]
            for path in self.paths()
            if path.startswith("questions/")
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/kids-content/", "", 1)

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        if path in self.fail_paths:
            return httpx.Response(503, text="unavailable")
        if path == "manifest.json":
            return httpx.Response(200, json=self.manifest)
        if path == "levels-meta.json":
            return httpx.Response(200, json=self.levels_meta)
        if path.startswith("questions/level_"):
            level_id = path[len("questions/level_"):-len(".json")]
            if level_id in self.questions:
                return httpx.Response(200, json=self.questions[level_id])
        return httpx.Response(404, text="not found")


class FakeRemoteClient(RemoteClient):
    """Backend stand-in recording every call."""

    def __init__(self, snapshot: Optional[SyncSnapshot] = None):
        self.snapshot = snapshot or SyncSnapshot()
        self.query_error: Optional[Exception] = None
        self.mutation_errors: dict[str, Exception] = {}
        self.submitted: list[PendingMutation] = []
        self.tokens: list[str] = []
        self.query_count = 0

    async def get_sync_data(self, token: str) -> SyncSnapshot:
        self.query_count += 1
        self.tokens.append(token)
        if self.query_error is not None:
            raise self.query_error
        return self.snapshot.model_copy(deep=True)

    async def submit_mutation(self, mutation: PendingMutation, token: str) -> Any:
        error = self.mutation_errors.get(mutation.id)
        if error is not None:
            raise error
        self.submitted.append(mutation)
        return {"ok": True}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "playsync.db"


@pytest.fixture
def cache(db_path):
    return LocalCache(db_path)


@pytest.fixture
def queue(db_path, clock):
    return OfflineQueue(db_path, max_size=100, max_attempts=3, clock=clock)


@pytest.fixture
def host():
    host = StaticHost()
    host.set_levels({"A": 1, "B": 1, "C": 1})
    return host


@pytest_asyncio.fixture
async def fetcher(cache, host):
    client = httpx.AsyncClient(transport=httpx.MockTransport(host.handler))
    fetcher = ContentFetcher(cache, CONTENT_BASE, batch_size=2, http_client=client)
    yield fetcher
    await client.aclose()


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        cache_dir=tmp_path,
        sync_interval=3600,
        throttle_interval=300,
        content_batch_size=2,
        max_error_records=20,
    )


@pytest.fixture
def remote():
    return FakeRemoteClient()


@pytest_asyncio.fixture
async def engine(cache, queue, fetcher, settings, clock):
    engine = SyncEngine(cache, queue, fetcher, settings=settings, clock=clock)
    yield engine
    engine.stop_sync()
    await engine.wait_idle()

