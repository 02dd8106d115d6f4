from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path

import aiohttp
import pytest

from contentblocker.cache import CacheStore
from contentblocker.config import Source
from contentblocker.registry import RuleListRegistry, RuleListStore


DAY = 24 * 60 * 60


class FakeResponse:
    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self, errors: str = "strict") -> str:
        return self._body


class FakeSession:
    """Stands in for aiohttp.ClientSession.

    routes maps url -> body (str), HTTP status (int) or an exception instance.
    delays maps url -> seconds to sleep before answering.
    """

    def __init__(self, routes: dict[str, object], delays: dict[str, float] | None = None):
        self.routes = routes
        self.delays = delays or {}
        self.calls: list[str] = []
        self.opened = 0

    async def __aenter__(self):
        self.opened += 1
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, url: str, **kwargs):
        self.calls.append(url)
        return _DelayedResponse(self, url)


class _DelayedResponse:
    def __init__(self, session: FakeSession, url: str):
        self._session = session
        self._url = url

    async def __aenter__(self):
        delay = self._session.delays.get(self._url, 0)
        if delay:
            await asyncio.sleep(delay)
        route = self._session.routes.get(self._url)
        if route is None:
            raise aiohttp.ClientConnectionError(f"no route to {self._url}")
        if isinstance(route, BaseException):
            raise route
        if isinstance(route, int):
            return FakeResponse(route, "")
        return FakeResponse(200, route)

    async def __aexit__(self, *exc):
        return False


def rule_body(index: int) -> str:
    return f"! Title: list {index}\n! comment\n\n||ads{index}.example.com^\n||track{index}.example.org^$third-party\n"


def encoded_list(index: int) -> str:
    return json.dumps([{"trigger": {"url-filter": f"ads{index}"}, "action": {"type": "block"}}])


def set_age(path: Path, seconds: float) -> None:
    t = time.time() - seconds
    os.utime(path, (t, t))


@pytest.fixture
def sources() -> list[Source]:
    return [Source(f"Test list {i}", f"https://lists.example/{i}.txt") for i in range(5)]


@pytest.fixture
def session(sources) -> FakeSession:
    return FakeSession({s.url: rule_body(i) for i, s in enumerate(sources)})


@pytest.fixture
def cache(tmp_path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def store() -> RuleListStore:
    return RuleListStore()


@pytest.fixture
def registry(store) -> RuleListRegistry:
    return RuleListRegistry(store)


@pytest.fixture
def warm_cache(cache, sources) -> CacheStore:
    """A cache holding a valid, one day old file for every source."""
    cache.cache_dir.mkdir(parents=True)
    for i, source in enumerate(sources):
        path = cache.path_for(source.identifier)
        path.write_text(encoded_list(i), encoding="utf-8")
        set_age(path, DAY)
    return cache
