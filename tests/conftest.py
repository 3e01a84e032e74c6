"""Shared fixtures: cache storage and a scripted stand-in for the network."""

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from shellcache.fetcher import NetworkError
from shellcache.models import RESPONSE_BASIC, CachedResponse, FetchRequest
from shellcache.store import init_store

ORIGIN = "https://creatrid.com"


class FakeFetcher:
    """Answers requests from a URL -> response table and records every call.

    URLs without a route fail like an unreachable network. ``offline``
    makes every request fail.
    """

    def __init__(self, origin: str = ORIGIN) -> None:
        self.origin = origin
        self.routes: dict[str, CachedResponse | Exception] = {}
        self.calls: list[FetchRequest] = []
        self.offline = False

    def route(self, path_or_url: str, body: bytes = b"ok", status: int = 200, **kwargs) -> CachedResponse:
        url = path_or_url if path_or_url.startswith("http") else self.origin + path_or_url
        response = CachedResponse(
            url=url,
            status=status,
            status_text=kwargs.pop("status_text", "OK" if status == 200 else ""),
            headers=kwargs.pop("headers", {"Content-Type": "text/html"}),
            body=body,
            type=kwargs.pop("type", RESPONSE_BASIC),
        )
        self.routes[url] = response
        return response

    def fail(self, path_or_url: str) -> None:
        url = path_or_url if path_or_url.startswith("http") else self.origin + path_or_url
        self.routes[url] = NetworkError(f"connection refused: {url}")

    def fetch(self, request: FetchRequest) -> CachedResponse:
        self.calls.append(request)
        if self.offline:
            raise NetworkError(f"offline: {request.url}")
        result = self.routes.get(request.url)
        if result is None:
            raise NetworkError(f"no route to {request.url}")
        if isinstance(result, Exception):
            raise result
        return result

    def called_urls(self) -> list[str]:
        return [request.url for request in self.calls]

    def close(self) -> None:
        pass


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Create a temporary storage path."""
    return str(tmp_path / "cache.db")


@pytest.fixture
def conn(db_path: str) -> Iterator[sqlite3.Connection]:
    """Create a storage connection with initialized tables."""
    connection = init_store(db_path)
    yield connection
    connection.close()


@pytest.fixture
def fetcher() -> FakeFetcher:
    """Network stand-in with every default shell page reachable."""
    fake = FakeFetcher()
    for path in ("/", "/dashboard", "/sign-in", "/discover", "/pricing", "/blog"):
        fake.route(path, body=f"<html>{path}</html>".encode())
    return fake
