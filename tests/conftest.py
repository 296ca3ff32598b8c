from __future__ import annotations

import hashlib
import http
import json
import pathlib
from typing import Any, Callable

import pytest
import requests

from image_pull.backends.base import Backend, Identity
from image_pull.cache import LIBRARY, CacheHandle
from image_pull.finalize import open_output_image


def pytest_addoption(parser: pytest.Parser):
    parser.addoption(
        "--skip-slow", action="store_true", default=False, help="skip slow tests"
    )


def pytest_configure(config: pytest.Config):
    config.addinivalue_line("markers", "slow: mark test as slow to run")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]):
    skip_slow = pytest.mark.skip(reason="skip-slow requested")
    for item in items:
        if "slow" in item.keywords and config.getoption("--skip-slow"):
            item.add_marker(skip_slow)


def sha256_of(content: bytes, sep: str = ":") -> str:
    return f"sha256{sep}{hashlib.sha256(content).hexdigest()}"


class FakeBackend(Backend):
    """in-memory backend counting its calls

    `served` is what fetch writes (defaults to content); `fail` makes fetch
    write half of it then raise."""

    namespace = LIBRARY
    verifiable = True

    def __init__(
        self,
        content: bytes = b"SIF image content\n" * 64,
        identifier: str | None = None,
        name: str = "alpine_latest.sif",
        served: bytes | None = None,
        fail: bool = False,
        on_fetch: Callable[[pathlib.Path], None] | None = None,
    ):
        self.content = content
        self.identifier = identifier or sha256_of(content)
        self.name = name
        self.served = content if served is None else served
        self.fail = fail
        self.on_fetch = on_fetch
        self.identified: list[str] = []
        self.fetched: list[pathlib.Path] = []
        self.no_cache: list[bool] = []

    def identify(self, reference: str) -> Identity:
        self.identified.append(reference)
        if not reference.startswith("library://"):
            raise ValueError(f"Invalid library reference `{reference}`")
        return Identity(identifier=self.identifier, name=self.name)

    def fetch(
        self,
        identity: Identity,
        reference: str,
        dest: pathlib.Path,
        no_cache: bool = False,
    ):
        self.fetched.append(dest)
        self.no_cache.append(no_cache)
        with open_output_image(dest) as fh:
            if self.fail:
                fh.write(self.served[: len(self.served) // 2])
                raise OSError("Connection reset by peer")
            fh.write(self.served)
        if self.on_fetch:
            self.on_fetch(dest)


class FakeResponse:
    def __init__(
        self,
        status_code: int = http.HTTPStatus.OK,
        payload: Any = None,
        content: bytes = b"",
        headers: dict[str, str] | None = None,
    ):
        self.status_code = status_code
        self.reason = http.HTTPStatus(status_code).phrase
        self.payload = payload
        self.content = content if payload is None else json.dumps(payload).encode()
        self.headers = headers or {}
        self.text = self.content.decode("utf-8", errors="replace")

    def json(self):
        return json.loads(self.content)

    def iter_content(self, chunk_size: int = 1):
        for index in range(0, len(self.content), chunk_size):
            yield self.content[index : index + chunk_size]

    def raise_for_status(self):
        if self.status_code >= 400:  # noqa: PLR2004
            raise requests.HTTPError(f"{self.status_code} {self.reason}")


class FakeRegistry:
    """answers requests.get calls from a {url-suffix: response} mapping"""

    def __init__(self, routes: dict[str, Any]):
        self.routes = routes
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        for suffix, response in self.routes.items():
            if url.endswith(suffix):
                return response
        raise requests.ConnectionError(f"No route to {url}")


@pytest.fixture
def cache(tmp_path: pathlib.Path) -> CacheHandle:
    return CacheHandle(root=tmp_path / "cache")


@pytest.fixture
def disabled_cache(tmp_path: pathlib.Path) -> CacheHandle:
    return CacheHandle(root=tmp_path / "cache", disabled=True)


@pytest.fixture
def make_backend() -> Callable[..., FakeBackend]:
    return FakeBackend


@pytest.fixture
def fake_response() -> type[FakeResponse]:
    return FakeResponse


@pytest.fixture
def digest_of() -> Callable[..., str]:
    return sha256_of


@pytest.fixture
def registry(monkeypatch: pytest.MonkeyPatch) -> Callable[..., FakeRegistry]:
    def install(routes: dict[str, Any]) -> FakeRegistry:
        fake = FakeRegistry(routes)
        monkeypatch.setattr(requests, "get", fake.get)
        return fake

    return install
