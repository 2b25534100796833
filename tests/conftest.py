from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from linkrobot.models import CrawlConfig, FetchResult
from linkrobot.store import Store

ROOT = "http://example.com"


class FakeClock:
    """Frozen clock that only moves when told to (or by ``step`` per call)."""

    def __init__(self, start: float = 1_000_000.0, step: float = 0.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        reason: str = "OK",
        headers: Optional[Dict[str, str]] = None,
        chunks: Iterable[bytes] = (),
        encoding: Optional[str] = None,
        error: Optional[Exception] = None,
    ):
        self.status_code = status_code
        self.reason = reason
        self.headers = CaseInsensitiveDict(headers or {})
        self.chunks = list(chunks)
        self.encoding = encoding
        self.error = error
        self.closed = False
        self.iterated = False

    def iter_content(self, chunk_size: int = 1):
        self.iterated = True
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for ``requests.Session``; maps URLs to responses or exceptions."""

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.headers: Dict[str, str] = {}
        self.responses = responses or {}
        self.requests: List[dict] = []
        self.closed = False

    def get(self, url, **kwargs):
        self.requests.append({"url": url, **kwargs})
        outcome = self.responses.get(url)
        if outcome is None:
            raise requests.ConnectionError(f"No route to {url}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


class ScriptedFetcher:
    """Returns canned results; unknown URLs are 404s."""

    def __init__(self, results: Optional[Dict[str, FetchResult]] = None):
        self.results = results or {}
        self.calls: List[str] = []
        self.closed = False

    def fetch(self, url: str, max_size: int, timeout: float) -> FetchResult:
        self.calls.append(url)
        if url in self.results:
            return self.results[url]
        return FetchResult(url=url, httpcode=404, httpmsg="Not Found", mimetype="text/html")

    def close(self) -> None:
        self.closed = True


def html_page(links: Iterable[str] = (), title: str = "Page", body_class: str = "") -> bytes:
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f'<body class="{body_class}">{anchors}</body></html>'
    ).encode("utf-8")


def page(url: str, links: Iterable[str] = (), **kwargs) -> FetchResult:
    body = html_page(links, **kwargs)
    return FetchResult(
        url=url,
        httpcode=200,
        httpmsg="OK",
        mimetype="text/html",
        body=body,
        filesize=len(body),
        downloadduration=0.01,
    )


@pytest.fixture
def store():
    with Store.open(":memory:") as s:
        yield s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(store):
    cfg = CrawlConfig(wwwroot=ROOT, seedurl="/", maxurls=0, timeout=5)
    store.config.save(cfg)
    return cfg
