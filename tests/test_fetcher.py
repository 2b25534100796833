import pytest
import requests

from conftest import FakeClock, FakeResponse, FakeSession
from linkrobot.fetcher import Fetcher

URL = "http://example.com/page"


def make_fetcher(response, clock=None):
    session = FakeSession({URL: response})
    return Fetcher(user_agent="TestBot/1.0", session=session, clock=clock or FakeClock()), session


def test_html_page_is_read():
    resp = FakeResponse(
        headers={"Content-Type": "text/html; charset=utf-8", "Content-Length": "13"},
        chunks=[b"<html>", b"</html>"],
        encoding="utf-8",
    )
    fetcher, session = make_fetcher(resp)

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 200
    assert result.httpmsg == "OK"
    assert result.mimetype == "text/html"
    assert result.encoding == "utf-8"
    assert result.body == b"<html></html>"
    assert result.filesize == 13
    assert not result.oversize
    assert resp.closed
    assert session.headers["User-Agent"] == "TestBot/1.0"
    sent = session.requests[0]
    assert sent["allow_redirects"] is False
    assert sent["stream"] is True
    assert sent["timeout"] == 5


def test_oversize_by_declared_length():
    resp = FakeResponse(headers={"Content-Type": "application/pdf", "Content-Length": "2000"},
                        chunks=[b"x" * 2000])
    fetcher, _ = make_fetcher(resp)

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.oversize
    assert result.filesize == 2000
    assert result.body is None
    assert not resp.iterated
    assert resp.closed


def test_oversize_while_streaming():
    resp = FakeResponse(headers={"Content-Type": "text/html"}, chunks=[b"x" * 600] * 3)
    fetcher, _ = make_fetcher(resp)

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 200
    assert result.oversize
    assert result.filesize == 1200
    assert result.body is None


def test_zero_ceiling_means_unlimited():
    resp = FakeResponse(headers={"Content-Length": "5000"}, chunks=[b"x" * 5000])
    fetcher, _ = make_fetcher(resp)

    result = fetcher.fetch(URL, max_size=0, timeout=5)

    assert not result.oversize
    assert result.filesize == 5000


def test_redirect_is_reported_not_followed():
    resp = FakeResponse(status_code=301, reason="Moved Permanently", headers={"Location": "/new#top"})
    fetcher, session = make_fetcher(resp)

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 301
    assert result.redirect == "http://example.com/new"
    assert len(session.requests) == 1


def test_not_found():
    resp = FakeResponse(status_code=404, reason="Not Found", headers={"Content-Type": "text/html"},
                        chunks=[b"missing"])
    fetcher, _ = make_fetcher(resp)

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 404
    assert result.httpmsg == "Not Found"
    assert result.body == b"missing"


def test_connect_timeout():
    fetcher, _ = make_fetcher(requests.ConnectTimeout("slow"))

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 0
    assert result.httpmsg == "Operation timed out after 5 seconds"
    assert result.body is None


def test_total_deadline_while_streaming():
    resp = FakeResponse(headers={"Content-Type": "text/html"}, chunks=[b"a", b"b", b"c"])
    # Each clock read moves time on by 3 seconds
    fetcher, _ = make_fetcher(resp, clock=FakeClock(start=0, step=3))

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 0
    assert result.httpmsg == "Operation timed out after 5 seconds"
    assert resp.closed


def test_connection_error():
    fetcher, _ = make_fetcher(requests.ConnectionError("Connection refused"))

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 0
    assert result.httpmsg == "ConnectionError: Connection refused"
    assert result.mimetype is None


def test_error_while_reading_body():
    resp = FakeResponse(headers={"Content-Type": "text/html"}, chunks=[b"part"],
                        error=requests.exceptions.ChunkedEncodingError("broken stream"))
    fetcher, _ = make_fetcher(resp)

    result = fetcher.fetch(URL, max_size=1000, timeout=5)

    assert result.httpcode == 0
    assert result.httpmsg.startswith("ChunkedEncodingError")
    assert resp.closed


@pytest.mark.parametrize("content_type, expected", [
    ("text/html; charset=ISO-8859-1", "text/html"),
    ("IMAGE/PNG", "image/png"),
    ("", None),
])
def test_mimetype_parsing(content_type, expected):
    resp = FakeResponse(headers={"Content-Type": content_type}, chunks=[b"x"])
    fetcher, _ = make_fetcher(resp)

    assert fetcher.fetch(URL, max_size=1000, timeout=5).mimetype == expected
