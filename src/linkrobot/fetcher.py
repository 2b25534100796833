"""
Single HTTP fetch with a size ceiling and a total time limit.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import requests

from linkrobot.links import normalize_url
from linkrobot.models import DEFAULT_USER_AGENT, FetchResult

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16 * 1024


class Fetcher:
    """
    Performs one request at a time on a shared ``requests.Session``.

    Redirects are reported, not followed. Network problems never raise:
    they come back as ``httpcode = 0`` with a descriptive ``httpmsg``.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = user_agent
        self.clock = clock

    def close(self) -> None:
        """Close the underlying session."""
        self.session.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def fetch(self, url: str, max_size: int, timeout: float) -> FetchResult:
        """Fetch ``url`` once, reading at most ``max_size`` bytes within ``timeout`` seconds."""
        result = FetchResult(url=url)
        started = self.clock()
        deadline = started + timeout

        try:
            resp = self.session.get(url, timeout=timeout, allow_redirects=False, stream=True)
        except requests.Timeout:
            return self._timed_out(result, timeout, started)
        except requests.RequestException as e:
            return self._failed(result, e, started)

        try:
            result.httpcode = resp.status_code
            result.httpmsg = resp.reason
            content_type = resp.headers.get("content-type") or ""
            result.mimetype = content_type.split(";", 1)[0].strip().lower() or None
            result.encoding = resp.encoding if "charset" in content_type.lower() else None

            if result.is_redirect:
                location = resp.headers.get("location")
                if location:
                    result.redirect = normalize_url(location, url)

            declared = _content_length(resp.headers.get("content-length"))
            if max_size and declared is not None and declared > max_size:
                result.oversize = True
                result.filesize = declared
                result.downloadduration = self.clock() - started
                return result

            body = bytearray()
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                body.extend(chunk)
                if max_size and len(body) > max_size:
                    result.oversize = True
                    break
                if self.clock() > deadline:
                    return self._timed_out(result, timeout, started)

            result.filesize = max(len(body), declared or 0) if result.oversize else len(body)
            result.body = None if result.oversize else bytes(body)
        except requests.Timeout:
            return self._timed_out(result, timeout, started)
        except requests.RequestException as e:
            return self._failed(result, e, started)
        finally:
            resp.close()

        result.downloadduration = self.clock() - started
        return result

    def _timed_out(self, result: FetchResult, timeout: float, started: float) -> FetchResult:
        logger.info("Timed out fetching %s", result.url)
        return _network_failure(
            result,
            f"Operation timed out after {timeout:g} seconds",
            self.clock() - started,
        )

    def _failed(self, result: FetchResult, error: Exception, started: float) -> FetchResult:
        logger.info("Failed fetching %s: %s", result.url, error)
        return _network_failure(
            result,
            f"{type(error).__name__}: {error}",
            self.clock() - started,
        )


def _network_failure(result: FetchResult, message: str, duration: float) -> FetchResult:
    return FetchResult(
        url=result.url,
        httpcode=0,
        httpmsg=message,
        downloadduration=duration,
    )


def _content_length(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None
