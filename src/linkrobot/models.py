"""
Data structures shared by the crawl engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

DEFAULT_USER_AGENT = "LinkRobot/1.0"

# Leading digits reported by the summary, always present even when empty
STATUS_BUCKETS: tuple[str, ...] = ("0", "2", "3", "4", "5")
BROKEN_BUCKETS: frozenset[str] = frozenset(("0", "4", "5"))


def status_bucket(httpcode: Optional[int]) -> str:
    """Return the status class of an HTTP code ("0" for no usable code)."""
    if httpcode is None or not 100 <= httpcode <= 999:
        return "0"
    return str(httpcode)[0]


def is_broken(httpcode: Optional[int]) -> bool:
    """True for network failures and 4xx/5xx codes."""
    return status_bucket(httpcode) in BROKEN_BUCKETS


@dataclass(slots=True)
class UrlContext:
    """Optional scope associations carried from a referring page."""
    courseid: Optional[int] = None
    contextid: Optional[int] = None
    cmid: Optional[int] = None

    def is_empty(self) -> bool:
        """True when no scope id is set."""
        return self.courseid is None and self.contextid is None and self.cmid is None


@dataclass(slots=True)
class UrlRecord:
    """A discovered URL and the outcome of its last fetch."""
    url: str
    id: Optional[int] = None
    external: bool = False
    createdate: int = 0
    lastcrawled: Optional[int] = None
    needscrawl: Optional[int] = None
    httpcode: int = 0
    httpmsg: Optional[str] = None
    mimetype: Optional[str] = None
    title: Optional[str] = None
    filesize: Optional[int] = None
    downloadduration: Optional[float] = None
    redirect: Optional[str] = None
    oversize: bool = False
    courseid: Optional[int] = None
    contextid: Optional[int] = None
    cmid: Optional[int] = None
    ignoreduserid: Optional[int] = None
    ignoredtime: Optional[int] = None

    @property
    def context(self) -> UrlContext:
        """Scope ids as a ``UrlContext``."""
        return UrlContext(self.courseid, self.contextid, self.cmid)

    @property
    def broken(self) -> bool:
        """True once fetched with a broken status."""
        return self.lastcrawled is not None and is_broken(self.httpcode)

    @property
    def ignored(self) -> bool:
        """True while alerts are suppressed."""
        return self.ignoredtime is not None

    def to_dict(self) -> Dict[str, Any]:
        """Field values keyed by column name."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(slots=True)
class EdgeRecord:
    """Page ``a`` links to page ``b``."""
    a: int
    b: int
    id: Optional[int] = None
    createdate: int = 0


@dataclass(slots=True)
class CrawlHistory:
    """Counters for one crawl cycle."""
    startcrawl: int
    id: Optional[int] = None
    endcrawl: Optional[int] = None
    urls: int = 0
    links: int = 0
    broken: int = 0
    oversize: int = 0
    cronticks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Field values keyed by column name."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(slots=True)
class FetchResult:
    """Outcome of a single HTTP request."""
    url: str
    httpcode: int = 0
    httpmsg: Optional[str] = None
    mimetype: Optional[str] = None
    body: Optional[bytes] = None
    filesize: Optional[int] = None
    downloadduration: float = 0.0
    redirect: Optional[str] = None
    oversize: bool = False
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True for 2xx responses."""
        return 200 <= self.httpcode < 300

    @property
    def is_redirect(self) -> bool:
        """True for 3xx responses."""
        return 300 <= self.httpcode < 400


@dataclass(slots=True)
class CrawlConfig:
    """
    Settings and cycle state of the crawler.

    Loaded from the ``config`` table at the start of a tick, passed through
    the crawler and returned updated; the store persists it in between.
    """
    # Settings
    wwwroot: str = ""
    seedurl: str = "/"
    maxcrontime: int = 60
    maxurls: int = 100
    maxurlsize: int = 1024 * 1024
    retentionperiod: int = 7 * 24 * 3600
    timeout: int = 30
    useragent: str = DEFAULT_USER_AGENT
    recrawlinterval: int = 7 * 24 * 3600
    retrydelay: int = 3600
    brokenretry: int = 0
    checkexternal: bool = False
    excludeurls: str = ""
    # State
    crawlstart: int = 0
    crawlend: int = 0
    crawltick: int = 0

    @property
    def running(self) -> bool:
        """A cycle is active while its start is newer than the last end."""
        return bool(self.crawlstart) and self.crawlstart > self.crawlend

    @property
    def exclude_patterns(self) -> List[str]:
        """Non-blank lines of ``excludeurls``."""
        return [line.strip() for line in self.excludeurls.splitlines() if line.strip()]

    @classmethod
    def from_mapping(cls, values: Dict[str, str]) -> "CrawlConfig":
        """Build a config from stored string values, ignoring unknown keys."""
        known = {f.name: f for f in fields(cls)}
        kwargs = {
            key: coerce_value(known[key].type, raw)
            for key, raw in values.items()
            if key in known
        }
        return cls(**kwargs)

    def to_mapping(self) -> Dict[str, str]:
        """Serialize every field to the strings stored in the config table."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = ("1" if value else "0") if isinstance(value, bool) else str(value)
        return result

    @classmethod
    def field_names(cls) -> List[str]:
        """Names of every setting and state field."""
        return [f.name for f in fields(cls)]


def coerce_value(type_name: Any, raw: str) -> Any:
    """Convert a stored string back to the annotated field type."""
    # Annotations are strings under postponed evaluation
    type_name = getattr(type_name, "__name__", type_name)
    if type_name == "bool":
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if type_name == "int":
        try:
            return int(float(raw)) if raw not in (None, "") else 0
        except ValueError:
            raise ValueError(f"Expected an integer, got {raw!r}") from None
    return "" if raw is None else str(raw)


@dataclass(slots=True)
class QueueStatus:
    """Snapshot of the crawl for status displays."""
    running: bool
    crawlstart: int
    crawlend: int
    crawltick: int
    queued: int
    total: int
    history: Optional[CrawlHistory] = None
    recent: List[CrawlHistory] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form, with history rows expanded."""
        return {
            "running": self.running,
            "crawlstart": self.crawlstart,
            "crawlend": self.crawlend,
            "crawltick": self.crawltick,
            "queued": self.queued,
            "total": self.total,
            "history": self.history.to_dict() if self.history else None,
            "recent": [h.to_dict() for h in self.recent],
        }
