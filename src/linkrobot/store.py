"""
SQLite persistence for URLs, link edges, crawl history and crawl config.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from linkrobot.models import (
    CrawlConfig,
    CrawlHistory,
    EdgeRecord,
    FetchResult,
    UrlContext,
    UrlRecord,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS url (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    external INTEGER NOT NULL DEFAULT 0,
    createdate INTEGER NOT NULL,
    lastcrawled INTEGER,
    needscrawl INTEGER,
    httpcode INTEGER NOT NULL DEFAULT 0,
    httpmsg TEXT,
    mimetype TEXT,
    title TEXT,
    filesize INTEGER,
    downloadduration REAL,
    redirect TEXT,
    oversize INTEGER NOT NULL DEFAULT 0,
    courseid INTEGER,
    contextid INTEGER,
    cmid INTEGER,
    ignoreduserid INTEGER,
    ignoredtime INTEGER
);
CREATE INDEX IF NOT EXISTS idx_url_needscrawl ON url(needscrawl, id);
CREATE INDEX IF NOT EXISTS idx_url_lastcrawled ON url(lastcrawled);
CREATE INDEX IF NOT EXISTS idx_url_courseid ON url(courseid);

CREATE TABLE IF NOT EXISTS edge (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    a INTEGER NOT NULL REFERENCES url(id) ON DELETE CASCADE,
    b INTEGER NOT NULL REFERENCES url(id) ON DELETE CASCADE,
    createdate INTEGER NOT NULL,
    UNIQUE(a, b)
);
CREATE INDEX IF NOT EXISTS idx_edge_b ON edge(b);

CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    startcrawl INTEGER NOT NULL,
    endcrawl INTEGER,
    urls INTEGER NOT NULL DEFAULT 0,
    links INTEGER NOT NULL DEFAULT 0,
    broken INTEGER NOT NULL DEFAULT 0,
    oversize INTEGER NOT NULL DEFAULT 0,
    cronticks INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_history_startcrawl ON history(startcrawl);

CREATE TABLE IF NOT EXISTS config (
    name TEXT PRIMARY KEY,
    value TEXT
);
"""

# Broken means no usable code, or a 4xx/5xx
BROKEN_SQL = "(httpcode < 100 OR httpcode >= 400)"

STATE_KEYS = ("crawlstart", "crawlend", "crawltick")


class StorageError(Exception):
    """Raised when a record cannot be read or written."""


def url_from_row(row: sqlite3.Row) -> UrlRecord:
    """Build a ``UrlRecord`` from a ``url`` table row."""
    data = dict(row)
    data["external"] = bool(data["external"])
    data["oversize"] = bool(data["oversize"])
    return UrlRecord(**data)


def _history_from_row(row: sqlite3.Row) -> CrawlHistory:
    return CrawlHistory(**dict(row))


def _chunks(ids: List[int], size: int = 400) -> Iterator[List[int]]:
    # Stay well under sqlite's bound parameter limit
    for i in range(0, len(ids), size):
        yield ids[i:i + size]


class Store:
    """
    Owns the sqlite connection and hands out the per-table stores.

    Writes are autocommitted unless grouped with ``transaction()``.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self._depth = 0
        self.urls = UrlStore(self)
        self.edges = EdgeStore(self)
        self.history = HistoryStore(self)
        self.config = ConfigStore(self)

    @classmethod
    def open(cls, path: str = ":memory:") -> "Store":
        """Open (or create) the database at ``path`` and ensure the schema exists."""
        try:
            conn = sqlite3.connect(path, isolation_level=None, timeout=30)
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {path}: {exc}") from exc
        store = cls(conn)
        store.create_tables()
        return store

    def create_tables(self) -> None:
        """Create any missing tables and indexes."""
        with self._guard():
            self.conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the underlying connection."""
        self.conn.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            logger.error("Storage failure: %s", exc)
            raise StorageError(str(exc)) from exc

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """Group writes; nested calls join the outermost transaction."""
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        with self._guard():
            self.conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            with self._guard():
                self.conn.execute("ROLLBACK")
            raise
        self._depth = 0
        with self._guard():
            self.conn.execute("COMMIT")

    def execute(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> sqlite3.Cursor:
        """Run one statement, wrapping sqlite errors in ``StorageError``."""
        with self._guard():
            return self.conn.execute(sql, params)

    def fetchone(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> Optional[sqlite3.Row]:
        """Run a query and return its first row, if any."""
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> List[sqlite3.Row]:
        """Run a query and return all rows."""
        return self.execute(sql, params).fetchall()

    def scalar(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> Any:
        """Return the first column of the first row, or None."""
        row = self.fetchone(sql, params)
        return row[0] if row is not None else None


class UrlStore:
    """Table of discovered URLs and their crawl state."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, url_id: int) -> Optional[UrlRecord]:
        """Look up a URL by id."""
        row = self.store.fetchone("SELECT * FROM url WHERE id = ?", (url_id,))
        return url_from_row(row) if row else None

    def get_by_url(self, url: str) -> Optional[UrlRecord]:
        """Look up a URL by its normalized address."""
        row = self.store.fetchone("SELECT * FROM url WHERE url = ?", (url,))
        return url_from_row(row) if row else None

    def insert(self, record: UrlRecord) -> UrlRecord:
        """Insert a fully specified record, e.g. when importing."""
        data = record.to_dict()
        data.pop("id")
        columns = list(data)
        cur = self.store.execute(
            f"INSERT INTO url ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            [int(v) if isinstance(v, bool) else v for v in data.values()],
        )
        record.id = cur.lastrowid
        return record

    def ensure_url(
        self,
        url: str,
        now: int,
        context: Optional[UrlContext] = None,
        external: bool = False,
        crawlstart: int = 0,
        queue: bool = True,
    ) -> UrlRecord:
        """
        Record a reference to ``url`` and return its record.

        New URLs are queued immediately unless ``queue`` is false. Known URLs
        keep their fetch results; they are only queued again when never
        crawled, or last crawled before the cycle that started at
        ``crawlstart``.
        """
        context = context or UrlContext()
        with self.store.transaction():
            record = self.get_by_url(url)
            if record is None:
                return self.insert(UrlRecord(
                    url=url,
                    external=external,
                    createdate=now,
                    needscrawl=now if queue else None,
                    courseid=context.courseid,
                    contextid=context.contextid,
                    cmid=context.cmid,
                ))

            updates: Dict[str, Any] = {}
            if record.lastcrawled is None:
                stale = record.needscrawl is None
            else:
                stale = record.lastcrawled < crawlstart
            if queue and stale and (record.needscrawl is None or record.needscrawl > now):
                updates["needscrawl"] = now
            for name in ("courseid", "contextid", "cmid"):
                value = getattr(context, name)
                if value is not None and getattr(record, name) is None:
                    updates[name] = value

            if updates:
                self._update(record.id, updates)
                for name, value in updates.items():
                    setattr(record, name, value)
            return record

    def mark_crawled(
        self,
        url_id: int,
        result: FetchResult,
        now: int,
        needscrawl: Optional[int],
        title: Optional[str] = None,
        context: Optional[UrlContext] = None,
    ) -> None:
        """
        Store the outcome of a fetch attempt.

        Scope ids parsed from the page itself override inherited ones.
        """
        updates: Dict[str, Any] = {
            "httpcode": result.httpcode,
            "httpmsg": result.httpmsg,
            "mimetype": result.mimetype,
            "title": title,
            "filesize": result.filesize,
            "downloadduration": result.downloadduration,
            "redirect": result.redirect,
            "oversize": int(result.oversize),
            "lastcrawled": now,
            "needscrawl": needscrawl,
        }
        if context is not None:
            for name in ("courseid", "contextid", "cmid"):
                value = getattr(context, name)
                if value is not None:
                    updates[name] = value
        self._update(url_id, updates)

    def next_queued(self, now: int) -> Optional[UrlRecord]:
        """Return the URL that is due soonest, or None when nothing is due."""
        row = self.store.fetchone(
            """SELECT * FROM url
                WHERE needscrawl IS NOT NULL AND needscrawl <= ?
             ORDER BY needscrawl ASC, id ASC
                LIMIT 1""",
            (now,),
        )
        return url_from_row(row) if row else None

    def claim(self, url_id: int, expected: Optional[int], lease_until: int) -> bool:
        """Move ``needscrawl`` forward if nobody else changed it first."""
        cur = self.store.execute(
            "UPDATE url SET needscrawl = ? WHERE id = ? AND needscrawl IS ?",
            (lease_until, url_id, expected),
        )
        return cur.rowcount == 1

    def unqueue(self, url_id: int) -> None:
        """Take a URL off the queue without crawling it."""
        self._update(url_id, {"needscrawl": None})

    def release(self, url_id: int, needscrawl: Optional[int]) -> None:
        """Undo a claim, restoring the schedule the URL had before it."""
        self._update(url_id, {"needscrawl": needscrawl})

    def count_leased(self, now: int, lease_until: int, crawlstart: int) -> int:
        """
        URLs claimed by an invocation but not yet crawled in this cycle.

        A claim moves ``needscrawl`` at most ``lease_until`` into the future.
        """
        return self.store.scalar(
            """SELECT COUNT(*) FROM url
                WHERE needscrawl > ? AND needscrawl <= ?
                  AND (lastcrawled IS NULL OR lastcrawled < ?)""",
            (now, lease_until, crawlstart),
        )

    def count_queued(self, now: int) -> int:
        """Number of URLs due at ``now``."""
        return self.store.scalar(
            "SELECT COUNT(*) FROM url WHERE needscrawl IS NOT NULL AND needscrawl <= ?",
            (now,),
        )

    def count(self) -> int:
        """Number of URLs known."""
        return self.store.scalar("SELECT COUNT(*) FROM url")

    def ignore(self, url_id: int, user_id: int, now: int) -> bool:
        """Suppress broken-link alerts for a URL. Returns False if it does not exist."""
        cur = self.store.execute(
            "UPDATE url SET ignoreduserid = ?, ignoredtime = ? WHERE id = ?",
            (user_id, now, url_id),
        )
        return cur.rowcount == 1

    def unignore(self, url_id: int) -> bool:
        """Restore broken-link alerts for a URL. Returns False if it does not exist."""
        cur = self.store.execute(
            "UPDATE url SET ignoreduserid = NULL, ignoredtime = NULL WHERE id = ?",
            (url_id,),
        )
        return cur.rowcount == 1

    # Cycle aggregates, all relative to the cycle start

    def count_crawled_since(self, since: int) -> int:
        """URLs fetched at or after ``since``."""
        return self.store.scalar(
            "SELECT COUNT(*) FROM url WHERE lastcrawled >= ?", (since,)
        )

    def count_broken_since(self, since: int) -> int:
        """Broken URLs fetched at or after ``since``."""
        return self.store.scalar(
            f"SELECT COUNT(*) FROM url WHERE lastcrawled >= ? AND {BROKEN_SQL}", (since,)
        )

    def count_oversize_since(self, since: int) -> int:
        """Oversize URLs fetched at or after ``since``."""
        return self.store.scalar(
            "SELECT COUNT(*) FROM url WHERE lastcrawled >= ? AND oversize = 1", (since,)
        )

    def ids_crawled_before(self, cutoff: int) -> List[int]:
        """Ids of URLs last fetched strictly before ``cutoff``."""
        return [row[0] for row in self.store.fetchall(
            "SELECT id FROM url WHERE lastcrawled < ? ORDER BY id", (cutoff,)
        )]

    def delete(self, url_ids: Iterable[int]) -> int:
        """Delete URLs by id. Returns the number removed."""
        deleted = 0
        for chunk in _chunks(list(url_ids)):
            cur = self.store.execute(
                f"DELETE FROM url WHERE id IN ({', '.join('?' * len(chunk))})", chunk
            )
            deleted += cur.rowcount
        return deleted

    def _update(self, url_id: int, data: Dict[str, Any]) -> None:
        assignments = ", ".join(f"{column} = ?" for column in data)
        self.store.execute(
            f"UPDATE url SET {assignments} WHERE id = ?",
            [*data.values(), url_id],
        )


class EdgeStore:
    """Directed link graph between URL records."""

    def __init__(self, store: Store):
        self.store = store

    def add_edge(self, source_id: int, target_id: int, now: int) -> None:
        """Record that ``source_id`` links to ``target_id``; repeats are ignored."""
        self.store.execute(
            "INSERT OR IGNORE INTO edge (a, b, createdate) VALUES (?, ?, ?)",
            (source_id, target_id, now),
        )

    def get(self, source_id: int, target_id: int) -> Optional[EdgeRecord]:
        """Look up the edge between two URLs."""
        row = self.store.fetchone(
            "SELECT * FROM edge WHERE a = ? AND b = ?", (source_id, target_id)
        )
        return EdgeRecord(**dict(row)) if row else None

    def targets(self, source_id: int) -> List[UrlRecord]:
        """URLs linked from ``source_id``."""
        rows = self.store.fetchall(
            """SELECT u.* FROM edge e JOIN url u ON u.id = e.b
                WHERE e.a = ? ORDER BY u.id""",
            (source_id,),
        )
        return [url_from_row(row) for row in rows]

    def sources(self, target_id: int) -> List[UrlRecord]:
        """URLs linking to ``target_id``."""
        rows = self.store.fetchall(
            """SELECT u.* FROM edge e JOIN url u ON u.id = e.a
                WHERE e.b = ? ORDER BY u.id""",
            (target_id,),
        )
        return [url_from_row(row) for row in rows]

    def count(self) -> int:
        """Number of edges."""
        return self.store.scalar("SELECT COUNT(*) FROM edge")

    def count_links_since(self, since: int) -> int:
        """Edges found on pages crawled during the current cycle."""
        return self.store.scalar(
            """SELECT COUNT(*) FROM edge e JOIN url a ON a.id = e.a
                WHERE a.lastcrawled >= ?""",
            (since,),
        )

    def delete_for_urls(self, url_ids: Iterable[int]) -> int:
        """Delete every edge touching the given URLs. Returns the number removed."""
        deleted = 0
        for chunk in _chunks(list(url_ids)):
            marks = ", ".join("?" * len(chunk))
            cur = self.store.execute(
                f"DELETE FROM edge WHERE a IN ({marks}) OR b IN ({marks})",
                chunk + chunk,
            )
            deleted += cur.rowcount
        return deleted


class HistoryStore:
    """One row per crawl cycle."""

    def __init__(self, store: Store):
        self.store = store

    def create(self, history: CrawlHistory) -> CrawlHistory:
        """Insert a new history row and set its id."""
        cur = self.store.execute(
            """INSERT INTO history (startcrawl, endcrawl, urls, links, broken, oversize, cronticks)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (history.startcrawl, history.endcrawl, history.urls, history.links,
             history.broken, history.oversize, history.cronticks),
        )
        history.id = cur.lastrowid
        return history

    def get_by_start(self, startcrawl: int) -> Optional[CrawlHistory]:
        """Latest history row for the cycle that started at ``startcrawl``."""
        row = self.store.fetchone(
            "SELECT * FROM history WHERE startcrawl = ? ORDER BY id DESC LIMIT 1",
            (startcrawl,),
        )
        return _history_from_row(row) if row else None

    def update(self, history: CrawlHistory) -> None:
        """Write the counters and end time back."""
        self.store.execute(
            """UPDATE history
                  SET endcrawl = ?, urls = ?, links = ?, broken = ?, oversize = ?, cronticks = ?
                WHERE id = ?""",
            (history.endcrawl, history.urls, history.links, history.broken,
             history.oversize, history.cronticks, history.id),
        )

    def count(self) -> int:
        """Number of cycles recorded."""
        return self.store.scalar("SELECT COUNT(*) FROM history")

    def recent(self, limit: int = 10) -> List[CrawlHistory]:
        """Most recent cycles first."""
        rows = self.store.fetchall(
            "SELECT * FROM history ORDER BY startcrawl DESC, id DESC LIMIT ?", (limit,)
        )
        return [_history_from_row(row) for row in rows]


class ConfigStore:
    """Persisted key/value crawl settings and state."""

    def __init__(self, store: Store):
        self.store = store

    def load(self) -> CrawlConfig:
        """Read settings and state, falling back to defaults."""
        rows = self.store.fetchall("SELECT name, value FROM config")
        return CrawlConfig.from_mapping({row["name"]: row["value"] for row in rows})

    def save(self, config: CrawlConfig) -> None:
        """Write every setting and state value."""
        with self.store.transaction():
            for name, value in config.to_mapping().items():
                self._put(name, value)

    def save_state(self, config: CrawlConfig) -> None:
        """Persist only the cycle markers, leaving settings alone."""
        with self.store.transaction():
            for name in STATE_KEYS:
                self._put(name, str(getattr(config, name)))

    def set_value(self, name: str, value: Any) -> None:
        """Set a single key, validating it against ``CrawlConfig``."""
        if name not in CrawlConfig.field_names():
            raise ValueError(f"Unknown setting: {name}")
        current = self.load().to_mapping()
        current[name] = str(value)
        # Round-trip through the dataclass so bad values fail here
        checked = CrawlConfig.from_mapping(current).to_mapping()[name]
        self._put(name, checked)

    def _put(self, name: str, value: str) -> None:
        self.store.execute(
            """INSERT INTO config (name, value) VALUES (?, ?)
               ON CONFLICT(name) DO UPDATE SET value = excluded.value""",
            (name, value),
        )
