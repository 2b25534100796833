"""
Read-only queries behind the health reports: summary, status and listings.
"""
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

from linkrobot.models import BROKEN_BUCKETS, STATUS_BUCKETS, QueueStatus, UrlRecord, status_bucket
from linkrobot.store import BROKEN_SQL, Store, url_from_row

# One row per link from a page in the given scope
SCOPED_LINKS = """
      FROM url b
      JOIN edge l ON l.b = b.id
      JOIN url a ON a.id = l.a
     WHERE a.courseid = ?
"""


def get_summary(store: Store, scope_id: int) -> Dict[str, Any]:
    """
    Summarize links found on pages belonging to ``scope_id``.

    ``broken`` maps every status class ("0", "2", "3", "4", "5") to the
    number of links into it, so a URL linked from two pages counts twice;
    classes with no links report 0. ``large`` lists oversize targets and
    ``nearby`` lists broken targets that nobody has chosen to ignore, each
    target once.
    """
    broken: Dict[str, int] = {bucket: 0 for bucket in STATUS_BUCKETS}
    for row in store.fetchall("SELECT b.httpcode" + SCOPED_LINKS, (scope_id,)):
        bucket = status_bucket(row["httpcode"])
        broken[bucket] = broken.get(bucket, 0) + 1

    targets = [url_from_row(row) for row in store.fetchall(
        "SELECT DISTINCT b.*" + SCOPED_LINKS + " ORDER BY b.id", (scope_id,)
    )]

    return {
        "broken": broken,
        "large": [r for r in targets if r.oversize],
        "nearby": [
            r for r in targets
            if r.lastcrawled is not None
            and status_bucket(r.httpcode) in BROKEN_BUCKETS
            and not r.ignored
        ],
    }


def get_status(store: Store, now: Optional[int] = None, history_limit: int = 5) -> QueueStatus:
    """Current cycle state, queue size and recent history."""
    if now is None:
        now = int(time.time())
    config = store.config.load()
    recent = store.history.recent(history_limit)
    return QueueStatus(
        running=config.running,
        crawlstart=config.crawlstart,
        crawlend=config.crawlend,
        crawltick=config.crawltick,
        queued=store.urls.count_queued(now),
        total=store.urls.count(),
        history=recent[0] if recent else None,
        recent=recent,
    )


def _scope(courseid: Optional[int]) -> Tuple[str, List[Any]]:
    if courseid is None:
        return "", []
    return (
        """ AND EXISTS (SELECT 1 FROM edge l JOIN url a ON a.id = l.a
                         WHERE l.b = url.id AND a.courseid = ?)""",
        [courseid],
    )


def _listing(store: Store, where: str, params: List[Any], order: str,
             courseid: Optional[int], limit: int) -> List[UrlRecord]:
    scope_sql, scope_params = _scope(courseid)
    rows = store.fetchall(
        f"SELECT * FROM url WHERE {where}{scope_sql} ORDER BY {order} LIMIT ?",
        params + scope_params + [limit],
    )
    return [url_from_row(row) for row in rows]


def queued_urls(store: Store, now: Optional[int] = None, courseid: Optional[int] = None,
                limit: int = 100) -> List[UrlRecord]:
    """URLs waiting to be crawled, in the order they will be taken."""
    if now is None:
        now = int(time.time())
    return _listing(store, "needscrawl IS NOT NULL AND needscrawl <= ?", [now],
                    "needscrawl ASC, id ASC", courseid, limit)


def recent_urls(store: Store, courseid: Optional[int] = None, limit: int = 100) -> List[UrlRecord]:
    """Most recently crawled URLs first."""
    return _listing(store, "lastcrawled IS NOT NULL", [],
                    "lastcrawled DESC, id DESC", courseid, limit)


def broken_urls(store: Store, courseid: Optional[int] = None, include_ignored: bool = False,
                limit: int = 100) -> List[UrlRecord]:
    """Crawled URLs with a broken status, newest first."""
    where = f"lastcrawled IS NOT NULL AND {BROKEN_SQL}"
    if not include_ignored:
        where += " AND ignoredtime IS NULL"
    return _listing(store, where, [], "lastcrawled DESC, id DESC", courseid, limit)


def oversize_urls(store: Store, courseid: Optional[int] = None, include_ignored: bool = False,
                  limit: int = 100) -> List[UrlRecord]:
    """URLs that exceeded the size ceiling, largest first."""
    where = "oversize = 1"
    if not include_ignored:
        where += " AND ignoredtime IS NULL"
    return _listing(store, where, [], "filesize DESC, id ASC", courseid, limit)


REPORTS = {
    "queued": queued_urls,
    "recent": recent_urls,
    "broken": broken_urls,
    "oversize": oversize_urls,
}
