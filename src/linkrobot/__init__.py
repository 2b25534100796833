"""
Polite, resumable link checker that crawls a site in bounded ticks.
Records HTTP status, size and outbound links per URL and reports broken
and oversized links.
"""
from linkrobot.cleanup import run_cleanup
from linkrobot.core import Crawler, run_tick
from linkrobot.fetcher import Fetcher
from linkrobot.models import (
    CrawlConfig,
    CrawlHistory,
    EdgeRecord,
    FetchResult,
    QueueStatus,
    UrlContext,
    UrlRecord,
    status_bucket,
)
from linkrobot.reports import get_status, get_summary
from linkrobot.store import StorageError, Store

__version__ = "1.0.0"
__all__ = [
    "run_tick",
    "run_cleanup",
    "get_summary",
    "get_status",
    "Crawler",
    "Fetcher",
    "Store",
    "StorageError",
    "CrawlConfig",
    "CrawlHistory",
    "EdgeRecord",
    "FetchResult",
    "QueueStatus",
    "UrlContext",
    "UrlRecord",
    "status_bucket",
]
