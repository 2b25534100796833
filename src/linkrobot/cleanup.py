"""
Scheduled removal of URL records that outlived the retention period.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from linkrobot.store import Store

logger = logging.getLogger(__name__)


def retention_cutoff(crawlend: int, retentionperiod: int) -> int:
    """Records last crawled strictly before this time are expired."""
    return crawlend - retentionperiod


def run_cleanup(store: Store, reference_time: Optional[int] = None) -> int:
    """
    Delete expired URLs and every edge touching them.

    The cutoff is measured back from the end of the last completed cycle,
    not from ``reference_time``, so URLs fetched by a running cycle are
    never pruned. Returns the number of URLs deleted.
    """
    if reference_time is None:
        reference_time = int(time.time())
    config = store.config.load()
    cutoff = retention_cutoff(config.crawlend, config.retentionperiod)

    with store.transaction():
        expired = store.urls.ids_crawled_before(cutoff)
        edges = store.edges.delete_for_urls(expired)
        store.urls.delete(expired)

    logger.info(
        "Retention cleanup at %s: removed %d urls and %d edges crawled before %s",
        reference_time, len(expired), edges, cutoff,
    )
    return len(expired)
