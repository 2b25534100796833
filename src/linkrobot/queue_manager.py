"""
Hands out queued URLs one at a time, within a per-invocation ceiling.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from linkrobot.models import UrlRecord
from linkrobot.store import UrlStore

logger = logging.getLogger(__name__)

# Give up on a candidate after this many lost claims in a row
MAX_CLAIM_ATTEMPTS = 10


class QueueManager:
    """
    Wraps ``UrlStore.next_queued`` with a lease and a ``maxurls`` ceiling.

    Each URL handed out is claimed first by pushing its ``needscrawl``
    forward to ``now + lease``, so an overlapping invocation will not pick
    it up while it is being fetched. Once ``maxurls`` URLs have been taken
    the queue is ``paused`` for the rest of this invocation.
    """

    def __init__(self, urls: UrlStore, maxurls: int, lease: int, clock: Callable[[], float]):
        self.urls = urls
        self.maxurls = maxurls
        self.lease = lease
        self.clock = clock
        self.taken = 0
        self.paused = False

    @property
    def limit_reached(self) -> bool:
        """True once ``maxurls`` URLs were handed out."""
        return bool(self.maxurls) and self.taken >= self.maxurls

    def take_next(self) -> Optional[UrlRecord]:
        """Claim and return the next due URL, or None when done or paused."""
        now = int(self.clock())
        if self.limit_reached:
            self.paused = self.urls.count_queued(now) > 0
            return None

        for _ in range(MAX_CLAIM_ATTEMPTS):
            record = self.urls.next_queued(now)
            if record is None:
                return None
            if self.urls.claim(record.id, record.needscrawl, now + self.lease):
                self.taken += 1
                return record
            logger.debug("Lost claim on %s, trying the next URL", record.url)
        return None

    def has_more(self) -> bool:
        """Whether due work remains within the ceiling."""
        now = int(self.clock())
        queued = self.urls.count_queued(now) > 0
        if self.limit_reached:
            self.paused = queued
            return False
        return queued
