"""
Crawl orchestration: cycle lifecycle and the per-invocation tick loop.
"""
from __future__ import annotations

import logging
import re
import sys
import time
from dataclasses import replace
from typing import Callable, List, Optional, Pattern, Tuple

from linkrobot.fetcher import Fetcher
from linkrobot.links import extract_links, is_external, is_html, normalize_url, parse_page
from linkrobot.models import CrawlConfig, CrawlHistory, FetchResult, UrlContext, UrlRecord, is_broken
from linkrobot.queue_manager import QueueManager
from linkrobot.store import StorageError, Store

logger = logging.getLogger(__name__)

# Minimum time a claimed URL stays out of other invocations' reach
MIN_LEASE = 60


def print_scan_line(url: str, status: Optional[int], new_links: int) -> None:
    """Print single scan result line."""
    status_str = str(status) if status else "ERR"
    sys.stderr.write(f"  → {status_str} {url} (+{new_links} links)\n")
    sys.stderr.flush()


class Crawler:
    """
    Drives queue items end to end: fetch, extract, persist, enqueue.

    The crawler works on its own copy of ``config``; ``run()`` returns the
    updated copy and every state change is also written through the store.
    """

    def __init__(
        self,
        store: Store,
        config: CrawlConfig,
        fetcher: Optional[Fetcher] = None,
        clock: Callable[[], float] = time.time,
        verbose: bool = False,
    ):
        self.store = store
        self.config = replace(config)
        self.fetcher = fetcher or Fetcher(user_agent=config.useragent)
        self.clock = clock
        self.verbose = verbose
        self.root, self.seed = self._resolve_seed(config)
        self.excludes = _compile_excludes(config.exclude_patterns)
        self.queue = QueueManager(
            store.urls,
            maxurls=config.maxurls,
            lease=max(MIN_LEASE, 2 * config.timeout),
            clock=clock,
        )

    def now(self) -> int:
        """Current time in whole epoch seconds."""
        return int(self.clock())

    @staticmethod
    def _resolve_seed(config: CrawlConfig) -> Tuple[str, str]:
        root = normalize_url(config.wwwroot) if config.wwwroot else None
        seed = normalize_url(config.seedurl, root)
        if not seed:
            raise ValueError(f"Invalid seed URL: {config.seedurl!r} (wwwroot {config.wwwroot!r})")
        return root or seed, seed

    def is_excluded(self, url: str) -> bool:
        """True when the URL matches an exclude pattern."""
        return any(pattern.search(url) for pattern in self.excludes)

    # Cycle lifecycle

    def start_cycle(self) -> CrawlHistory:
        """Begin a new cycle: mark the start, queue the seed, open a history row."""
        start = self.now()
        self.config.crawlstart = start
        with self.store.transaction():
            self.store.config.save_state(self.config)
            self.store.urls.ensure_url(self.seed, start, crawlstart=start)
            history = self.store.history.create(CrawlHistory(startcrawl=start))
        logger.info("Started crawl cycle at %s from %s", start, self.seed)
        return history

    def current_history(self) -> CrawlHistory:
        """History row of the running cycle, created if it went missing."""
        history = self.store.history.get_by_start(self.config.crawlstart)
        if history is None:
            logger.warning("No history for running cycle %s, creating one", self.config.crawlstart)
            history = self.store.history.create(CrawlHistory(startcrawl=self.config.crawlstart))
        return history

    def end_cycle(self, history: CrawlHistory) -> None:
        """Close the cycle: mark the end time in the state and history row."""
        end = self.now()
        self.config.crawlend = end
        history.endcrawl = end
        self.store.config.save_state(self.config)
        logger.info("Crawl cycle %s finished at %s", self.config.crawlstart, end)

    def update_history(self, history: CrawlHistory) -> CrawlHistory:
        """Recompute the cycle counters from the stores."""
        since = self.config.crawlstart
        history.urls = self.store.urls.count_crawled_since(since)
        history.links = self.store.edges.count_links_since(since)
        history.broken = self.store.urls.count_broken_since(since)
        history.oversize = self.store.urls.count_oversize_since(since)
        history.cronticks += 1
        self.store.history.update(history)
        return history

    # Queue processing

    def process_queue(self) -> bool:
        """Crawl one queued URL. Returns whether more work is waiting."""
        record = self.queue.take_next()
        if record is None:
            return self.queue.has_more()
        self.crawl(record)
        return self.queue.has_more()

    def crawl(self, record: UrlRecord) -> FetchResult | None:
        """Fetch one URL, record the outcome and queue the links it contains."""
        try:
            return self._crawl(record)
        except StorageError:
            self.release(record)
            raise

    def release(self, record: UrlRecord) -> None:
        """Give a claimed URL its pre-claim schedule back."""
        try:
            self.store.urls.release(record.id, record.needscrawl)
        except StorageError as e:
            logger.error("Could not release claim on %s: %s", record.url, e)

    def _crawl(self, record: UrlRecord) -> FetchResult | None:
        cfg = self.config
        if record.external and not cfg.checkexternal:
            self.store.urls.unqueue(record.id)
            return None

        result = self.fetcher.fetch(record.url, cfg.maxurlsize, cfg.timeout)
        now = self.now()

        title = None
        context = UrlContext()
        links: List[Tuple[str, bool]] = []
        if result.ok and not result.oversize and not record.external and is_html(result.mimetype):
            links = extract_links(record.url, result.mimetype, result.body, self.root, result.encoding)
            title, context = parse_page(result.body, result.encoding)
        elif result.redirect:
            links = [(result.redirect, is_external(result.redirect, self.root))]

        inherited = UrlContext(
            courseid=context.courseid if context.courseid is not None else record.courseid,
            contextid=context.contextid if context.contextid is not None else record.contextid,
            cmid=context.cmid if context.cmid is not None else record.cmid,
        )

        recorded = 0
        with self.store.transaction():
            for target, external in links:
                if self.is_excluded(target):
                    continue
                child = self.store.urls.ensure_url(
                    target,
                    now,
                    context=inherited,
                    external=external,
                    crawlstart=cfg.crawlstart,
                    queue=not external or cfg.checkexternal,
                )
                self.store.edges.add_edge(record.id, child.id, now)
                recorded += 1
            self.store.urls.mark_crawled(
                record.id,
                result,
                now,
                needscrawl=self.reschedule(result, now),
                title=title,
                context=context,
            )

        logger.debug("Crawled %s -> %s (%d links)", record.url, result.httpcode, recorded)
        if self.verbose:
            print_scan_line(record.url, result.httpcode, recorded)
        return result

    def reschedule(self, result: FetchResult, now: int) -> Optional[int]:
        """When a fetched URL is next due, or None for no retry."""
        cfg = self.config
        if result.httpcode == 0:
            return now + cfg.retrydelay
        if is_broken(result.httpcode):
            return now + cfg.brokenretry if cfg.brokenretry > 0 else None
        return now + cfg.recrawlinterval if cfg.recrawlinterval > 0 else None

    def run(self) -> CrawlConfig:
        """One invocation: process the queue until empty, paused or out of time."""
        if self.config.running:
            history = self.current_history()
        else:
            history = self.start_cycle()

        cronstop = self.clock() + self.config.maxcrontime
        hasmore = True
        hastime = True
        while hasmore and hastime:
            hasmore = self.process_queue()
            hastime = self.clock() < cronstop
            self.config.crawltick = self.now()
            self.store.config.save_state(self.config)

        if self.queue.paused:
            logger.info("Reached %d URLs for this run, pausing", self.config.maxurls)
        elif not hasmore:
            now = self.now()
            leased = self.store.urls.count_leased(now, now + self.queue.lease, self.config.crawlstart)
            if leased:
                logger.info("%d claimed URLs still unfinished, keeping the cycle open", leased)
            else:
                self.end_cycle(history)

        self.update_history(history)
        return self.config


def _compile_excludes(patterns: List[str]) -> List[Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise ValueError(f"Invalid exclude pattern {pattern!r}: {e}") from e
    return compiled


def run_tick(
    store: Store,
    verbose: bool = False,
    fetcher: Optional[Fetcher] = None,
    clock: Callable[[], float] = time.time,
) -> CrawlConfig:
    """
    Perform one scheduler tick of crawl processing.

    Bounded both by ``maxurls`` and by a soft ``maxcrontime`` limit checked
    between URLs. Storage failures propagate; fetch failures are recorded on
    the URL concerned.
    """
    config = store.config.load()
    owned = fetcher is None
    fetcher = fetcher or Fetcher(user_agent=config.useragent)
    try:
        crawler = Crawler(store, config, fetcher=fetcher, clock=clock, verbose=verbose)
        return crawler.run()
    finally:
        if owned:
            fetcher.close()
