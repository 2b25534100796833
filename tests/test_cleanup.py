from dataclasses import replace
from datetime import datetime, timezone

from linkrobot.cleanup import retention_cutoff, run_cleanup
from linkrobot.models import CrawlConfig, UrlRecord


def ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


CRAWLEND = ts(2016, 5, 16, 14, 51, 0)


def seed_records(store):
    config = CrawlConfig(retentionperiod=600, crawlstart=CRAWLEND - 3600, crawlend=CRAWLEND)
    store.config.save(config)
    old = store.urls.insert(UrlRecord(url="http://example.com/old", lastcrawled=ts(2016, 5, 16, 11, 20, 0)))
    edge = store.urls.insert(UrlRecord(url="http://example.com/edge", lastcrawled=ts(2016, 5, 16, 14, 49, 59)))
    new = store.urls.insert(UrlRecord(url="http://example.com/new", lastcrawled=ts(2016, 5, 16, 14, 50, 1)))
    return old, edge, new


def test_cutoff():
    assert retention_cutoff(CRAWLEND, 600) == ts(2016, 5, 16, 14, 41, 0)


def test_expired_record_removed(store):
    old, edge, new = seed_records(store)

    deleted = run_cleanup(store, reference_time=ts(2016, 5, 16, 15, 0, 0))

    assert deleted == 1
    assert store.urls.count() == 2
    assert store.urls.get(old.id) is None
    assert store.urls.get(edge.id) is not None
    assert store.urls.get(new.id) is not None


def test_edges_of_expired_records_removed(store):
    old, edge, new = seed_records(store)
    store.edges.add_edge(old.id, edge.id, CRAWLEND)
    store.edges.add_edge(new.id, old.id, CRAWLEND)
    store.edges.add_edge(new.id, edge.id, CRAWLEND)

    run_cleanup(store)

    assert store.edges.count() == 1
    assert store.edges.get(new.id, edge.id) is not None


def test_cleanup_is_idempotent(store):
    seed_records(store)

    assert run_cleanup(store) == 1
    assert run_cleanup(store) == 0
    assert store.urls.count() == 2


def test_never_crawled_urls_are_kept(store):
    seed_records(store)
    store.urls.ensure_url("http://example.com/queued", CRAWLEND - 86400)

    run_cleanup(store)

    assert store.urls.get_by_url("http://example.com/queued") is not None


def test_running_cycle_does_not_move_cutoff(store):
    old, edge, new = seed_records(store)
    config = store.config.load()
    store.config.save_state(replace(config, crawlstart=CRAWLEND + 86400))

    run_cleanup(store, reference_time=CRAWLEND + 90000)

    assert store.urls.count() == 2
