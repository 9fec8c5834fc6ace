"""Enrichment queue tests: ordering, dedup, retry bound, reconciliation."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest

from firearm_intel.enrichment_queue import EnrichmentQueue
from firearm_intel.models import EnrichmentStatus, Priority, utcnow

from .fakes import FakeEnricher


def test_add_orders_by_priority_then_fifo(queue):
    queue.add(1, Priority.LOW)
    queue.add(2, Priority.NORMAL)
    queue.add(3, Priority.HIGH)
    queue.add(4, Priority.NORMAL)
    queue.add(5, Priority.HIGH)

    assert [item.auction_id for item in queue.get_queue()] == [3, 5, 2, 4, 1]


def test_add_is_idempotent(queue):
    assert queue.add(1) is True
    assert queue.add(1, Priority.HIGH) is False

    items = queue.get_queue()
    assert len(items) == 1
    assert items[0].priority == Priority.NORMAL


def test_add_batch_counts_new_items(queue):
    queue.add(2)
    assert queue.add_batch([1, 2, 3], Priority.LOW) == 2
    assert queue.get_status()["queue_length"] == 3


def test_clear(queue):
    queue.add_batch([1, 2])
    queue.clear()
    assert queue.get_queue() == []


@pytest.mark.asyncio
async def test_process_queue_in_priority_order(db):
    enricher = FakeEnricher()
    queue = EnrichmentQueue(enricher, db=db, max_concurrent=1, batch_delay=0)
    queue.add(1, Priority.LOW)
    queue.add(2)
    queue.add(3, Priority.HIGH)

    stats = await queue.process_queue()

    assert enricher.calls == [3, 2, 1]
    assert (stats.total, stats.processed, stats.successful, stats.failed) == (3, 3, 3, 0)
    assert stats.start_time is not None and stats.end_time >= stats.start_time
    assert not queue.is_processing


@pytest.mark.asyncio
async def test_process_queue_runs_batches_concurrently(db):
    gate = asyncio.Event()
    enricher = FakeEnricher(gate=gate)
    queue = EnrichmentQueue(enricher, db=db, max_concurrent=3, batch_delay=0)
    queue.add_batch([1, 2, 3, 4, 5])

    task = asyncio.create_task(queue.process_queue())
    for _ in range(5):
        await asyncio.sleep(0)

    # The first batch is in flight together, the rest waits
    assert enricher.calls == [1, 2, 3]
    gate.set()
    stats = await task

    assert enricher.calls == [1, 2, 3, 4, 5]
    assert stats.successful == 5


@pytest.mark.asyncio
async def test_failing_item_is_attempted_max_retries_plus_one_times(db):
    enricher = FakeEnricher(failures={1: -1})
    queue = EnrichmentQueue(enricher, db=db, max_concurrent=3, max_retries=2, batch_delay=0)
    queue.add_batch([1, 2])

    stats = await queue.process_queue()

    assert enricher.calls.count(1) == 3
    assert enricher.calls.count(2) == 1
    assert stats.total == 2
    assert stats.successful == 1
    assert stats.failed == 1
    assert stats.processed == 4
    assert len(stats.errors) == 1
    assert stats.errors[0]["id"] == 1
    assert stats.errors[0]["retries"] == 2
    assert queue.get_queue() == []


@pytest.mark.asyncio
async def test_transient_failure_is_retried_at_the_tail(db):
    enricher = FakeEnricher(failures={1: 1})
    queue = EnrichmentQueue(enricher, db=db, max_concurrent=1, max_retries=2, batch_delay=0)
    queue.add_batch([1, 2])

    stats = await queue.process_queue()

    assert enricher.calls == [1, 2, 1]
    assert stats.successful == 2
    assert stats.failed == 0
    assert stats.errors == []


@pytest.mark.asyncio
async def test_zero_retries_fails_immediately(db):
    enricher = FakeEnricher(failures={1: -1})
    queue = EnrichmentQueue(enricher, db=db, max_retries=0, batch_delay=0)
    queue.add(1)

    stats = await queue.process_queue()

    assert enricher.calls == [1]
    assert stats.failed == 1


@pytest.mark.asyncio
async def test_empty_queue_returns_zero_stats(queue):
    stats = await queue.process_queue()
    assert (stats.total, stats.processed) == (0, 0)
    assert stats.start_time is None


@pytest.mark.asyncio
async def test_overlapping_process_call_returns_current_stats(db):
    gate = asyncio.Event()
    enricher = FakeEnricher(gate=gate)
    queue = EnrichmentQueue(enricher, db=db, batch_delay=0)
    queue.add_batch([1, 2])

    first = asyncio.create_task(queue.process_queue())
    await asyncio.sleep(0)
    assert queue.is_processing

    second = await queue.process_queue()
    assert second.total == 2
    assert second.processed == 0

    gate.set()
    stats = await first
    assert stats is second
    assert enricher.calls == [1, 2]


@pytest.mark.asyncio
async def test_start_processing_is_guarded(db):
    gate = asyncio.Event()
    enricher = FakeEnricher(gate=gate)
    queue = EnrichmentQueue(enricher, db=db, batch_delay=0)
    queue.add(1)

    task = queue.start_processing()
    assert task is not None
    assert queue.start_processing() is None

    gate.set()
    stats = await task
    assert stats.successful == 1
    assert queue.get_status()["stats"]["successful"] == 1


class SlowInsertQueue(EnrichmentQueue):
    """Parks inside add() for one id until the test releases it."""

    def __init__(self, *args, slow_id: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.slow_id = slow_id
        self.inserting = threading.Event()
        self.release = threading.Event()

    def _insert(self, item):
        if item.auction_id == self.slow_id:
            self.inserting.set()
            self.release.wait(5)
        super()._insert(item)


def test_drain_on_another_thread_waits_for_an_add_in_progress(db):
    enricher = FakeEnricher()
    queue = SlowInsertQueue(enricher, db=db, max_concurrent=3, batch_delay=0, slow_id=99)
    queue.add_batch([1, 2, 3])
    results = []

    adder = threading.Thread(target=queue.add, args=(99,))
    adder.start()
    assert queue.inserting.wait(5)

    drainer = threading.Thread(target=lambda: results.append(asyncio.run(queue.process_queue())))
    drainer.start()
    drainer.join(0.2)
    assert drainer.is_alive()

    queue.release.set()
    adder.join(5)
    drainer.join(5)

    (stats,) = results
    assert stats.total == 4
    assert stats.processed == 4
    assert sorted(enricher.calls) == [1, 2, 3, 99]
    assert queue.get_queue() == []


def test_concurrent_drains_enrich_each_item_once(db):
    enricher = FakeEnricher()
    queue = EnrichmentQueue(enricher, db=db, max_concurrent=2, batch_delay=0)
    queue.add_batch(list(range(1, 21)))

    threads = [threading.Thread(target=lambda: asyncio.run(queue.process_queue())) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert sorted(enricher.calls) == list(range(1, 21))
    assert queue.get_queue() == []
    assert not queue.is_processing


def test_reconcile_resets_stale_processing_and_queues_pending(queue, make_listing, db):
    stale = make_listing(enrichment_status=EnrichmentStatus.PROCESSING, updated_at=utcnow() - timedelta(hours=2))
    in_flight = make_listing(enrichment_status=EnrichmentStatus.PROCESSING)
    pending = make_listing()
    done = make_listing(enrichment_status=EnrichmentStatus.COMPLETED)

    queued = queue.reconcile(stale_after_minutes=30)

    assert queued == 2
    assert {item.auction_id for item in queue.get_queue()} == {stale.id, pending.id}
    assert db.get_listing(stale.id).enrichment_status == EnrichmentStatus.PENDING
    assert db.get_listing(in_flight.id).enrichment_status == EnrichmentStatus.PROCESSING
    assert db.get_listing(done.id).enrichment_status == EnrichmentStatus.COMPLETED


def test_reconcile_and_requeue_read_every_listing_past_the_row_cap(queue, make_listing, fake_client):
    listings = [make_listing() for _ in range(5)]
    fake_client.row_cap = 2

    assert queue.reconcile() == 5
    queue.clear()
    assert queue.requeue_all() == 5
    assert [item.auction_id for item in queue.get_queue()] == [l.id for l in listings]


def test_reconcile_does_not_duplicate_queued_items(queue, make_listing):
    pending = make_listing()
    queue.add(pending.id, Priority.HIGH)

    assert queue.reconcile() == 0
    assert len(queue.get_queue()) == 1


def test_requeue_all_resets_everything_at_low_priority(queue, make_listing, db):
    done = make_listing(enrichment_status=EnrichmentStatus.COMPLETED)
    failed = make_listing(enrichment_status=EnrichmentStatus.FAILED)

    assert queue.requeue_all() == 2

    assert {item.priority for item in queue.get_queue()} == {Priority.LOW}
    assert db.get_listing(done.id).enrichment_status == EnrichmentStatus.PENDING
    assert db.get_listing(failed.id).enrichment_status == EnrichmentStatus.PENDING
