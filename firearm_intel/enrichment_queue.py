"""
Enrichment queue for Firearm Auction Intelligence.

Holds listing ids waiting for enrichment and drains them in concurrent
batches:
- Items are ordered by priority (high, normal, low), FIFO within a tier
- Adding an id that is already queued is a no-op
- A failed item is re-appended to the tail until it has been retried
  max_retries times, then reported once in the run's errors
- Batches of max_concurrent items run together, with a pause in between

The queue itself is in-memory only. reconcile() rebuilds it from the store
after a restart, including listings a crash left stuck in processing.

The queue is shared across threads, so the item list and the processing
flag are guarded by a lock.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Optional, Protocol

from .config import get_app_config
from .db import Database, get_db
from .enrichment import get_enrichment_service
from .models import EnrichmentStatus, Priority, utcnow

logger = logging.getLogger(__name__)


class Enricher(Protocol):
    """Anything that can enrich one listing by id."""

    def enrich(self, auction_id: int) -> Awaitable[Any]:
        ...


@dataclass
class QueueItem:
    """One listing waiting for enrichment."""
    auction_id: int
    priority: Priority = Priority.NORMAL
    added_at: datetime = field(default_factory=utcnow)
    retries: int = 0

    def to_dict(self) -> dict:
        return {
            "auction_id": self.auction_id,
            "priority": self.priority.value,
            "added_at": self.added_at.isoformat(),
            "retries": self.retries,
        }


@dataclass
class ProcessingStats:
    """Counters of one process_queue() run."""
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "errors": list(self.errors),
        }


class EnrichmentQueue:
    """
    Priority queue of listing ids with bounded concurrency and retries.

    Usage:
        queue = EnrichmentQueue(get_enrichment_service())
        queue.add(auction_id, Priority.HIGH)
        stats = await queue.process_queue()
    """

    def __init__(
        self,
        enricher: Enricher,
        db: Optional[Database] = None,
        max_concurrent: Optional[int] = None,
        max_retries: Optional[int] = None,
        batch_delay: Optional[float] = None,
    ):
        config = get_app_config()
        self.enricher = enricher
        self._db = db
        self.max_concurrent = max_concurrent or config.queue_max_concurrent
        self.max_retries = config.queue_max_retries if max_retries is None else max_retries
        self.batch_delay = config.queue_batch_delay if batch_delay is None else batch_delay

        self._queue: list[QueueItem] = []
        self._lock = threading.Lock()
        self._is_processing = False
        self._stats = ProcessingStats()
        self._background_task: Optional[asyncio.Task] = None

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = get_db()
        return self._db

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    # =========================================================================
    # QUEUE MANAGEMENT
    # =========================================================================

    def add(self, auction_id: int, priority: Priority = Priority.NORMAL) -> bool:
        """
        Queue a listing for enrichment.

        Returns:
            False if the id was already queued (nothing changes)
        """
        with self._lock:
            if any(item.auction_id == auction_id for item in self._queue):
                logger.debug(f"Auction {auction_id} already queued")
                return False
            self._insert(QueueItem(auction_id=auction_id, priority=priority))
            length = len(self._queue)

        logger.debug(f"Queued auction {auction_id} ({priority.value}), queue length {length}")
        return True

    def _insert(self, item: QueueItem) -> None:
        """Place an item behind every queued item of the same or a higher priority."""
        index = len(self._queue)
        while index and self._queue[index - 1].priority.rank > item.priority.rank:
            index -= 1
        self._queue.insert(index, item)

    def add_batch(self, auction_ids: list[int], priority: Priority = Priority.NORMAL) -> int:
        """Queue several listings. Returns how many were newly added."""
        added = sum(1 for auction_id in auction_ids if self.add(auction_id, priority))
        logger.info(f"Queued {added}/{len(auction_ids)} auctions for enrichment ({priority.value})")
        return added

    def get_queue(self) -> list[QueueItem]:
        """Snapshot of the queued items in processing order."""
        with self._lock:
            return list(self._queue)

    def clear(self) -> None:
        """Drop every queued item."""
        with self._lock:
            dropped = len(self._queue)
            self._queue.clear()
        logger.info(f"Cleared enrichment queue ({dropped} items)")

    def get_status(self) -> dict:
        """Queue length, processing flag and stats of the current/last run."""
        return {
            "queue_length": self._remaining(),
            "is_processing": self._is_processing,
            "stats": self._stats.to_dict(),
        }

    # =========================================================================
    # PROCESSING
    # =========================================================================

    def _take_batch(self) -> list[QueueItem]:
        with self._lock:
            batch = self._queue[:self.max_concurrent]
            del self._queue[:self.max_concurrent]
        return batch

    def _remaining(self) -> int:
        with self._lock:
            return len(self._queue)

    async def _process_item(self, item: QueueItem, stats: ProcessingStats) -> None:
        try:
            await self.enricher.enrich(item.auction_id)
            stats.successful += 1
        except Exception as e:
            if item.retries < self.max_retries:
                item.retries += 1
                with self._lock:
                    self._queue.append(item)
                logger.warning(
                    f"Enrichment of auction {item.auction_id} failed, retry "
                    f"{item.retries}/{self.max_retries}: {e}"
                )
            else:
                stats.failed += 1
                stats.errors.append({"id": item.auction_id, "error": str(e), "retries": item.retries})
                logger.error(f"Enrichment of auction {item.auction_id} failed after {item.retries} retries: {e}")
        finally:
            stats.processed += 1

    async def process_queue(self) -> ProcessingStats:
        """
        Drain the queue.

        If a run is already in progress, returns its stats without starting
        another one.

        Returns:
            ProcessingStats of this run
        """
        with self._lock:
            if self._is_processing:
                logger.info("Enrichment queue is already being processed")
                return self._stats

            if not self._queue:
                self._stats = ProcessingStats()
                return self._stats

            self._is_processing = True
            stats = ProcessingStats(total=len(self._queue), start_time=utcnow())
            self._stats = stats
        logger.info(f"Processing enrichment queue: {stats.total} items, {self.max_concurrent} at a time")

        try:
            while True:
                batch = self._take_batch()
                if not batch:
                    break

                await asyncio.gather(*(self._process_item(item, stats) for item in batch))

                remaining = self._remaining()
                logger.info(
                    f"Enrichment progress: {stats.processed} processed, {stats.successful} ok, "
                    f"{stats.failed} failed, {remaining} remaining"
                )
                if remaining and self.batch_delay > 0:
                    await asyncio.sleep(self.batch_delay)
        finally:
            stats.end_time = utcnow()
            with self._lock:
                self._is_processing = False

        duration = (stats.end_time - stats.start_time).total_seconds()
        logger.info(
            f"Enrichment queue drained in {duration:.1f}s: "
            f"{stats.successful} successful, {stats.failed} failed"
        )
        return stats

    def start_processing(self) -> Optional[asyncio.Task]:
        """
        Drain the queue in a background task on the running event loop.

        Returns:
            The task, or None if a run is already in progress
        """
        if self._is_processing or (self._background_task and not self._background_task.done()):
            logger.info("Enrichment queue is already being processed")
            return None

        task = asyncio.get_running_loop().create_task(self.process_queue())
        task.add_done_callback(self._log_background_result)
        self._background_task = task
        return task

    @staticmethod
    def _log_background_result(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Background enrichment run was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background enrichment run failed: {error}")

    # =========================================================================
    # STORE RECONCILIATION
    # =========================================================================

    def enqueue_pending(self, priority: Priority = Priority.NORMAL) -> int:
        """Queue every listing the store has in pending state."""
        pending = self.db.get_listing_ids_by_enrichment_status(EnrichmentStatus.PENDING)
        return self.add_batch(pending, priority)

    def reconcile(self, stale_after_minutes: Optional[int] = None) -> int:
        """
        Rebuild the queue from the store after a restart.

        Listings stuck in processing for longer than stale_after_minutes are
        reset to pending first, then every pending listing is queued.

        Returns:
            Number of listings newly queued
        """
        minutes = stale_after_minutes if stale_after_minutes is not None else get_app_config().stale_processing_minutes
        self.db.reset_stale_processing(utcnow() - timedelta(minutes=minutes))
        added = self.enqueue_pending()
        logger.info(f"Reconciled enrichment queue: {added} pending listings queued")
        return added

    def requeue_all(self, priority: Priority = Priority.LOW) -> int:
        """Reset every listing to pending and queue it again (forced re-enrichment)."""
        self.db.reset_enrichment_status()
        return self.add_batch(self.db.get_all_listing_ids(), priority)


# Global queue instance (lazy loaded)
_queue: Optional[EnrichmentQueue] = None


def get_enrichment_queue() -> EnrichmentQueue:
    """Get enrichment queue instance (singleton)."""
    global _queue
    if _queue is None:
        _queue = EnrichmentQueue(get_enrichment_service())
    return _queue
