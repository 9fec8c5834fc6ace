"""
Main Pipeline module for Firearm Auction Intelligence.

Orchestrates the full data flow:
1. Reconcile → Reset stale enrichment rows and queue pending listings
2. Scrape → Extract listings from every auction source into the store
3. Enrich → Drain the enrichment queue through the AI transform
4. Metrics → Refresh competitor performance snapshots
5. Alert → Match new listings against user alerts

This is the main entry point for running the pipeline by hand.
"""

import asyncio
import logging
from typing import Optional

from .alerts import get_alert_engine
from .analytics import get_analytics
from .enrichment_queue import get_enrichment_queue
from .models import utcnow
from .scraper import get_coordinator

logger = logging.getLogger(__name__)


# =============================================================================
# PIPELINE STEPS
# =============================================================================

def run_reconcile(stale_after_minutes: Optional[int] = None) -> dict:
    """
    Rebuild the enrichment queue from the store.

    Returns:
        Summary dict with the number of listings queued
    """
    queued = get_enrichment_queue().reconcile(stale_after_minutes)
    return {"queued": queued}


def run_ingestion() -> dict:
    """
    Scrape all auction sources.

    Returns:
        Summary dict with saved and new listing counts and per-source stats
    """
    coordinator = get_coordinator()
    saved = coordinator.scrape_all_sources()
    stats = coordinator.get_last_scrape_stats()
    return {
        "saved_listings": len(saved),
        "new_listings": sum(s.new_listings for s in stats),
        "failed_sources": [s.source_name for s in stats if s.failed_scrapes],
        "sources": [s.to_dict() for s in stats],
    }


def run_enrichment() -> dict:
    """
    Drain the enrichment queue on a fresh event loop.

    Returns:
        ProcessingStats of the run as a dict
    """
    queue = get_enrichment_queue()
    stats = asyncio.run(queue.process_queue())
    return stats.to_dict()


def enrich_all(force: bool = False) -> dict:
    """
    Queue listings for enrichment and drain the queue.

    Args:
        force: Re-enrich every listing instead of only pending ones

    Returns:
        ProcessingStats of the run as a dict, plus the number queued
    """
    queue = get_enrichment_queue()
    queued = queue.requeue_all() if force else queue.enqueue_pending()
    logger.info(f"Enrich all ({'forced' if force else 'pending only'}): {queued} listings queued")

    result = run_enrichment()
    result["queued"] = queued
    return result


def run_competitor_metrics(days: int = 30) -> dict:
    """Recompute competitor snapshots for the last days."""
    written = get_analytics().refresh_competitor_metrics(days=days)
    return {"snapshots": written}


def run_alerts() -> dict:
    """Check user alerts against recent listings."""
    return get_alert_engine().process_alerts()


def scrape_url(url: str) -> dict:
    """Ingest one listing page and enrich it right away."""
    listing = get_coordinator().scrape_by_url(url)
    result = run_enrichment()
    return {"auction": listing.to_dict(), "enrichment": result}


def run_full_pipeline() -> dict:
    """
    Run the complete pipeline: reconcile → scrape → enrich → metrics → alert.

    Each step runs even when an earlier one failed; failures are collected
    in the summary's errors list.

    Returns:
        Summary dict with counts and status
    """
    start_time = utcnow()
    logger.info(f"Starting pipeline run at {start_time}")

    summary = {
        "started_at": start_time.isoformat(),
        "reconciled": 0,
        "new_listings": 0,
        "failed_sources": [],
        "enriched": 0,
        "enrichment_failed": 0,
        "competitor_snapshots": 0,
        "alert_matches": 0,
        "alerts_sent": 0,
        "errors": [],
    }

    try:
        summary["reconciled"] = run_reconcile()["queued"]
    except Exception as e:
        logger.error(f"Reconcile step failed: {e}")
        summary["errors"].append(f"reconcile: {e}")

    try:
        ingestion = run_ingestion()
        summary["new_listings"] = ingestion["new_listings"]
        summary["failed_sources"] = ingestion["failed_sources"]
    except Exception as e:
        logger.error(f"Scrape step failed: {e}")
        summary["errors"].append(f"scrape: {e}")

    try:
        enrichment = run_enrichment()
        summary["enriched"] = enrichment["successful"]
        summary["enrichment_failed"] = enrichment["failed"]
    except Exception as e:
        logger.error(f"Enrichment step failed: {e}")
        summary["errors"].append(f"enrich: {e}")

    try:
        summary["competitor_snapshots"] = run_competitor_metrics()["snapshots"]
    except Exception as e:
        logger.error(f"Competitor metrics step failed: {e}")
        summary["errors"].append(f"metrics: {e}")

    try:
        alerts = run_alerts()
        summary["alert_matches"] = alerts["total_matches"]
        summary["alerts_sent"] = alerts["alerts_sent"]
    except Exception as e:
        logger.error(f"Alert step failed: {e}")
        summary["errors"].append(f"alerts: {e}")

    end_time = utcnow()
    duration = (end_time - start_time).total_seconds()
    summary["duration_seconds"] = duration
    summary["completed_at"] = end_time.isoformat()

    logger.info(f"Pipeline complete in {duration:.1f}s: {summary}")
    return summary


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point for running the pipeline."""
    import argparse

    parser = argparse.ArgumentParser(description="Firearm Auction Intelligence Pipeline")
    parser.add_argument(
        "--run",
        action="store_true",
        help="Run the full pipeline once"
    )
    parser.add_argument(
        "--scrape",
        action="store_true",
        help="Scrape all sources (new listings are queued, not enriched)"
    )
    parser.add_argument(
        "--url",
        metavar="URL",
        help="Scrape and enrich a single listing page"
    )
    parser.add_argument(
        "--enrich",
        action="store_true",
        help="Enrich every pending listing"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --enrich, re-enrich every listing"
    )
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Reset stale enrichment rows and drain the queue"
    )
    parser.add_argument(
        "--alerts",
        action="store_true",
        help="Process user alerts"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.run:
        result = run_full_pipeline()
        print(f"Pipeline complete: {result}")
    elif args.scrape:
        result = run_ingestion()
        print(
            f"Scrape complete: {result['saved_listings']} saved, {result['new_listings']} new, "
            f"failed sources: {result['failed_sources']}"
        )
    elif args.url:
        result = scrape_url(args.url)
        print(f"Scraped {args.url}: {result}")
    elif args.enrich:
        result = enrich_all(force=args.force)
        print(f"Enrichment complete: {result}")
    elif args.reconcile:
        queued = run_reconcile()["queued"]
        result = run_enrichment()
        print(f"Reconciled {queued} listings: {result}")
    elif args.alerts:
        result = run_alerts()
        print(f"Alerts processed: {result}")
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
