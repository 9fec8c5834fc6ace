"""
Scheduler module for Firearm Auction Intelligence.

Uses APScheduler to run the pipeline on a schedule:
- Every 6 hours: Full pipeline (scrape, enrich, metrics, alerts)
- Every 30 minutes: Reconcile stale enrichment rows and drain the queue
- Hourly: Process user alerts
- Daily: Refresh competitor metrics

Can also be run manually via command line.
"""

import logging
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .pipeline import run_alerts, run_competitor_metrics, run_enrichment, run_full_pipeline, run_reconcile

logger = logging.getLogger(__name__)


def create_scheduler() -> BlockingScheduler:
    """
    Create and configure the APScheduler.

    Jobs:
    1. full_pipeline: Every 6 hours - scrape sources, enrich, refresh metrics, alert
    2. reconcile_enrichment: Every 30 minutes - recover stuck rows, drain queue
    3. process_alerts: Hourly - match recent listings against user alerts
    4. competitor_metrics: Daily at 2am - recompute competitor snapshots

    Jobs run one at a time on a single worker thread, so overlapping ticks
    never drain the shared enrichment queue from two threads.

    Returns:
        Configured BlockingScheduler
    """
    scheduler = BlockingScheduler(executors={"default": ThreadPoolExecutor(max_workers=1)})

    scheduler.add_job(
        run_full_pipeline,
        trigger=IntervalTrigger(hours=6),
        id="full_pipeline",
        name="Scrape, enrich and alert",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        run_reconcile_job,
        trigger=IntervalTrigger(minutes=30),
        id="reconcile_enrichment",
        name="Reconcile and drain enrichment queue",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        run_alerts_job,
        trigger=IntervalTrigger(hours=1),
        id="process_alerts",
        name="Process user alerts",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        run_metrics_job,
        trigger=CronTrigger(hour=2, minute=0),
        id="competitor_metrics",
        name="Refresh competitor metrics",
        replace_existing=True,
        max_instances=1,
    )

    logger.info("Scheduler configured with 4 jobs")
    return scheduler


def run_reconcile_job() -> None:
    """Reconcile the queue with the store, then drain it."""
    try:
        queued = run_reconcile()["queued"]
        if queued:
            stats = run_enrichment()
            logger.info(f"Reconcile job enriched {stats['successful']}/{stats['total']} listings")
        else:
            logger.info("Reconcile job found nothing pending")
    except Exception as e:
        logger.error(f"Reconcile job failed: {e}")


def run_alerts_job() -> None:
    """Wrapper for alert processing to handle logging."""
    try:
        run_alerts()
    except Exception as e:
        logger.error(f"Alert job failed: {e}")


def run_metrics_job() -> None:
    """Wrapper for competitor metrics to handle logging."""
    try:
        result = run_competitor_metrics()
        logger.info(f"Wrote {result['snapshots']} competitor metric snapshots")
    except Exception as e:
        logger.error(f"Competitor metrics job failed: {e}")


def start_scheduler() -> None:
    """Start the scheduler (blocking)."""
    scheduler = create_scheduler()

    logger.info("Starting Firearm Auction Intelligence scheduler...")
    logger.info("Press Ctrl+C to stop")

    # Recover work a previous process left behind before the first scrape
    run_reconcile_job()

    logger.info("Running initial pipeline...")
    try:
        run_full_pipeline()
    except Exception as e:
        logger.error(f"Initial pipeline failed: {e}")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point for the scheduler."""
    import argparse

    parser = argparse.ArgumentParser(description="Firearm Auction Intelligence Scheduler")
    parser.add_argument(
        "--mode",
        choices=["schedule", "once", "reconcile", "alerts", "metrics"],
        default="schedule",
        help="Mode to run: schedule (continuous), once (single run), reconcile (recover queue), "
             "alerts (process alerts), metrics (refresh competitor metrics)"
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

    if args.mode == "schedule":
        start_scheduler()
    elif args.mode == "once":
        logger.info("Running single pipeline execution...")
        run_full_pipeline()
    elif args.mode == "reconcile":
        run_reconcile_job()
    elif args.mode == "alerts":
        run_alerts_job()
    elif args.mode == "metrics":
        run_metrics_job()


if __name__ == "__main__":
    main()
