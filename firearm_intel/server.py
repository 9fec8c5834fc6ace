"""
HTTP API server for Firearm Auction Intelligence.

A Flask application that:
1. Serves listings, price intelligence and dashboard metrics as JSON
2. Triggers scrape and enrichment runs in the background
3. Manages user alerts

Every response body is {"success": bool, ...}. Clients are rate limited per
IP address; the heavy scrape/enrichment triggers have a tighter limit.
"""

import asyncio
import functools
import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, request
from werkzeug.exceptions import HTTPException

from .alerts import AlertEngine, get_alert_engine
from .analytics import PriceAnalytics, get_analytics
from .config import AppConfig, get_app_config
from .db import Database, get_db
from .enrichment import EnrichmentService, get_enrichment_service
from .enrichment_queue import EnrichmentQueue, get_enrichment_queue
from .exceptions import FirearmIntelError, ListingNotFoundError
from .models import AlertCriteria, utcnow
from .scraper import ScrapeCoordinator, get_coordinator

logger = logging.getLogger(__name__)


# =============================================================================
# RATE LIMITING
# =============================================================================

class RateLimiter:
    """
    Fixed-window request counter per client key.

    Expired windows are swept at most once per window, so keys of clients
    that stopped calling do not accumulate.

    Usage:
        limiter = RateLimiter(limit=10, window_seconds=60)
        if not limiter.hit(request.remote_addr):
            ...  # reject with 429
    """

    def __init__(self, limit: int, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    @property
    def tracked_keys(self) -> int:
        """Number of client keys with a window on record."""
        with self._lock:
            return len(self._windows)

    def hit(self, key: str) -> bool:
        """Count one request. Returns False once the key is over its limit."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            return count <= self.limit

    def _sweep(self, now: float) -> None:
        self._windows = {
            key: window for key, window in self._windows.items()
            if now - window[0] < self.window_seconds
        }
        self._last_sweep = now

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def _too_many_requests():
    return {"success": False, "error": "RATE_LIMITED", "message": "Too many requests, try again later"}, 429


def _client_key() -> str:
    return request.remote_addr or "unknown"


# =============================================================================
# BACKGROUND RUNS
# =============================================================================

class BackgroundRunner:
    """
    Runs jobs off the request thread on a single worker.

    A job id that is still queued or running is not submitted again, and the
    single worker keeps scrape and enrichment runs from overlapping.
    """

    def __init__(self):
        self._scheduler = BackgroundScheduler(executors={"default": ThreadPoolExecutor(max_workers=1)})
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def submit(self, job_id: str, func: Callable, *args) -> bool:
        """
        Schedule func(*args) to run as soon as the worker is free.

        Returns:
            False if a job with this id is already queued or running
        """
        with self._lock:
            if job_id in self._active:
                logger.info(f"Background job {job_id} already in progress")
                return False
            self._active.add(job_id)

        if not self._scheduler.running:
            self._scheduler.start()

        self._scheduler.add_job(
            self._run,
            args=(job_id, func, *args),
            id=job_id,
            name=job_id,
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        logger.info(f"Background job {job_id} submitted")
        return True

    def _run(self, job_id: str, func: Callable, *args) -> None:
        try:
            func(*args)
        except Exception as e:
            logger.error(f"Background job {job_id} failed: {e}")
        finally:
            with self._lock:
                self._active.discard(job_id)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def _bool_arg(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def create_app(
    db: Optional[Database] = None,
    coordinator: Optional[ScrapeCoordinator] = None,
    queue: Optional[EnrichmentQueue] = None,
    enrichment: Optional[EnrichmentService] = None,
    analytics: Optional[PriceAnalytics] = None,
    alert_engine: Optional[AlertEngine] = None,
    runner: Optional[BackgroundRunner] = None,
    config: Optional[AppConfig] = None,
) -> Flask:
    """
    Build the Flask application.

    Collaborators default to the process-wide singletons; tests pass their
    own.
    """
    config = config or get_app_config()
    db = db or get_db()
    coordinator = coordinator or get_coordinator()
    queue = queue or get_enrichment_queue()
    enrichment = enrichment or get_enrichment_service()
    analytics = analytics or get_analytics()
    alert_engine = alert_engine or get_alert_engine()
    runner = runner or BackgroundRunner()

    general_limiter = RateLimiter(config.general_rate_limit, config.rate_limit_window_seconds)
    scrape_limiter = RateLimiter(config.scrape_rate_limit, config.rate_limit_window_seconds)

    app = Flask(__name__)
    app.extensions["firearm_intel"] = {
        "runner": runner,
        "general_limiter": general_limiter,
        "scrape_limiter": scrape_limiter,
    }

    def scrape_limited(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            if not scrape_limiter.hit(_client_key()):
                logger.warning(f"Scrape rate limit exceeded by {_client_key()}")
                return _too_many_requests()
            return view(*args, **kwargs)
        return wrapper

    @app.before_request
    def apply_general_limit():
        if request.path.startswith("/api/") and not general_limiter.hit(_client_key()):
            logger.warning(f"Rate limit exceeded by {_client_key()}")
            return _too_many_requests()
        return None

    # =========================================================================
    # ERROR HANDLING
    # =========================================================================

    @app.errorhandler(ListingNotFoundError)
    def handle_not_found(e: ListingNotFoundError):
        return {"success": False, **e.to_dict()}, 404

    @app.errorhandler(FirearmIntelError)
    def handle_app_error(e: FirearmIntelError):
        logger.error(f"{request.method} {request.path} failed: {e}")
        return {"success": False, **e.to_dict()}, 500

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return {"success": False, "error": e.name, "message": e.description}, e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.path}: {e}")
        return {"success": False, "error": "INTERNAL_ERROR", "message": "Internal server error"}, 500

    # =========================================================================
    # BACKGROUND JOBS
    # =========================================================================

    def refresh_job() -> None:
        coordinator.scrape_all_sources()
        asyncio.run(queue.process_queue())

    def enrich_all_job(force: bool) -> None:
        queued = queue.requeue_all() if force else queue.enqueue_pending()
        logger.info(f"Enrich all ({'forced' if force else 'pending only'}): {queued} listings queued")
        asyncio.run(queue.process_queue())

    # =========================================================================
    # SYSTEM
    # =========================================================================

    @app.route("/api/ping")
    def ping():
        return {"success": True, "message": "pong", "timestamp": utcnow().isoformat()}

    @app.route("/api/health")
    def health():
        return {
            "success": True,
            "status": "ok",
            "timestamp": utcnow().isoformat(),
            "queue": queue.get_status(),
            "scrape": coordinator.progress.to_dict(),
        }

    # =========================================================================
    # FIREARMS
    # =========================================================================

    @app.route("/api/firearms/auctions")
    def list_auctions():
        args = request.args
        limit = min(max(args.get("limit", 50, type=int), 1), 200)
        offset = max(args.get("offset", 0, type=int), 0)
        listings = db.get_listings(
            category=args.get("category") or None,
            manufacturer=args.get("manufacturer") or None,
            caliber=args.get("caliber") or None,
            min_price=args.get("minPrice", type=float),
            max_price=args.get("maxPrice", type=float),
            condition=args.get("condition") or None,
            state=args.get("state") or None,
            auction_house=args.get("auctionHouse") or None,
            estate_sales_only=_bool_arg(args.get("estateSalesOnly")),
            nfa_only=_bool_arg(args.get("nfaOnly")),
            limit=limit,
            offset=offset,
        )
        return {"success": True, "auctions": [l.to_dict() for l in listings], "count": len(listings)}

    @app.route("/api/firearms/auctions/<int:auction_id>")
    def get_auction(auction_id: int):
        listing = db.get_listing(auction_id)
        if listing is None:
            raise ListingNotFoundError(auction_id)
        return {"success": True, "auction": listing.to_dict()}

    @app.route("/api/firearms/refresh", methods=["POST"])
    @scrape_limited
    def refresh():
        if not runner.submit("refresh", refresh_job):
            return {"success": False, "message": "A scrape is already in progress"}, 409
        return {"success": True, "message": "Scrape started", "progress": coordinator.progress.to_dict()}, 202

    @app.route("/api/firearms/scrape-url", methods=["POST"])
    @scrape_limited
    def scrape_url():
        body = _json_body()
        url = (body.get("url") or "").strip()
        if not url:
            return {"success": False, "error": "VALIDATION_ERROR", "message": "url is required"}, 400

        listing = coordinator.scrape_by_url(url)
        runner.submit("process-queue", lambda: asyncio.run(queue.process_queue()))
        return {"success": True, "auction": listing.to_dict()}

    @app.route("/api/firearms/scrape-progress")
    def scrape_progress():
        return {"success": True, "progress": coordinator.progress.to_dict()}

    @app.route("/api/firearms/scrape-stats")
    def scrape_stats():
        return {
            "success": True,
            "sources": [s.to_dict() for s in coordinator.get_last_scrape_stats()],
            "cache": coordinator.cache.get_stats(),
        }

    @app.route("/api/firearms/enrich/<int:auction_id>", methods=["POST"])
    def enrich_one(auction_id: int):
        asyncio.run(enrichment.enrich(auction_id))
        listing = db.get_listing(auction_id)
        return {"success": True, "auction": listing.to_dict() if listing else None}

    @app.route("/api/firearms/enrich-all", methods=["POST"])
    @scrape_limited
    def enrich_all():
        body = _json_body()
        force = _bool_arg(body.get("force"))
        if not runner.submit("enrich-all", enrich_all_job, force):
            return {"success": False, "message": "Enrichment is already in progress"}, 409
        return {"success": True, "message": "Enrichment started", "force": force}, 202

    @app.route("/api/firearms/enrichment-stats")
    def enrichment_stats():
        return {"success": True, "stats": enrichment.get_enrichment_stats()}

    @app.route("/api/firearms/queue")
    def queue_status():
        return {
            "success": True,
            **queue.get_status(),
            "items": [item.to_dict() for item in queue.get_queue()],
        }

    @app.route("/api/firearms/ending-soon")
    def ending_soon():
        hours = min(max(request.args.get("hours", 24, type=int), 1), 168)
        now = utcnow()
        listings = db.get_listings_ending_between(now, now + timedelta(hours=hours))
        return {"success": True, "auctions": [l.to_dict() for l in listings], "count": len(listings)}

    @app.route("/api/firearms/categories")
    def categories():
        return {"success": True, "categories": analytics.get_category_breakdown()}

    # =========================================================================
    # INTELLIGENCE
    # =========================================================================

    @app.route("/api/intelligence/competitors")
    def competitors():
        summaries = analytics.get_competitor_comparison(request.args.get("category") or None)
        return {"success": True, "competitors": [s.to_dict() for s in summaries]}

    @app.route("/api/intelligence/pricing/<category>")
    def pricing(category: str):
        days = min(max(request.args.get("days", 30, type=int), 1), 365)
        trends = analytics.get_price_trends(category, days)
        return {"success": True, "category": category, "days": days, "trends": [t.to_dict() for t in trends]}

    @app.route("/api/intelligence/trends")
    def trends():
        days = min(max(request.args.get("days", 7, type=int), 1), 365)
        return {"success": True, "trends": analytics.get_trending_categories(days=days)}

    @app.route("/api/intelligence/opportunities")
    def opportunities():
        threshold = request.args.get("threshold", type=float)
        items = analytics.find_opportunities(threshold)
        return {"success": True, "opportunities": [o.to_dict() for o in items], "count": len(items)}

    @app.route("/api/intelligence/price-history")
    def price_history():
        args = request.args
        manufacturer = (args.get("manufacturer") or "").strip()
        model = (args.get("model") or "").strip()
        if not manufacturer or not model:
            return {
                "success": False,
                "error": "VALIDATION_ERROR",
                "message": "manufacturer and model are required",
            }, 400

        limit = min(max(args.get("limit", 10, type=int), 1), 100)
        analysis = analytics.find_comparables(manufacturer, model, args.get("condition") or None, limit)
        return {"success": True, "analysis": analysis.to_dict()}

    @app.route("/api/analytics/dashboard")
    def dashboard():
        return {"success": True, "metrics": analytics.get_dashboard_metrics()}

    @app.route("/api/estates/upcoming")
    def upcoming_estates():
        limit = min(max(request.args.get("limit", 50, type=int), 1), 200)
        sales = analytics.get_upcoming_estate_sales(limit)
        return {"success": True, "estates": sales, "count": len(sales)}

    # =========================================================================
    # ALERTS
    # =========================================================================

    @app.route("/api/alerts", methods=["POST"])
    def create_alert():
        body = _json_body()
        user_id = body.get("userId") or body.get("user_id")
        criteria = AlertCriteria.from_dict(body.get("criteria"))
        if not user_id:
            return {"success": False, "error": "VALIDATION_ERROR", "message": "userId is required"}, 400
        if criteria.is_empty():
            return {"success": False, "error": "VALIDATION_ERROR", "message": "criteria must not be empty"}, 400

        alert_type = body.get("alertType") or body.get("alert_type") or "custom"
        alert = alert_engine.create_alert(str(user_id), alert_type, criteria)
        return {"success": True, "alert": alert.to_dict()}, 201

    @app.route("/api/alerts", methods=["GET"])
    def list_alerts():
        user_id = request.args.get("userId") or request.args.get("user_id")
        if not user_id:
            return {"success": False, "error": "VALIDATION_ERROR", "message": "userId is required"}, 400

        triggered_days = request.args.get("triggeredDays", type=int)
        if triggered_days:
            alerts = alert_engine.get_recently_triggered(user_id, triggered_days)
        else:
            alerts = alert_engine.get_user_alerts(user_id)
        return {"success": True, "alerts": [a.to_dict() for a in alerts], "count": len(alerts)}

    @app.route("/api/alerts/<int:alert_id>", methods=["PUT"])
    def update_alert(alert_id: int):
        body = _json_body()
        criteria = AlertCriteria.from_dict(body["criteria"]) if body.get("criteria") else None
        active = _bool_arg(body["active"]) if "active" in body else None

        alert = alert_engine.update_alert(alert_id, criteria=criteria, active=active)
        if alert is None:
            return {"success": False, "error": "ALERT_NOT_FOUND", "message": f"Alert {alert_id} not found"}, 404
        return {"success": True, "alert": alert.to_dict()}

    @app.route("/api/alerts/<int:alert_id>", methods=["DELETE"])
    def delete_alert(alert_id: int):
        if not alert_engine.delete_alert(alert_id):
            return {"success": False, "error": "ALERT_NOT_FOUND", "message": f"Alert {alert_id} not found"}, 404
        return {"success": True}

    @app.route("/api/alerts/process", methods=["POST"])
    def process_alerts():
        return {"success": True, "summary": alert_engine.process_alerts()}

    return app


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the Flask server."""
    app = create_app()
    # Recover listings a previous process left unfinished
    app.extensions["firearm_intel"]["runner"].submit("reconcile", _reconcile_and_drain)
    app.run(host=host, port=port, debug=debug, use_reloader=False)


def _reconcile_and_drain() -> None:
    queue = get_enrichment_queue()
    if queue.reconcile():
        asyncio.run(queue.process_queue())


def main():
    """CLI entry point for the API server."""
    import argparse

    parser = argparse.ArgumentParser(description="Firearm Auction Intelligence API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5000, help="Port to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    logger.info(f"Starting API server on {args.host}:{args.port}")
    run_server(args.host, args.port, args.debug)


if __name__ == "__main__":
    main()
