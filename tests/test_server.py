"""HTTP API tests against in-memory collaborators."""

from __future__ import annotations

from datetime import timedelta

import pytest

from firearm_intel.alerts import AlertEngine
from firearm_intel.analytics import PriceAnalytics
from firearm_intel.config import AppConfig
from firearm_intel.enrichment import EnrichmentService
from firearm_intel.enrichment_queue import EnrichmentQueue
from firearm_intel.models import EnrichmentStatus, utcnow
from firearm_intel.scraper import ScrapeCoordinator
from firearm_intel.server import RateLimiter, create_app
from firearm_intel.site_cache import SiteCache

from .fakes import FakeAI, FakeFirecrawl, FakeRunner

COLT_ANSWER = {
    "identification": {"manufacturer": "Colt", "model": "Python", "category": "Handgun"},
    "soldStatus": "active",
}


class Harness:
    """Flask test client plus the collaborators behind it."""

    def __init__(self, db, source, runner: FakeRunner):
        self.config = AppConfig(scrape_rate_limit=2, request_delay=0.0, queue_batch_delay=0.0)
        self.ai = FakeAI(lambda payload: COLT_ANSWER)
        self.firecrawl = FakeFirecrawl()
        self.enrichment = EnrichmentService(db=db, ai=self.ai, config=self.config)
        self.queue = EnrichmentQueue(self.enrichment, db=db, batch_delay=0)
        self.coordinator = ScrapeCoordinator(
            db=db,
            client=self.firecrawl,
            cache=SiteCache(db, ttl_hours=24),
            queue=self.queue,
            sources=[source],
            config=self.config,
        )
        self.runner = runner
        self.app = create_app(
            db=db,
            coordinator=self.coordinator,
            queue=self.queue,
            enrichment=self.enrichment,
            analytics=PriceAnalytics(db=db, config=self.config),
            alert_engine=AlertEngine(db=db, config=self.config),
            runner=runner,
            config=self.config,
        )
        self.client = self.app.test_client()


@pytest.fixture()
def harness(db, source) -> Harness:
    return Harness(db, source, FakeRunner())


@pytest.fixture()
def client(harness):
    return harness.client


def test_ping(client):
    response = client.get("/api/ping")
    assert response.status_code == 200
    assert response.get_json()["message"] == "pong"


def test_health_reports_queue_and_scrape(client):
    body = client.get("/api/health").get_json()
    assert body["queue"]["queue_length"] == 0
    assert body["scrape"]["is_active"] is False


def test_list_auctions_with_filters(client, make_listing):
    colt = make_listing(manufacturer="Colt", current_bid=1500, category="Handgun")
    make_listing(manufacturer="Ruger", current_bid=500, category="Rifle")
    make_listing(manufacturer="Colt", current_bid=5000, category="Handgun", is_estate_sale=True)

    body = client.get("/api/firearms/auctions?manufacturer=colt&maxPrice=2000").get_json()
    assert body["success"] is True
    assert [a["id"] for a in body["auctions"]] == [colt.id]
    assert body["count"] == 1

    body = client.get("/api/firearms/auctions?estateSalesOnly=true").get_json()
    assert body["count"] == 1

    body = client.get("/api/firearms/auctions?limit=0").get_json()
    assert body["count"] == 1


def test_get_auction(client, make_listing):
    listing = make_listing(title="Colt Python")

    body = client.get(f"/api/firearms/auctions/{listing.id}").get_json()
    assert body["auction"]["title"] == "Colt Python"

    response = client.get("/api/firearms/auctions/999")
    assert response.status_code == 404
    assert response.get_json() == {
        "success": False,
        "error": "LISTING_NOT_FOUND",
        "message": "Auction 999 not found",
        "details": {"auction_id": 999},
    }


def test_refresh_is_accepted_then_rate_limited(harness, client):
    assert client.post("/api/firearms/refresh").status_code == 202
    assert client.post("/api/firearms/refresh").status_code == 202

    response = client.post("/api/firearms/refresh")
    assert response.status_code == 429
    assert response.get_json()["error"] == "RATE_LIMITED"
    assert harness.runner.submitted == ["refresh", "refresh"]


def test_refresh_while_running_conflicts(db, source):
    harness = Harness(db, source, FakeRunner(accept=False))

    response = harness.client.post("/api/firearms/refresh")

    assert response.status_code == 409
    assert response.get_json()["success"] is False


def test_refresh_scrapes_and_enriches(db, source):
    harness = Harness(db, source, FakeRunner(run_inline=True))
    harness.firecrawl.extractions[source.crawl_url] = {
        "auctions": [{"title": "Colt Python 6in", "url": "https://lonestar.example.com/lot/1", "current_bid": 1200}],
    }

    response = harness.client.post("/api/firearms/refresh")
    assert response.status_code == 202

    (auction,) = harness.client.get("/api/firearms/auctions").get_json()["auctions"]
    assert auction["manufacturer"] == "Colt"
    assert auction["enrichment_status"] == EnrichmentStatus.COMPLETED.value
    assert harness.queue.get_queue() == []

    stats = harness.client.get("/api/firearms/scrape-stats").get_json()
    assert stats["sources"][0]["successful_saves"] == 1
    assert stats["cache"]["total"] == 1


def test_scrape_url(harness, client):
    harness.firecrawl.extractions["https://lonestar.example.com/lot/77"] = {
        "auctions": [{"title": "Colt SAA", "current_bid": 3200}],
    }

    assert client.post("/api/firearms/scrape-url", json={}).status_code == 400

    body = client.post("/api/firearms/scrape-url", json={"url": "https://lonestar.example.com/lot/77"}).get_json()
    assert body["auction"]["title"] == "Colt SAA"
    assert harness.runner.submitted == ["process-queue"]
    assert harness.queue.get_queue()[0].auction_id == body["auction"]["id"]


def test_scrape_url_failure_is_reported(client):
    response = client.post("/api/firearms/scrape-url", json={"url": "https://lonestar.example.com/lot/404"})
    assert response.status_code == 500
    assert response.get_json()["error"] == "SCRAPE_ERROR"


def test_enrich_single_listing(harness, client, make_listing):
    listing = make_listing(title="Colt Python 6in")

    body = client.post(f"/api/firearms/enrich/{listing.id}").get_json()

    assert body["auction"]["manufacturer"] == "Colt"
    assert len(harness.ai.calls) == 1
    assert client.post("/api/firearms/enrich/999").status_code == 404


def test_enrich_all_is_submitted(harness, client):
    response = client.post("/api/firearms/enrich-all", json={"force": True})
    assert response.status_code == 202
    assert response.get_json()["force"] is True
    assert harness.runner.submitted == ["enrich-all"]


def test_enrichment_stats_and_queue(harness, client, make_listing):
    listing = make_listing()
    make_listing(enrichment_status=EnrichmentStatus.COMPLETED)
    harness.queue.add(listing.id)

    stats = client.get("/api/firearms/enrichment-stats").get_json()["stats"]
    assert stats["total"] == 2
    assert stats["pending"] == 1

    body = client.get("/api/firearms/queue").get_json()
    assert body["queue_length"] == 1
    assert body["items"][0]["auction_id"] == listing.id


def test_ending_soon(client, make_listing):
    soon = make_listing(auction_date=utcnow() + timedelta(hours=2))
    make_listing(auction_date=utcnow() + timedelta(days=5))

    body = client.get("/api/firearms/ending-soon?hours=12").get_json()
    assert [a["id"] for a in body["auctions"]] == [soon.id]


def test_price_history_requires_manufacturer_and_model(client):
    response = client.get("/api/intelligence/price-history?manufacturer=Colt")
    assert response.status_code == 400
    assert response.get_json()["error"] == "VALIDATION_ERROR"


def test_price_history_returns_analysis(client):
    body = client.get("/api/intelligence/price-history?manufacturer=Colt&model=Python").get_json()
    assert body["analysis"]["sample_size"] == 0


def test_pricing_trends_and_opportunities(client):
    body = client.get("/api/intelligence/pricing/Handgun?days=9999").get_json()
    assert body["days"] == 365
    assert body["trends"] == []

    body = client.get("/api/intelligence/opportunities?threshold=10").get_json()
    assert body["count"] == 0


def test_dashboard(client, make_listing):
    make_listing(is_estate_sale=True)

    metrics = client.get("/api/analytics/dashboard").get_json()["metrics"]
    assert metrics["active_auctions"] == 1
    assert metrics["estate_sales"] == 1

    estates = client.get("/api/estates/upcoming").get_json()
    assert estates["count"] == 1


def test_alert_lifecycle(client):
    assert client.post("/api/alerts", json={"criteria": {"manufacturer": "Colt"}}).status_code == 400
    assert client.post("/api/alerts", json={"userId": "u1", "criteria": {}}).status_code == 400

    response = client.post("/api/alerts", json={"userId": "u1", "criteria": {"manufacturer": "Colt", "maxPrice": 2000}})
    assert response.status_code == 201
    alert = response.get_json()["alert"]
    assert alert["criteria"]["max_price"] == 2000.0

    assert client.get("/api/alerts").status_code == 400
    assert client.get("/api/alerts?userId=u1").get_json()["count"] == 1

    body = client.put(f"/api/alerts/{alert['id']}", json={"active": False}).get_json()
    assert body["alert"]["active"] is False
    assert client.put("/api/alerts/999", json={"active": False}).status_code == 404

    assert client.delete(f"/api/alerts/{alert['id']}").get_json() == {"success": True}
    assert client.delete(f"/api/alerts/{alert['id']}").status_code == 404


def test_process_alerts_endpoint(client, make_listing):
    make_listing(manufacturer="Colt")
    client.post("/api/alerts", json={"userId": "u1", "criteria": {"manufacturer": "Colt"}})

    summary = client.post("/api/alerts/process").get_json()["summary"]

    assert summary["alerts_sent"] == 1
    assert client.get("/api/alerts?userId=u1&triggeredDays=1").get_json()["count"] == 1


def test_unknown_route_is_json_404(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.get_json()["success"] is False


def test_rate_limiter_fixed_window():
    now = {"t": 0.0}
    limiter = RateLimiter(limit=2, window_seconds=60, clock=lambda: now["t"])

    assert limiter.hit("1.2.3.4")
    assert limiter.hit("1.2.3.4")
    assert not limiter.hit("1.2.3.4")
    assert limiter.hit("5.6.7.8")

    now["t"] = 60.0
    assert limiter.hit("1.2.3.4")

    limiter.reset()
    now["t"] = 61.0
    assert limiter.hit("1.2.3.4")
    assert limiter.hit("1.2.3.4")


def test_rate_limiter_forgets_expired_windows():
    now = {"t": 0.0}
    limiter = RateLimiter(limit=2, window_seconds=60, clock=lambda: now["t"])
    for n in range(50):
        limiter.hit(f"10.0.0.{n}")
    now["t"] = 30.0
    limiter.hit("1.2.3.4")
    limiter.hit("1.2.3.4")
    assert limiter.tracked_keys == 51

    now["t"] = 61.0
    assert not limiter.hit("1.2.3.4")
    # Only the window still open survives the sweep
    assert limiter.tracked_keys == 1

    assert limiter.hit("10.0.0.1")
    assert limiter.tracked_keys == 2
