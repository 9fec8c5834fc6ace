"""Full pipeline run: step summary and failure isolation."""

from __future__ import annotations

import pytest

from firearm_intel import pipeline
from firearm_intel.alerts import AlertEngine
from firearm_intel.analytics import PriceAnalytics
from firearm_intel.enrichment import EnrichmentService
from firearm_intel.enrichment_queue import EnrichmentQueue
from firearm_intel.models import AlertCriteria, EnrichmentStatus
from firearm_intel.scraper import ScrapeCoordinator
from firearm_intel.site_cache import SiteCache

from .fakes import FakeAI, FakeFirecrawl

COLT_ANSWER = {"identification": {"manufacturer": "Colt", "model": "Python"}, "soldStatus": "active"}


@pytest.fixture()
def wired(db, config, source, monkeypatch):
    """Point the pipeline's singletons at in-memory collaborators."""
    enrichment = EnrichmentService(db=db, ai=FakeAI(lambda payload: COLT_ANSWER), config=config)
    queue = EnrichmentQueue(enrichment, db=db, batch_delay=0)
    firecrawl = FakeFirecrawl(extractions={
        source.crawl_url: {"auctions": [{"title": "Colt Python", "url": "https://lonestar.example.com/lot/1"}]},
    })
    coordinator = ScrapeCoordinator(
        db=db, client=firecrawl, cache=SiteCache(db), queue=queue, sources=[source], config=config,
    )
    alert_engine = AlertEngine(db=db, config=config)

    monkeypatch.setattr(pipeline, "get_enrichment_queue", lambda: queue)
    monkeypatch.setattr(pipeline, "get_coordinator", lambda: coordinator)
    monkeypatch.setattr(pipeline, "get_analytics", lambda: PriceAnalytics(db=db, config=config))
    monkeypatch.setattr(pipeline, "get_alert_engine", lambda: alert_engine)
    return {"queue": queue, "coordinator": coordinator, "alerts": alert_engine, "firecrawl": firecrawl}


def test_full_pipeline_scrapes_enriches_and_alerts(wired, make_listing, db):
    leftover = make_listing(title="Ruger Mini-14")
    wired["alerts"].create_alert("user-1", "watchlist", AlertCriteria(manufacturer="colt"))

    summary = pipeline.run_full_pipeline()

    assert summary["errors"] == []
    assert summary["reconciled"] == 1
    assert summary["new_listings"] == 1
    assert summary["enriched"] == 2
    assert summary["enrichment_failed"] == 0
    assert summary["alert_matches"] == 2
    assert summary["alerts_sent"] == 2
    assert db.get_listing(leftover.id).enrichment_status == EnrichmentStatus.COMPLETED


def test_failed_step_does_not_stop_the_run(wired, monkeypatch):
    def broken():
        raise RuntimeError("firecrawl down")

    monkeypatch.setattr(wired["coordinator"], "scrape_all_sources", broken)

    summary = pipeline.run_full_pipeline()

    assert summary["errors"] == ["scrape: firecrawl down"]
    assert summary["new_listings"] == 0
    assert "completed_at" in summary


def test_enrich_all_forced_requeues_everything(wired, make_listing):
    make_listing(enrichment_status=EnrichmentStatus.COMPLETED)
    make_listing()

    result = pipeline.enrich_all(force=True)

    assert result["queued"] == 2
    assert result["successful"] == 2


def test_ingestion_counts_only_inserted_listings_as_new(wired, make_listing):
    make_listing(url="https://lonestar.example.com/lot/1", title="Colt Python")

    result = pipeline.run_ingestion()

    assert result["saved_listings"] == 1
    assert result["new_listings"] == 0
    assert result["sources"][0]["new_listings"] == 0
    assert wired["queue"].get_queue() == []
