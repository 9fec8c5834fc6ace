"""Shared test fixtures: in-memory store, fast config, listing factory."""

from __future__ import annotations

from datetime import timedelta

import pytest

from firearm_intel.config import AppConfig
from firearm_intel.db import Database, set_db
from firearm_intel.enrichment_queue import EnrichmentQueue
from firearm_intel.models import AuctionListing, AuctionSource, SourceCategory, utcnow

from .fakes import FakeEnricher, FakeSupabaseClient, make_client


@pytest.fixture()
def fake_client() -> FakeSupabaseClient:
    return make_client()


@pytest.fixture()
def db(fake_client: FakeSupabaseClient) -> Database:
    return Database(client=fake_client)


@pytest.fixture(autouse=True)
def _inject_db(db: Database):
    """Point the process-wide store at the in-memory one for every test."""
    set_db(db)
    yield
    set_db(None)


@pytest.fixture()
def config() -> AppConfig:
    """Defaults without the inter-request and inter-batch pauses."""
    return AppConfig(request_delay=0.0, queue_batch_delay=0.0)


@pytest.fixture()
def enricher() -> FakeEnricher:
    return FakeEnricher()


@pytest.fixture()
def queue(enricher: FakeEnricher, db: Database) -> EnrichmentQueue:
    return EnrichmentQueue(enricher, db=db, max_concurrent=3, max_retries=2, batch_delay=0)


@pytest.fixture()
def source() -> AuctionSource:
    return AuctionSource(
        name="Lone Star Auctioneers",
        url="https://lonestar.example.com",
        city="Dallas",
        state="TX",
    )


@pytest.fixture()
def estate_source() -> AuctionSource:
    return AuctionSource(
        name="Estate Finder",
        url="https://estates.example.com",
        city="Tulsa",
        state="OK",
        category=SourceCategory.ESTATE,
    )


@pytest.fixture()
def make_listing(db: Database):
    """Insert a listing with sensible defaults; keyword arguments override fields."""
    counter = {"n": 0}

    def _make(**overrides) -> AuctionListing:
        counter["n"] += 1
        fields = {
            "url": f"https://lonestar.example.com/lot/{counter['n']}",
            "title": f"Lot {counter['n']}",
            "source_website": "Lone Star Auctioneers",
            "auction_house": "Lone Star Auctioneers",
            "auction_date": utcnow() + timedelta(days=3),
        }
        fields.update(overrides)
        return db.insert_listing(AuctionListing(**fields))

    return _make
