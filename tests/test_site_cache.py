"""Site cache TTL and incremental URL tests."""

from __future__ import annotations

from datetime import timedelta

import pytest

from firearm_intel import site_cache as site_cache_module
from firearm_intel.db import SCRAPING_CACHE_TABLE
from firearm_intel.models import utcnow
from firearm_intel.site_cache import SiteCache

SOURCE_URL = "https://lonestar.example.com"


@pytest.fixture()
def cache(db) -> SiteCache:
    return SiteCache(db, ttl_hours=24)


def test_without_cache_every_url_is_new(cache):
    urls = ["https://lonestar.example.com/lot/1", "https://lonestar.example.com/lot/2"]
    assert cache.get_new_urls(SOURCE_URL, urls + urls[:1]) == urls


def test_only_unseen_urls_are_new(cache):
    cache.save_site_map(SOURCE_URL, "Lone Star", ["https://lonestar.example.com/lot/1"], firearms_found=1)

    new_urls = cache.get_new_urls(SOURCE_URL, [
        "https://lonestar.example.com/lot/1",
        "https://lonestar.example.com/lot/2",
    ])

    assert new_urls == ["https://lonestar.example.com/lot/2"]


def test_save_site_map_deduplicates_and_counts(cache):
    entry = cache.save_site_map(SOURCE_URL, "Lone Star", ["a", "b", "a", ""], firearms_found=2)
    assert entry.discovered_urls == ["a", "b"]
    assert entry.auction_count == 2
    assert entry.expires_at - entry.last_scraped == timedelta(hours=24)


def test_save_site_map_replaces_previous_entry(cache, fake_client):
    cache.save_site_map(SOURCE_URL, "Lone Star", ["a"], firearms_found=1)
    cache.save_site_map(SOURCE_URL, "Lone Star", ["a", "b"], firearms_found=2)

    assert len(fake_client.rows(SCRAPING_CACHE_TABLE)) == 1
    assert cache.get_site_map(SOURCE_URL).discovered_urls == ["a", "b"]


def test_entry_is_valid_until_expiry(cache, monkeypatch):
    entry = cache.save_site_map(SOURCE_URL, "Lone Star", ["a"], firearms_found=1)

    monkeypatch.setattr(site_cache_module, "utcnow", lambda: entry.expires_at - timedelta(seconds=1))
    assert cache.is_valid(SOURCE_URL)

    monkeypatch.setattr(site_cache_module, "utcnow", lambda: entry.expires_at)
    assert not cache.is_valid(SOURCE_URL)
    assert cache.get_site_map(SOURCE_URL) is None
    # Expired entries make every URL new again
    assert cache.get_new_urls(SOURCE_URL, ["a"]) == ["a"]


def test_invalidate_forces_expiry(cache):
    cache.save_site_map(SOURCE_URL, "Lone Star", ["a"], firearms_found=1)
    cache.invalidate(SOURCE_URL)
    assert not cache.is_valid(SOURCE_URL)


def test_store_failure_is_a_cache_miss(cache, fake_client):
    cache.save_site_map(SOURCE_URL, "Lone Star", ["a"], firearms_found=1)
    fake_client.fail(SCRAPING_CACHE_TABLE, "select")

    assert cache.get_site_map(SOURCE_URL) is None
    assert cache.get_new_urls(SOURCE_URL, ["a", "b"]) == ["a", "b"]


def test_stats_summarize_entries(cache):
    cache.save_site_map(SOURCE_URL, "Lone Star", ["a", "b"], firearms_found=2)
    cache.save_site_map("https://estates.example.com", "Estates", ["c"], firearms_found=0)
    cache.invalidate("https://estates.example.com")

    stats = cache.get_stats()

    assert stats["total"] == 2
    assert stats["valid"] == 1
    assert stats["expired"] == 1
    assert stats["total_urls"] == 3
    assert stats["total_firearms"] == 2
    assert {s["name"] for s in stats["sources"]} == {"Lone Star", "Estates"}


def test_default_ttl_comes_from_config(db):
    entry = SiteCache(db).save_site_map(SOURCE_URL, "Lone Star", ["a"], firearms_found=0)
    assert entry.expires_at > utcnow() + timedelta(hours=23)
