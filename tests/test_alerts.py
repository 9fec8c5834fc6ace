"""Alert matching and alert engine tests."""

from __future__ import annotations

from datetime import timedelta

import pytest

from firearm_intel.alerts import AlertEngine, match_criteria
from firearm_intel.db import USER_ALERTS_TABLE
from firearm_intel.models import AlertCriteria, AuctionListing, utcnow


@pytest.fixture()
def engine(db, config) -> AlertEngine:
    return AlertEngine(db=db, config=config)


def _listing(**fields) -> AuctionListing:
    return AuctionListing(url="https://lonestar.example.com/lot/1", title="Lot 1", **fields)


def test_text_criteria_match_substrings_case_insensitively():
    listing = _listing(manufacturer="Smith & Wesson", model="Model 29-2", caliber=".44 Magnum")
    criteria = AlertCriteria(manufacturer="smith", model="29", caliber="44 mag")

    matched, reasons = match_criteria(listing, criteria)

    assert matched
    assert reasons == ["Manufacturer: Smith & Wesson", "Model: Model 29-2", "Caliber: .44 Magnum"]


def test_category_and_condition_match_exactly():
    listing = _listing(category="Handgun", condition="Excellent")

    assert match_criteria(listing, AlertCriteria(category="Handgun", condition="Excellent"))[0]
    assert not match_criteria(listing, AlertCriteria(category="Hand"))[0]


def test_empty_criteria_never_match():
    assert match_criteria(_listing(manufacturer="Colt"), AlertCriteria()) == (False, [])


def test_missing_listing_field_fails_text_criterion():
    assert match_criteria(_listing(), AlertCriteria(manufacturer="Colt")) == (False, [])


def test_max_price_is_skipped_without_a_bid():
    criteria = AlertCriteria(manufacturer="Colt", max_price=1000)

    assert match_criteria(_listing(manufacturer="Colt"), criteria) == (True, ["Manufacturer: Colt"])
    assert match_criteria(_listing(manufacturer="Colt", current_bid=1000), criteria)[0]
    assert not match_criteria(_listing(manufacturer="Colt", current_bid=1000.01), criteria)[0]
    # Nothing satisfied, so no match
    assert not match_criteria(_listing(), AlertCriteria(max_price=1000))[0]


def test_min_rarity_uses_rarity_order():
    criteria = AlertCriteria(min_rarity="Rare")

    assert match_criteria(_listing(rarity="Extremely Rare"), criteria)[0]
    assert match_criteria(_listing(rarity="rare"), criteria)[0]
    assert not match_criteria(_listing(rarity="Scarce"), criteria)[0]
    # Unknown rarity counts as Common
    assert not match_criteria(_listing(), criteria)[0]
    assert match_criteria(_listing(), AlertCriteria(min_rarity="Common")) == (True, ["Rarity: Common"])


def test_nfa_and_estate_flags():
    assert match_criteria(_listing(nfa_item=True), AlertCriteria(nfa_only=True))[0]
    assert not match_criteria(_listing(nfa_item=None), AlertCriteria(nfa_only=True))[0]
    assert match_criteria(_listing(is_estate_sale=True), AlertCriteria(estate_sales_only=True))[0]
    assert not match_criteria(_listing(is_estate_sale=False), AlertCriteria(estate_sales_only=True))[0]


def test_first_failing_criterion_discards_earlier_reasons():
    listing = _listing(manufacturer="Colt", model="Python", current_bid=5000)
    criteria = AlertCriteria(manufacturer="Colt", model="Python", max_price=1000)

    assert match_criteria(listing, criteria) == (False, [])


def test_process_alerts_notifies_and_stamps(engine, make_listing, db):
    make_listing(manufacturer="Colt", model="Python", current_bid=900)
    make_listing(manufacturer="Colt", model="Python", scraped_at=utcnow() - timedelta(days=3))
    make_listing(manufacturer="Ruger", model="Mini-14")

    alert = engine.create_alert("user-1", "watchlist", AlertCriteria(manufacturer="colt", max_price=1000))
    idle = engine.create_alert("user-2", "watchlist", AlertCriteria(manufacturer="ruger"))
    engine.update_alert(idle.id, active=False)

    summary = engine.process_alerts()

    assert summary == {"total_matches": 1, "alerts_sent": 1, "errors": 0}
    assert db.get_user_alert(alert.id).last_triggered is not None
    assert db.get_user_alert(idle.id).last_triggered is None


def test_process_alerts_counts_send_failures(engine, make_listing, fake_client):
    make_listing(manufacturer="Colt")
    engine.create_alert("user-1", "watchlist", AlertCriteria(manufacturer="Colt"))
    fake_client.fail(USER_ALERTS_TABLE, "update")

    assert engine.process_alerts() == {"total_matches": 1, "alerts_sent": 0, "errors": 1}


def test_process_alerts_without_alerts(engine, make_listing):
    make_listing(manufacturer="Colt")
    assert engine.process_alerts() == {"total_matches": 0, "alerts_sent": 0, "errors": 0}


def test_alert_crud(engine):
    alert = engine.create_alert("user-1", "custom", AlertCriteria(manufacturer="Colt"))
    assert alert.id is not None
    assert alert.active is True

    updated = engine.update_alert(alert.id, criteria=AlertCriteria(model="Python", nfa_only=True))
    assert updated.criteria.model == "Python"
    assert updated.criteria.manufacturer is None
    assert updated.criteria.nfa_only is True

    assert engine.update_alert(alert.id).id == alert.id
    assert engine.update_alert(999, active=False) is None

    assert [a.id for a in engine.get_user_alerts("user-1")] == [alert.id]
    assert engine.get_user_alerts("user-2") == []

    assert engine.delete_alert(alert.id) is True
    assert engine.delete_alert(alert.id) is False


def test_recently_triggered(engine, db):
    recent = engine.create_alert("user-1", "custom", AlertCriteria(manufacturer="Colt"))
    old = engine.create_alert("user-1", "custom", AlertCriteria(manufacturer="Ruger"))
    engine.create_alert("user-1", "custom", AlertCriteria(manufacturer="Winchester"))
    db.update_user_alert(recent.id, {"last_triggered": (utcnow() - timedelta(days=1)).isoformat()})
    db.update_user_alert(old.id, {"last_triggered": (utcnow() - timedelta(days=30)).isoformat()})

    assert [a.id for a in engine.get_recently_triggered("user-1", days=7)] == [recent.id]
