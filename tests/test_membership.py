"""Tests for membership windows and session costing."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from lounge_pos import constants, membership, sessions
from lounge_pos.exceptions import ValidationError

from conftest import make_customer, make_product

NOW = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)


def _membership_product(**overrides):
    values = dict(name="Gold Pass", category="membership", price="1500", stock=0, duration="weekly", membership_hours=6)
    values.update(overrides)
    return make_product("M1", **values)


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


def test_non_member_is_never_active():
    assert membership.is_membership_active(make_customer(), NOW) is False


def test_member_with_future_expiry_is_active():
    customer = make_customer(is_member=True, membership_expiry_date=NOW + timedelta(days=1))
    assert membership.is_membership_active(customer, NOW) is True


def test_member_with_past_expiry_is_inactive():
    customer = make_customer(is_member=True, membership_expiry_date=NOW - timedelta(seconds=1))
    assert membership.is_membership_active(customer, NOW) is False


def test_member_without_hours_left_is_inactive():
    customer = replace(
        make_customer(is_member=True, membership_expiry_date=NOW + timedelta(days=3)),
        membership_hours_left=0,
    )
    assert membership.is_membership_active(customer, NOW) is False


def test_naive_expiry_dates_are_read_as_utc():
    customer = make_customer(is_member=True, membership_expiry_date=datetime(2024, 3, 2))
    assert membership.is_membership_active(customer, NOW) is True


def test_resolve_duration_prefers_explicit_field():
    product = _membership_product(name="Weekly Pass", duration="monthly")
    assert membership.resolve_duration(product) is constants.MembershipDuration.MONTHLY


def test_resolve_duration_falls_back_to_product_name(caplog):
    product = _membership_product(name="Monthly Unlimited", duration=None)

    assert membership.resolve_duration(product) is constants.MembershipDuration.MONTHLY
    assert "inferred 'monthly'" in caplog.text


def test_resolve_duration_without_any_hint_is_rejected():
    with pytest.raises(ValidationError, match="weekly or monthly"):
        membership.resolve_duration(_membership_product(name="Gold Pass", duration=None))


def test_resolve_duration_rejects_unknown_value():
    with pytest.raises(ValidationError, match="unknown duration"):
        membership.resolve_duration(_membership_product(duration="yearly"))


@pytest.mark.parametrize(("duration", "days"), [("weekly", 7), ("monthly", 30)])
def test_grant_for_product_sets_window(duration, days):
    grant = membership.grant_for_product(_membership_product(duration=duration), NOW)

    assert grant.start_date == NOW
    assert grant.expiry_date == NOW + timedelta(days=days)
    assert grant.hours == 6
    assert grant.plan == "Gold Pass"


def test_grant_for_product_defaults_hours():
    grant = membership.grant_for_product(_membership_product(membership_hours=None), NOW)
    assert grant.hours == constants.DEFAULT_MEMBERSHIP_HOURS


# ---------------------------------------------------------------------------
# Session costing
# ---------------------------------------------------------------------------


@pytest.fixture
def station() -> sessions.Station:
    return sessions.Station(station_id="PS5-1", name="PS5 Bay 1", station_type="ps5", hourly_rate=Decimal("150"))


def _session(minutes: float | None = None, **overrides) -> sessions.Session:
    values = dict(session_id="S1", station_id="PS5-1", customer_id="C100", start_time=NOW)
    if minutes is not None:
        values["end_time"] = NOW + timedelta(minutes=minutes)
        values["duration_minutes"] = round(minutes)
    values.update(overrides)
    return sessions.Session(**values)


def test_elapsed_minutes_is_at_least_one():
    assert sessions.elapsed_minutes(NOW, NOW + timedelta(seconds=5)) == 1


def test_session_price_rounds_up_to_whole_units():
    # 50 minutes at 150/h is 125.0; 55 minutes is 137.5
    assert sessions.session_price(50, Decimal("150"), is_member=False) == Decimal("125")
    assert sessions.session_price(55, Decimal("150"), is_member=False) == Decimal("138")


def test_session_price_applies_member_discount():
    assert sessions.session_price(55, Decimal("150"), is_member=True) == Decimal("69")


def test_finalize_running_session_for_guest(station):
    line = sessions.finalize(_session(), station, make_customer(), end_time=NOW + timedelta(minutes=90))

    assert line.item_type == "session"
    assert line.item_id == "S1"
    assert line.quantity == 1
    assert line.price == line.total == Decimal("225")
    assert line.name == "PS5 Bay 1 - 90 mins"


def test_finalize_gives_active_members_the_discount(station):
    member = make_customer(is_member=True, membership_expiry_date=NOW + timedelta(days=5))

    line = sessions.finalize(_session(60), station, member)

    assert line.total == Decimal("75")


def test_finalize_with_custom_discount(station):
    member = make_customer(is_member=True, membership_expiry_date=NOW + timedelta(days=5))

    line = sessions.finalize(_session(60), station, member, member_discount_percent=Decimal("20"))

    assert line.total == Decimal("120")


def test_finalize_rejects_mismatched_station(station):
    with pytest.raises(ValidationError):
        sessions.finalize(_session(60, station_id="POOL-1"), station, None)


def test_end_session_twice_is_rejected():
    ended = sessions.end_session(_session(), NOW + timedelta(minutes=30))

    assert ended.duration_minutes == 30
    with pytest.raises(ValidationError, match="already ended"):
        sessions.end_session(ended)
