"""Metrics calculator tests.

Tests for:
- days_between: floor semantics, negative deltas
- engagement_score: component weights, bounds, rounding
- compute_fields: lifecycle flags, VIP, contact richness, extras
"""
from datetime import timedelta

import pytest

from business.metrics import (
    ComputedFields, CustomerExtras, compute_fields, days_between,
    engagement_score, round_half_up,
)
from tests.factories import NOW, make_customer


class TestDaysBetween:

    def test_whole_days(self):
        assert days_between(NOW - timedelta(days=3), NOW) == 3

    def test_partial_day_is_floored(self):
        assert days_between(NOW - timedelta(days=2, hours=23), NOW) == 2

    def test_same_instant(self):
        assert days_between(NOW, NOW) == 0

    def test_future_timestamp_is_negative(self):
        assert days_between(NOW + timedelta(hours=1), NOW) == -1


class TestRoundHalfUp:

    @pytest.mark.parametrize("value,expected", [
        (0.5, 1), (1.5, 2), (2.5, 3), (2.49, 2), (99.5, 100),
    ])
    def test_rounds_half_away_from_even(self, value, expected):
        assert round_half_up(value) == expected


class TestEngagementScore:

    def test_today_with_no_bookings_or_contacts(self):
        assert engagement_score(0, 0, False, False, False, False) == 40

    def test_recency_decays_to_zero_at_90_days(self):
        assert engagement_score(90, 0, False, False, False, False) == 0
        assert engagement_score(200, 0, False, False, False, False) == 0

    def test_recency_halfway(self):
        assert engagement_score(45, 0, False, False, False, False) == 20

    def test_frequency_caps_at_ten_bookings(self):
        assert engagement_score(90, 10, False, False, False, False) == 30
        assert engagement_score(90, 50, False, False, False, False) == 30

    def test_depth_weights(self):
        assert engagement_score(90, 0, True, False, False, False) == 10
        assert engagement_score(90, 0, False, True, False, False) == 10
        assert engagement_score(90, 0, False, False, True, False) == 5
        assert engagement_score(90, 0, False, False, False, True) == 5

    def test_maximum_score(self):
        assert engagement_score(0, 10, True, True, True, True) == 100

    def test_future_last_visit_does_not_inflate_recency(self):
        assert engagement_score(-30, 0, False, False, False, False) == 40
        assert engagement_score(-30, 10, True, True, True, True) == 100

    def test_rounding(self):
        # 40 - 40/90 = 39.555...
        assert engagement_score(1, 0, False, False, False, False) == 40
        # 40 - 80/90 = 39.111...
        assert engagement_score(2, 0, False, False, False, False) == 39

    @pytest.mark.parametrize("days", [-365, -1, 0, 1, 44, 45, 89, 90, 91, 1000])
    @pytest.mark.parametrize("bookings", [0, 1, 9, 10, 11, 500])
    def test_always_within_bounds(self, days, bookings):
        for flags in [(False,) * 4, (True,) * 4, (True, False, True, False)]:
            score = engagement_score(days, bookings, *flags)
            assert 0 <= score <= 100


class TestComputeFields:

    def test_returns_computed_fields(self):
        fields = compute_fields(make_customer(), now=NOW)
        assert isinstance(fields, ComputedFields)
        assert fields.days_since_first_visit == 10
        assert fields.days_since_last_visit == 10

    def test_new_customer_boundary(self):
        at_30 = make_customer(first_seen_at=NOW - timedelta(days=30))
        at_31 = make_customer(first_seen_at=NOW - timedelta(days=31))
        assert compute_fields(at_30, now=NOW).is_new is True
        assert compute_fields(at_31, now=NOW).is_new is False

    def test_active_boundary(self):
        at_60 = make_customer(last_seen_at=NOW - timedelta(days=60),
                              first_seen_at=NOW - timedelta(days=100))
        at_61 = make_customer(last_seen_at=NOW - timedelta(days=61),
                              first_seen_at=NOW - timedelta(days=100))
        assert compute_fields(at_60, now=NOW).is_active is True
        assert compute_fields(at_61, now=NOW).is_active is False

    def test_at_risk_scenario(self):
        """2 bookings, last seen 50 days ago."""
        customer = make_customer(
            total_bookings=2,
            first_seen_at=NOW - timedelta(days=200),
            last_seen_at=NOW - timedelta(days=50),
        )
        fields = compute_fields(customer, now=NOW)
        assert fields.is_at_risk is True
        assert fields.is_active is True
        assert fields.is_churned is False

    def test_at_risk_requires_two_bookings(self):
        customer = make_customer(
            total_bookings=1,
            first_seen_at=NOW - timedelta(days=200),
            last_seen_at=NOW - timedelta(days=50),
        )
        assert compute_fields(customer, now=NOW).is_at_risk is False

    def test_churn_scenario(self):
        """1 booking, last seen 91 days ago."""
        customer = make_customer(
            total_bookings=1,
            first_seen_at=NOW - timedelta(days=300),
            last_seen_at=NOW - timedelta(days=91),
        )
        fields = compute_fields(customer, now=NOW)
        assert fields.is_churned is True
        assert fields.is_at_risk is False
        assert fields.is_active is False

    def test_churn_requires_a_booking(self):
        customer = make_customer(
            total_bookings=0,
            first_seen_at=NOW - timedelta(days=300),
            last_seen_at=NOW - timedelta(days=120),
        )
        assert compute_fields(customer, now=NOW).is_churned is False

    @pytest.mark.parametrize("days", [0, 30, 60, 61, 89, 90, 91, 365])
    @pytest.mark.parametrize("bookings", [0, 1, 2, 5, 12])
    def test_churned_and_active_never_both(self, days, bookings):
        customer = make_customer(
            total_bookings=bookings,
            first_seen_at=NOW - timedelta(days=400),
            last_seen_at=NOW - timedelta(days=days),
        )
        fields = compute_fields(customer, now=NOW)
        assert not (fields.is_churned and fields.is_active)

    def test_vip_by_bookings(self):
        customer = make_customer(total_bookings=10)
        assert compute_fields(customer, now=NOW).is_vip is True

    def test_vip_by_referrals(self):
        customer = make_customer(total_bookings=5)
        extras = CustomerExtras(has_referrals=True)
        assert compute_fields(customer, extras, now=NOW).is_vip is True

    def test_not_vip_with_referrals_but_few_bookings(self):
        customer = make_customer(total_bookings=4)
        extras = CustomerExtras(has_referrals=True)
        assert compute_fields(customer, extras, now=NOW).is_vip is False

    def test_not_vip_without_referrals(self):
        customer = make_customer(total_bookings=9)
        assert compute_fields(customer, now=NOW).is_vip is False

    def test_subscriber_from_compound_source(self):
        customer = make_customer(source="booking,subscriber")
        assert compute_fields(customer, now=NOW).is_subscriber is True

    def test_contact_flags_and_richness(self):
        customer = make_customer(email="a@example.com", phone="090",
                                 line_user_id="U123")
        fields = compute_fields(customer, now=NOW)
        assert fields.has_email and fields.has_phone and fields.has_line
        assert fields.contact_richness == 3

    def test_empty_strings_are_not_contacts(self):
        customer = make_customer(email="", phone="", line_user_id="")
        fields = compute_fields(customer, now=NOW)
        assert fields.contact_richness == 0

    def test_engagement_uses_stamps_extra(self):
        customer = make_customer(last_seen_at=NOW - timedelta(days=90),
                                 first_seen_at=NOW - timedelta(days=90))
        plain = compute_fields(customer, now=NOW)
        stamped = compute_fields(customer, CustomerExtras(has_stamps=True), now=NOW)
        assert stamped.engagement_score - plain.engagement_score == 5

    def test_future_last_seen_keeps_negative_days(self):
        customer = make_customer(first_seen_at=NOW - timedelta(days=5),
                                 last_seen_at=NOW + timedelta(days=3))
        fields = compute_fields(customer, now=NOW)
        assert fields.days_since_last_visit == -3
        assert fields.engagement_score == 40


class TestCustomerExtras:

    def test_from_dict(self):
        extras = CustomerExtras.from_dict({"has_referrals": True})
        assert extras.has_referrals is True
        assert extras.has_stamps is False

    def test_from_none(self):
        assert CustomerExtras.from_dict(None) == CustomerExtras()
