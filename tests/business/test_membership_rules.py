"""Membership rule tests.

Tests for the pure functions in business.membership:
- calculate_member_status (active / grace / expired / suspended)
- NRIC validation, formatting and age
- registration and renewal expiry dates
- grace period charges
"""
from datetime import date, datetime

import pytest

from business.membership import (
    STATUS_ACTIVE, STATUS_EXPIRED, STATUS_GRACE, STATUS_SUSPENDED,
    calculate_grace_charges, calculate_member_status, calculate_renewal,
    format_member_id, format_nric, get_age_from_nric, grace_charges_apply,
    registration_expiry, validate_nric, walkin_price_for,
)
from business.timeutils import add_months

EXPIRY = datetime(2025, 1, 10)


class TestMemberStatus:
    """Tests for calculate_member_status."""

    def test_before_expiry_is_active(self):
        assert calculate_member_status(EXPIRY, "active", 7,
                                       datetime(2025, 1, 8)) == STATUS_ACTIVE

    def test_inside_grace_window(self):
        assert calculate_member_status(EXPIRY, "active", 7,
                                       datetime(2025, 1, 12)) == STATUS_GRACE

    def test_four_days_after_expiry_still_grace(self):
        """Expiry + 4 days is still inside a 7 day grace window."""
        assert calculate_member_status(EXPIRY, "active", 7,
                                       datetime(2025, 1, 14)) == STATUS_GRACE

    def test_after_grace_window_is_expired(self):
        assert calculate_member_status(EXPIRY, "grace", 7,
                                       datetime(2025, 1, 20)) == STATUS_EXPIRED

    def test_boundaries(self):
        assert calculate_member_status(EXPIRY, None, 7, EXPIRY) == STATUS_GRACE
        assert calculate_member_status(
            EXPIRY, None, 7, datetime(2025, 1, 17)
        ) == STATUS_EXPIRED

    def test_suspended_is_sticky(self):
        for now in (datetime(2025, 1, 1), datetime(2025, 3, 1)):
            assert calculate_member_status(
                EXPIRY, STATUS_SUSPENDED, 7, now
            ) == STATUS_SUSPENDED

    def test_missing_expiry_is_expired(self):
        assert calculate_member_status(None, "active", 7) == STATUS_EXPIRED

    def test_default_grace_period(self):
        assert calculate_member_status(
            EXPIRY, None, None, datetime(2025, 1, 16)
        ) == STATUS_GRACE

    def test_zero_grace_period(self):
        assert calculate_member_status(
            EXPIRY, None, 0, datetime(2025, 1, 10, 0, 1)
        ) == STATUS_EXPIRED


class TestNric:
    """Tests for NRIC helpers."""

    @pytest.mark.parametrize("nric", [
        "900101-14-5678", "900101145678", "051231-10-0001",
    ])
    def test_valid(self, nric):
        assert validate_nric(nric) is True

    @pytest.mark.parametrize("nric", [
        "", None, "9001011456789", "901301-14-5678", "900132-14-5678",
        "90010-14-5678", "abcdef-gh-ijkl",
    ])
    def test_invalid(self, nric):
        assert validate_nric(nric) is False

    def test_format(self):
        assert format_nric("900101145678") == "900101-14-5678"
        assert format_nric("900101-14-5678") == "900101-14-5678"

    def test_format_invalid_returns_input(self):
        assert format_nric("12345") == "12345"

    def test_age(self):
        assert get_age_from_nric("900101145678", today=date(2025, 1, 1)) == 35

    def test_age_before_birthday(self):
        assert get_age_from_nric("050615-10-1234",
                                 today=date(2025, 6, 14)) == 19
        assert get_age_from_nric("050615-10-1234",
                                 today=date(2025, 6, 15)) == 20

    def test_age_invalid(self):
        assert get_age_from_nric("bad") is None


class TestRegistrationAndRenewal:
    """Tests for expiry date calculations."""

    def test_member_id_format(self):
        assert format_member_id(42) == "000042"
        assert format_member_id(1234567) == "1234567"

    def test_registration_expiry_includes_free_months(self):
        now = datetime(2025, 1, 15, 3, 0)
        assert registration_expiry(12, 1, now) == datetime(2026, 2, 15, 3, 0)

    def test_add_months_clamps_to_month_end(self):
        assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_months(datetime(2025, 11, 15), 3) == datetime(2026, 2, 15)

    def test_renewal_extends_from_current_expiry(self):
        terms = calculate_renewal(
            STATUS_ACTIVE, datetime(2025, 3, 31, 10, 0), 1,
            now=datetime(2025, 3, 20)
        )
        assert terms.base_date == datetime(2025, 3, 31, 10, 0)
        assert terms.new_expiry_date == datetime(2025, 4, 30, 10, 0)
        assert terms.total_months == 1

    def test_grace_member_extends_from_expiry(self):
        terms = calculate_renewal(STATUS_GRACE, EXPIRY, 1,
                                  now=datetime(2025, 1, 12))
        assert terms.new_expiry_date == datetime(2025, 2, 10)

    def test_expired_member_restarts_from_now(self):
        now = datetime(2025, 5, 10, 4, 0)
        terms = calculate_renewal(STATUS_EXPIRED, EXPIRY, 1, 1, now)
        assert terms.base_date == now
        assert terms.new_expiry_date == datetime(2025, 7, 10, 4, 0)
        assert terms.total_months == 2

    def test_zero_months_rejected(self):
        with pytest.raises(ValueError, match="at least one month"):
            calculate_renewal(STATUS_ACTIVE, EXPIRY, 0, 0)


class TestGraceCharges:
    """Tests for grace period settlement rules."""

    def test_charges_apply_only_after_grace_window(self):
        assert grace_charges_apply(EXPIRY, 7, datetime(2025, 1, 17, 12, 0)) is False
        assert grace_charges_apply(EXPIRY, 7, datetime(2025, 1, 18, 0, 0)) is True

    def test_no_expiry_no_charges(self):
        assert grace_charges_apply(None, 7) is False

    def test_sum_uses_recorded_price_then_fallback(self):
        accesses = [
            {"walkin_price_at_time_of_access": 15},
            {"walkin_price_at_time_of_access": None},
        ]
        assert calculate_grace_charges(accesses, 12) == 27

    def test_empty(self):
        assert calculate_grace_charges([], 15) == 0

    def test_walkin_price_by_type(self):
        prices = {"adult_walkin_price": 15, "youth_walkin_price": 12}
        assert walkin_price_for("adult", prices) == 15
        assert walkin_price_for("youth", prices) == 12
        assert walkin_price_for("adult", {}) == 0
