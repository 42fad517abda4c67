"""Shift reconciliation rule tests.

Tests for business.shifts:
- summarize_payments / split_renewal_amount
- calculate_variances
- build_shift_intervals / attribute_payments
- pending_shift_totals
"""
from datetime import datetime
from decimal import Decimal

from business.shifts import (
    attribute_payments, build_shift_intervals, calculate_variances,
    pending_shift_totals, reconcile, split_renewal_amount, summarize_payments,
)


def _payment(amount, payment_type, method, created_at=None, user_id=1,
             details=None):
    return {
        "amount": Decimal(str(amount)),
        "type": payment_type,
        "payment_method": method,
        "details": details,
        "user_id": user_id,
        "created_at": created_at or datetime(2025, 1, 10, 3, 0),
    }


SAMPLE_PAYMENTS = [
    _payment(100, "registration", "cash"),
    _payment(50, "walk-in", "qr"),
    _payment(165, "renewal", "bank_transfer", details={
        "renewal_plan": {"price": 150},
        "grace_period_settlement": {"amount": 15},
    }),
    _payment(20, "pos", "cash"),
    _payment(45, "coupon", "qr"),
]


class TestSummarizePayments:
    """Tests for summarize_payments."""

    def test_totals_by_method(self):
        summary = summarize_payments(SAMPLE_PAYMENTS)
        assert summary.total_sales == Decimal("380")
        assert summary.total_cash == Decimal("120")
        assert summary.total_qr == Decimal("95")
        assert summary.total_bank_transfer == Decimal("165")
        assert summary.payment_count == 5

    def test_totals_by_category(self):
        summary = summarize_payments(SAMPLE_PAYMENTS)
        assert summary.member_payments == Decimal("250")
        assert summary.grace_period_settlement_fees == Decimal("15")
        assert summary.walk_in_payments == Decimal("50")
        assert summary.pos_sales == Decimal("20")
        assert summary.coupon_sales == Decimal("45")

    def test_empty(self):
        summary = summarize_payments([])
        assert summary.total_sales == 0
        assert summary.to_dict()["total_cash"] == 0.0

    def test_to_dict_is_float(self):
        data = summarize_payments(SAMPLE_PAYMENTS).to_dict()
        assert data["total_sales"] == 380.0
        assert isinstance(data["grace_period_settlement_fees"], float)


class TestSplitRenewalAmount:

    def test_split_with_details(self):
        parts = split_renewal_amount(SAMPLE_PAYMENTS[2])
        assert parts == {"membership": Decimal("150"),
                         "grace_settlement": Decimal("15")}

    def test_legacy_renewal_without_details(self):
        parts = split_renewal_amount({"amount": Decimal("200"), "details": None})
        assert parts["membership"] == Decimal("200")
        assert parts["grace_settlement"] == 0


class TestVariances:
    """Tests for calculate_variances."""

    def test_cash_shortage(self):
        """System RM 500 cash against RM 480 counted is a RM 20 variance."""
        result = calculate_variances(
            {"cash": 500, "qr": 0, "bank_transfer": 0}, {"cash": 480}
        )
        assert result["cash_variance"] == Decimal("20")
        assert result["qr_variance"] == 0
        assert result["total_variance"] == Decimal("20")

    def test_overage_is_negative(self):
        result = calculate_variances({"qr": 100}, {"qr": 110})
        assert result["qr_variance"] == Decimal("-10")

    def test_missing_counts_treated_as_zero(self):
        result = calculate_variances({"cash": "12.50"}, {})
        assert result["cash_variance"] == Decimal("12.50")

    def test_reconcile(self):
        result = reconcile(SAMPLE_PAYMENTS,
                           {"cash": 120, "qr": 90, "bank_transfer": 165})
        assert result["summary"].total_sales == Decimal("380")
        assert result["variances"]["qr_variance"] == Decimal("5")
        assert result["variances"]["total_variance"] == Decimal("5")


# Local day 2025-01-10 (GMT+8) in UTC
DAY_START = datetime(2025, 1, 9, 16, 0)
DAY_END = datetime(2025, 1, 10, 16, 0)
SHIFTS = [
    {"id": 1, "user_id": 1, "user_name": "Ben",
     "ended_at": datetime(2025, 1, 10, 2, 0)},
    {"id": 2, "user_id": 2, "user_name": None,
     "ended_at": datetime(2025, 1, 10, 9, 0)},
]


class TestShiftIntervals:
    """Tests for build_shift_intervals and attribute_payments."""

    def test_intervals_after_day_is_over(self):
        intervals = build_shift_intervals(
            SHIFTS, DAY_START, DAY_END,
            previous_end=datetime(2025, 1, 9, 14, 0),
            now=datetime(2025, 1, 11)
        )
        assert len(intervals) == 3
        assert intervals[0].start == datetime(2025, 1, 9, 14, 0)
        assert intervals[0].end == SHIFTS[0]["ended_at"]
        assert intervals[1].start == SHIFTS[0]["ended_at"]
        assert intervals[2].shift is None
        assert intervals[2].end == DAY_END

    def test_no_trailing_interval_while_day_in_progress(self):
        intervals = build_shift_intervals(
            SHIFTS, DAY_START, DAY_END, now=datetime(2025, 1, 10, 10, 0)
        )
        assert len(intervals) == 2
        assert intervals[0].start == DAY_START

    def test_no_shifts_covers_whole_day(self):
        intervals = build_shift_intervals([], DAY_START, DAY_END,
                                          now=datetime(2025, 1, 10, 10, 0))
        assert len(intervals) == 1
        assert (intervals[0].start, intervals[0].end) == (DAY_START, DAY_END)

    def test_future_intervals_filtered(self):
        intervals = build_shift_intervals([], DAY_START, DAY_END,
                                          now=datetime(2025, 1, 9, 12, 0))
        assert intervals == []

    def test_attribution(self):
        intervals = build_shift_intervals(
            SHIFTS, DAY_START, DAY_END,
            previous_end=datetime(2025, 1, 9, 14, 0),
            now=datetime(2025, 1, 11)
        )
        attribute_payments(intervals, [
            # after previous handover, before the local day starts
            _payment(10, "walk-in", "cash", datetime(2025, 1, 9, 15, 0)),
            # exactly at the first handover belongs to the first shift
            _payment(20, "pos", "qr", datetime(2025, 1, 10, 2, 0)),
            _payment(30, "pos", "cash", datetime(2025, 1, 10, 5, 0)),
            _payment(40, "pos", "bank_transfer", datetime(2025, 1, 10, 12, 0)),
        ])
        assert intervals[0].total_sales == Decimal("30")
        assert intervals[0].by_method["qr"] == Decimal("20")
        assert intervals[1].total_sales == Decimal("30")
        assert intervals[2].total_sales == Decimal("40")

        first = intervals[0].to_dict()
        assert first["shift_id"] == 1
        assert first["user_name"] == "Ben"
        assert first["cash_collections"] == 10.0
        assert intervals[1].to_dict()["user_name"] == "Unknown User"
        assert intervals[2].to_dict()["shift_id"] is None


class TestPendingShiftTotals:

    def test_only_own_payments_since_shift_start(self):
        active = [
            {"id": 5, "user_id": 1, "user_name": "Ben",
             "created_at": datetime(2025, 1, 10, 10, 0)},
            {"id": 6, "user_id": 3, "created_at": datetime(2025, 1, 10, 10, 0)},
        ]
        payments = [
            _payment(30, "walk-in", "cash", datetime(2025, 1, 10, 9, 0), 1),
            _payment(50, "walk-in", "cash", datetime(2025, 1, 10, 11, 0), 1),
            _payment(60, "pos", "qr", datetime(2025, 1, 10, 11, 0), 2),
        ]
        results = pending_shift_totals(active, payments)
        assert len(results) == 1
        assert results[0]["shift_id"] == 5
        assert results[0]["total_sales"] == 50.0
        assert results[0]["cash_collections"] == 50.0
