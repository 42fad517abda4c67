"""Report, CSV, pagination and time helper tests."""
from datetime import date, datetime
from decimal import Decimal

import pytest

from business.csv_io import export_to_csv, format_csv_value, parse_member_csv
from business.display import (
    capitalize_status, format_last_valid_day, get_status_color,
    get_stock_status,
)
from business.money import format_currency
from business.pagination import Page, get_page_numbers, normalize_page
from business.permissions import can_manage_user, require_admin
from business.reports import (
    aggregate_attendance, aggregate_financial, aggregate_membership,
    aggregate_sales, calculate_shift_subtotals, financial_totals, jsonable,
    resolve_date_range, shift_base_date, summarize_day,
)
from business.timeutils import (
    local_date, local_day_bounds, parse_date, parse_datetime,
)


class TestDateRanges:
    """Tests for resolve_date_range and shift_base_date."""

    def test_daily(self):
        assert resolve_date_range("daily", date(2025, 1, 15)) == (
            date(2025, 1, 15), date(2025, 1, 15)
        )

    def test_weekly_starts_monday(self):
        assert resolve_date_range("weekly", date(2025, 1, 15)) == (
            date(2025, 1, 13), date(2025, 1, 19)
        )

    def test_monthly_leap_february(self):
        assert resolve_date_range("monthly", date(2024, 2, 10)) == (
            date(2024, 2, 1), date(2024, 2, 29)
        )

    def test_monthly_december(self):
        assert resolve_date_range("monthly", date(2025, 12, 31)) == (
            date(2025, 12, 1), date(2025, 12, 31)
        )

    def test_custom(self):
        assert resolve_date_range(
            "custom", date(2025, 1, 1), date(2025, 1, 3), date(2025, 1, 5)
        ) == (date(2025, 1, 3), date(2025, 1, 5))

    def test_custom_requires_both_dates(self):
        with pytest.raises(ValueError):
            resolve_date_range("custom", date(2025, 1, 1), date(2025, 1, 3))

    def test_unknown_range(self):
        with pytest.raises(ValueError, match="Unknown range type"):
            resolve_date_range("yearly", date(2025, 1, 1))

    def test_shift_base_date(self):
        assert shift_base_date("monthly", date(2025, 1, 31), 1) == date(2025, 2, 1)
        assert shift_base_date("monthly", date(2025, 1, 31), -1) == date(2024, 12, 1)
        assert shift_base_date("weekly", date(2025, 1, 15), -1) == date(2025, 1, 8)
        assert shift_base_date("daily", date(2025, 1, 1), -1) == date(2024, 12, 31)


class TestAggregation:
    """Tests for report aggregation by local date."""

    def test_financial_buckets_by_local_date(self):
        payments = [
            # 01:00 local on 2025-01-10
            {"amount": Decimal("100"), "type": "registration",
             "payment_method": "cash", "created_at": datetime(2025, 1, 9, 17, 0)},
            # 23:00 local on 2025-01-09, outside the range
            {"amount": Decimal("50"), "type": "walk-in",
             "payment_method": "cash", "created_at": datetime(2025, 1, 9, 15, 0)},
            {"amount": Decimal("165"), "type": "renewal",
             "payment_method": "qr", "created_at": datetime(2025, 1, 10, 5, 0),
             "details": {"renewal_plan": {"price": 150},
                         "grace_period_settlement": {"amount": 15}}},
        ]
        shifts = [{"ended_at": datetime(2025, 1, 10, 9, 0), "system_cash": 100}]
        days = aggregate_financial(payments, shifts,
                                   date(2025, 1, 10), date(2025, 1, 10))
        assert len(days) == 1
        day = days[0]
        assert day["date"] == "2025-01-10"
        assert day["registrations"] == Decimal("100")
        assert day["renewals"] == Decimal("150")
        assert day["grace_period_settlement_fees"] == Decimal("15")
        assert day["walk_ins"] == 0
        assert day["total"] == Decimal("265")
        assert day["by_method"]["qr"] == Decimal("165")
        assert len(day["shifts"]) == 1

        totals = financial_totals(days)
        assert totals["total"] == Decimal("265")

    def test_empty_days_are_present(self):
        days = aggregate_financial([], [], date(2025, 1, 1), date(2025, 1, 7))
        assert [d["date"] for d in days][0] == "2025-01-01"
        assert len(days) == 7

    def test_shift_subtotals(self):
        totals = calculate_shift_subtotals([
            {"system_cash": 100, "cash_collection": 90, "cash_variance": 10},
            {"system_cash": 50, "cash_collection": 50, "cash_variance": 0},
        ])
        assert totals["system_cash"] == Decimal("150")
        assert totals["cash_variance"] == Decimal("10")
        assert totals["qr_variance"] == 0

    def test_membership(self):
        days = aggregate_membership(
            [{"type": "adult", "created_at": datetime(2025, 1, 10, 2, 0)},
             {"type": "youth", "created_at": datetime(2025, 1, 10, 3, 0)}],
            [{"created_at": datetime(2025, 1, 10, 4, 0)}],
            date(2025, 1, 10), date(2025, 1, 10)
        )
        assert days[0]["new_members"] == 2
        assert days[0]["adult"] == 1
        assert days[0]["youth"] == 1
        assert days[0]["renewals"] == 1

    def test_attendance(self):
        days = aggregate_attendance(
            [{"type": "member", "check_in_time": datetime(2025, 1, 10, 2, 0)},
             {"type": "walk-in", "check_in_time": datetime(2025, 1, 10, 3, 0)},
             {"type": "walk-in", "check_in_time": datetime(2025, 1, 10, 4, 0)}],
            date(2025, 1, 10), date(2025, 1, 10)
        )
        assert days[0] == {"date": "2025-01-10", "members": 1,
                           "walk_ins": 2, "total": 3}

    def test_sales(self):
        report = aggregate_sales(
            [{"amount": Decimal("13"), "created_at": datetime(2025, 1, 10, 2, 0),
              "items": [{"product_name": "Water", "quantity": 2, "price": 2.5},
                        {"product_name": "Protein Bar", "quantity": 1,
                         "price": 8}]}],
            [{"id": 1, "name": "Water", "stock": 40},
             {"id": 2, "name": "Protein Bar", "stock": 5}],
            date(2025, 1, 10), date(2025, 1, 10)
        )
        day = report["days"][0]
        assert day["total_sales"] == Decimal("13")
        assert day["total_items"] == 3
        water = report["products"][0]
        assert water["total_quantity"] == 2
        assert water["total_revenue"] == Decimal("5")
        assert water["current_stock"] == 40

    def test_summarize_day(self):
        summary = summarize_day([
            {"amount": Decimal("45"), "type": "coupon", "payment_method": "qr"},
            {"amount": Decimal("10"), "type": "pos", "payment_method": "cash",
             "items": [{"quantity": 4}]},
        ])
        assert summary["total_sales"] == Decimal("55")
        assert summary["coupon_revenue"] == Decimal("45")
        assert summary["pos_items_sold"] == 4
        assert summary["qr_collections"] == Decimal("45")

    def test_jsonable(self):
        data = jsonable({"a": Decimal("1.50"), "b": [date(2025, 1, 1)],
                         "c": datetime(2025, 1, 1, 8, 30)})
        assert data == {"a": 1.5, "b": ["2025-01-01"],
                        "c": "2025-01-01T08:30:00"}


class TestCsv:
    """Tests for CSV export and member import parsing."""

    def test_empty_export(self):
        assert export_to_csv([]) == ""

    def test_quoting_and_types(self):
        csv_text = export_to_csv([
            {"name": 'Say "hi"', "active": True, "count": 3, "note": None},
            {"name": "Plain", "active": False, "count": 0, "note": "x"},
        ])
        assert csv_text == (
            'name,active,count,note\n'
            '"Say ""hi""",Yes,3,\n'
            '"Plain",No,0,"x"'
        )

    def test_simple_records_round_trip(self):
        records = [
            {"member_id": "000001", "name": "Siti", "visits": 3},
            {"member_id": "000002", "name": "Ali Hassan", "visits": 0},
            {"member_id": "000003", "name": "Mei", "visits": 12},
        ]
        lines = export_to_csv(records).split("\n")

        header = lines[0].split(",")
        rows = [[cell.strip('"') for cell in line.split(",")]
                for line in lines[1:]]
        assert header == list(records[0].keys())
        assert rows == [[str(v) for v in r.values()] for r in records]

    def test_datetime_in_local_time(self):
        assert format_csv_value(datetime(2025, 1, 1, 0, 0)) == "2025-01-01 08:00:00"

    def test_parse_member_csv(self):
        text = (
            "member_id,name,type,expiry_date\n"
            "000010,Siti,youth,2025-03-01T00:00:00\n"
            ",No Id,adult,\n"
        )
        records, errors = parse_member_csv(text)
        assert len(records) == 1
        assert records[0]["member_id"] == "000010"
        assert records[0]["type"] == "youth"
        assert records[0]["expiry_date"] == datetime(2025, 3, 1)
        assert "phone" not in records[0]
        assert errors == ["Row 3: member_id and name are required"]

    def test_parse_member_csv_blank_and_null(self):
        records, _ = parse_member_csv(
            "member_id,name,phone,email\n000778,Bo,,NULL\n000779,Cy,012,null\n"
        )
        assert records[0]["phone"] is None
        assert records[0]["email"] is None
        assert records[1]["phone"] == "012"
        assert records[1]["email"] is None

    def test_parse_member_csv_bad_date(self):
        records, errors = parse_member_csv(
            "member_id,name,expiry_date\n1,A,not-a-date\n"
        )
        assert records == []
        assert len(errors) == 1


class TestPagination:

    @pytest.mark.parametrize("current,total,expected", [
        (1, 10, [1, 2, 3, 4, 5]),
        (6, 10, [4, 5, 6, 7, 8]),
        (10, 10, [6, 7, 8, 9, 10]),
        (2, 3, [1, 2, 3]),
        (1, 1, [1]),
    ])
    def test_page_numbers(self, current, total, expected):
        assert get_page_numbers(current, total) == expected

    def test_total_pages(self):
        assert Page([], 31, 1, 15).total_pages == 3
        assert Page([], 0, 1, 15).total_pages == 1

    def test_normalize_page(self):
        assert normalize_page(3, 10) == (3, 10, 20)
        assert normalize_page("x", None) == (1, 15, 0)
        assert normalize_page(-2, "abc") == (1, 15, 0)

    def test_to_dict(self):
        data = Page(["a"], 16, 2, 15).to_dict()
        assert data["total_pages"] == 2
        assert data["page_numbers"] == [1, 2]
        assert data["data"] == ["a"]


class TestDisplayAndPermissions:

    def test_stock_status(self):
        assert get_stock_status(-1) == "negative"
        assert get_stock_status(0) == "out_of_stock"
        assert get_stock_status(10) == "low"
        assert get_stock_status(11) == "normal"

    def test_last_valid_day(self):
        assert format_last_valid_day(datetime(2025, 1, 10, 0, 0)) == "09 Jan 2025"
        assert format_last_valid_day(None) == "-"

    def test_capitalize_status(self):
        assert capitalize_status("grace") == "Grace"
        assert capitalize_status(None) == ""

    def test_status_color_and_currency(self):
        assert get_status_color("grace") == "yellow"
        assert get_status_color(None) == "gray"
        assert format_currency("12.5") == "RM 12.50"
        assert format_currency(None) == "RM 0.00"

    def test_role_rules(self):
        assert can_manage_user("superadmin", "superadmin") is True
        assert can_manage_user("admin", "superadmin") is False
        assert can_manage_user("admin", "cashier") is True
        assert can_manage_user("cashier", "cashier") is False
        with pytest.raises(PermissionError):
            require_admin("cashier")
        require_admin("admin")


class TestTimeUtils:

    def test_local_day_bounds(self):
        assert local_day_bounds(date(2025, 1, 10)) == (
            datetime(2025, 1, 9, 16, 0), datetime(2025, 1, 10, 16, 0)
        )

    def test_local_date(self):
        assert local_date(datetime(2025, 1, 9, 16, 0)) == date(2025, 1, 10)
        assert local_date(datetime(2025, 1, 9, 15, 59)) == date(2025, 1, 9)

    def test_parse_date(self):
        assert parse_date("2025-02-03") == date(2025, 2, 3)
        with pytest.raises(ValueError):
            parse_date("2025-13-01")
        with pytest.raises(ValueError, match="is required"):
            parse_date(None, "Start date")

    def test_parse_datetime_normalizes_to_utc(self):
        assert parse_datetime("2025-01-01T08:00:00+08:00") == datetime(2025, 1, 1)
        assert parse_datetime("2025-01-01T00:00:00Z") == datetime(2025, 1, 1)
        assert parse_datetime("") is None
