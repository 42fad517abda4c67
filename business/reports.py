"""报表聚合规则

按本地日历日期（固定时区偏移）对收款、签到、新会员进行分桶汇总。
所有函数只处理字典列表，数据查询由 database.system_repos.ReportRepository 负责。
"""
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .money import PAYMENT_METHODS, to_decimal
from .shifts import split_renewal_amount
from .timeutils import local_date

RANGE_TYPES = ("daily", "weekly", "monthly", "custom")

SHIFT_SUBTOTAL_FIELDS = (
    "system_cash", "system_qr", "system_bank_transfer",
    "cash_collection", "qr_collection", "bank_transfer_collection",
    "cash_variance", "qr_variance", "bank_transfer_variance",
)


# ========== 日期范围 ==========

def resolve_date_range(range_type: str, base_date: date,
                       start: Optional[date] = None,
                       end: Optional[date] = None) -> Tuple[date, date]:
    """根据报表周期计算日期范围（含两端）。

    - daily: 当天
    - weekly: 所在周（周一开始）
    - monthly: 所在自然月
    - custom: 使用传入的 start / end

    Raises:
        ValueError: 未知周期，或 custom 缺少起止日期。
    """
    if range_type == "daily":
        return base_date, base_date
    if range_type == "weekly":
        monday = base_date - timedelta(days=base_date.weekday())
        return monday, monday + timedelta(days=6)
    if range_type == "monthly":
        first = base_date.replace(day=1)
        if first.month == 12:
            next_first = first.replace(year=first.year + 1, month=1)
        else:
            next_first = first.replace(month=first.month + 1)
        return first, next_first - timedelta(days=1)
    if range_type == "custom":
        if start is None or end is None:
            raise ValueError("Custom range requires start and end dates")
        if end < start:
            raise ValueError("End date must not be before start date")
        return start, end
    raise ValueError(f"Unknown range type: {range_type}")


def shift_base_date(range_type: str, base_date: date, offset: int) -> date:
    """报表翻页：按周期前后移动基准日期。"""
    if range_type == "weekly":
        return base_date + timedelta(weeks=offset)
    if range_type == "monthly":
        month_index = base_date.month - 1 + offset
        year = base_date.year + month_index // 12
        month = month_index % 12 + 1
        return date(year, month, 1)
    return base_date + timedelta(days=offset)


def iter_dates(start: date, end: date) -> List[date]:
    days = (end - start).days
    return [start + timedelta(days=i) for i in range(days + 1)]


# ========== 财务报表 ==========

def _empty_financial_day(day: date) -> Dict[str, Any]:
    return {
        "date": day.isoformat(),
        "registrations": Decimal("0"),
        "renewals": Decimal("0"),
        "walk_ins": Decimal("0"),
        "pos_sales": Decimal("0"),
        "coupon_sales": Decimal("0"),
        "grace_period_settlement_fees": Decimal("0"),
        "total": Decimal("0"),
        "by_method": {method: Decimal("0") for method in PAYMENT_METHODS},
        "shifts": [],
    }


def aggregate_financial(payments: Iterable[Dict[str, Any]],
                        shifts: Iterable[Dict[str, Any]],
                        start: date, end: date) -> List[Dict[str, Any]]:
    """按日期汇总收款，并附上当天结束的班次。

    续费按 details 拆分为会员费与宽限期结清费用。
    """
    days = {day.isoformat(): _empty_financial_day(day)
            for day in iter_dates(start, end)}

    for payment in payments:
        key = local_date(payment["created_at"]).isoformat()
        bucket = days.get(key)
        if bucket is None:
            continue
        amount = to_decimal(payment.get("amount"))
        payment_type = payment.get("type")
        if payment_type == "registration":
            bucket["registrations"] += amount
        elif payment_type == "renewal":
            parts = split_renewal_amount(payment)
            bucket["renewals"] += parts["membership"]
            bucket["grace_period_settlement_fees"] += parts["grace_settlement"]
        elif payment_type == "walk-in":
            bucket["walk_ins"] += amount
        elif payment_type == "pos":
            bucket["pos_sales"] += amount
        elif payment_type == "coupon":
            bucket["coupon_sales"] += amount
        bucket["total"] += amount
        method = payment.get("payment_method")
        if method in bucket["by_method"]:
            bucket["by_method"][method] += amount

    for shift in shifts:
        if not shift.get("ended_at"):
            continue
        bucket = days.get(local_date(shift["ended_at"]).isoformat())
        if bucket is not None:
            bucket["shifts"].append(shift)

    return [days[key] for key in sorted(days)]


def calculate_shift_subtotals(shifts: Iterable[Dict[str, Any]]) -> Dict[str, Decimal]:
    """累加多个班次的系统金额、清点金额与差异。"""
    totals = {name: Decimal("0") for name in SHIFT_SUBTOTAL_FIELDS}
    for shift in shifts:
        for name in SHIFT_SUBTOTAL_FIELDS:
            totals[name] += to_decimal(shift.get(name))
    return totals


def financial_totals(days: Iterable[Dict[str, Any]]) -> Dict[str, Decimal]:
    """财务报表合计行。"""
    fields = ("registrations", "renewals", "walk_ins", "pos_sales",
              "coupon_sales", "grace_period_settlement_fees", "total")
    totals = {name: Decimal("0") for name in fields}
    for day in days:
        for name in fields:
            totals[name] += day[name]
    return totals


# ========== 会员报表 ==========

def aggregate_membership(members: Iterable[Dict[str, Any]],
                         renewals: Iterable[Dict[str, Any]],
                         start: date, end: date) -> List[Dict[str, Any]]:
    """按日期统计新会员（按类型）与续费次数。"""
    days = {
        day.isoformat(): {
            "date": day.isoformat(),
            "new_members": 0,
            "adult": 0,
            "youth": 0,
            "renewals": 0,
        }
        for day in iter_dates(start, end)
    }
    for member in members:
        bucket = days.get(local_date(member["created_at"]).isoformat())
        if bucket is None:
            continue
        bucket["new_members"] += 1
        if member.get("type") in ("adult", "youth"):
            bucket[member["type"]] += 1
    for renewal in renewals:
        bucket = days.get(local_date(renewal["created_at"]).isoformat())
        if bucket is not None:
            bucket["renewals"] += 1
    return [days[key] for key in sorted(days)]


# ========== 签到报表 ==========

def aggregate_attendance(check_ins: Iterable[Dict[str, Any]],
                         start: date, end: date) -> List[Dict[str, Any]]:
    """按日期统计会员签到与散客人数。"""
    days = {
        day.isoformat(): {
            "date": day.isoformat(), "members": 0, "walk_ins": 0, "total": 0,
        }
        for day in iter_dates(start, end)
    }
    for check_in in check_ins:
        bucket = days.get(local_date(check_in["check_in_time"]).isoformat())
        if bucket is None:
            continue
        if check_in.get("type") == "member":
            bucket["members"] += 1
        else:
            bucket["walk_ins"] += 1
        bucket["total"] += 1
    return [days[key] for key in sorted(days)]


# ========== 销售报表 ==========

def aggregate_sales(sales: Iterable[Dict[str, Any]],
                    products: Iterable[Dict[str, Any]],
                    start: date, end: date) -> Dict[str, Any]:
    """POS 销售按日期与商品汇总。

    Returns:
        {"days": [...], "products": [...]}，商品合计按商品名匹配，
        附带当前库存。
    """
    days = {
        day.isoformat(): {
            "date": day.isoformat(),
            "total_sales": Decimal("0"),
            "total_items": 0,
            "products": {},
        }
        for day in iter_dates(start, end)
    }
    product_totals: Dict[str, Dict[str, Any]] = {}
    by_name: Dict[str, Dict[str, Any]] = {}
    for product in products:
        product_totals[product["id"]] = {
            "id": product["id"],
            "name": product["name"],
            "total_quantity": 0,
            "total_revenue": Decimal("0"),
            "current_stock": product.get("stock", 0),
        }
        by_name[product["name"]] = product_totals[product["id"]]

    for sale in sales:
        bucket = days.get(local_date(sale["created_at"]).isoformat())
        if bucket is None:
            continue
        bucket["total_sales"] += to_decimal(sale.get("amount"))
        for item in sale.get("items") or []:
            name = item.get("product_name")
            quantity = int(item.get("quantity") or 0)
            revenue = to_decimal(item.get("price")) * quantity
            line = bucket["products"].setdefault(
                name, {"quantity": 0, "revenue": Decimal("0")}
            )
            line["quantity"] += quantity
            line["revenue"] += revenue
            bucket["total_items"] += quantity
            if name in by_name:
                by_name[name]["total_quantity"] += quantity
                by_name[name]["total_revenue"] += revenue

    return {
        "days": [days[key] for key in sorted(days)],
        "products": list(product_totals.values()),
    }


# ========== 每日汇总 ==========

def summarize_day(payments: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """每日汇总的收入部分。"""
    summary = {
        "total_sales": Decimal("0"),
        "membership_revenue": Decimal("0"),
        "walk_in_revenue": Decimal("0"),
        "pos_revenue": Decimal("0"),
        "coupon_revenue": Decimal("0"),
        "grace_period_settlement_fees": Decimal("0"),
        "cash_collections": Decimal("0"),
        "qr_collections": Decimal("0"),
        "bank_transfer_collections": Decimal("0"),
        "renewals": 0,
        "pos_items_sold": 0,
    }
    for payment in payments:
        amount = to_decimal(payment.get("amount"))
        summary["total_sales"] += amount
        payment_type = payment.get("type")
        if payment_type == "renewal":
            parts = split_renewal_amount(payment)
            summary["membership_revenue"] += parts["membership"]
            summary["grace_period_settlement_fees"] += parts["grace_settlement"]
            summary["renewals"] += 1
        elif payment_type == "registration":
            summary["membership_revenue"] += amount
        elif payment_type == "walk-in":
            summary["walk_in_revenue"] += amount
        elif payment_type == "pos":
            summary["pos_revenue"] += amount
            summary["pos_items_sold"] += sum(
                int(item.get("quantity") or 0)
                for item in payment.get("items") or []
            )
        elif payment_type == "coupon":
            summary["coupon_revenue"] += amount

        method = payment.get("payment_method")
        if method in PAYMENT_METHODS:
            summary[f"{method}_collections"] += amount
    return summary


def jsonable(value: Any) -> Any:
    """把报表中的 Decimal / date / datetime 递归转换为 JSON 友好类型。"""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value
