"""班次对账规则

纯函数实现：
- 班次内收款汇总（按支付方式、按收入类别）
- 系统金额与人工清点金额的差异计算
- 每日汇总中按班次边界把收款归属到收银员
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .money import PAYMENT_METHODS, to_decimal


def _zero_methods() -> Dict[str, Decimal]:
    return {method: Decimal("0") for method in PAYMENT_METHODS}


@dataclass
class ShiftSummary:
    """班次收款汇总。

    Attributes:
        total_sales: 收款总额。
        by_method: 按支付方式汇总（cash / qr / bank_transfer）。
        member_payments: 会员注册与续费（不含宽限期结清费用）。
        walk_in_payments: 散客收款。
        pos_sales: 商品销售。
        coupon_sales: 优惠券销售。
        grace_period_settlement_fees: 续费时结清的宽限期费用。
        payment_count: 收款笔数。
    """
    total_sales: Decimal = Decimal("0")
    by_method: Dict[str, Decimal] = field(default_factory=_zero_methods)
    member_payments: Decimal = Decimal("0")
    walk_in_payments: Decimal = Decimal("0")
    pos_sales: Decimal = Decimal("0")
    coupon_sales: Decimal = Decimal("0")
    grace_period_settlement_fees: Decimal = Decimal("0")
    payment_count: int = 0

    @property
    def total_cash(self) -> Decimal:
        return self.by_method["cash"]

    @property
    def total_qr(self) -> Decimal:
        return self.by_method["qr"]

    @property
    def total_bank_transfer(self) -> Decimal:
        return self.by_method["bank_transfer"]

    def to_dict(self) -> Dict[str, float]:
        return {
            "total_sales": float(self.total_sales),
            "total_cash": float(self.total_cash),
            "total_qr": float(self.total_qr),
            "total_bank_transfer": float(self.total_bank_transfer),
            "member_payments": float(self.member_payments),
            "walk_in_payments": float(self.walk_in_payments),
            "pos_sales": float(self.pos_sales),
            "coupon_sales": float(self.coupon_sales),
            "grace_period_settlement_fees": float(
                self.grace_period_settlement_fees
            ),
            "payment_count": self.payment_count,
        }


def split_renewal_amount(payment: Dict[str, Any]) -> Dict[str, Decimal]:
    """拆分续费收款：会员费部分与宽限期结清部分。

    details 中记录了 renewal_plan.price 与 grace_period_settlement.amount；
    两者都缺失或为 0 的旧数据，整笔计入会员费。

    Returns:
        {"membership": Decimal, "grace_settlement": Decimal}
    """
    details = payment.get("details") or {}
    plan_price = to_decimal(
        (details.get("renewal_plan") or {}).get("price")
    )
    grace_amount = to_decimal(
        (details.get("grace_period_settlement") or {}).get("amount")
    )
    if plan_price == 0 and grace_amount == 0:
        return {
            "membership": to_decimal(payment.get("amount")),
            "grace_settlement": Decimal("0"),
        }
    return {"membership": plan_price, "grace_settlement": grace_amount}


def summarize_payments(payments: Iterable[Dict[str, Any]]) -> ShiftSummary:
    """汇总一组收款。

    Args:
        payments: 收款字典列表，使用 amount、payment_method、type、details 键。

    Returns:
        ShiftSummary 汇总结果。
    """
    summary = ShiftSummary()
    for payment in payments:
        amount = to_decimal(payment.get("amount"))
        summary.total_sales += amount
        summary.payment_count += 1

        method = payment.get("payment_method")
        if method in summary.by_method:
            summary.by_method[method] += amount

        payment_type = payment.get("type")
        if payment_type == "registration":
            summary.member_payments += amount
        elif payment_type == "renewal":
            parts = split_renewal_amount(payment)
            summary.member_payments += parts["membership"]
            summary.grace_period_settlement_fees += parts["grace_settlement"]
        elif payment_type == "walk-in":
            summary.walk_in_payments += amount
        elif payment_type == "pos":
            summary.pos_sales += amount
        elif payment_type == "coupon":
            summary.coupon_sales += amount
    return summary


def calculate_variances(system_totals: Dict[str, Any],
                        manual_counts: Dict[str, Any]) -> Dict[str, Decimal]:
    """计算系统金额与人工清点金额的差异。

    差异 = 系统金额 - 人工金额（正数表示短款）。

    Args:
        system_totals: 按支付方式的系统金额。
        manual_counts: 按支付方式的人工清点金额，缺失的方式视为 0。

    Returns:
        含 cash_variance、qr_variance、bank_transfer_variance、
        total_variance 的字典。
    """
    result: Dict[str, Decimal] = {}
    total = Decimal("0")
    for method in PAYMENT_METHODS:
        variance = (to_decimal(system_totals.get(method))
                    - to_decimal(manual_counts.get(method)))
        result[f"{method}_variance"] = variance
        total += variance
    result["total_variance"] = total
    return result


def reconcile(payments: Iterable[Dict[str, Any]],
              manual_counts: Dict[str, Any]) -> Dict[str, Any]:
    """班次对账：汇总收款并与人工清点比较。"""
    summary = summarize_payments(payments)
    return {
        "summary": summary,
        "variances": calculate_variances(summary.by_method, manual_counts),
    }


# ========== 每日汇总：班次边界归属 ==========

@dataclass
class ShiftInterval:
    """按班次结束时间切分的收款区间 (start, end]。

    shift 为 None 表示该区间没有已结束的班次（尚未交班的时段）。
    """
    start: datetime
    end: datetime
    shift: Optional[Dict[str, Any]] = None
    total_sales: Decimal = Decimal("0")
    by_method: Dict[str, Decimal] = field(default_factory=_zero_methods)

    def add(self, payment: Dict[str, Any]) -> None:
        amount = to_decimal(payment.get("amount"))
        self.total_sales += amount
        method = payment.get("payment_method")
        if method in self.by_method:
            self.by_method[method] += amount

    def to_dict(self) -> Dict[str, Any]:
        shift = self.shift or {}
        return {
            "shift_id": shift.get("id"),
            "user_id": shift.get("user_id"),
            "user_name": shift.get("user_name") or (
                "Unknown User" if self.shift else None
            ),
            "start_time": self.start,
            "end_time": self.end,
            "total_sales": float(self.total_sales),
            "cash_collections": float(self.by_method["cash"]),
            "qr_collections": float(self.by_method["qr"]),
            "bank_transfer_collections": float(self.by_method["bank_transfer"]),
        }


def build_shift_intervals(ended_shifts: List[Dict[str, Any]],
                          day_start: datetime, day_end: datetime,
                          previous_end: Optional[datetime] = None,
                          now: Optional[datetime] = None
                          ) -> List[ShiftInterval]:
    """根据当天已结束的班次构造收款区间。

    第一个区间从前一个班次的结束时间（或当天开始）起，每个班次的结束
    时间是下一个区间的起点。当天已完全过去时，末尾补一个无班次区间；
    当天没有任何班次时返回覆盖全天的单个区间。未来开始的区间会被过滤。

    Args:
        ended_shifts: 当天结束的班次，按 ended_at 升序。
        day_start: 当天开始（UTC）。
        day_end: 当天结束（UTC）。
        previous_end: 当天之前最近一个班次的结束时间。
        now: 当前时间（UTC）。
    """
    now = now or datetime.utcnow()
    intervals: List[ShiftInterval] = []
    last_end = previous_end or day_start

    for shift in ended_shifts:
        intervals.append(ShiftInterval(start=last_end, end=shift["ended_at"],
                                       shift=shift))
        last_end = shift["ended_at"]

    if last_end < day_end and last_end < now and day_end <= now:
        intervals.append(ShiftInterval(start=last_end, end=day_end))

    if not intervals:
        intervals.append(ShiftInterval(start=day_start, end=day_end))

    return [interval for interval in intervals if interval.start <= now]


def attribute_payments(intervals: List[ShiftInterval],
                       payments: Iterable[Dict[str, Any]]) -> List[ShiftInterval]:
    """把收款归属到 start < created_at <= end 的第一个区间。"""
    for payment in payments:
        created_at = payment["created_at"]
        for interval in intervals:
            if interval.start < created_at <= interval.end:
                interval.add(payment)
                break
    return intervals


def pending_shift_totals(active_shifts: Iterable[Dict[str, Any]],
                         payments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """未结束班次的待交班金额：该收银员自班次开始以来的收款。

    没有任何收款的班次不返回。
    """
    results = []
    for shift in active_shifts:
        relevant = [
            p for p in payments
            if p.get("user_id") == shift["user_id"]
            and p["created_at"] >= shift["created_at"]
        ]
        summary = summarize_payments(relevant)
        if summary.total_sales > 0:
            results.append({
                "shift_id": shift["id"],
                "user_id": shift["user_id"],
                "user_name": shift.get("user_name") or "Unknown User",
                "start_time": shift["created_at"],
                "total_sales": float(summary.total_sales),
                "cash_collections": float(summary.total_cash),
                "qr_collections": float(summary.total_qr),
                "bank_transfer_collections": float(summary.total_bank_transfer),
            })
    return results
