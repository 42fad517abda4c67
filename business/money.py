"""金额工具

金额在数据库中以 DECIMAL(10,2) 存储，计算过程统一使用 Decimal，
只在输出给 API 时转换为 float。
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

PAYMENT_METHODS = ("cash", "qr", "bank_transfer")
PAYMENT_TYPES = ("registration", "renewal", "walk-in", "pos", "coupon")

_CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """任意数值转换为 Decimal，None 视为 0。"""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize(value: Any) -> Decimal:
    """四舍五入到分。"""
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def format_currency(value: Any) -> str:
    """格式化为 "RM 12.50"。"""
    return f"RM {quantize(value):.2f}"


def validate_payment_method(method: str) -> str:
    """校验支付方式。

    Raises:
        ValueError: 不支持的支付方式。
    """
    if method not in PAYMENT_METHODS:
        raise ValueError(
            f"Invalid payment method: {method}, "
            f"expected one of {', '.join(PAYMENT_METHODS)}"
        )
    return method
