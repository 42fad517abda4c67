"""展示辅助：状态标签、库存状态、最后有效日"""
from datetime import datetime, timedelta
from typing import Optional

from .timeutils import to_local

LOW_STOCK_THRESHOLD = 10

_STATUS_COLORS = {
    "active": "green",
    "grace": "yellow",
    "expired": "red",
    "suspended": "gray",
}


def capitalize_status(status: Optional[str]) -> str:
    if not status:
        return ""
    return status[0].upper() + status[1:]


def get_status_color(status: Optional[str]) -> str:
    return _STATUS_COLORS.get(status or "", "gray")


def get_stock_status(stock: int, threshold: int = LOW_STOCK_THRESHOLD) -> str:
    """库存状态：negative / out_of_stock / low / normal。"""
    if stock < 0:
        return "negative"
    if stock == 0:
        return "out_of_stock"
    if stock <= threshold:
        return "low"
    return "normal"


def format_last_valid_day(expiry_date: Optional[datetime]) -> str:
    """最后有效日 = 到期日前一天，格式 "dd Mon yyyy"，空值返回 "-"。"""
    if expiry_date is None:
        return "-"
    return (to_local(expiry_date) - timedelta(days=1)).strftime("%d %b %Y")
