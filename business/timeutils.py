"""时间与时区工具

数据库中所有时间均以 naive UTC 存储。报表分桶、"今天"的判断以及
对外展示统一使用固定偏移的本地时区（默认 GMT+8，不处理夏令时）。
"""
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple

from config.settings import settings


def utcnow() -> datetime:
    """当前 UTC 时间（naive）。"""
    return datetime.utcnow()


def _offset(offset_hours: Optional[int] = None) -> timedelta:
    if offset_hours is None:
        offset_hours = settings.timezone_offset_hours
    return timedelta(hours=offset_hours)


def to_local(dt: datetime, offset_hours: Optional[int] = None) -> datetime:
    """UTC 时间转换为本地时间（naive）。"""
    return dt + _offset(offset_hours)


def to_utc(dt: datetime, offset_hours: Optional[int] = None) -> datetime:
    """本地时间转换为 UTC 时间（naive）。"""
    return dt - _offset(offset_hours)


def local_date(dt: datetime, offset_hours: Optional[int] = None) -> date:
    """UTC 时间所在的本地日历日期。"""
    return to_local(dt, offset_hours).date()


def local_today(now: Optional[datetime] = None) -> date:
    """本地时区的今天。"""
    return local_date(now or utcnow())


def local_day_bounds(day: date,
                     offset_hours: Optional[int] = None
                     ) -> Tuple[datetime, datetime]:
    """本地日期对应的 UTC 时间区间 [start, end)。

    Args:
        day: 本地日历日期。

    Returns:
        (start_utc, end_utc)，end 为次日零点，不包含在区间内。
    """
    start = to_utc(datetime.combine(day, time.min), offset_hours)
    return start, start + timedelta(days=1)


def local_range_bounds(start_day: date, end_day: date,
                       offset_hours: Optional[int] = None
                       ) -> Tuple[datetime, datetime]:
    """本地日期范围（含两端）对应的 UTC 时间区间 [start, end)。"""
    if end_day < start_day:
        raise ValueError("End date must not be before start date")
    start, _ = local_day_bounds(start_day, offset_hours)
    _, end = local_day_bounds(end_day, offset_hours)
    return start, end


def format_local(dt: Optional[datetime],
                 fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """按本地时区格式化 UTC 时间，空值返回空字符串。"""
    if dt is None:
        return ""
    return to_local(dt).strftime(fmt)


def parse_date(value, field_name: str = "Date") -> date:
    """解析 YYYY-MM-DD 字符串或 date 对象。

    Raises:
        ValueError: 格式无效或缺失。
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError:
            raise ValueError(
                f"Invalid date format: {value}, expected YYYY-MM-DD"
            )
    raise ValueError(f"{field_name} is required")


def parse_datetime(value) -> Optional[datetime]:
    """解析 ISO 格式时间字符串，带时区的统一转换为 naive UTC。"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid datetime: {value}")
    if dt.tzinfo is not None:
        dt = (dt - dt.utcoffset()).replace(tzinfo=None)
    return dt


def add_months(dt: datetime, months: int) -> datetime:
    """日期加若干个月，月末溢出时取目标月最后一天。

    Example:
        add_months(datetime(2025, 1, 31), 1) -> datetime(2025, 2, 28)
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))
