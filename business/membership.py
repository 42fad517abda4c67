"""会员业务规则

纯函数实现，不依赖数据库：
- 会员状态推导（active / grace / expired / suspended）
- 马来西亚身份证号（NRIC）校验、格式化与年龄推算
- 注册、续费的到期日计算与提前续费校验
- 宽限期欠费计算
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from .money import to_decimal
from .timeutils import add_months, local_date, utcnow

STATUS_ACTIVE = "active"
STATUS_GRACE = "grace"
STATUS_EXPIRED = "expired"
STATUS_SUSPENDED = "suspended"

MEMBER_STATUSES = (STATUS_ACTIVE, STATUS_GRACE, STATUS_EXPIRED, STATUS_SUSPENDED)
MEMBER_TYPES = ("adult", "youth")

DEFAULT_GRACE_PERIOD_DAYS = 7

_NRIC_PATTERN = re.compile(
    r"^(\d{2})(0[1-9]|1[0-2])(0[1-9]|[12]\d|3[01])-?(\d{2})-?(\d{4})$"
)


# ========== 状态推导 ==========

def calculate_member_status(expiry_date: Optional[datetime],
                            current_status: Optional[str] = None,
                            grace_period_days: Optional[int] = None,
                            now: Optional[datetime] = None) -> str:
    """根据到期时间推导会员状态。

    suspended 为手动设置的状态，始终保持不变。其余情况：
    now 早于到期时间为 active；早于到期时间加宽限期为 grace；否则 expired。

    Args:
        expiry_date: 到期时间（UTC）。
        current_status: 当前状态。
        grace_period_days: 宽限期天数，None 时使用默认值 7。
        now: 当前时间（UTC），默认取系统时间。

    Returns:
        推导出的状态字符串。
    """
    if current_status == STATUS_SUSPENDED:
        return STATUS_SUSPENDED
    if expiry_date is None:
        return STATUS_EXPIRED
    if grace_period_days is None:
        grace_period_days = DEFAULT_GRACE_PERIOD_DAYS
    now = now or utcnow()

    if now < expiry_date:
        return STATUS_ACTIVE
    if now < expiry_date + timedelta(days=grace_period_days):
        return STATUS_GRACE
    return STATUS_EXPIRED


def grace_period_end(expiry_date: datetime, grace_period_days: int) -> datetime:
    """宽限期结束时间。"""
    return expiry_date + timedelta(days=grace_period_days)


# ========== NRIC ==========

def clean_nric(nric: str) -> str:
    return (nric or "").replace("-", "").strip()


def validate_nric(nric: Optional[str]) -> bool:
    """校验 NRIC 格式（YYMMDD-PB-###G，连字符可省略）。"""
    if not nric:
        return False
    return _NRIC_PATTERN.match(nric.strip()) is not None


def format_nric(nric: str) -> str:
    """格式化为 YYMMDD-PB-###G，无效输入原样返回。"""
    if not validate_nric(nric):
        return nric
    cleaned = clean_nric(nric)
    return f"{cleaned[:6]}-{cleaned[6:8]}-{cleaned[8:]}"


def get_age_from_nric(nric: str, today: Optional[date] = None) -> Optional[int]:
    """根据 NRIC 的出生日期推算周岁。

    两位年份不大于当前年份后两位时视为 2000 年后出生，否则为 1900 年代。

    Returns:
        年龄，无效 NRIC 返回 None。
    """
    match = _NRIC_PATTERN.match((nric or "").strip())
    if not match:
        return None
    today = today or date.today()
    yy, mm, dd = int(match.group(1)), int(match.group(2)), int(match.group(3))
    century = 2000 if yy <= today.year % 100 else 1900
    try:
        birth = date(century + yy, mm, dd)
    except ValueError:
        return None
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age


# ========== 注册与续费 ==========

def format_member_id(sequence: int) -> str:
    """自动生成的会员编号：6 位补零序号。"""
    return str(sequence).zfill(6)


def registration_expiry(months: int, free_months: int = 0,
                        now: Optional[datetime] = None) -> datetime:
    """新会员到期时间 = 当前时间 + (月数 + 赠送月数)。"""
    return add_months(now or utcnow(), (months or 0) + (free_months or 0))


@dataclass
class RenewalTerms:
    """一次续费的计算结果。

    Attributes:
        base_date: 计算起点（已过期为当前时间，否则为原到期时间）。
        new_expiry_date: 新到期时间。
        total_months: 月数 + 赠送月数。
    """
    base_date: datetime
    new_expiry_date: datetime
    total_months: int


def calculate_renewal(status: str, expiry_date: Optional[datetime],
                      months: int, free_months: int = 0,
                      now: Optional[datetime] = None) -> RenewalTerms:
    """计算续费后的到期时间，并拒绝无效的提前续费。

    已过期会员从当前时间起算，新到期日必须晚于今天；其余会员从原到期
    时间起算，新到期日必须晚于原到期日。

    Raises:
        ValueError: 月数无效或新到期日不晚于基准日期。
    """
    now = now or utcnow()
    total_months = (months or 0) + (free_months or 0)
    if total_months <= 0:
        raise ValueError("Renewal must add at least one month")

    expired = status == STATUS_EXPIRED or expiry_date is None
    base = now if expired else expiry_date
    new_expiry = add_months(base, total_months)

    if expired:
        if local_date(new_expiry) <= local_date(now):
            raise ValueError("New expiry date must be after today")
    elif new_expiry <= expiry_date:
        raise ValueError("New expiry date must be after the current expiry date")

    return RenewalTerms(base_date=base, new_expiry_date=new_expiry,
                        total_months=total_months)


def grace_charges_apply(expiry_date: Optional[datetime],
                        grace_period_days: int,
                        now: Optional[datetime] = None) -> bool:
    """续费时是否需要结清宽限期散客费用：今天已超过到期日加宽限期。"""
    if expiry_date is None:
        return False
    today = local_date(now or utcnow())
    return today > local_date(grace_period_end(expiry_date, grace_period_days))


def calculate_grace_charges(accesses: Iterable[Dict[str, Any]],
                            fallback_price: Any = 0) -> Decimal:
    """累计宽限期内未结清的入场费用。

    每条记录优先使用入场时记录的散客价格，缺失时使用当前散客价格。

    Args:
        accesses: 宽限期入场记录，含 walkin_price_at_time_of_access。
        fallback_price: 会员类型对应的当前散客价格。
    """
    total = Decimal("0")
    for access in accesses:
        price = access.get("walkin_price_at_time_of_access")
        if price is None:
            price = fallback_price
        total += to_decimal(price)
    return total


def walkin_price_for(member_type: str, membership_settings: Dict[str, Any]) -> Decimal:
    """按会员类型取散客单次价格，未配置返回 0。"""
    key = "youth_walkin_price" if member_type == "youth" else "adult_walkin_price"
    return to_decimal((membership_settings or {}).get(key) or 0)
