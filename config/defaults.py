"""业务设置默认值

settings 表中各键的默认值。初始化数据库时写入，读取时若键不存在
也以此为准，保证新部署无需手动配置即可运行。
"""
from typing import Any, Dict


# 品牌展示
BRANDING: Dict[str, Any] = {
    "logo_text": "Friendly Muscle Fitness",
    "icon_enabled": True,
    "icon_color": "#ea580c",
    "logo_url": None,
}

# 会员相关：宽限期天数与散客单次价格
MEMBERSHIP: Dict[str, Any] = {
    "grace_period_days": 7,
    "adult_walkin_price": 15,
    "youth_walkin_price": 12,
}

# 优惠券售价与可用次数
COUPON_PRICES: Dict[str, Any] = {
    "adult": 45,
    "youth": 35,
    "max_uses": 1,
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "branding": BRANDING,
    "membership": MEMBERSHIP,
    "coupon_prices": COUPON_PRICES,
    "device_fingerprinting_enabled": False,
    "fingerprint_roles": ["cashier"],
}


def get_default(key: str) -> Any:
    """获取设置项默认值（返回副本，避免调用方修改全局默认值）。

    Args:
        key: 设置键。

    Returns:
        默认值，未知键返回 None。
    """
    value = DEFAULT_SETTINGS.get(key)
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        return list(value)
    return value
