"""分页工具"""
import math
from dataclasses import dataclass
from typing import Any, Dict, List

from config.settings import settings

MAX_VISIBLE_PAGES = 5


@dataclass
class Page:
    """一页查询结果。"""
    items: List[Any]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size)) if self.page_size else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "page_numbers": get_page_numbers(self.page, self.total_pages),
        }


def normalize_page(page: Any, page_size: Any = None) -> tuple:
    """页码从 1 开始，非法值回退到第 1 页与默认每页条数。

    Returns:
        (page, page_size, offset)
    """
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        page_size = int(page_size) if page_size else settings.page_size
    except (TypeError, ValueError):
        page_size = settings.page_size
    page = max(page, 1)
    page_size = max(page_size, 1)
    return page, page_size, (page - 1) * page_size


def get_page_numbers(current_page: int, total_pages: int,
                     max_visible: int = MAX_VISIBLE_PAGES) -> List[int]:
    """分页栏显示的页码：以当前页为中心，最多显示 max_visible 个。

    Example:
        get_page_numbers(1, 10) -> [1, 2, 3, 4, 5]
        get_page_numbers(6, 10) -> [4, 5, 6, 7, 8]
        get_page_numbers(10, 10) -> [6, 7, 8, 9, 10]
    """
    if total_pages <= max_visible:
        return list(range(1, total_pages + 1))
    start = max(1, current_page - max_visible // 2)
    end = start + max_visible - 1
    if end > total_pages:
        end = total_pages
        start = end - max_visible + 1
    return list(range(start, end + 1))
