"""CSV 导出与会员导入

导出格式：首行为第一条记录的键；字符串加双引号，内部双引号加倍；
None 输出为空；布尔值输出 Yes/No；时间按本地时区格式化；行之间用 \\n 分隔。

导入使用标准库 csv 解析，字段名与 members 表一致。
"""
import csv
import io
from datetime import date, datetime
from typing import Any, Dict, List, Tuple

from .timeutils import format_local, parse_datetime

MEMBER_IMPORT_COLUMNS = (
    "member_id", "name", "email", "phone", "nric", "type", "status",
    "photo_url", "expiry_date", "created_at",
)
_DATETIME_COLUMNS = ("expiry_date", "created_at")


def format_csv_value(value: Any) -> str:
    """格式化单个导出字段。"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, str):
        return '"' + value.replace('"', '""') + '"'
    if isinstance(value, datetime):
        return format_local(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def export_to_csv(rows: List[Dict[str, Any]]) -> str:
    """把记录列表导出为 CSV 文本。

    Args:
        rows: 字典列表，列顺序取第一条记录的键。

    Returns:
        CSV 文本，空列表返回空字符串。
    """
    if not rows:
        return ""
    headers = list(rows[0].keys())
    lines = [",".join(headers)]
    for row in rows:
        lines.append(",".join(format_csv_value(row.get(h)) for h in headers))
    return "\n".join(lines)


def parse_member_csv(text: str) -> Tuple[List[Dict[str, Any]], List[str]]:
    """解析会员导入文件。

    只保留表头中出现的列；空单元格和字面量 NULL 转换为 None，
    导入时会用它清空已有会员的对应字段。时间列解析为 UTC 时间；
    缺少 member_id 或 name 的行被跳过并记录错误。

    Returns:
        (有效记录列表, 错误信息列表)
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("﻿")))
    records: List[Dict[str, Any]] = []
    errors: List[str] = []
    header = set(reader.fieldnames or [])
    columns = [c for c in MEMBER_IMPORT_COLUMNS if c in header]
    for line_no, raw in enumerate(reader, start=2):
        record: Dict[str, Any] = {}
        for column in columns:
            value = raw.get(column)
            value = value.strip() if isinstance(value, str) else value
            if not value or value.upper() == "NULL":
                value = None
            record[column] = value

        if not record.get("member_id") or not record.get("name"):
            errors.append(f"Row {line_no}: member_id and name are required")
            continue
        try:
            for column in _DATETIME_COLUMNS:
                if column in record:
                    record[column] = parse_datetime(record[column])
        except ValueError as e:
            errors.append(f"Row {line_no}: {e}")
            continue
        records.append(record)
    return records, errors
