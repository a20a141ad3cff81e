"""
阅读统计（纯函数）

- `total_pages`：全部记录页数之和
- `today_pages`：与 `now` 同一本地日历日的记录页数之和
- 条目日期与 `now` 必须使用同一时区换算；`tz=None` 表示服务器本地时区
"""
from datetime import date, datetime, tzinfo
from typing import Iterable, Optional

from .models import ReadingEntry


def local_date(timestamp_ms: int, tz: Optional[tzinfo] = None) -> date:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz).date()


def total_pages(readings: Iterable[ReadingEntry]) -> int:
    return sum(r.pages for r in readings)


def today_pages(
    readings: Iterable[ReadingEntry],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> int:
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is not None:
        # tz 为 None 时换算到服务器本地时区，与条目日期保持一致
        now = now.astimezone(tz)
    today = now.date()
    return sum(r.pages for r in readings if local_date(r.timestamp, tz) == today)
