from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from api.app.aggregator import local_date, today_pages, total_pages
from api.app.models import ReadingEntry


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _entry(i, pages, dt):
    return ReadingEntry(id=f"r{i}", pages=pages, timestamp=_ms(dt))


def test_total_pages_empty():
    assert total_pages([]) == 0


def test_total_pages_sums_all_entries():
    readings = [
        _entry(1, 5, NOW),
        _entry(2, 3, datetime(2026, 10, 1, tzinfo=timezone.utc)),
        _entry(3, 12, datetime(2025, 1, 1, tzinfo=timezone.utc)),
    ]
    assert total_pages(readings) == 20


def test_today_pages_filters_by_calendar_date():
    readings = [
        _entry(1, 5, datetime(2026, 10, 18, 0, 1, tzinfo=timezone.utc)),
        _entry(2, 4, datetime(2026, 10, 18, 23, 59, tzinfo=timezone.utc)),
        _entry(3, 7, datetime(2026, 10, 17, 23, 59, tzinfo=timezone.utc)),
    ]
    tz = ZoneInfo("UTC")
    assert today_pages(readings, NOW, tz) == 9
    assert today_pages(readings, NOW, tz) <= total_pages(readings)


def test_today_pages_equals_total_when_all_today():
    readings = [_entry(i, i + 1, NOW) for i in range(4)]
    assert today_pages(readings, NOW, ZoneInfo("UTC")) == total_pages(readings) == 10


def test_today_pages_uses_viewer_time_zone():
    riyadh = ZoneInfo("Asia/Riyadh")
    # 22:30 UTC on the 17th is already the 18th in Riyadh (UTC+3)
    late = _entry(1, 6, datetime(2026, 10, 17, 22, 30, tzinfo=timezone.utc))
    now = datetime(2026, 10, 18, 10, 0, tzinfo=riyadh)

    assert today_pages([late], now, riyadh) == 6
    assert today_pages([late], now.astimezone(timezone.utc), ZoneInfo("UTC")) == 0


def test_local_date():
    ts = _ms(datetime(2026, 10, 17, 22, 30, tzinfo=timezone.utc))
    assert local_date(ts, ZoneInfo("UTC")).isoformat() == "2026-10-17"
    assert local_date(ts, ZoneInfo("Asia/Riyadh")).isoformat() == "2026-10-18"


def test_today_pages_empty():
    assert today_pages([], NOW, ZoneInfo("UTC")) == 0


def test_aware_now_is_compared_in_server_zone_when_tz_unset():
    # 跨日期变更线两侧的时区：本地日期与 now 自身时区的日期必然不同
    for offset in (14, -12):
        now = datetime.now(timezone(timedelta(hours=offset)))
        entry = _entry(1, 3, now)
        assert today_pages([entry], now) == 3
