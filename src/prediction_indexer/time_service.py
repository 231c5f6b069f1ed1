"""Timestamp formatting shared by the crawler and listener."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Taipei"
TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_unix_timestamp(ts: int | float, tz: str = DEFAULT_TIMEZONE) -> str:
    """Format unix seconds as local wall-clock time, e.g. '2024-05-01 08:00:00'."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(ZoneInfo(tz)).strftime(TS_FORMAT)


def current_local_time(tz: str = DEFAULT_TIMEZONE) -> str:
    return datetime.now(ZoneInfo(tz)).strftime(TS_FORMAT)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
