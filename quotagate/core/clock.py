"""Time helpers: UTC normalization and the reference-timezone day."""

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from quotagate.core.config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return an aware UTC datetime. Naive values are taken to be UTC (SQLite drops offsets)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def reference_zone(tz_name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz_name or settings.QUOTA_TIMEZONE)


def reference_now(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> datetime:
    return (as_utc(now) or utc_now()).astimezone(reference_zone(tz_name))


def reference_day(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> date:
    return reference_now(now, tz_name).date()


def date_key(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> str:
    """YYYYMMDD of `now` in the reference timezone; the quota ledger day boundary."""
    return reference_day(now, tz_name).strftime("%Y%m%d")
