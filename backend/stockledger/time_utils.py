from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional


PERIODS = ("day", "week", "month")


def utcnow() -> datetime:
    """Server-side 'now' in UTC, stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string into a UTC-naive datetime.

    Blank input yields None. A trailing "Z" or an explicit offset is converted
    to UTC; a naive value is taken to already be UTC. A bare date
    ("2024-03-01") means midnight of that day.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc_naive(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime], *, precise: bool = False) -> Optional[str]:
    """
    Serialize to ISO-8601 with a trailing 'Z'.

    Second precision by default. precise=True keeps microseconds, for
    timestamps that clients feed back into "as of" reads.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    stamp = dt.astimezone(timezone.utc)
    if precise:
        return stamp.isoformat(timespec="microseconds").replace("+00:00", "Z")
    return stamp.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def to_iso_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def period_start(dt: datetime, period: str) -> datetime:
    """Truncate a datetime to the start of its day, ISO week (Monday) or month."""
    day = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return day
    if period == "week":
        return day - timedelta(days=day.weekday())
    if period == "month":
        return day.replace(day=1)
    raise ValueError(f"period must be one of: {', '.join(PERIODS)}")


def period_label(dt: datetime, period: str) -> str:
    start = period_start(dt, period)
    if period == "week":
        year, week, _ = start.isocalendar()
        return f"{year}-W{week:02d}"
    if period == "month":
        return start.strftime("%Y-%m")
    return start.strftime("%Y-%m-%d")
