"""
Utility functions for the journey engine.

Includes:
- UTC datetime helpers
- Timezone-aware wall-clock arithmetic
- Pagination helpers
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.exceptions import ValidationError


def utcnow() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value, tz: Optional[str] = None) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) into aware UTC.

    Naive inputs are interpreted in ``tz`` when given, otherwise as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid datetime: {value!r}") from exc
    if parsed.tzinfo is None and tz:
        parsed = parsed.replace(tzinfo=get_zone(tz))
    return ensure_utc(parsed)


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name!r}") from exc


def add_local_days(moment: datetime, days: int, tz: str) -> datetime:
    """Add calendar days in local wall-clock time of ``tz``.

    09:00 local stays 09:00 local across DST transitions, so the UTC delta
    may be 23 or 25 hours. Returns aware UTC.
    """
    zone = get_zone(tz)
    local = ensure_utc(moment).astimezone(zone)
    wall = local.replace(tzinfo=None) + timedelta(days=days)
    return wall.replace(tzinfo=zone, fold=local.fold).astimezone(timezone.utc)


def calculate_offset(page: int, per_page: int) -> int:
    """Calculate database offset for pagination (1-indexed pages)."""
    return (page - 1) * per_page


def add_interval(moment: datetime, amount: int, unit: str, tz: Optional[str] = None) -> datetime:
    """``moment + amount unit``; days and weeks keep local wall-clock time in ``tz``."""
    if unit == "minutes":
        return moment + timedelta(minutes=amount)
    if unit == "hours":
        return moment + timedelta(hours=amount)
    if unit in ("days", "weeks"):
        days = amount * 7 if unit == "weeks" else amount
        return add_local_days(moment, days, tz or "UTC")
    raise ValidationError(f"Unknown interval unit: {unit!r}")
