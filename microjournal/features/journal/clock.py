"""
Journal day arithmetic.

A journal day is the user's local calendar date, shifted so that anything
posted before the cutoff hour still belongs to the previous day. Pure
functions only; safe to call from any thread.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from microjournal.core.errors import InvalidTimezone, ValidationError


@lru_cache(maxsize=512)
def resolve_timezone(timezone_id: Optional[str]) -> ZoneInfo:
    if not timezone_id or not timezone_id.strip():
        raise InvalidTimezone(timezone_id)
    # tzdata directory names ("America") and over-long ids surface as OSError
    try:
        return ZoneInfo(timezone_id.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise InvalidTimezone(timezone_id) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def local_time(instant_utc: datetime, timezone_id: Optional[str]) -> datetime:
    """Wall-clock time for `instant_utc` in the given zone."""
    return _as_utc(instant_utc).astimezone(resolve_timezone(timezone_id))


def compute_journal_date(instant_utc: datetime, timezone_id: Optional[str], cutoff_hour: int) -> date:
    """Map an instant to the journal date it belongs to for a user in `timezone_id`.

    Raises:
        InvalidTimezone: the zone id is empty or unknown.
        ValidationError: cutoff_hour is outside 0..23.
    """
    if not 0 <= cutoff_hour <= 23:
        raise ValidationError(f"cutoff_hour must be between 0 and 23, got {cutoff_hour}")

    local = local_time(instant_utc, timezone_id)
    if local.hour < cutoff_hour:
        return local.date() - timedelta(days=1)
    return local.date()


def previous_journal_date(journal_date: date) -> date:
    return journal_date - timedelta(days=1)
