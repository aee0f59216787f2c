"""
Reminder scans.

A scan walks every user with a timezone, converts "now" to their wall clock
and decides whether a reminder is due inside a short local window. Each
(user, kind, journal date) is claimed in `reminder_deliveries` before the
push goes out, so overlapping or repeated scans inside one window send once.
A batch the transport could not deliver releases its claim for a later scan.
"""
from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, insert, select
from sqlalchemy.exc import IntegrityError

from microjournal.core.config import settings
from microjournal.core.database import activities, get_db_session, reminder_deliveries, storage_errors, users
from microjournal.core.errors import AppError, InvalidTimezone, PushTransportError, ValidationError
from microjournal.core.metrics import reminder_scan_users_total
from microjournal.features.journal.clock import compute_journal_date, local_time, utc_now
from microjournal.features.notifications.dispatcher import NotificationDispatcher
from microjournal.features.notifications.registry import PushEndpointRegistry
from microjournal.features.streaks.service import StreakTracker
from microjournal.models.notification import ReminderKind
from microjournal.models.streak import SoloSubject

logger = logging.getLogger("microjournal.reminders")

MINUTES_PER_DAY = 24 * 60

REMINDER_MESSAGES: Dict[ReminderKind, Tuple[str, str]] = {
    ReminderKind.DAILY: (
        "Time to reflect 📝",
        "You haven't added to your micro journal today. Take a minute for yourself and your loved ones",
    ),
    ReminderKind.STREAK_EXPIRY: (
        "🔥 Don't let your streak expire today!",
        "You have less than an hour to post and keep your streak alive, so let's do that now?",
    ),
}

# ScanReport field names double as the per-user result labels
SCAN_RESULTS = (
    "outside_window",
    "invalid_timezone",
    "already_posted",
    "not_at_risk",
    "already_notified",
    "no_endpoints",
    "sent",
    "failed",
)


@dataclass(frozen=True)
class ReminderWindow:
    """Local wall-clock window [start, start + minutes], inclusive; may wrap midnight."""

    start: time
    minutes: int

    def __post_init__(self):
        if not 0 <= self.minutes < MINUTES_PER_DAY:
            raise ValidationError(f"window length must be 0..{MINUTES_PER_DAY - 1} minutes")

    @classmethod
    def parse(cls, start: str, minutes: int) -> "ReminderWindow":
        try:
            hour, minute = (int(part) for part in start.split(":"))
            start_time = time(hour, minute)
        except ValueError as exc:
            raise ValidationError(f"window start must be HH:MM, got {start!r}") from exc
        return cls(start_time, minutes)

    def contains(self, local: datetime) -> bool:
        offset = (local.hour * 60 + local.minute) - (self.start.hour * 60 + self.start.minute)
        return offset % MINUTES_PER_DAY <= self.minutes


@dataclass(frozen=True)
class ScanReport:
    kind: ReminderKind
    visited: int = 0
    outside_window: int = 0
    invalid_timezone: int = 0
    already_posted: int = 0
    not_at_risk: int = 0
    already_notified: int = 0
    no_endpoints: int = 0
    sent: int = 0
    failed: int = 0

    @classmethod
    def from_results(cls, kind: ReminderKind, results: List[str]) -> "ScanReport":
        tally = Counter(results)
        return cls(kind=kind, visited=len(results), **{name: tally.get(name, 0) for name in SCAN_RESULTS})

    def to_dict(self) -> dict:
        payload = {"kind": self.kind.value, "visited": self.visited}
        payload.update({name: getattr(self, name) for name in SCAN_RESULTS})
        return payload


@dataclass(frozen=True)
class _Candidate:
    user_id: int
    timezone: Optional[str]


class ReminderScanner:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        registry: PushEndpointRegistry,
        tracker: StreakTracker,
        *,
        daily_window: ReminderWindow,
        expiry_window: ReminderWindow,
        cutoff_hour: int,
        session_scope=get_db_session,
        max_workers: int = 1,
        now: Callable[[], datetime] = utc_now,
    ):
        self._dispatcher = dispatcher
        self._registry = registry
        self._tracker = tracker
        self._windows = {ReminderKind.DAILY: daily_window, ReminderKind.STREAK_EXPIRY: expiry_window}
        self._cutoff_hour = cutoff_hour
        self._session_scope = session_scope
        self._max_workers = max(1, max_workers)
        self._now = now

    def run_daily(self, now: Optional[datetime] = None) -> ScanReport:
        return self.scan(ReminderKind.DAILY, now)

    def run_expiry(self, now: Optional[datetime] = None) -> ScanReport:
        return self.scan(ReminderKind.STREAK_EXPIRY, now)

    def scan(self, kind: ReminderKind, now: Optional[datetime] = None) -> ScanReport:
        instant = now or self._now()
        candidates = self._candidates()

        if self._max_workers > 1 and len(candidates) > 1:
            with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix=f"scan-{kind.value}") as pool:
                results = list(pool.map(lambda c: self._visit(kind, c, instant), candidates))
        else:
            results = [self._visit(kind, c, instant) for c in candidates]

        report = ScanReport.from_results(kind, results)
        logger.info("reminders.scan_complete", extra=report.to_dict())
        return report

    def _visit(self, kind: ReminderKind, candidate: _Candidate, instant: datetime) -> str:
        try:
            result = self._check_and_send(kind, candidate, instant)
        except AppError as exc:
            logger.error(
                "reminders.user_failed",
                extra={"user_id": candidate.user_id, "kind": kind.value, "error_code": exc.code},
            )
            result = "failed"
        except Exception:
            logger.exception("reminders.user_crashed", extra={"user_id": candidate.user_id, "kind": kind.value})
            result = "failed"
        reminder_scan_users_total.inc(labels={"kind": kind.value, "result": result})
        return result

    def _check_and_send(self, kind: ReminderKind, candidate: _Candidate, instant: datetime) -> str:
        try:
            local = local_time(instant, candidate.timezone)
        except InvalidTimezone:
            logger.debug("reminders.invalid_timezone", extra={"user_id": candidate.user_id})
            return "invalid_timezone"
        if not self._windows[kind].contains(local):
            return "outside_window"

        today = compute_journal_date(instant, candidate.timezone, self._cutoff_hour)
        if self._has_activity(candidate.user_id, today):
            return "already_posted"

        if kind is ReminderKind.STREAK_EXPIRY:
            state = self._tracker.read_state(SoloSubject(candidate.user_id))
            if state is None or state.streak_count == 0 or state.last_activity_date != today - timedelta(days=1):
                return "not_at_risk"

        endpoints = self._registry.endpoints_for(candidate.user_id)
        if not endpoints:
            return "no_endpoints"

        if not self._claim(candidate.user_id, kind, today, instant):
            return "already_notified"

        title, body = REMINDER_MESSAGES[kind]
        try:
            report = self._dispatcher.send_bulk(
                endpoints, title, body, {"type": kind.value, "user_id": candidate.user_id}
            )
        except PushTransportError:
            self._release(candidate.user_id, kind, today)
            return "failed"

        if report.success_count == 0:
            self._release(candidate.user_id, kind, today)
            return "failed"
        logger.info(
            "reminders.sent",
            extra={"user_id": candidate.user_id, "kind": kind.value, "journal_date": today.isoformat()},
        )
        return "sent"

    def _candidates(self) -> List[_Candidate]:
        with storage_errors("reminder_candidates"):
            with self._session_scope() as session:
                rows = session.execute(
                    select(users.c.id, users.c.timezone).where(users.c.timezone.is_not(None)).order_by(users.c.id)
                ).all()
        return [_Candidate(row.id, row.timezone) for row in rows]

    def _has_activity(self, user_id: int, journal_date: date) -> bool:
        with storage_errors("reminder_activity_check"):
            with self._session_scope() as session:
                found = session.execute(
                    select(activities.c.id).where(
                        and_(activities.c.user_id == user_id, activities.c.journal_date == journal_date)
                    )
                ).first()
        return found is not None

    def _claim(self, user_id: int, kind: ReminderKind, journal_date: date, instant: datetime) -> bool:
        try:
            with storage_errors("reminder_claim"):
                with self._session_scope() as session:
                    session.execute(
                        insert(reminder_deliveries).values(
                            user_id=user_id, kind=kind.value, journal_date=journal_date, sent_at=instant
                        )
                    )
        except IntegrityError:
            return False
        return True

    def _release(self, user_id: int, kind: ReminderKind, journal_date: date) -> None:
        with storage_errors("reminder_release"):
            with self._session_scope() as session:
                session.execute(
                    delete(reminder_deliveries).where(
                        and_(
                            reminder_deliveries.c.user_id == user_id,
                            reminder_deliveries.c.kind == kind.value,
                            reminder_deliveries.c.journal_date == journal_date,
                        )
                    )
                )
        logger.info("reminders.claim_released", extra={"user_id": user_id, "kind": kind.value})


def build_scanner(cfg=None) -> ReminderScanner:
    from microjournal.features.notifications.transport import build_transport

    cfg = cfg or settings
    registry = PushEndpointRegistry()
    return ReminderScanner(
        NotificationDispatcher(build_transport(cfg), registry),
        registry,
        StreakTracker(max_retries=cfg.STREAK_MAX_RETRIES),
        daily_window=ReminderWindow.parse(cfg.DAILY_REMINDER_WINDOW_START, cfg.DAILY_REMINDER_WINDOW_MINUTES),
        expiry_window=ReminderWindow.parse(cfg.STREAK_EXPIRY_WINDOW_START, cfg.STREAK_EXPIRY_WINDOW_MINUTES),
        cutoff_hour=cfg.JOURNAL_CUTOFF_HOUR,
        max_workers=cfg.SCAN_MAX_WORKERS,
    )


def run_daily_reminder_scan() -> ScanReport:
    """Scheduler entrypoint: one daily-reminder pass over all users."""
    return build_scanner().run_daily()


def run_streak_expiry_scan() -> ScanReport:
    """Scheduler entrypoint: one streak-expiry pass over all users."""
    return build_scanner().run_expiry()
