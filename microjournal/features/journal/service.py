from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Optional

from sqlalchemy import and_, insert, select
from sqlalchemy.exc import IntegrityError

from microjournal.core.config import settings
from microjournal.core.database import (
    activities,
    get_db_session,
    is_foreign_key_violation,
    storage_errors,
    users,
    violated_unique_constraint,
)
from microjournal.core.errors import (
    AppError,
    DuplicateActivity,
    InvalidTimezone,
    NotFoundError,
    OutOfOrderActivity,
    StorageUnavailable,
)
from microjournal.core.logging import log_event
from microjournal.core.metrics import activities_created_total, activities_rejected_total
from microjournal.features.journal.clock import compute_journal_date, utc_now
from microjournal.features.notifications.queue import NotificationQueue
from microjournal.features.streaks.partners import (
    EmptyPartnerDirectory,
    PartnerDirectory,
    build_partner_directory,
    streak_partners,
)
from microjournal.features.streaks.service import StreakTracker
from microjournal.models.activity import ActivityCreate, ActivityRecord
from microjournal.models.streak import PairSubject, SoloSubject, Subject

logger = logging.getLogger("microjournal.journal")


class JournalService:
    """Post admission: journal date, one-per-day insert, streaks, then notifications."""

    def __init__(
        self,
        tracker: StreakTracker,
        partners: Optional[PartnerDirectory] = None,
        queue: Optional[NotificationQueue] = None,
        announce: Optional[Callable[[int, str], Any]] = None,
        session_scope=get_db_session,
        cutoff_hour: Optional[int] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self._tracker = tracker
        self._partners = EmptyPartnerDirectory() if partners is None else partners
        self._queue = queue
        self._announce = announce
        self._session_scope = session_scope
        self._cutoff_hour = settings.JOURNAL_CUTOFF_HOUR if cutoff_hour is None else cutoff_hour
        self._now = now

    def create_activity(self, user_id: int, payload: ActivityCreate) -> ActivityRecord:
        """Admit one post for the user's current journal date.

        Raises:
            NotFoundError: unknown user.
            InvalidTimezone: the user has no usable timezone.
            DuplicateActivity: a post already exists for this journal date.
            StorageUnavailable: the insert could not be performed.
        """
        created_at = self._now()
        journal_date = self._journal_date_for(user_id, created_at)

        try:
            with storage_errors("create_activity"):
                with self._session_scope() as session:
                    result = session.execute(
                        insert(activities).values(
                            user_id=user_id,
                            journal_date=journal_date,
                            text=payload.text,
                            template_id=payload.template_id,
                            created_at=created_at,
                        )
                    )
                    activity_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            if violated_unique_constraint(exc, activities) == "uniq_user_journal_date":
                activities_rejected_total.inc(labels={"reason": "duplicate"})
                logger.info(
                    "activity.duplicate",
                    extra={"user_id": user_id, "journal_date": journal_date.isoformat()},
                )
                raise DuplicateActivity(user_id, journal_date) from exc
            if is_foreign_key_violation(exc):
                # user removed between the lookup and the insert
                activities_rejected_total.inc(labels={"reason": "unknown_user"})
                raise NotFoundError(f"User {user_id} not found") from exc
            logger.error("activity.insert_rejected", extra={"user_id": user_id, "error": str(exc.orig)[:200]})
            raise

        record = ActivityRecord(
            id=activity_id,
            user_id=user_id,
            journal_date=journal_date,
            text=payload.text,
            template_id=payload.template_id,
            created_at=created_at,
        )
        activities_created_total.inc()
        log_event(
            "info",
            "activity.created",
            user_id=str(user_id),
            event_type="activity",
            extra={"activity_id": activity_id, "journal_date": journal_date.isoformat()},
        )

        # The post is committed; streak or notification trouble from here on
        # is logged and never turns the request into a failure.
        self._record_streaks(user_id, journal_date)
        self._submit_announcement(user_id, payload.text)
        return record

    def get_today_activity(self, user_id: int) -> Optional[ActivityRecord]:
        journal_date = self._journal_date_for(user_id, self._now())
        with storage_errors("get_today_activity"):
            with self._session_scope() as session:
                row = session.execute(
                    select(activities).where(
                        and_(activities.c.user_id == user_id, activities.c.journal_date == journal_date)
                    )
                ).first()
        if row is None:
            return None
        return ActivityRecord(
            id=row.id,
            user_id=row.user_id,
            journal_date=row.journal_date,
            text=row.text,
            template_id=row.template_id,
            created_at=row.created_at,
        )

    def current_journal_date(self, user_id: int) -> date:
        return self._journal_date_for(user_id, self._now())

    def _journal_date_for(self, user_id: int, instant: datetime) -> date:
        with storage_errors("load_user"):
            with self._session_scope() as session:
                user = session.execute(select(users.c.id, users.c.timezone).where(users.c.id == user_id)).first()
        if user is None:
            activities_rejected_total.inc(labels={"reason": "unknown_user"})
            raise NotFoundError(f"User {user_id} not found")
        try:
            return compute_journal_date(instant, user.timezone, self._cutoff_hour)
        except InvalidTimezone:
            activities_rejected_total.inc(labels={"reason": "invalid_timezone"})
            raise

    def _record_streaks(self, user_id: int, journal_date: date) -> None:
        self._record(SoloSubject(user_id), journal_date, user_id)
        try:
            partner_ids = streak_partners(self._partners, user_id)
        except AppError as exc:
            logger.error("streak.partners_unavailable", extra={"user_id": user_id, "error_code": exc.code})
            return
        for partner_id in partner_ids:
            self._record(PairSubject(user_id, partner_id), journal_date, user_id)

    def _record(self, subject: Subject, journal_date: date, user_id: int) -> None:
        try:
            self._tracker.record_activity(subject, journal_date, user_id=user_id)
        except OutOfOrderActivity:
            # already logged and counted by the tracker
            pass
        except IntegrityError as exc:
            logger.error(
                "streak.update_rejected",
                extra={"subject": str(subject), "journal_date": journal_date.isoformat(), "error": str(exc.orig)[:200]},
            )
        except StorageUnavailable as exc:
            logger.error(
                "streak.update_failed",
                extra={"subject": str(subject), "journal_date": journal_date.isoformat(), "error_code": exc.code},
            )

    def shutdown(self, wait: bool = True) -> None:
        if self._queue is not None:
            self._queue.shutdown(wait=wait)

    def _submit_announcement(self, user_id: int, text: str) -> None:
        if self._queue is None or self._announce is None:
            return
        try:
            self._queue.submit(self._announce, user_id, text)
        except Exception:
            logger.exception("post.announce_submit_failed", extra={"user_id": user_id})


def build_journal_service(
    cfg=None,
    queue: Optional[NotificationQueue] = None,
    partners: Optional[PartnerDirectory] = None,
) -> JournalService:
    """Wire a JournalService from settings.

    `partners` defaults to the directory PARTNER_DIRECTORY selects; the RQ
    worker builds the same one, so both sides agree on who is a partner.

    With the RQ backend the announcement runs in a worker process, so the job
    must be the importable module-level function rather than a bound method.
    """
    from microjournal.features.notifications.announcements import PostAnnouncer
    from microjournal.features.notifications.dispatcher import NotificationDispatcher
    from microjournal.features.notifications.queue import build_notification_queue
    from microjournal.features.notifications.registry import PushEndpointRegistry
    from microjournal.features.notifications.transport import build_transport

    cfg = cfg or settings
    partners = build_partner_directory(cfg) if partners is None else partners
    queue = queue or build_notification_queue(cfg)

    if (cfg.NOTIFY_BACKEND or "local").lower() == "rq":
        from microjournal.workers.notify_worker import announce_post

        announce = announce_post
    else:
        registry = PushEndpointRegistry()
        dispatcher = NotificationDispatcher(build_transport(cfg), registry)
        announce = PostAnnouncer(dispatcher, registry, partners).announce

    return JournalService(
        StreakTracker(max_retries=cfg.STREAK_MAX_RETRIES),
        partners=partners,
        queue=queue,
        announce=announce,
        cutoff_hour=cfg.JOURNAL_CUTOFF_HOUR,
    )
