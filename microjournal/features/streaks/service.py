from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Callable, ContextManager, List, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from microjournal.core.config import settings
from microjournal.core.database import get_db_session, pair_streaks, storage_errors, streaks
from microjournal.core.errors import OutOfOrderActivity, StorageUnavailable, ValidationError
from microjournal.core.metrics import streak_out_of_order_total, streak_updates_total
from microjournal.features.journal.clock import utc_now
from microjournal.models.streak import (
    PairSubject,
    SoloSubject,
    StreakOutcome,
    StreakState,
    Subject,
    pair_streak_count,
)

logger = logging.getLogger("microjournal.streaks")

SessionScope = Callable[[], ContextManager[Session]]


def advance_solo(state: StreakState, journal_date: date, now: datetime) -> StreakState:
    """Apply one day of activity to a solo streak. Pure; raises OutOfOrderActivity."""
    last = state.last_activity_date
    if last == journal_date:
        return replace(state, outcome=StreakOutcome.UNCHANGED)
    if last is not None and journal_date < last:
        raise OutOfOrderActivity(state.subject, journal_date, state)

    if last is not None and journal_date == last + timedelta(days=1):
        count = state.streak_count + 1
        outcome = StreakOutcome.INCREMENTED
    else:
        count = 1
        outcome = StreakOutcome.STARTED if last is None else StreakOutcome.RESET

    return replace(
        state,
        streak_count=count,
        longest_streak=max(state.longest_streak, count),
        last_activity_date=journal_date,
        version=state.version + 1,
        updated_at=now,
        outcome=outcome,
    )


def advance_pair(state: StreakState, user_id: int, journal_date: date, now: datetime) -> StreakState:
    """Apply one side's contribution to a pair streak. Pure; raises OutOfOrderActivity.

    The joint chain only survives if the poster's previous contribution was
    yesterday and the partner has contributed yesterday or later.
    """
    subject = state.subject
    if not isinstance(subject, PairSubject):
        raise ValidationError("advance_pair requires a pair subject")

    prev_self = state.last_for(user_id)
    other_last = state.last_for(subject.other(user_id))

    if prev_self == journal_date:
        return replace(state, outcome=StreakOutcome.UNCHANGED)
    if prev_self is not None and journal_date < prev_self:
        raise OutOfOrderActivity(subject, journal_date, state)

    yesterday = journal_date - timedelta(days=1)
    other_current = other_last is not None and other_last >= yesterday
    started_on = state.streak_started_on
    continuing = started_on is not None and prev_self == yesterday and other_current
    if not continuing:
        started_on = max(journal_date, other_last) if other_current else None

    if subject.side_of(user_id) == 1:
        last_1, last_2 = journal_date, state.last_contribution_user2
    else:
        last_1, last_2 = state.last_contribution_user1, journal_date

    count = pair_streak_count(last_1, last_2, started_on)
    if count > state.streak_count:
        outcome = StreakOutcome.STARTED if count == 1 else StreakOutcome.INCREMENTED
    elif count < state.streak_count:
        outcome = StreakOutcome.RESET
    else:
        outcome = StreakOutcome.CONTRIBUTED

    return replace(
        state,
        streak_count=count,
        last_contribution_user1=last_1,
        last_contribution_user2=last_2,
        streak_started_on=started_on,
        version=state.version + 1,
        updated_at=now,
        outcome=outcome,
    )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _SoloBook:
    table = streaks

    def load(self, session: Session, subject: SoloSubject) -> Optional[StreakState]:
        row = session.execute(
            select(streaks).where(streaks.c.user_id == subject.user_id)
        ).first()
        if row is None:
            return None
        return StreakState(
            subject=subject,
            streak_count=row.streak_count,
            longest_streak=row.longest_streak,
            last_activity_date=row.last_activity_date,
            version=row.version,
            updated_at=_aware(row.updated_at),
        )

    def insert(self, session: Session, state: StreakState) -> None:
        session.execute(
            insert(streaks).values(
                user_id=state.subject.user_id,
                streak_count=state.streak_count,
                longest_streak=state.longest_streak,
                last_activity_date=state.last_activity_date,
                version=state.version,
                updated_at=state.updated_at,
            )
        )

    def swap(self, session: Session, expected_version: int, state: StreakState) -> bool:
        result = session.execute(
            update(streaks)
            .where(and_(streaks.c.user_id == state.subject.user_id, streaks.c.version == expected_version))
            .values(
                streak_count=state.streak_count,
                longest_streak=state.longest_streak,
                last_activity_date=state.last_activity_date,
                version=state.version,
                updated_at=state.updated_at,
            )
        )
        return result.rowcount == 1


class _PairBook:
    table = pair_streaks

    @staticmethod
    def _to_state(row, subject: PairSubject) -> StreakState:
        return StreakState(
            subject=subject,
            streak_count=pair_streak_count(
                row.last_contribution_date_user1,
                row.last_contribution_date_user2,
                row.streak_started_on,
            ),
            last_contribution_user1=row.last_contribution_date_user1,
            last_contribution_user2=row.last_contribution_date_user2,
            streak_started_on=row.streak_started_on,
            version=row.version,
            updated_at=_aware(row.updated_at),
        )

    def load(self, session: Session, subject: PairSubject) -> Optional[StreakState]:
        row = session.execute(
            select(pair_streaks).where(
                and_(pair_streaks.c.user_id_1 == subject.user_id_1, pair_streaks.c.user_id_2 == subject.user_id_2)
            )
        ).first()
        return self._to_state(row, subject) if row is not None else None

    def load_for_user(self, session: Session, user_id: int) -> List[StreakState]:
        rows = session.execute(
            select(pair_streaks).where(
                or_(pair_streaks.c.user_id_1 == user_id, pair_streaks.c.user_id_2 == user_id)
            )
        ).all()
        return [self._to_state(row, PairSubject(row.user_id_1, row.user_id_2)) for row in rows]

    def insert(self, session: Session, state: StreakState) -> None:
        session.execute(
            insert(pair_streaks).values(
                user_id_1=state.subject.user_id_1,
                user_id_2=state.subject.user_id_2,
                last_contribution_date_user1=state.last_contribution_user1,
                last_contribution_date_user2=state.last_contribution_user2,
                streak_started_on=state.streak_started_on,
                version=state.version,
                updated_at=state.updated_at,
            )
        )

    def swap(self, session: Session, expected_version: int, state: StreakState) -> bool:
        subject = state.subject
        result = session.execute(
            update(pair_streaks)
            .where(
                and_(
                    pair_streaks.c.user_id_1 == subject.user_id_1,
                    pair_streaks.c.user_id_2 == subject.user_id_2,
                    pair_streaks.c.version == expected_version,
                )
            )
            .values(
                last_contribution_date_user1=state.last_contribution_user1,
                last_contribution_date_user2=state.last_contribution_user2,
                streak_started_on=state.streak_started_on,
                version=state.version,
                updated_at=state.updated_at,
            )
        )
        return result.rowcount == 1


class StreakTracker:
    """Atomic per-subject streak bookkeeping.

    Each write is an optimistic read-modify-write guarded by the row's
    `version`: a writer that loses the race re-reads and re-evaluates, so two
    concurrent posts for the same day can never both increment.
    """

    def __init__(
        self,
        session_scope: SessionScope = get_db_session,
        max_retries: Optional[int] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self._session_scope = session_scope
        self._max_retries = settings.STREAK_MAX_RETRIES if max_retries is None else max_retries
        if self._max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._now = now
        self._solo = _SoloBook()
        self._pair = _PairBook()

    def record_activity(self, subject: Subject, journal_date: date, *, user_id: Optional[int] = None) -> StreakState:
        """Record that `subject` was active on `journal_date`.

        For pair subjects `user_id` names the posting side.

        Raises:
            OutOfOrderActivity: journal_date precedes the recorded last date (nothing written).
            StorageUnavailable: the database failed or contention never settled (nothing written).
            IntegrityError: the insert broke a constraint other than the row's key (nothing written).
        """
        if isinstance(subject, PairSubject):
            if user_id is None:
                raise ValidationError("record_activity on a pair needs the posting user_id")
            subject.side_of(user_id)

        for attempt in range(1, self._max_retries + 1):
            try:
                state, committed = self._attempt(subject, journal_date, user_id)
            except IntegrityError:
                # A lost insert race leaves the other writer's row behind.
                if self.read_state(subject) is None:
                    logger.error("streak.insert_rejected", extra={"subject": str(subject)})
                    raise
                logger.debug("streak.insert_race", extra={"subject": str(subject), "attempt": attempt})
                continue
            except OutOfOrderActivity as exc:
                streak_out_of_order_total.inc(labels={"kind": subject.kind.value})
                logger.warning(
                    "streak.out_of_order",
                    extra={
                        "subject": str(subject),
                        "journal_date": journal_date.isoformat(),
                        "last_activity": str(exc.state.last_for(user_id) if user_id else exc.state.last_activity_date),
                    },
                )
                raise
            if committed:
                streak_updates_total.inc(labels={"kind": subject.kind.value, "outcome": state.outcome.value})
                return state
            logger.debug("streak.version_conflict", extra={"subject": str(subject), "attempt": attempt})

        raise StorageUnavailable(f"streak update for {subject} did not settle after {self._max_retries} attempts")

    def _attempt(self, subject: Subject, journal_date: date, user_id: Optional[int]):
        book = self._book(subject)
        with storage_errors("record_activity"):
            with self._session_scope() as session:
                current = book.load(session, subject)
                base = current or StreakState(subject=subject)
                if isinstance(subject, PairSubject):
                    nxt = advance_pair(base, user_id, journal_date, self._now())
                else:
                    nxt = advance_solo(base, journal_date, self._now())

                if nxt.outcome is StreakOutcome.UNCHANGED:
                    return nxt, True
                if current is None:
                    book.insert(session, nxt)
                    return nxt, True
                if book.swap(session, current.version, nxt):
                    return nxt, True
                return nxt, False

    def read_state(self, subject: Subject) -> Optional[StreakState]:
        with storage_errors("read_state"):
            with self._session_scope() as session:
                return self._book(subject).load(session, subject)

    def pairs_for_user(self, user_id: int) -> List[StreakState]:
        """All pair streaks involving `user_id`, longest first."""
        with storage_errors("pairs_for_user"):
            with self._session_scope() as session:
                states = self._pair.load_for_user(session, user_id)
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(states, key=lambda s: (-s.streak_count, -(s.updated_at or epoch).timestamp()))

    def _book(self, subject: Subject):
        if isinstance(subject, SoloSubject):
            return self._solo
        if isinstance(subject, PairSubject):
            return self._pair
        raise ValidationError(f"unsupported streak subject {subject!r}")
