from contextlib import contextmanager
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import Insert
from sqlalchemy.exc import IntegrityError

from microjournal.core.database import get_db_session
from microjournal.core.errors import DuplicateActivity, InvalidTimezone, NotFoundError, StorageUnavailable
from microjournal.core.metrics import activities_created_total, activities_rejected_total
from microjournal.features.journal.service import JournalService
from microjournal.features.notifications.queue import LocalNotificationQueue
from microjournal.features.streaks.partners import StaticPartnerDirectory
from microjournal.features.streaks.service import StreakTracker
from microjournal.models.activity import ActivityCreate
from microjournal.models.partner import RelationshipStatus
from microjournal.models.streak import PairSubject, SoloSubject


def _service(clock, **kwargs):
    kwargs.setdefault("tracker", StreakTracker())
    return JournalService(now=clock, cutoff_hour=6, **kwargs)


def test_cutoff_splits_the_same_physical_morning(make_user, clock):
    make_user(1)
    service = _service(clock)

    clock.set(datetime(2024, 1, 10, 10, 30, tzinfo=timezone.utc))  # 05:30 New York
    early = service.create_activity(1, ActivityCreate(text="late night thoughts"))
    assert early.journal_date == date(2024, 1, 9)

    clock.set(datetime(2024, 1, 10, 11, 30, tzinfo=timezone.utc))  # 06:30 New York
    later = service.create_activity(1, ActivityCreate(text="good morning"))
    assert later.journal_date == date(2024, 1, 10)

    state = StreakTracker().read_state(SoloSubject(1))
    assert state.streak_count == 2
    assert activities_created_total.value() == 2


def test_second_post_same_journal_day_is_duplicate(make_user, clock):
    make_user(1)
    service = _service(clock)
    service.create_activity(1, ActivityCreate(text="first"))

    with pytest.raises(DuplicateActivity) as excinfo:
        service.create_activity(1, ActivityCreate(text="second"))

    assert excinfo.value.message == "already posted for this journal date"
    assert StreakTracker().read_state(SoloSubject(1)).streak_count == 1
    assert activities_rejected_total.value(labels={"reason": "duplicate"}) == 1


def test_unknown_user_is_not_found(db, clock):
    with pytest.raises(NotFoundError):
        _service(clock).create_activity(404, ActivityCreate(text="hello"))


def test_missing_timezone_rejects_post(make_user, clock):
    make_user(1, tz=None)
    with pytest.raises(InvalidTimezone):
        _service(clock).create_activity(1, ActivityCreate(text="hello"))
    assert activities_rejected_total.value(labels={"reason": "invalid_timezone"}) == 1


def test_streak_failure_does_not_fail_committed_post(make_user, clock):
    make_user(1)
    tracker = MagicMock()
    tracker.record_activity.side_effect = StorageUnavailable("db gone")
    service = _service(clock, tracker=tracker)

    record = service.create_activity(1, ActivityCreate(text="still saved"))

    assert record.id is not None
    assert service.get_today_activity(1).text == "still saved"


def test_accepted_partners_get_pair_streaks(make_user, clock):
    for user_id in (1, 2, 3):
        make_user(user_id)
    partners = StaticPartnerDirectory()
    partners.link(1, 2)
    partners.link(1, 3, RelationshipStatus.PENDING)
    service = _service(clock, partners=partners)

    service.create_activity(1, ActivityCreate(text="me"))
    service.create_activity(2, ActivityCreate(text="you"))

    tracker = StreakTracker()
    assert tracker.read_state(PairSubject(1, 2)).streak_count == 1
    assert tracker.read_state(PairSubject(1, 3)) is None


def test_announcement_submitted_after_post(make_user, clock):
    make_user(1)
    announce = MagicMock()
    queue = LocalNotificationQueue(max_workers=1)
    service = _service(clock, queue=queue, announce=announce)

    service.create_activity(1, ActivityCreate(text="news"))
    service.shutdown()

    announce.assert_called_once_with(1, "news")


def test_duplicate_post_is_not_announced(make_user, clock):
    make_user(1)
    announce = MagicMock()
    queue = LocalNotificationQueue(max_workers=1)
    service = _service(clock, queue=queue, announce=announce)

    service.create_activity(1, ActivityCreate(text="once"))
    with pytest.raises(DuplicateActivity):
        service.create_activity(1, ActivityCreate(text="twice"))
    service.shutdown()

    assert announce.call_count == 1


def test_queue_failure_does_not_fail_post(make_user, clock):
    make_user(1)
    queue = MagicMock()
    queue.submit.side_effect = ConnectionError("redis down")
    service = _service(clock, queue=queue, announce=MagicMock())

    record = service.create_activity(1, ActivityCreate(text="hello"))
    assert record.text == "hello"


def test_today_activity_empty_before_posting(make_user, clock):
    make_user(1)
    assert _service(clock).get_today_activity(1) is None


def _rejecting_inserts(message):
    """Session scope whose INSERTs fail with the given driver message."""

    @contextmanager
    def scope():
        with get_db_session() as session:
            execute = session.execute

            def reject(statement, *args, **kwargs):
                if isinstance(statement, Insert):
                    raise IntegrityError(str(statement), {}, Exception(message))
                return execute(statement, *args, **kwargs)

            session.execute = reject
            yield session

    return scope


def test_user_removed_before_insert_is_not_found(make_user, clock):
    make_user(1)
    service = _service(clock, session_scope=_rejecting_inserts("FOREIGN KEY constraint failed"))

    with pytest.raises(NotFoundError):
        service.create_activity(1, ActivityCreate(text="hello"))

    assert activities_rejected_total.value(labels={"reason": "duplicate"}) == 0
    assert activities_rejected_total.value(labels={"reason": "unknown_user"}) == 1


def test_named_unique_constraint_is_duplicate(make_user, clock):
    make_user(1)
    message = 'duplicate key value violates unique constraint "uniq_user_journal_date"'
    service = _service(clock, session_scope=_rejecting_inserts(message))

    with pytest.raises(DuplicateActivity):
        service.create_activity(1, ActivityCreate(text="hello"))


def test_other_constraint_failures_are_not_duplicates(make_user, clock):
    make_user(1)
    service = _service(clock, session_scope=_rejecting_inserts("NOT NULL constraint failed: activities.text"))

    with pytest.raises(IntegrityError):
        service.create_activity(1, ActivityCreate(text="hello"))
    assert activities_rejected_total.value(labels={"reason": "duplicate"}) == 0


def test_rejected_streak_write_does_not_fail_committed_post(make_user, clock):
    make_user(1)
    tracker = MagicMock()
    tracker.record_activity.side_effect = IntegrityError("INSERT INTO streaks", {}, Exception("CHECK constraint failed"))
    service = _service(clock, tracker=tracker)

    record = service.create_activity(1, ActivityCreate(text="still saved"))

    assert record.id is not None
