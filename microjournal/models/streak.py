from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Tuple, Union

from microjournal.core.errors import ValidationError


class SubjectKind(str, Enum):
    SOLO = "solo"
    PAIR = "pair"


class StreakOutcome(str, Enum):
    """What a single record_activity call did to the state."""

    STARTED = "started"
    INCREMENTED = "incremented"
    RESET = "reset"
    UNCHANGED = "unchanged"
    CONTRIBUTED = "contributed"  # pair side recorded without changing the joint count


@dataclass(frozen=True)
class SoloSubject:
    user_id: int
    kind: SubjectKind = field(default=SubjectKind.SOLO, init=False)

    def __str__(self) -> str:
        return f"solo:{self.user_id}"


@dataclass(frozen=True)
class PairSubject:
    """Unordered user pair, always stored smaller id first."""

    user_id_1: int
    user_id_2: int
    kind: SubjectKind = field(default=SubjectKind.PAIR, init=False)

    def __post_init__(self):
        if self.user_id_1 == self.user_id_2:
            raise ValidationError("A pair streak needs two distinct users")
        if self.user_id_1 > self.user_id_2:
            low, high = self.user_id_2, self.user_id_1
            object.__setattr__(self, "user_id_1", low)
            object.__setattr__(self, "user_id_2", high)

    @classmethod
    def of(cls, a: int, b: int) -> "PairSubject":
        return cls(a, b)

    @property
    def members(self) -> Tuple[int, int]:
        return self.user_id_1, self.user_id_2

    def side_of(self, user_id: int) -> int:
        if user_id == self.user_id_1:
            return 1
        if user_id == self.user_id_2:
            return 2
        raise ValidationError(f"user {user_id} is not part of {self}")

    def other(self, user_id: int) -> int:
        return self.user_id_2 if self.side_of(user_id) == 1 else self.user_id_1

    def __str__(self) -> str:
        return f"pair:{self.user_id_1}:{self.user_id_2}"


Subject = Union[SoloSubject, PairSubject]


@dataclass(frozen=True)
class StreakState:
    """
    Snapshot of a subject's streak. Solo subjects use `last_activity_date` and
    `longest_streak`; pair subjects use the per-side contribution dates and
    derive `streak_count` from `streak_started_on`.
    """

    subject: Subject
    streak_count: int = 0
    longest_streak: int = 0
    last_activity_date: Optional[date] = None
    last_contribution_user1: Optional[date] = None
    last_contribution_user2: Optional[date] = None
    streak_started_on: Optional[date] = None
    version: int = 0
    updated_at: Optional[datetime] = None
    outcome: StreakOutcome = StreakOutcome.UNCHANGED

    @property
    def kind(self) -> SubjectKind:
        return self.subject.kind

    def last_for(self, user_id: int) -> Optional[date]:
        """Last contribution for one side of a pair (or the solo owner)."""
        if isinstance(self.subject, SoloSubject):
            return self.last_activity_date
        side = self.subject.side_of(user_id)
        return self.last_contribution_user1 if side == 1 else self.last_contribution_user2

    def is_active(self, today: date) -> bool:
        """Streak survives today: every contributor posted today or yesterday."""
        yesterday = today - timedelta(days=1)
        if isinstance(self.subject, SoloSubject):
            return self.streak_count > 0 and self.last_activity_date in (today, yesterday)
        sides = (self.last_contribution_user1, self.last_contribution_user2)
        return all(d in (today, yesterday) for d in sides)

    def needs_post(self, user_id: int, today: date) -> bool:
        return self.last_for(user_id) != today

    def to_dict(self, viewer_id: Optional[int] = None, today: Optional[date] = None) -> dict:
        payload = {
            "kind": self.kind.value,
            "streak_count": self.streak_count,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if isinstance(self.subject, SoloSubject):
            payload.update(
                user_id=self.subject.user_id,
                longest_streak=self.longest_streak,
                last_activity_date=_iso(self.last_activity_date),
            )
        else:
            payload.update(
                user_id_1=self.subject.user_id_1,
                user_id_2=self.subject.user_id_2,
                last_contribution_date_user1=_iso(self.last_contribution_user1),
                last_contribution_date_user2=_iso(self.last_contribution_user2),
                streak_started_on=_iso(self.streak_started_on),
            )
            if viewer_id is not None:
                other = self.subject.other(viewer_id)
                payload.update(
                    other_user_id=other,
                    last_contribution_self=_iso(self.last_for(viewer_id)),
                    last_contribution_other=_iso(self.last_for(other)),
                )
                if today is not None:
                    payload.update(
                        needs_self_post=self.needs_post(viewer_id, today),
                        needs_other_post=self.needs_post(other, today),
                    )
        if today is not None:
            payload["is_active"] = self.is_active(today)
        return payload


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def pair_streak_count(last_1: Optional[date], last_2: Optional[date], started_on: Optional[date]) -> int:
    """Joint streak length derived from persisted dates."""
    if started_on is None or last_1 is None or last_2 is None:
        return 0
    return max(0, (min(last_1, last_2) - started_on).days + 1)
