from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RelationshipStatus(str, Enum):
    """Buddy relationship states as reported by the social graph."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class Partnership:
    partner_id: int
    status: RelationshipStatus

    @property
    def tracks_streak(self) -> bool:
        if self.status is RelationshipStatus.ACCEPTED:
            return True
        if self.status in (RelationshipStatus.PENDING, RelationshipStatus.REJECTED, RelationshipStatus.BLOCKED):
            return False
        raise ValueError(f"unhandled relationship status {self.status!r}")
