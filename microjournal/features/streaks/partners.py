"""Read-only view of who a user keeps pair streaks with.

The buddy graph itself lives in the social service; the journal engine only
needs "whose streaks does this post feed" and "who should hear about it".
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from sqlalchemy import or_, select

from microjournal.core.database import followers, get_db_session, storage_errors
from microjournal.models.partner import Partnership, RelationshipStatus

logger = logging.getLogger("microjournal.partners")


class PartnerDirectory(Protocol):
    def partnerships_for(self, user_id: int) -> List[Partnership]:
        ...


def streak_partners(directory: PartnerDirectory, user_id: int) -> List[int]:
    """Partner ids whose pair streak advances when `user_id` posts."""
    seen = set()
    partners: List[int] = []
    for partnership in directory.partnerships_for(user_id):
        if partnership.partner_id == user_id or partnership.partner_id in seen:
            continue
        if partnership.tracks_streak:
            seen.add(partnership.partner_id)
            partners.append(partnership.partner_id)
    return partners


class EmptyPartnerDirectory:
    """Deployments without a social graph: every user is solo."""

    def partnerships_for(self, user_id: int) -> List[Partnership]:
        return []


class StaticPartnerDirectory:
    """In-memory, symmetric directory. Useful for local runs and tests."""

    def __init__(self, relations: Mapping[int, Iterable[Partnership]] = None):
        self._relations: Dict[int, Dict[int, Partnership]] = {}
        for user_id, partnerships in (relations or {}).items():
            for partnership in partnerships:
                self.link(user_id, partnership.partner_id, partnership.status)

    def link(self, user_a: int, user_b: int, status: RelationshipStatus = RelationshipStatus.ACCEPTED) -> None:
        self._relations.setdefault(user_a, {})[user_b] = Partnership(user_b, status)
        self._relations.setdefault(user_b, {})[user_a] = Partnership(user_a, status)

    def partnerships_for(self, user_id: int) -> List[Partnership]:
        return list(self._relations.get(user_id, {}).values())


def _follow_status(raw: Optional[str]) -> RelationshipStatus:
    try:
        return RelationshipStatus((raw or "").lower())
    except ValueError:
        logger.warning("partners.unknown_status", extra={"status": raw})
        return RelationshipStatus.PENDING


def _mutual_status(outgoing: RelationshipStatus, incoming: RelationshipStatus) -> RelationshipStatus:
    statuses = {outgoing, incoming}
    if RelationshipStatus.BLOCKED in statuses:
        return RelationshipStatus.BLOCKED
    if statuses == {RelationshipStatus.ACCEPTED}:
        return RelationshipStatus.ACCEPTED
    if RelationshipStatus.REJECTED in statuses:
        return RelationshipStatus.REJECTED
    return RelationshipStatus.PENDING


class FollowerPartnerDirectory:
    """Partners from the social service's `followers` table.

    Two users are partners once each follows the other and both follows are
    accepted. A one-way or half-accepted follow reports as pending.
    """

    def __init__(self, session_scope=get_db_session):
        self._session_scope = session_scope

    def partnerships_for(self, user_id: int) -> List[Partnership]:
        with storage_errors("partnerships_for"):
            with self._session_scope() as session:
                rows = session.execute(
                    select(followers.c.follower_id, followers.c.following_id, followers.c.status).where(
                        or_(followers.c.follower_id == user_id, followers.c.following_id == user_id)
                    )
                ).all()

        outgoing: Dict[int, RelationshipStatus] = {}
        incoming: Dict[int, RelationshipStatus] = {}
        for row in rows:
            if row.follower_id == user_id:
                outgoing[row.following_id] = _follow_status(row.status)
            else:
                incoming[row.follower_id] = _follow_status(row.status)

        return [
            Partnership(
                other,
                _mutual_status(
                    outgoing.get(other, RelationshipStatus.PENDING),
                    incoming.get(other, RelationshipStatus.PENDING),
                ),
            )
            for other in sorted(set(outgoing) | set(incoming))
        ]


def build_partner_directory(cfg) -> PartnerDirectory:
    source = (getattr(cfg, "PARTNER_DIRECTORY", "followers") or "followers").lower()
    if source == "followers":
        return FollowerPartnerDirectory()
    if source == "none":
        return EmptyPartnerDirectory()
    raise ValueError(f"Unknown PARTNER_DIRECTORY: {source}")
