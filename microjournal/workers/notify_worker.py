"""
RQ jobs for post-creation notifications.

Run a worker with:
    rq worker notifications --url $REDIS_URL
"""
from typing import Optional

from microjournal.core.config import settings
from microjournal.features.notifications.announcements import PostAnnouncer
from microjournal.features.notifications.dispatcher import NotificationDispatcher
from microjournal.features.notifications.registry import PushEndpointRegistry
from microjournal.features.notifications.transport import build_transport
from microjournal.features.streaks.partners import PartnerDirectory, build_partner_directory


def build_announcer(cfg=None, partners: Optional[PartnerDirectory] = None) -> PostAnnouncer:
    cfg = cfg or settings
    registry = PushEndpointRegistry()
    dispatcher = NotificationDispatcher(build_transport(cfg), registry)
    if partners is None:
        partners = build_partner_directory(cfg)
    return PostAnnouncer(dispatcher, registry, partners)


def announce_post(user_id: int, text: str) -> dict:
    """Tell the poster's partners about a new post. Returns delivery counts for the job result."""
    report = build_announcer().announce(user_id, text)
    return {
        "user_id": user_id,
        "success": report.success_count,
        "failure": report.failure_count,
        "pruned": len(report.pruned_tokens),
    }
