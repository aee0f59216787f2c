from __future__ import annotations

import logging
from typing import List

from sqlalchemy import select

from microjournal.core.database import get_db_session, storage_errors, users
from microjournal.features.notifications.dispatcher import NotificationDispatcher
from microjournal.features.notifications.registry import PushEndpointRegistry
from microjournal.features.streaks.partners import PartnerDirectory, streak_partners
from microjournal.models.notification import DeliveryReport, PushEndpoint

logger = logging.getLogger("microjournal.push")

PREVIEW_LENGTH = 100
FALLBACK_DISPLAY_NAME = "A friend"


def preview(text: str, limit: int = PREVIEW_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class PostAnnouncer:
    """Tells a poster's accepted partners that a new post is up."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        registry: PushEndpointRegistry,
        partners: PartnerDirectory,
        session_scope=get_db_session,
    ):
        self._dispatcher = dispatcher
        self._registry = registry
        self._partners = partners
        self._session_scope = session_scope

    def announce(self, user_id: int, text: str) -> DeliveryReport:
        recipients = streak_partners(self._partners, user_id)
        endpoints: List[PushEndpoint] = []
        for partner_id in recipients:
            endpoints.extend(self._registry.endpoints_for(partner_id))
        if not endpoints:
            logger.info("post.announce_skipped", extra={"user_id": user_id, "partners": len(recipients)})
            return DeliveryReport()

        title = f"{self._display_name(user_id)} posted today!"
        report = self._dispatcher.send_bulk(
            endpoints,
            title,
            preview(text),
            {"type": "new_post", "user_id": user_id},
        )
        logger.info(
            "post.announced",
            extra={"user_id": user_id, "success": report.success_count, "failure": report.failure_count},
        )
        return report

    def _display_name(self, user_id: int) -> str:
        with storage_errors("display_name"):
            with self._session_scope() as session:
                name = session.execute(select(users.c.display_name).where(users.c.id == user_id)).scalar()
        return name or FALLBACK_DISPLAY_NAME
