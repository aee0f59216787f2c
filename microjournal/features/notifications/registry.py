from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from microjournal.core.database import get_db_session, push_endpoints, storage_errors
from microjournal.core.errors import ValidationError
from microjournal.core.logging import redact_token
from microjournal.features.journal.clock import utc_now
from microjournal.models.notification import PushEndpoint

logger = logging.getLogger("microjournal.push")

MAX_TOKEN_LENGTH = 512


class PushEndpointRegistry:
    """Storage access for device push tokens."""

    def __init__(self, session_scope=get_db_session, now: Callable[[], datetime] = utc_now):
        self._session_scope = session_scope
        self._now = now

    def register(self, user_id: int, token: str) -> PushEndpoint:
        """Create or refresh a (user, token) endpoint."""
        token = (token or "").strip()
        if not token:
            raise ValidationError("push token must not be empty")
        if len(token) > MAX_TOKEN_LENGTH:
            raise ValidationError(f"push token longer than {MAX_TOKEN_LENGTH} characters")

        now = self._now()
        try:
            with storage_errors("register_endpoint"):
                with self._session_scope() as session:
                    session.execute(
                        insert(push_endpoints).values(
                            user_id=user_id, token=token, registered_at=now, updated_at=now
                        )
                    )
            logger.info("push.endpoint_registered", extra={"user_id": user_id, "token": redact_token(token)})
            return PushEndpoint(user_id=user_id, token=token, registered_at=now)
        except IntegrityError:
            pass

        with storage_errors("refresh_endpoint"):
            with self._session_scope() as session:
                session.execute(
                    update(push_endpoints)
                    .where(and_(push_endpoints.c.user_id == user_id, push_endpoints.c.token == token))
                    .values(updated_at=now)
                )
                row = session.execute(
                    select(push_endpoints.c.registered_at).where(
                        and_(push_endpoints.c.user_id == user_id, push_endpoints.c.token == token)
                    )
                ).first()
        return PushEndpoint(user_id=user_id, token=token, registered_at=row.registered_at if row else now)

    def endpoints_for(self, user_id: int) -> List[PushEndpoint]:
        with storage_errors("endpoints_for"):
            with self._session_scope() as session:
                rows = session.execute(
                    select(push_endpoints)
                    .where(push_endpoints.c.user_id == user_id)
                    .order_by(push_endpoints.c.id)
                ).all()
        return [PushEndpoint(user_id=row.user_id, token=row.token, registered_at=row.registered_at) for row in rows]

    def delete_tokens(self, tokens: Iterable[str]) -> List[str]:
        """Remove every endpoint carrying one of `tokens`, whoever owns it.

        Returns the tokens that had at least one row.
        """
        tokens = sorted({t for t in tokens if t is not None})
        if not tokens:
            return []
        with storage_errors("delete_tokens"):
            with self._session_scope() as session:
                present = sorted(
                    session.execute(
                        select(push_endpoints.c.token).where(push_endpoints.c.token.in_(tokens)).distinct()
                    ).scalars()
                )
                if present:
                    session.execute(delete(push_endpoints).where(push_endpoints.c.token.in_(present)))
        return present
