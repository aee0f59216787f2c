"""Request-scoped access to the wired services.

Services are built once per app on first use and kept on `app.state`; tests
swap them by assigning their own instances before the first request;
setting `partner_directory` alone keeps the rest of the default wiring.
"""
from typing import Annotated

from fastapi import Header, Request

from microjournal.core.config import settings
from microjournal.core.errors import ValidationError
from microjournal.features.journal.service import JournalService, build_journal_service
from microjournal.features.notifications.registry import PushEndpointRegistry
from microjournal.features.streaks.service import StreakTracker


def current_user_id(user_id: Annotated[str, Header(alias="X-User-Id")]) -> int:
    try:
        return int(user_id)
    except ValueError as exc:
        raise ValidationError("X-User-Id must be an integer user id") from exc


def get_journal_service(request: Request) -> JournalService:
    state = request.app.state
    if getattr(state, "journal_service", None) is None:
        state.journal_service = build_journal_service(settings, partners=getattr(state, "partner_directory", None))
    return state.journal_service


def get_streak_tracker(request: Request) -> StreakTracker:
    state = request.app.state
    if getattr(state, "streak_tracker", None) is None:
        state.streak_tracker = StreakTracker(max_retries=settings.STREAK_MAX_RETRIES)
    return state.streak_tracker


def get_endpoint_registry(request: Request) -> PushEndpointRegistry:
    state = request.app.state
    if getattr(state, "endpoint_registry", None) is None:
        state.endpoint_registry = PushEndpointRegistry()
    return state.endpoint_registry
