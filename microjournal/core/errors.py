"""Domain errors and their normalized HTTP rendering."""

import logging
from typing import Optional, TYPE_CHECKING
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from microjournal.core.logging import get_request_id

if TYPE_CHECKING:
    from microjournal.models.streak import StreakState


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InvalidTimezone(ValidationError):
    """The stored or supplied IANA timezone id cannot be resolved."""
    code = "invalid_timezone"

    def __init__(self, timezone_id: Optional[str]):
        super().__init__(f"Unknown timezone: {timezone_id!r}")
        self.timezone_id = timezone_id


class DuplicateActivity(ConflictError):
    code = "duplicate_activity"

    def __init__(self, user_id, journal_date):
        super().__init__("already posted for this journal date")
        self.user_id = user_id
        self.journal_date = journal_date


class OutOfOrderActivity(AppError):
    """A journal date older than the recorded last activity; state was left untouched."""
    code = "out_of_order_activity"
    status_code = 409

    def __init__(self, subject, journal_date, state: "StreakState"):
        super().__init__(
            f"journal date {journal_date.isoformat()} precedes last recorded activity for {subject}"
        )
        self.subject = subject
        self.journal_date = journal_date
        self.state = state


class StorageUnavailable(AppError):
    code = "storage_unavailable"
    status_code = 503


class PushTransportError(AppError):
    """The push transport could not accept the batch at all; nothing was delivered."""
    code = "push_transport_error"
    status_code = 502


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("microjournal")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("microjournal")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("microjournal")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
