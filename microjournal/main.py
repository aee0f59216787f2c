import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from microjournal.api import activities, health, push, streaks
from microjournal.core.config import settings, validate_config
from microjournal.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from microjournal.core.logging import configure_logging
from microjournal.core.middleware.request_context import RequestContextMiddleware
from microjournal.core.validation import validate_env

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("microjournal")
    logger.info("Starting micro-journal backend...")
    try:
        yield
    finally:
        service = getattr(app.state, "journal_service", None)
        if service is not None:
            service.shutdown()
        logger.info("Stopping micro-journal backend...")


app = FastAPI(title="Micro-journal backend", lifespan=lifespan)

app.add_middleware(RequestContextMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(activities.router, tags=["activities"])
app.include_router(streaks.router, tags=["streaks"])
app.include_router(push.router, tags=["push"])
app.include_router(health.router)
