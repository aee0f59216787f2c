import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Journal day boundary (local hour before which posts count for the previous day).
    # Changing this without migrating stored journal dates breaks streak bookkeeping.
    JOURNAL_CUTOFF_HOUR: int = 6

    # Streak bookkeeping
    STREAK_MAX_RETRIES: int = 10

    # Reminder windows (local wall-clock, HH:MM start, inclusive minutes)
    DAILY_REMINDER_WINDOW_START: str = "21:00"
    DAILY_REMINDER_WINDOW_MINUTES: int = 5
    STREAK_EXPIRY_WINDOW_START: str = "12:00"
    STREAK_EXPIRY_WINDOW_MINUTES: int = 15
    SCAN_MAX_WORKERS: int = 1

    # Push delivery
    PUSH_MODE: str = "stub"  # fcm | stub
    FCM_PROJECT_ID: Optional[str] = None
    FCM_CREDENTIALS_PATH: Optional[str] = None
    PUSH_TIMEOUT_SECONDS: float = 12.0

    # Post-creation notification queue
    NOTIFY_BACKEND: str = "local"  # local | rq
    NOTIFY_MAX_WORKERS: int = 4

    # Where pair-streak partners come from
    PARTNER_DIRECTORY: str = "followers"  # followers | none

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("microjournal")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL"]
    if (getattr(cfg, "PUSH_MODE", "stub") or "stub").lower() == "fcm":
        required_keys += ["FCM_PROJECT_ID", "FCM_CREDENTIALS_PATH"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    log.info("journal.cutoff", extra={"cutoff_hour": getattr(cfg, "JOURNAL_CUTOFF_HOUR", None)})
    return True
