"""
Journal post models.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_TEXT_LENGTH = 280


class ActivityCreate(BaseModel):
    """Payload for a new journal post."""

    model_config = ConfigDict(extra="forbid")

    text: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    template_id: Optional[int] = Field(default=None, ge=1)


class ActivityRecord(BaseModel):
    """A stored post. `journal_date` is fixed at creation and never recomputed."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    journal_date: date
    text: str
    template_id: Optional[int] = None
    created_at: datetime
