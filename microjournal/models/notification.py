from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    UNREGISTERED = "unregistered"  # permanently invalid, prune from registry
    TRANSIENT = "transient"


class ReminderKind(str, Enum):
    DAILY = "daily_reminder"
    STREAK_EXPIRY = "streak_expiry"


@dataclass(frozen=True)
class PushEndpoint:
    user_id: int
    token: str
    registered_at: Optional[datetime] = field(default=None, compare=False)


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenResult:
    token: str
    outcome: DeliveryOutcome
    error: Optional[str] = None


@dataclass(frozen=True)
class DeliveryReport:
    success_count: int = 0
    failure_count: int = 0
    pruned_tokens: Tuple[str, ...] = ()
    results: Tuple[TokenResult, ...] = ()

    @property
    def attempted(self) -> int:
        return self.success_count + self.failure_count

    def failed_tokens(self) -> List[str]:
        return [r.token for r in self.results if r.outcome is not DeliveryOutcome.DELIVERED]
