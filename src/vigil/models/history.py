"""Verification history models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .control import Confidence, VerificationStatus


class ActorType(str, Enum):
    INTEGRATION = "integration"
    USER = "user"
    SYSTEM = "system"


class HistoryEvent(str, Enum):
    RECONCILIATION = "reconciliation"
    MANUAL_REVIEW = "manual_review"
    IMPLEMENTATION_CHANGE = "implementation_change"
    MANUAL_RESET = "manual_reset"
    STALENESS = "staleness"


class VerificationHistoryEntry(BaseModel):
    id: Optional[str] = None
    control_id: str
    sequence: int = 0
    event: HistoryEvent
    status_before: VerificationStatus
    status_after: VerificationStatus
    outcome: Optional[str] = None
    confidence: Optional[Confidence] = None
    reason: str = ""
    metrics: dict = {}
    provider: Optional[str] = None
    actor_type: ActorType
    actor_id: str
    created_at: datetime
