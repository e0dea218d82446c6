"""Sync run and integration models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class SyncTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class IntegrationStatus(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    ERROR = "error"
    DISABLED = "disabled"


class FailedItem(BaseModel):
    control_id: str
    error: str


class SyncResult(BaseModel):
    organization_id: str
    integration_id: str
    trigger: SyncTrigger
    evidence_generated: int = 0
    controls_verified: int = 0
    controls_failed: int = 0
    verified_control_ids: list[str] = []
    failed_control_ids: list[str] = []
    failed_items: list[FailedItem] = []
    findings: int = 0
    skipped: bool = False
    skip_reason: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0
