"""Control data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ImplementationStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    NOT_APPLICABLE = "not_applicable"


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"
    STALE = "stale"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class CoverageLevel(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    MINIMAL = "minimal"


class VerificationDetails(BaseModel):
    confidence: Optional[Confidence] = None
    reason: str = ""
    metrics: dict = {}
    fact_types: list[str] = []
    manual_actor: Optional[str] = None


class ControlState(BaseModel):
    """Snapshot of a control's verification-relevant fields."""

    id: str
    organization_id: str
    code: str = ""
    name: str = ""
    implementation_status: ImplementationStatus = ImplementationStatus.NOT_STARTED
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    verified_at: Optional[datetime] = None
    verification_source: Optional[str] = None
    verification_details: VerificationDetails = VerificationDetails()
    is_automated: bool = False
    automation_source: Optional[str] = None
    review_frequency_days: int = 90
    last_reviewed_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None
    validity_days: Optional[int] = None
    deleted_at: Optional[datetime] = None


class EvidenceItem(BaseModel):
    """Evidence linked to a control, as seen by the scoring engine."""

    id: str
    collected_at: datetime
    from_integration: bool = False
    source: Optional[str] = None
    deleted_at: Optional[datetime] = None


class FrameworkMapping(BaseModel):
    requirement_code: str
    framework: str = ""
    coverage: CoverageLevel = CoverageLevel.FULL
