"""Finding, candidate and outcome models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .control import Confidence


class Finding(BaseModel):
    """A single fact reported by a provider adapter for one sync pass."""

    provider: str
    fact_type: str
    passed: bool
    confidence: Confidence = Confidence.HIGH
    reason: str = ""
    metrics: dict = {}
    observed_at: datetime
    title: str = ""
    integration_id: Optional[str] = None
    requirement_codes: list[str] = []
    keywords: list[str] = []
    partial: bool = False


class VerificationCandidate(BaseModel):
    """A finding interpreted against one control's matching rule."""

    control_id: str
    provider: str
    fact_type: str
    passed: bool
    confidence: Confidence
    reason: str = ""
    metrics: dict = {}
    observed_at: datetime
    integration_id: Optional[str] = None
    matched_by: str = ""


class OutcomeResult(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"


class VerificationOutcome(BaseModel):
    """The reconciled result for one control in one sync pass. Immutable."""

    model_config = ConfigDict(frozen=True)

    control_id: str
    result: OutcomeResult
    confidence: Confidence
    reason: str
    metrics: dict = {}
    provider: str
    integration_id: Optional[str] = None
    fact_types: list[str] = []
    created_at: datetime
    pass_started_at: Optional[datetime] = None

    @property
    def passed(self) -> bool:
        return self.result == OutcomeResult.VERIFIED
