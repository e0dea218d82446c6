"""Health score models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .control import VerificationStatus


class HealthFactors(BaseModel):
    verification_score: float = 0
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    freshness_score: float = 0
    days_since_last_evidence: Optional[int] = None
    coverage_score: float = 0
    evidence_count: int = 0
    has_integration_evidence: bool = False
    review_score: float = 0
    days_since_last_review: Optional[int] = None
    framework_mappings: int = 0


class HealthScoreResult(BaseModel):
    control_id: str
    overall_score: int
    factors: HealthFactors
    recommendations: list[str] = []
    remediation: list[str] = []
    integration_issues: list[str] = []
    calculated_at: datetime
