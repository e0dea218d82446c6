"""Control health scoring.

Calculates a 0-100 health score for a control from four capped factors:
- Verification status (0-40 points) - Is it verified by integrations?
- Freshness (0-25 points) - How recent is the newest evidence or verification?
- Coverage (0-20 points) - How much evidence is there, and is any automated?
- Review (0-15 points) - Was it reviewed within its review cadence?

Everything here is pure. Missing inputs lower the score, they never raise.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..compliance.remediation import RemediationRule, lookup_remediation
from ..models.control import ControlState, CoverageLevel, EvidenceItem, FrameworkMapping, VerificationStatus
from ..models.health import HealthFactors, HealthScoreResult

WEIGHTS = {
    "verification": 40,
    "freshness": 25,
    "coverage": 20,
    "review": 15,
}

# Share of the verification weight per status. Stale sits strictly between
# verified and failed; unverified keeps a small self-attestation floor.
VERIFICATION_CREDIT = {
    VerificationStatus.VERIFIED: 1.0,
    VerificationStatus.STALE: 0.5,
    VerificationStatus.UNVERIFIED: 0.25,
    VerificationStatus.FAILED: 0.0,
}

# (share of the validity window elapsed, share of the freshness weight)
FRESHNESS_STEPS = ((0.25, 1.0), (0.5, 0.75), (0.75, 0.5), (1.0, 0.25))

DEFAULT_VALIDITY_DAYS = 30


def _days_between(earlier: datetime, now: datetime) -> int:
    return max(0, (now - earlier).days)


def verification_score(status: VerificationStatus) -> float:
    return WEIGHTS["verification"] * VERIFICATION_CREDIT.get(status, VERIFICATION_CREDIT[VerificationStatus.UNVERIFIED])


def freshness_score(days: Optional[int], validity_days: int = DEFAULT_VALIDITY_DAYS) -> float:
    """Step decay across the validity window; 0 once the newest evidence has expired."""
    if days is None or validity_days <= 0 or days > validity_days:
        return 0
    for elapsed, share in FRESHNESS_STEPS:
        if days <= validity_days * elapsed:
            return WEIGHTS["freshness"] * share
    return 0


def coverage_score(evidence_count: int, has_integration_evidence: bool) -> float:
    score = 0.0
    if has_integration_evidence:
        score += WEIGHTS["coverage"] * 0.5
    if evidence_count > 0:
        score += WEIGHTS["coverage"] * 0.25
    if evidence_count >= 3:
        score += WEIGHTS["coverage"] * 0.25
    return score


def review_score(days: Optional[int], cadence_days: int) -> float:
    """Full credit in the first third of the cadence, none once overdue."""
    if days is None or cadence_days <= 0:
        return 0
    if days <= cadence_days / 3:
        return WEIGHTS["review"]
    if days <= cadence_days * 2 / 3:
        return WEIGHTS["review"] * 0.75
    if days <= cadence_days:
        return WEIGHTS["review"] * 0.5
    return 0


def generate_recommendations(
    factors: HealthFactors,
    mappings: list[FrameworkMapping],
    review_cadence_days: int,
    validity_days: int = DEFAULT_VALIDITY_DAYS,
) -> list[str]:
    """Actionable recommendations derived only from the score inputs."""
    recommendations: list[str] = []

    status = factors.verification_status
    if status == VerificationStatus.FAILED:
        recommendations.append(
            "Control verification failed. Review the verification details and fix the underlying issue."
        )
    elif status == VerificationStatus.STALE:
        recommendations.append(
            "Control verification is stale. Run a new sync to refresh verification status."
        )
    elif status == VerificationStatus.UNVERIFIED:
        recommendations.append(
            "Control has not been verified. Connect an integration or add integration-backed evidence."
        )

    if factors.days_since_last_evidence is None:
        recommendations.append("No evidence linked to this control. Add relevant evidence.")
    elif factors.days_since_last_evidence > validity_days:
        recommendations.append(
            f"Evidence is {factors.days_since_last_evidence} days old, past the {validity_days}-day "
            "validity window. Collect fresh evidence."
        )

    if not factors.has_integration_evidence:
        recommendations.append(
            "No integration-generated evidence. Connect an integration for automated verification."
        )
    if factors.evidence_count < 3:
        recommendations.append(
            "Limited evidence coverage. Add more supporting evidence for stronger compliance posture."
        )

    if factors.days_since_last_review is None:
        recommendations.append("Control has never been reviewed. Schedule a review.")
    elif factors.days_since_last_review > review_cadence_days:
        recommendations.append(
            f"Control was last reviewed {factors.days_since_last_review} days ago. Schedule a review."
        )

    if not mappings:
        recommendations.append(
            "Control is not mapped to any framework requirement. Map it to the requirements it satisfies."
        )
    else:
        weak = [m for m in mappings if m.coverage != CoverageLevel.FULL]
        if weak:
            recommendations.append(
                f"Control only partially covers {len(weak)} framework requirement(s). "
                "Add complementary controls or evidence."
            )

    return recommendations


def remediation_for(
    control: ControlState,
    rules: Optional[Iterable[RemediationRule]] = None,
) -> list[str]:
    """Remediation steps for each failing signal recorded on a failed control."""
    if control.verification_status != VerificationStatus.FAILED:
        return []
    details = control.verification_details
    failures = details.metrics.get("failures") or [
        {"provider": control.verification_source or "", "fact_type": fact_type, "reason": details.reason}
        for fact_type in (details.fact_types or [""])
    ]
    rules = list(rules) if rules is not None else None
    steps: list[str] = []
    for failure in failures:
        for step in lookup_remediation(
            failure.get("provider") or "", failure.get("fact_type") or "", failure.get("reason") or "", rules
        ):
            if step not in steps:
                steps.append(step)
    return steps


def score(
    control: ControlState,
    evidence: list[EvidenceItem],
    mappings: list[FrameworkMapping],
    now: datetime,
    validity_days: int = DEFAULT_VALIDITY_DAYS,
    remediation_rules: Optional[Iterable[RemediationRule]] = None,
    integration_issues: Optional[list[str]] = None,
) -> HealthScoreResult:
    """Calculate the health score for a single control.

    ``validity_days`` is the control's evidence validity window; freshness
    reaches 0 once the newest evidence or verification is older than it.
    """
    live_evidence = [e for e in evidence or [] if e.deleted_at is None]
    mappings = list(mappings or [])

    # Freshness counts the newest evidence or verification, whichever is later
    timestamps = [e.collected_at for e in live_evidence]
    if control.verified_at is not None:
        timestamps.append(control.verified_at)
    newest = max(timestamps) if timestamps else None
    days_since_evidence = _days_between(newest, now) if newest else None
    expired = newest is not None and now - newest > timedelta(days=validity_days)

    has_integration_evidence = any(e.from_integration for e in live_evidence)
    days_since_review = (
        _days_between(control.last_reviewed_at, now) if control.last_reviewed_at else None
    )
    cadence = control.review_frequency_days or 90

    factors = HealthFactors(
        verification_score=verification_score(control.verification_status),
        verification_status=control.verification_status,
        freshness_score=0 if expired else freshness_score(days_since_evidence, validity_days),
        days_since_last_evidence=days_since_evidence,
        coverage_score=coverage_score(len(live_evidence), has_integration_evidence),
        evidence_count=len(live_evidence),
        has_integration_evidence=has_integration_evidence,
        review_score=review_score(days_since_review, cadence),
        days_since_last_review=days_since_review,
        framework_mappings=len(mappings),
    )
    overall = round(
        factors.verification_score + factors.freshness_score
        + factors.coverage_score + factors.review_score
    )

    return HealthScoreResult(
        control_id=control.id,
        overall_score=max(0, min(100, overall)),
        factors=factors,
        recommendations=generate_recommendations(factors, mappings, cadence, validity_days),
        remediation=remediation_for(control, remediation_rules),
        integration_issues=list(integration_issues or []),
        calculated_at=now,
    )
