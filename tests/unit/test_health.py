"""Tests for core/health.py."""

from __future__ import annotations

from datetime import timedelta

import pytest

from vigil.core.health import (
    coverage_score,
    freshness_score,
    review_score,
    score,
    verification_score,
)
from vigil.models.control import (
    ControlState,
    CoverageLevel,
    EvidenceItem,
    FrameworkMapping,
    VerificationDetails,
    VerificationStatus,
)


@pytest.fixture
def control(clock):
    def _make(**kwargs) -> ControlState:
        return ControlState(id="ctl-1", organization_id="org-1", **kwargs)

    return _make


@pytest.fixture
def evidence(clock):
    def _make(count: int, age_days: int = 1, from_integration: bool = False) -> list[EvidenceItem]:
        return [
            EvidenceItem(
                id=f"ev-{i}",
                collected_at=clock() - timedelta(days=age_days),
                from_integration=from_integration,
            )
            for i in range(count)
        ]

    return _make


class TestFactorScores:
    @pytest.mark.parametrize("status,expected", [
        (VerificationStatus.VERIFIED, 40),
        (VerificationStatus.STALE, 20),
        (VerificationStatus.UNVERIFIED, 10),
        (VerificationStatus.FAILED, 0),
    ])
    def test_verification(self, status, expected):
        assert verification_score(status) == expected

    def test_stale_between_failed_and_verified(self):
        assert (
            verification_score(VerificationStatus.FAILED)
            < verification_score(VerificationStatus.STALE)
            < verification_score(VerificationStatus.VERIFIED)
        )

    @pytest.mark.parametrize("days,expected", [
        (None, 0), (0, 25), (7, 25), (8, 18.75), (15, 18.75), (16, 12.5), (22, 12.5), (23, 6.25), (30, 6.25), (31, 0),
    ])
    def test_freshness(self, days, expected):
        assert freshness_score(days) == expected

    def test_freshness_scales_with_validity_window(self):
        assert freshness_score(40, validity_days=90) == 18.75
        assert freshness_score(90, validity_days=90) == 6.25
        assert freshness_score(91, validity_days=90) == 0

    def test_coverage(self):
        assert coverage_score(0, False) == 0
        assert coverage_score(1, False) == 5
        assert coverage_score(3, False) == 10
        assert coverage_score(1, True) == 15
        assert coverage_score(5, True) == 20

    @pytest.mark.parametrize("days,expected", [
        (None, 0), (0, 15), (30, 15), (31, 11.25), (60, 11.25), (90, 7.5), (91, 0),
    ])
    def test_review(self, days, expected):
        assert review_score(days, 90) == expected


class TestScore:
    def test_fully_healthy_control_scores_100(self, control, evidence, clock):
        result = score(
            control(
                verification_status=VerificationStatus.VERIFIED,
                verified_at=clock() - timedelta(days=1),
                last_reviewed_at=clock() - timedelta(days=5),
            ),
            evidence(3, age_days=2, from_integration=True),
            [FrameworkMapping(requirement_code="CC6.1")],
            clock(),
        )
        assert result.overall_score == 100
        assert result.recommendations == []
        assert result.remediation == []
        assert result.calculated_at == clock()

    def test_empty_control(self, control, clock):
        result = score(control(), [], [], clock())
        assert result.overall_score == 10
        assert result.factors.days_since_last_evidence is None
        assert result.factors.days_since_last_review is None
        assert "Control has not been verified. Connect an integration or add integration-backed evidence." \
            in result.recommendations
        assert "No evidence linked to this control. Add relevant evidence." in result.recommendations
        assert "Control has never been reviewed. Schedule a review." in result.recommendations

    def test_verified_control_with_old_evidence(self, control, evidence, clock):
        result = score(
            control(
                verification_status=VerificationStatus.VERIFIED,
                verified_at=clock() - timedelta(days=100),
            ),
            evidence(1, age_days=120),
            [],
            clock(),
        )
        # 40 verification, 0 freshness (past the 30-day window), 5 coverage, 0 review
        assert result.overall_score == 45
        assert (
            "Evidence is 100 days old, past the 30-day validity window. Collect fresh evidence."
            in result.recommendations
        )

    def test_failed_control_gets_remediation(self, control, clock):
        failed = control(
            verification_status=VerificationStatus.FAILED,
            verification_source="gsuite",
            verification_details=VerificationDetails(
                reason="[gsuite] Only 60% of users have MFA",
                fact_types=["mfa-enforced"],
                metrics={"failures": [
                    {"provider": "gsuite", "fact_type": "mfa-enforced", "reason": "Only 60% of users have MFA"},
                    {"provider": "aws", "fact_type": "audit-logging-enabled", "reason": "No trail"},
                ]},
            ),
        )
        result = score(failed, [], [], clock())
        assert result.factors.verification_score == 0
        assert any("2-Step Verification" in step for step in result.remediation)
        assert any("CloudTrail" in step for step in result.remediation)
        assert result.recommendations[0].startswith("Control verification failed.")

    def test_failed_without_failure_list_uses_fact_types(self, control, clock):
        failed = control(
            verification_status=VerificationStatus.FAILED,
            verification_source="github",
            verification_details=VerificationDetails(fact_types=["branch-protection-enabled"]),
        )
        result = score(failed, [], [], clock())
        assert result.remediation[0].startswith("Open the repository settings")

    def test_deleted_evidence_ignored(self, control, evidence, clock):
        items = evidence(2)
        items[0] = items[0].model_copy(update={"deleted_at": clock()})
        result = score(control(), items, [], clock())
        assert result.factors.evidence_count == 1

    def test_freshness_zero_once_validity_window_passes(self, control, clock):
        at_boundary = control(verification_status=VerificationStatus.VERIFIED,
                              verified_at=clock() - timedelta(days=30))
        assert score(at_boundary, [], [], clock()).factors.freshness_score == 6.25

        just_past = control(verification_status=VerificationStatus.VERIFIED,
                            verified_at=clock() - timedelta(days=30, hours=1))
        result = score(just_past, [], [], clock())
        assert result.factors.days_since_last_evidence == 30
        assert result.factors.freshness_score == 0

    def test_freshness_follows_control_validity_window(self, control, clock):
        verified = control(verification_status=VerificationStatus.VERIFIED,
                           verified_at=clock() - timedelta(days=60))
        assert score(verified, [], [], clock()).factors.freshness_score == 0
        assert score(verified, [], [], clock(), validity_days=90).factors.freshness_score == 12.5

    def test_freshness_uses_latest_of_evidence_and_verification(self, control, evidence, clock):
        result = score(
            control(verification_status=VerificationStatus.VERIFIED, verified_at=clock() - timedelta(days=3)),
            evidence(1, age_days=200),
            [],
            clock(),
        )
        assert result.factors.days_since_last_evidence == 3
        assert result.factors.freshness_score == 25

    def test_review_cadence(self, control, clock):
        result = score(
            control(review_frequency_days=30, last_reviewed_at=clock() - timedelta(days=45)),
            [], [], clock(),
        )
        assert result.factors.review_score == 0
        assert "Control was last reviewed 45 days ago. Schedule a review." in result.recommendations

    def test_partial_mapping_recommendation(self, control, clock):
        result = score(control(), [], [
            FrameworkMapping(requirement_code="CC6.1"),
            FrameworkMapping(requirement_code="A.8.5", coverage=CoverageLevel.PARTIAL),
        ], clock())
        assert result.factors.framework_mappings == 2
        assert any("partially covers 1 framework requirement" in r for r in result.recommendations)

    def test_unmapped_recommendation(self, control, clock):
        result = score(control(), [], [], clock())
        assert any("not mapped to any framework requirement" in r for r in result.recommendations)

    def test_integration_issues_pass_through(self, control, clock):
        result = score(control(), [], [], clock(), integration_issues=["GitHub integration is error: 401"])
        assert result.integration_issues == ["GitHub integration is error: 401"]

    def test_score_bounded(self, control, evidence, clock):
        for status in VerificationStatus:
            result = score(control(verification_status=status), evidence(10, from_integration=True), [], clock())
            assert 0 <= result.overall_score <= 100

    def test_deterministic(self, control, evidence, clock):
        inputs = (control(), evidence(2), [], clock())
        assert score(*inputs) == score(*inputs)
