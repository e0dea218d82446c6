"""Tests for core/engine.py."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from vigil.compliance.mapping import ControlMappingRule
from vigil.compliance.remediation import RemediationRule
from vigil.core.engine import VerificationEngine
from vigil.errors import ControlNotFound, ProviderError, VerificationTimeout
from vigil.models.control import ImplementationStatus, VerificationStatus
from vigil.models.history import HistoryEvent
from vigil.storage.tables import AuditLogRecord, ControlRuleRecord


@pytest.fixture
def engine(db, config, clock, providers):
    return VerificationEngine(db, config, clock=clock, provider_factory=providers)


class TestGetHealth:
    def test_scores_stored_control(self, engine, seed, clock):
        seed.control(verification_status="verified", verified_at=clock() - timedelta(days=2),
                     last_reviewed_at=clock() - timedelta(days=1))
        seed.evidence("ctl-1", age_days=2, source="integration")
        seed.mapping("ctl-1", "CC6.1")

        result = engine.get_health("ctl-1")
        assert result.control_id == "ctl-1"
        # 40 + 25 + 15 (integration + any evidence) + 15
        assert result.overall_score == 95
        assert result.factors.framework_mappings == 1

    def test_persists_due_staleness(self, engine, seed, clock):
        seed.control(verification_status="verified", verified_at=clock() - timedelta(days=40))
        result = engine.get_health("ctl-1")
        assert result.factors.verification_status == VerificationStatus.STALE
        assert seed.get_control("ctl-1").verification_status == "stale"
        assert engine.get_verification_history("ctl-1")[0].event == HistoryEvent.STALENESS

    def test_stale_control_earns_no_freshness(self, engine, seed, clock):
        seed.control(verification_status="verified", verified_at=clock() - timedelta(days=60))
        result = engine.get_health("ctl-1")
        assert result.factors.verification_status == VerificationStatus.STALE
        assert result.factors.freshness_score == 0

    def test_freshness_uses_control_validity_override(self, engine, seed, clock):
        seed.control(verification_status="verified", verified_at=clock() - timedelta(days=60), validity_days=90)
        result = engine.get_health("ctl-1")
        assert result.factors.verification_status == VerificationStatus.VERIFIED
        assert result.factors.freshness_score == 12.5

    def test_unknown_control(self, engine):
        with pytest.raises(ControlNotFound):
            engine.get_health("missing")

    def test_surfaces_integration_errors(self, engine, seed):
        seed.control()
        seed.integration("int-gh", status="error", last_sync_error="401 | Bad credentials")
        seed.rule("ctl-1", "branch-protection-enabled")
        result = engine.get_health("ctl-1")
        assert result.integration_issues == ["Github integration is error: 401 | Bad credentials"]

    def test_custom_remediation_rules_win(self, db, config, clock, seed):
        engine = VerificationEngine(db, config, clock=clock, remediation_rules=[
            RemediationRule(provider="github", fact_type="branch-protection-enabled", steps=["Ask platform team"]),
        ])
        seed.control(verification_status="failed", verification_source="github",
                     verification_details={"fact_types": ["branch-protection-enabled"]})
        assert engine.get_health("ctl-1").remediation == ["Ask platform team"]


class TestHistory:
    def test_history_limit_and_order(self, engine, seed, clock):
        seed.control()
        engine.mark_reviewed("ctl-1", "user-1")
        clock.advance(minutes=1)
        engine.set_implementation_status("ctl-1", ImplementationStatus.IMPLEMENTED, "user-1")
        entries = engine.get_verification_history("ctl-1", limit=1)
        assert len(entries) == 1
        assert entries[0].event == HistoryEvent.IMPLEMENTATION_CHANGE

    def test_unknown_control(self, engine):
        with pytest.raises(ControlNotFound):
            engine.get_verification_history("missing")

    def test_state_as_of(self, engine, seed, clock):
        seed.control()
        start = clock()
        engine.reset_verification("ctl-1", "user-1")
        assert engine.verification_state_as_of("ctl-1", start + timedelta(seconds=1)) == VerificationStatus.UNVERIFIED


class TestTriggerManualVerification:
    @pytest.mark.asyncio
    async def test_verifies_and_returns_refreshed_score(self, engine, seed, providers, make_finding, db):
        seed.control()
        seed.control("ctl-2")
        seed.integration("int-gh")
        seed.rule("ctl-1", "branch-protection-enabled")
        seed.rule("ctl-2", "repository-inventory")
        providers.findings["int-gh"] = [make_finding("branch-protection-enabled"), make_finding("repository-inventory")]

        result = await engine.trigger_manual_verification("ctl-1", "user-1")
        assert result.factors.verification_status == VerificationStatus.VERIFIED
        assert result.factors.has_integration_evidence
        assert result.integration_issues == []
        # The pass is scoped to the requested control
        assert seed.get_control("ctl-2").verification_status == "unverified"

        with db.session_factory() as session:
            audit = session.execute(select(AuditLogRecord)).scalars().one()
        assert audit.action == "control.verification_triggered"
        assert audit.details == {"integrations": ["int-gh"]}

    @pytest.mark.asyncio
    async def test_no_mapped_integration(self, engine, seed):
        seed.control()
        result = await engine.trigger_manual_verification("ctl-1", "user-1")
        assert result.integration_issues == ["No integration is mapped to this control."]

    @pytest.mark.asyncio
    async def test_provider_error_reported_not_raised(self, engine, seed, providers, clock):
        seed.control(verification_status="verified", verified_at=clock())
        seed.integration("int-gh")
        seed.rule("ctl-1", "branch-protection-enabled")
        providers.errors["int-gh"] = ProviderError.transient("503 | unavailable", provider="github")

        result = await engine.trigger_manual_verification("ctl-1", "user-1")
        assert result.factors.verification_status == VerificationStatus.VERIFIED
        assert any("503 | unavailable" in issue for issue in result.integration_issues)
        assert any("degraded" in issue for issue in result.integration_issues)

    @pytest.mark.asyncio
    async def test_failure_from_one_integration_wins(self, engine, seed, providers, make_finding):
        seed.control()
        seed.integration("int-gh")
        seed.integration("int-aws", type="aws")
        seed.rule("ctl-1", "mfa-enforced")
        providers.findings["int-gh"] = [make_finding("mfa-enforced")]
        providers.findings["int-aws"] = [
            make_finding("mfa-enforced", passed=False, provider="aws", integration_id="int-aws"),
        ]
        result = await engine.trigger_manual_verification("ctl-1", "user-1")
        assert result.factors.verification_status == VerificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout(self, engine, seed, providers):
        seed.control()
        seed.integration("int-gh")
        seed.rule("ctl-1", "branch-protection-enabled")
        gate = asyncio.Event()
        providers.gates["int-gh"] = gate
        with pytest.raises(VerificationTimeout):
            await engine.trigger_manual_verification("ctl-1", "user-1", timeout=0.01)
        # The pass keeps running after the caller gives up
        pending = [task for task, _ in engine.orchestrator._inflight.values()]
        assert len(pending) == 1
        gate.set()
        await asyncio.gather(*pending)

    @pytest.mark.asyncio
    async def test_unknown_control(self, engine):
        with pytest.raises(ControlNotFound):
            await engine.trigger_manual_verification("missing", "user-1")


class TestImportRules:
    def test_replaces_organization_rules(self, engine, seed, db):
        seed.control()
        seed.rule("ctl-1", "old-fact")
        count = engine.import_rules("org-1", [
            ControlMappingRule(control_id="ctl-1", fact_type="mfa-*", provider="gsuite"),
            ControlMappingRule(control_id="ctl-1", requirement_code="CC6.1"),
        ])
        assert count == 2
        with db.session_factory() as session:
            rules = {
                (r.fact_type, r.provider, r.requirement_code)
                for r in session.execute(select(ControlRuleRecord)).scalars()
            }
        assert rules == {("mfa-*", "gsuite", None), (None, None, "CC6.1")}

    def test_rejects_other_organization_controls(self, engine, seed, db):
        seed.control("ctl-x", organization_id="org-2")
        seed.control("ctl-1")
        seed.rule("ctl-1", "kept")
        with pytest.raises(ControlNotFound):
            engine.import_rules("org-1", [ControlMappingRule(control_id="ctl-x", fact_type="a")])
        with db.session_factory() as session:
            assert [r.fact_type for r in session.execute(select(ControlRuleRecord)).scalars()] == ["kept"]


class TestSweep:
    def test_sweep_stale(self, engine, seed, clock):
        seed.control(verification_status="verified", verified_at=clock() - timedelta(days=31))
        assert engine.sweep_stale() == ["ctl-1"]
