"""Tests for storage/ (ledger, lease, repository helpers)."""

from __future__ import annotations

from datetime import timedelta

import pytest

from vigil.models.control import VerificationStatus
from vigil.models.history import ActorType, HistoryEvent, VerificationHistoryEntry
from vigil.storage.lease import LeaseManager
from vigil.storage.ledger import MAX_HISTORY_LIMIT, HistoryLedger
from vigil.storage.repository import integrations_for_control, rules_for_integration
from vigil.storage.tables import ControlRecord, IntegrationRecord


def _entry(clock, before="unverified", after="verified", **kwargs) -> VerificationHistoryEntry:
    kwargs.setdefault("created_at", clock())
    return VerificationHistoryEntry(
        control_id="ctl-1",
        event=HistoryEvent.RECONCILIATION,
        status_before=VerificationStatus(before),
        status_after=VerificationStatus(after),
        actor_type=ActorType.INTEGRATION,
        actor_id="int-gh",
        **kwargs,
    )


@pytest.fixture
def ledger(db):
    return HistoryLedger(db.session_factory)


class TestHistoryLedger:
    def test_append_assigns_sequence(self, db, ledger, seed, clock):
        seed.control()
        with db.session() as session:
            first = ledger.append(session, _entry(clock))
            second = ledger.append(session, _entry(clock, "verified", "failed"))
        assert (first.sequence, second.sequence) == (1, 2)
        assert first.id and first.id != second.id

    def test_list_newest_first_with_identical_timestamps(self, db, ledger, seed, clock):
        seed.control()
        with db.session() as session:
            ledger.append(session, _entry(clock, "unverified", "verified"))
            ledger.append(session, _entry(clock, "verified", "failed"))
            ledger.append(session, _entry(clock, "failed", "verified"))
        entries = ledger.list("ctl-1")
        assert [e.status_after.value for e in entries] == ["verified", "failed", "verified"]
        assert [e.sequence for e in entries] == [3, 2, 1]

    def test_list_limit(self, db, ledger, seed, clock):
        seed.control()
        with db.session() as session:
            for i in range(5):
                ledger.append(session, _entry(clock, created_at=clock() + timedelta(minutes=i)))
        assert [e.sequence for e in ledger.list("ctl-1", limit=2)] == [5, 4]

    def test_invalid_limit(self, ledger):
        with pytest.raises(ValueError):
            ledger.list("ctl-1", limit=0)

    def test_limit_above_maximum_is_rejected(self, ledger, seed):
        seed.control()
        assert MAX_HISTORY_LIMIT == 500
        assert ledger.list("ctl-1", limit=MAX_HISTORY_LIMIT) == []
        with pytest.raises(ValueError, match="between 1 and 500"):
            ledger.list("ctl-1", limit=MAX_HISTORY_LIMIT + 1)

    def test_rolled_back_append_leaves_nothing(self, db, ledger, seed, clock):
        seed.control()
        with pytest.raises(RuntimeError):
            with db.session() as session:
                ledger.append(session, _entry(clock))
                raise RuntimeError("abort")
        assert ledger.list("ctl-1") == []

    def test_state_as_of(self, db, ledger, seed, clock):
        seed.control()
        start = clock()
        with db.session() as session:
            ledger.append(session, _entry(clock, "unverified", "verified", created_at=start))
            ledger.append(session, _entry(clock, "verified", "failed", created_at=start + timedelta(days=2)))
        assert ledger.state_as_of("ctl-1", start - timedelta(seconds=1)) == VerificationStatus.UNVERIFIED
        assert ledger.state_as_of("ctl-1", start + timedelta(days=1)) == VerificationStatus.VERIFIED
        assert ledger.state_as_of("ctl-1", start + timedelta(days=3)) == VerificationStatus.FAILED

    def test_no_update_or_delete_api(self, ledger):
        assert not hasattr(ledger, "update")
        assert not hasattr(ledger, "delete")


class TestLeaseManager:
    def test_acquire_and_release(self, db, clock):
        leases = LeaseManager(db.session_factory, ttl_seconds=60)
        assert leases.acquire("org-1", "int-gh", "host-a", clock()) is None
        assert leases.holder("org-1", "int-gh", clock()) == "host-a"
        leases.release("org-1", "int-gh", "host-a")
        assert leases.holder("org-1", "int-gh", clock()) is None

    def test_second_holder_rejected(self, db, clock):
        leases = LeaseManager(db.session_factory, ttl_seconds=60)
        leases.acquire("org-1", "int-gh", "host-a", clock())
        assert leases.acquire("org-1", "int-gh", "host-b", clock()) == "host-a"

    def test_other_integration_independent(self, db, clock):
        leases = LeaseManager(db.session_factory, ttl_seconds=60)
        leases.acquire("org-1", "int-gh", "host-a", clock())
        assert leases.acquire("org-1", "int-aws", "host-b", clock()) is None

    def test_expired_lease_taken_over(self, db, clock):
        leases = LeaseManager(db.session_factory, ttl_seconds=60)
        leases.acquire("org-1", "int-gh", "host-a", clock())
        later = clock() + timedelta(seconds=61)
        assert leases.holder("org-1", "int-gh", later) is None
        assert leases.acquire("org-1", "int-gh", "host-b", later) is None
        assert leases.holder("org-1", "int-gh", later) == "host-b"

    def test_release_by_non_holder_is_noop(self, db, clock):
        leases = LeaseManager(db.session_factory, ttl_seconds=60)
        leases.acquire("org-1", "int-gh", "host-a", clock())
        leases.release("org-1", "int-gh", "host-b")
        assert leases.holder("org-1", "int-gh", clock()) == "host-a"


class TestRepository:
    def test_rules_for_integration(self, db, seed):
        seed.control("ctl-1")
        seed.control("ctl-na", implementation_status="not_applicable")
        seed.control("ctl-other-org", organization_id="org-2")
        seed.integration("int-gh")
        seed.integration("int-gh-2")
        seed.rule("ctl-1", "branch-protection-enabled")
        seed.rule("ctl-1", "mfa-enforced", provider="gsuite")
        seed.rule("ctl-1", "repository-inventory", integration_id="int-gh-2")
        seed.rule("ctl-na", "branch-protection-enabled")
        seed.rule("ctl-other-org", "branch-protection-enabled", organization_id="org-2")
        seed.mapping("ctl-1", "CC8.1")

        with db.session_factory() as session:
            integration = session.get(IntegrationRecord, "int-gh")
            rules = rules_for_integration(session, integration)
        assert [(r.control_id, r.fact_type, r.requirement_code) for r in rules] == [
            ("ctl-1", "branch-protection-enabled", None),
            ("ctl-1", None, "CC8.1"),
        ]
        assert rules[1].provider == "github"

    def test_rules_scoped_to_controls(self, db, seed):
        seed.control("ctl-1")
        seed.control("ctl-2")
        seed.integration("int-gh")
        seed.rule("ctl-1", "branch-protection-enabled")
        seed.rule("ctl-2", "repository-inventory")
        with db.session_factory() as session:
            integration = session.get(IntegrationRecord, "int-gh")
            rules = rules_for_integration(session, integration, control_ids={"ctl-2"})
        assert [r.control_id for r in rules] == ["ctl-2"]

    def test_integrations_for_control(self, db, seed):
        seed.control("ctl-1")
        seed.integration("int-gh")
        seed.integration("int-aws", type="aws")
        seed.integration("int-off", status="disabled")
        seed.rule("ctl-1", "mfa-enforced", provider="aws")
        seed.rule("ctl-1", "branch-protection-enabled", integration_id="int-off")
        with db.session_factory() as session:
            control = session.get(ControlRecord, "ctl-1")
            mapped = [i.id for i in integrations_for_control(session, control)]
        assert mapped == ["int-aws"]
