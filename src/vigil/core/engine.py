"""Verification engine entry points.

Wires the reconciler, staleness monitor, orchestrator and history ledger
together behind the operations callers use: health, history, manual
verification, sync and the human review actions.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import delete

from ..compliance.mapping import ControlMappingRule
from ..compliance.remediation import DEFAULT_REMEDIATION_RULES, RemediationRule
from ..errors import ControlNotFound, ProviderError, SyncInProgress, VerificationTimeout
from ..models.control import ImplementationStatus, VerificationStatus
from ..models.health import HealthScoreResult
from ..models.history import VerificationHistoryEntry
from ..models.sync import IntegrationStatus, SyncResult, SyncTrigger
from ..providers.base import get_provider
from ..storage.database import Database
from ..storage.ledger import HistoryLedger
from ..storage.repository import (
    evidence_for_control,
    framework_mappings_for_control,
    get_control,
    integrations_for_control,
    record_audit,
)
from ..storage.tables import ControlRecord, ControlRuleRecord
from ..utils.sanitize import sanitize_error
from . import health
from .orchestrator import SyncOrchestrator
from .reconciler import VerificationReconciler
from .staleness import StalenessMonitor

logger = logging.getLogger(__name__)


class VerificationEngine:
    def __init__(
        self,
        db: Database,
        config: dict,
        clock: Optional[Callable[[], datetime]] = None,
        provider_factory: Callable = get_provider,
        remediation_rules: Optional[list[RemediationRule]] = None,
    ):
        self.db = db
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.ledger = HistoryLedger(db.session_factory)
        self.reconciler = VerificationReconciler(db, self.ledger, self.clock, config=config)
        self.staleness = StalenessMonitor(db, config, self.reconciler, self.clock)
        self.orchestrator = SyncOrchestrator(
            db, config, self.reconciler, self.clock, provider_factory=provider_factory
        )
        # Custom rules first so they win specificity ties with the defaults
        self.remediation_rules = list(remediation_rules or []) + DEFAULT_REMEDIATION_RULES

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> "VerificationEngine":
        return cls(Database.from_config(config), config, **kwargs)

    def get_health(self, control_id: str) -> HealthScoreResult:
        """Score a control, persisting a due staleness downgrade first."""
        self.staleness.check(control_id)
        with self.db.session_factory() as session:
            record = get_control(session, control_id)
            control = record.to_state()
            evidence = evidence_for_control(session, control_id)
            mappings = framework_mappings_for_control(session, control_id)
            issues = self._integration_issues(session, record)
        return health.score(
            control,
            evidence,
            mappings,
            self.clock(),
            validity_days=self.staleness.validity_days(control),
            remediation_rules=self.remediation_rules,
            integration_issues=issues,
        )

    def _integration_issues(self, session, control: ControlRecord) -> list[str]:
        """Integration problems shown next to the control, so a stale pass is explainable."""
        issues: list[str] = []
        for integration in integrations_for_control(session, control):
            if integration.status in (IntegrationStatus.ERROR.value, IntegrationStatus.DEGRADED.value):
                label = integration.name or integration.type
                issues.append(
                    f"{label} integration is {integration.status}: "
                    f"{integration.last_sync_error or 'no details recorded'}"
                )
        return issues

    def get_verification_history(
        self, control_id: str, limit: Optional[int] = None
    ) -> list[VerificationHistoryEntry]:
        with self.db.session_factory() as session:
            get_control(session, control_id)
        limit = limit or int(self.config.get("health", {}).get("history_limit", 50))
        return self.ledger.list(control_id, limit)

    def verification_state_as_of(self, control_id: str, when: datetime) -> VerificationStatus:
        with self.db.session_factory() as session:
            get_control(session, control_id)
        return self.ledger.state_as_of(control_id, when)

    async def trigger_manual_verification(
        self, control_id: str, actor_id: str, timeout: Optional[float] = None
    ) -> HealthScoreResult:
        """Sync every integration mapped to the control, scoped to it, then rescore.

        The caller waits for the passes to finish. On timeout the passes keep
        running in the background and VerificationTimeout is raised.
        """
        timeout = timeout or float(self.config.get("sync", {}).get("manual_timeout_seconds", 300))
        now = self.clock()
        with self.db.session() as session:
            control = get_control(session, control_id)
            organization_id = control.organization_id
            integrations = [(i.id, i.name or i.type) for i in integrations_for_control(session, control)]
            record_audit(
                session, organization_id, actor_id, "control.verification_triggered",
                "control", control_id, {"integrations": [i for i, _ in integrations]}, now,
            )

        issues: list[str] = []
        if not integrations:
            issues.append("No integration is mapped to this control.")
        else:
            syncs = asyncio.gather(
                *(
                    self.orchestrator.sync(organization_id, integration_id, SyncTrigger.MANUAL, [control_id])
                    for integration_id, _ in integrations
                ),
                return_exceptions=True,
            )
            try:
                results = await asyncio.wait_for(syncs, timeout=timeout)
            except asyncio.TimeoutError:
                raise VerificationTimeout(control_id, timeout) from None

            for (_, label), result in zip(integrations, results):
                if isinstance(result, (ProviderError, SyncInProgress)):
                    issues.append(f"{label}: {sanitize_error(str(result))}")
                elif isinstance(result, BaseException):
                    raise result
                elif result.skipped:
                    issues.append(f"{label}: sync skipped, {result.skip_reason}")
                else:
                    issues.extend(
                        f"{label}: could not record verification: {item.error}"
                        for item in result.failed_items if item.control_id == control_id
                    )

        score_result = self.get_health(control_id)
        merged = list(issues)
        merged.extend(issue for issue in score_result.integration_issues if issue not in merged)
        return score_result.model_copy(update={"integration_issues": merged})

    async def sync(
        self,
        organization_id: str,
        integration_id: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncResult:
        return await self.orchestrator.sync(organization_id, integration_id, trigger)

    def set_implementation_status(
        self, control_id: str, status: ImplementationStatus, actor_id: str
    ) -> VerificationStatus:
        return self.reconciler.set_implementation_status(control_id, status, actor_id)

    def mark_reviewed(self, control_id: str, actor_id: str, notes: str = "") -> datetime:
        return self.reconciler.mark_reviewed(control_id, actor_id, notes)

    def reset_verification(
        self, control_id: str, actor_id: str, reason: str = "", remove_automation: bool = False
    ) -> VerificationStatus:
        return self.reconciler.reset_verification(control_id, actor_id, reason, remove_automation)

    def sweep_stale(self, organization_id: Optional[str] = None) -> list[str]:
        return self.staleness.sweep(organization_id)

    def import_rules(self, organization_id: str, rules: list[ControlMappingRule]) -> int:
        """Replace an organization's mapping rules with the given set."""
        with self.db.session() as session:
            for rule in rules:
                # Rules may only target this organization's controls
                if get_control(session, rule.control_id).organization_id != organization_id:
                    raise ControlNotFound(rule.control_id)
            session.execute(
                delete(ControlRuleRecord).where(ControlRuleRecord.organization_id == organization_id)
            )
            for rule in rules:
                session.add(ControlRuleRecord(
                    organization_id=organization_id,
                    control_id=rule.control_id,
                    fact_type=rule.fact_type,
                    provider=rule.provider,
                    requirement_code=rule.requirement_code,
                    confidence=rule.confidence.value if rule.confidence else None,
                ))
        logger.info("Imported %d mapping rules for organization %s", len(rules), organization_id)
        return len(rules)
