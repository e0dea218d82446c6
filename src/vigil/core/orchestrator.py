"""Sync orchestration.

One sync pass for an (organization, integration) pair:
1. Check integration state, schedule cooldown and the sync lease
2. Fetch findings from the provider adapter (with retry)
3. Store findings as integration evidence linked to matched controls
4. Normalize findings into candidates and reconcile each control
5. Record the run and the integration's new status

Passes are single-flight per pair: callers in this process join the pass in
flight, and a lease row rejects passes from other processes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from ..compliance.mapping import normalize
from ..errors import (
    ControlNotFound,
    IntegrationNotFound,
    PersistenceFailure,
    ProviderError,
    SyncInProgress,
)
from ..models.finding import Finding, VerificationCandidate
from ..models.sync import FailedItem, IntegrationStatus, SyncResult, SyncTrigger
from ..providers.base import get_provider
from ..storage.database import Database
from ..storage.lease import LeaseManager
from ..storage.repository import get_integration, rules_for_integration
from ..storage.tables import EvidenceLinkRecord, EvidenceRecord, IntegrationRecord, SyncRunRecord
from ..utils.sanitize import sanitize_error
from .reconciler import VerificationReconciler, reconcile

logger = logging.getLogger(__name__)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SyncOrchestrator:
    def __init__(
        self,
        db: Database,
        config: dict,
        reconciler: Optional[VerificationReconciler] = None,
        clock: Optional[Callable[[], datetime]] = None,
        provider_factory: Callable = get_provider,
        holder_id: Optional[str] = None,
    ):
        self.db = db
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.reconciler = reconciler or VerificationReconciler(db, clock=self.clock, config=config)
        self.provider_factory = provider_factory
        self.holder_id = holder_id or default_holder_id()
        sync_config = config.get("sync", {})
        self.leases = LeaseManager(db.session_factory, sync_config.get("lease_ttl_seconds", 900))
        self.default_frequency = int(sync_config.get("default_frequency_minutes", 1440))
        # (organization, integration) -> (task, control scope or None for all)
        self._inflight: dict[tuple[str, str], tuple[asyncio.Task, Optional[frozenset]]] = {}

    async def sync(
        self,
        organization_id: str,
        integration_id: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        control_ids: Optional[Iterable[str]] = None,
    ) -> SyncResult:
        """Run one pass, or join the pass already in flight for this pair.

        A request joins the in-flight pass when that pass covers every control
        it asks about; otherwise it waits for the pass to finish and runs its
        own.
        """
        key = (organization_id, integration_id)
        scope = frozenset(control_ids) if control_ids is not None else None

        while True:
            inflight = self._inflight.get(key)
            if inflight is None:
                break
            task, running_scope = inflight
            if running_scope is None or (scope is not None and scope <= running_scope):
                logger.info("Joining sync already in flight for integration %s", integration_id)
                return await asyncio.shield(task)
            await asyncio.wait({task})

        task = asyncio.ensure_future(self._run(organization_id, integration_id, trigger, scope))
        self._inflight[key] = (task, scope)

        def _done(finished: asyncio.Task) -> None:
            if self._inflight.get(key, (None, None))[0] is finished:
                del self._inflight[key]

        task.add_done_callback(_done)
        return await asyncio.shield(task)

    def _load_integration(self, organization_id: str, integration_id: str) -> IntegrationRecord:
        with self.db.session_factory() as session:
            integration = get_integration(session, integration_id)
            if integration.organization_id != organization_id:
                # Never sync another organization's integration
                raise IntegrationNotFound(integration_id)
            session.expunge(integration)
            return integration

    def _frequency(self, integration: IntegrationRecord) -> timedelta:
        return timedelta(minutes=integration.sync_frequency_minutes or self.default_frequency)

    def skip_reason(self, integration: IntegrationRecord, trigger: SyncTrigger, now: datetime) -> Optional[str]:
        """Why this integration must not be contacted now, if anything."""
        if integration.status == IntegrationStatus.DISABLED.value:
            return "integration is disabled"
        if integration.status == IntegrationStatus.ERROR.value:
            refreshed = (
                integration.credentials_updated_at is not None
                and (integration.last_error_at is None
                     or integration.credentials_updated_at > integration.last_error_at)
            )
            if not refreshed:
                return (
                    "integration is in error state until credentials are refreshed: "
                    f"{integration.last_sync_error or 'unknown error'}"
                )
        if trigger == SyncTrigger.SCHEDULED and integration.last_sync_at is not None:
            due = integration.last_sync_at + self._frequency(integration)
            if now < due:
                return f"next scheduled sync not due until {due.isoformat()}"
        return None

    async def _run(
        self,
        organization_id: str,
        integration_id: str,
        trigger: SyncTrigger,
        scope: Optional[frozenset],
    ) -> SyncResult:
        started = self.clock()
        clock_start = time.monotonic()
        result = SyncResult(
            organization_id=organization_id,
            integration_id=integration_id,
            trigger=trigger,
            started_at=started,
        )

        integration = self._load_integration(organization_id, integration_id)
        reason = self.skip_reason(integration, trigger, started)
        if reason:
            logger.info("Skipping sync for integration %s: %s", integration_id, reason)
            result.skipped = True
            result.skip_reason = reason
            result.completed_at = started
            return result

        holder = f"{self.holder_id}:{uuid4().hex[:8]}"
        current = self.leases.acquire(organization_id, integration_id, holder, started)
        if current is not None:
            raise SyncInProgress(organization_id, integration_id, current)

        run_id = self._start_run(organization_id, integration_id, trigger, started)
        logger.info("Starting %s sync for integration %s (%s)", trigger.value, integration_id, integration.type)
        try:
            try:
                adapter = self.provider_factory(
                    integration.type,
                    organization_id,
                    integration_id,
                    integration.credentials or {},
                    self.config,
                    integration.config or {},
                )
            except ValueError as e:
                error = ProviderError.permanent(str(e), provider=integration.type)
                self._record_provider_failure(integration_id, error)
                raise error from e
            try:
                findings = await adapter.fetch_with_retry()
            except ProviderError as e:
                self._record_provider_failure(integration_id, e)
                raise

            result.findings = len(findings)
            self._process_findings(integration, findings, scope, started, result)
            self._record_success(integration_id)
        except (ProviderError, SQLAlchemyError) as e:
            self._finish_run(run_id, result, time.monotonic() - clock_start, error=str(e))
            raise
        finally:
            self.leases.release(organization_id, integration_id, holder)

        result.completed_at = self.clock()
        result.duration_seconds = round(time.monotonic() - clock_start, 3)
        self._finish_run(run_id, result, result.duration_seconds)
        logger.info(
            "Sync completed for integration %s: %d evidence, %d verified, %d failed, %d persistence errors",
            integration_id, result.evidence_generated, result.controls_verified,
            result.controls_failed, len(result.failed_items),
        )
        return result

    def _process_findings(
        self,
        integration: IntegrationRecord,
        findings: list[Finding],
        scope: Optional[frozenset],
        started: datetime,
        result: SyncResult,
    ) -> None:
        with self.db.session() as session:
            rules = rules_for_integration(session, integration, set(scope) if scope is not None else None)
            grouped: dict[str, list[VerificationCandidate]] = {}
            for finding in findings:
                candidates = normalize(finding, rules)
                evidence = EvidenceRecord(
                    organization_id=integration.organization_id,
                    title=finding.title or finding.fact_type,
                    source="integration",
                    integration_id=integration.id,
                    provider=finding.provider,
                    fact_type=finding.fact_type,
                    passed=finding.passed,
                    metrics=dict(finding.metrics),
                    collected_at=finding.observed_at,
                )
                session.add(evidence)
                session.flush()
                for candidate in candidates:
                    session.add(EvidenceLinkRecord(evidence_id=evidence.id, control_id=candidate.control_id))
                    grouped.setdefault(candidate.control_id, []).append(candidate)
                result.evidence_generated += 1

        for control_id in sorted(grouped):
            outcome = reconcile(control_id, grouped[control_id], self.clock(), pass_started_at=started)
            if outcome is None:
                continue
            try:
                applied = self.reconciler.apply_outcome(outcome)
            except PersistenceFailure as e:
                logger.error("Could not persist verification for control %s: %s", control_id, e.cause)
                result.failed_items.append(FailedItem(control_id=control_id, error=e.cause))
                continue
            except ControlNotFound:
                logger.warning("Control %s was removed during sync; skipping", control_id)
                continue
            if applied.transitioned_to_verified:
                result.controls_verified += 1
                result.verified_control_ids.append(control_id)
            elif applied.transitioned_to_failed:
                result.controls_failed += 1
                result.failed_control_ids.append(control_id)

    def _start_run(self, organization_id: str, integration_id: str, trigger: SyncTrigger, now: datetime) -> str:
        with self.db.session() as session:
            run = SyncRunRecord(
                organization_id=organization_id,
                integration_id=integration_id,
                trigger=trigger.value,
                status="running",
                started_at=now,
            )
            session.add(run)
            session.flush()
            return run.id

    def _finish_run(self, run_id: str, result: SyncResult, duration: float, error: Optional[str] = None) -> None:
        with self.db.session() as session:
            run = session.get(SyncRunRecord, run_id)
            if run is None:
                return
            run.status = "failed" if error else "completed"
            run.completed_at = self.clock()
            run.duration_ms = int(duration * 1000)
            run.evidence_generated = result.evidence_generated
            run.controls_verified = result.controls_verified
            run.controls_failed = result.controls_failed
            run.items_failed = len(result.failed_items)
            run.error_message = sanitize_error(error) if error else None
            run.details = {
                "findings": result.findings,
                "verified_control_ids": result.verified_control_ids,
                "failed_control_ids": result.failed_control_ids,
                "failed_items": [item.model_dump() for item in result.failed_items],
            }

    def _record_provider_failure(self, integration_id: str, error: ProviderError) -> None:
        """Transient exhaustion degrades the integration; permanent errors park it in error."""
        now = self.clock()
        status = IntegrationStatus.DEGRADED if error.is_transient else IntegrationStatus.ERROR
        with self.db.session() as session:
            integration = get_integration(session, integration_id)
            integration.status = status.value
            integration.last_sync_error = sanitize_error(error.cause)
            integration.last_error_at = now
            integration.next_sync_at = now + self._frequency(integration)
        logger.error(
            "Sync for integration %s failed (%s): %s",
            integration_id, error.kind.value, sanitize_error(error.cause),
        )

    def _record_success(self, integration_id: str) -> None:
        now = self.clock()
        with self.db.session() as session:
            integration = get_integration(session, integration_id)
            integration.status = IntegrationStatus.ACTIVE.value
            integration.last_sync_error = None
            integration.last_sync_at = now
            integration.next_sync_at = now + self._frequency(integration)


class SyncScheduler:
    """Runs due integrations on an interval with bounded concurrency."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        max_concurrent: Optional[int] = None,
        interval_seconds: float = 60,
        sweep: Optional[Callable[[], list[str]]] = None,
    ):
        self.orchestrator = orchestrator
        self.sweep = sweep
        self.max_concurrent = max_concurrent or int(
            orchestrator.config.get("sync", {}).get("max_concurrent_syncs", 3)
        )
        self.interval_seconds = interval_seconds
        self.active: set[str] = set()

    def due_integrations(self) -> list[tuple[str, str]]:
        now = self.orchestrator.clock()
        with self.orchestrator.db.session_factory() as session:
            rows = session.execute(
                select(IntegrationRecord.organization_id, IntegrationRecord.id)
                .where(
                    IntegrationRecord.deleted_at.is_(None),
                    IntegrationRecord.status.in_([
                        IntegrationStatus.ACTIVE.value, IntegrationStatus.DEGRADED.value,
                    ]),
                    or_(IntegrationRecord.next_sync_at.is_(None), IntegrationRecord.next_sync_at <= now),
                )
                .order_by(IntegrationRecord.next_sync_at)
            ).all()
        return [(org, integ) for org, integ in rows if integ not in self.active]

    async def run_due_syncs(self) -> list[SyncResult]:
        """Run every due integration once; failures are logged, not raised."""
        semaphore = asyncio.Semaphore(self.max_concurrent)
        due = self.due_integrations()
        if due:
            logger.info("Found %d integration(s) due for sync", len(due))

        async def run_one(organization_id: str, integration_id: str) -> Optional[SyncResult]:
            async with semaphore:
                self.active.add(integration_id)
                try:
                    return await self.orchestrator.sync(organization_id, integration_id, SyncTrigger.SCHEDULED)
                except SyncInProgress as e:
                    logger.info("%s", e)
                except ProviderError as e:
                    logger.warning("Scheduled sync failed for %s: %s", integration_id, sanitize_error(str(e)))
                except SQLAlchemyError:
                    logger.exception("Scheduled sync for %s could not be recorded", integration_id)
                finally:
                    self.active.discard(integration_id)
                return None

        results = await asyncio.gather(*(run_one(org, integ) for org, integ in due))
        return [r for r in results if r is not None]

    def sweep_stale(self) -> list[str]:
        """Run the staleness sweep; database failures are logged, not raised."""
        try:
            stale = self.sweep()
        except (PersistenceFailure, SQLAlchemyError):
            logger.exception("Staleness sweep could not be recorded")
            return []
        if stale:
            logger.info("Scheduler sweep marked %d control(s) stale", len(stale))
        return stale

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        logger.info(
            "Sync scheduler started (every %ss, max %d concurrent)", self.interval_seconds, self.max_concurrent
        )
        while not stop.is_set():
            await self.run_due_syncs()
            if self.sweep is not None:
                self.sweep_stale()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Sync scheduler stopped")
