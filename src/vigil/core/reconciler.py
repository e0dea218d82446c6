"""Verification reconciler.

Turns the candidates one sync pass produced for a control into a single
outcome (fail wins), then applies it: read the control, decide the
transition, write the control and append history in one transaction. The
control row carries an optimistic version, so a concurrent writer forces a
re-read instead of a lost update.

Human actions (implementation status edits, reviews, resets) go through the
same transactional path.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ControlNotFound, PersistenceFailure
from ..models.control import ImplementationStatus, VerificationDetails, VerificationStatus
from ..models.finding import OutcomeResult, VerificationCandidate, VerificationOutcome
from ..models.history import ActorType, HistoryEvent, VerificationHistoryEntry
from ..storage.database import Database
from ..storage.ledger import HistoryLedger
from ..storage.repository import get_control, record_audit
from ..storage.tables import ControlRecord
from ..utils.sanitize import sanitize_error
from .config import get_validity_days

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


def _unique(values) -> list:
    seen: list = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def reconcile(
    control_id: str,
    candidates: list[VerificationCandidate],
    now: datetime,
    pass_started_at: Optional[datetime] = None,
) -> Optional[VerificationOutcome]:
    """Combine one pass's candidates for a control into one outcome.

    Any failing candidate makes the outcome failed and every failing reason
    is kept. Otherwise the highest-confidence passing candidate supplies the
    reason and metrics. No candidates means no outcome.
    """
    candidates = [c for c in candidates if c.control_id == control_id]
    if not candidates:
        return None

    failing = [c for c in candidates if not c.passed]
    if failing:
        # max() returns the first of equal-confidence candidates
        primary = max(failing, key=lambda c: c.confidence.rank)
        result = OutcomeResult.FAILED
        reason = "; ".join(_unique(f"[{c.provider}] {c.reason}" for c in failing))
        metrics = dict(primary.metrics)
        metrics["failures"] = [
            {"provider": c.provider, "fact_type": c.fact_type, "reason": c.reason}
            for c in failing
        ]
    else:
        primary = max(candidates, key=lambda c: c.confidence.rank)
        result = OutcomeResult.VERIFIED
        reason = primary.reason
        metrics = dict(primary.metrics)

    metrics["contributing_providers"] = sorted(_unique(c.provider for c in candidates))
    metrics["contributing_integrations"] = sorted(_unique(c.integration_id for c in candidates))

    return VerificationOutcome(
        control_id=control_id,
        result=result,
        confidence=primary.confidence,
        reason=reason,
        metrics=metrics,
        provider=primary.provider,
        integration_id=primary.integration_id,
        fact_types=sorted(_unique(c.fact_type for c in candidates)),
        created_at=now,
        pass_started_at=pass_started_at,
    )


class AppliedOutcome(BaseModel):
    control_id: str
    status_before: VerificationStatus
    status_after: VerificationStatus
    outcome: VerificationOutcome
    overridden_by_concurrent_failure: bool = False

    @property
    def transitioned_to_verified(self) -> bool:
        return self.status_after == VerificationStatus.VERIFIED

    @property
    def transitioned_to_failed(self) -> bool:
        return self.status_after == VerificationStatus.FAILED


def merge_concurrent_failure(control: ControlRecord, outcome: VerificationOutcome) -> VerificationOutcome:
    """Let a failure written by another integration during this pass win over a pass.

    Two concurrent passes for different integrations can both target the same
    control. If the other pass recorded a failure after this pass started,
    overwriting it with this pass's success would silently drop a failing
    signal. Only ``last_reconciled_at`` dates that failure; human edits move
    ``updated_at`` but never count as a concurrent failure.
    """
    if not outcome.passed or outcome.pass_started_at is None:
        return outcome
    if control.verification_status != VerificationStatus.FAILED.value:
        return outcome
    if control.last_reconciled_at is None or control.last_reconciled_at < outcome.pass_started_at:
        return outcome

    details = VerificationDetails(**(control.verification_details or {}))
    other_integrations = details.metrics.get("contributing_integrations") or []
    if outcome.integration_id and outcome.integration_id in other_integrations:
        return outcome

    metrics = dict(details.metrics)
    metrics["contributing_providers"] = sorted(set(
        (details.metrics.get("contributing_providers") or [])
        + outcome.metrics.get("contributing_providers", [])
    ))
    metrics["contributing_integrations"] = sorted(set(
        other_integrations + outcome.metrics.get("contributing_integrations", [])
    ))
    metrics["overridden_pass"] = {"provider": outcome.provider, "reason": outcome.reason}
    return outcome.model_copy(update={
        "result": OutcomeResult.FAILED,
        "confidence": details.confidence or outcome.confidence,
        "reason": f"{details.reason}; passing signal from {outcome.provider} overridden by concurrent failure",
        "metrics": metrics,
        "provider": control.verification_source or outcome.provider,
        "fact_types": sorted(set(details.fact_types + outcome.fact_types)),
    })


class VerificationReconciler:
    """Applies outcomes and human actions to controls atomically."""

    def __init__(
        self,
        db: Database,
        ledger: Optional[HistoryLedger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        config: Optional[dict] = None,
    ):
        self.db = db
        self.config = config or {}
        self.ledger = ledger or HistoryLedger(db.session_factory)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_attempts = max_attempts

    def transact(self, control_id: str, mutate: Callable[[Session, ControlRecord], object]):
        """Run read, decide and write for one control, retrying on version conflicts."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.db.session() as session:
                    control = get_control(session, control_id)
                    return mutate(session, control)
            except ControlNotFound:
                raise
            except (StaleDataError, IntegrityError) as e:
                logger.info(
                    "Concurrent update on control %s (attempt %d/%d): %s",
                    control_id, attempt, self.max_attempts, type(e).__name__,
                )
            except SQLAlchemyError as e:
                raise PersistenceFailure(control_id, sanitize_error(str(e))) from e
        raise PersistenceFailure(
            control_id, f"update conflicted {self.max_attempts} times with concurrent writers"
        )

    def apply_outcome(self, outcome: VerificationOutcome) -> AppliedOutcome:
        """Apply an automated outcome: the control update and history entry commit together."""

        def mutate(session: Session, control: ControlRecord) -> AppliedOutcome:
            effective = merge_concurrent_failure(control, outcome)
            before = VerificationStatus(control.verification_status)
            now = effective.created_at

            if effective.passed:
                control.verification_status = VerificationStatus.VERIFIED.value
                control.verified_at = now
            else:
                # verified_at stays as the last known good timestamp
                control.verification_status = VerificationStatus.FAILED.value
            control.verification_source = effective.provider
            control.verification_details = VerificationDetails(
                confidence=effective.confidence,
                reason=effective.reason,
                metrics=effective.metrics,
                fact_types=effective.fact_types,
            ).model_dump(mode="json")
            control.is_automated = True
            control.automation_source = effective.provider
            control.updated_at = now
            control.last_reconciled_at = now
            after = VerificationStatus(control.verification_status)

            self.ledger.append(session, VerificationHistoryEntry(
                control_id=control.id,
                event=HistoryEvent.RECONCILIATION,
                status_before=before,
                status_after=after,
                outcome=effective.result.value,
                confidence=effective.confidence,
                reason=effective.reason,
                metrics=effective.metrics,
                provider=effective.provider,
                actor_type=ActorType.INTEGRATION,
                actor_id=effective.integration_id or effective.provider,
                created_at=now,
            ))
            return AppliedOutcome(
                control_id=control.id,
                status_before=before,
                status_after=after,
                outcome=effective,
                overridden_by_concurrent_failure=effective is not outcome,
            )

        applied = self.transact(outcome.control_id, mutate)
        logger.info(
            "Control %s: %s -> %s (%s, %s confidence)",
            applied.control_id, applied.status_before.value, applied.status_after.value,
            applied.outcome.provider, applied.outcome.confidence.value,
        )
        return applied

    def set_implementation_status(
        self, control_id: str, status: ImplementationStatus, actor_id: str
    ) -> VerificationStatus:
        """Record a human implementation status change.

        Marking a control implemented without a fresh integration verification
        drops any prior failed or stale verification back to unverified, so
        self-attested completion does not inherit old automated trust.
        A verification past its validity window counts as stale here even
        before the staleness sweep has persisted the downgrade.
        """
        now = self.clock()

        def mutate(session: Session, control: ControlRecord) -> VerificationStatus:
            from .staleness import evaluate

            before = VerificationStatus(control.verification_status)
            current = evaluate(control.to_state(), now, get_validity_days(
                self.config, control.organization_id, control.validity_days
            ))
            previous_impl = control.implementation_status
            control.implementation_status = status.value
            if status == ImplementationStatus.IMPLEMENTED and current != VerificationStatus.VERIFIED:
                control.verification_status = VerificationStatus.UNVERIFIED.value
            control.updated_at = now
            after = VerificationStatus(control.verification_status)

            self.ledger.append(session, VerificationHistoryEntry(
                control_id=control.id,
                event=HistoryEvent.IMPLEMENTATION_CHANGE,
                status_before=before,
                status_after=after,
                reason=f"Implementation status changed from {previous_impl} to {status.value}",
                metrics={"implementation_before": previous_impl, "implementation_after": status.value},
                actor_type=ActorType.USER,
                actor_id=actor_id,
                created_at=now,
            ))
            record_audit(
                session, control.organization_id, actor_id, "control.implementation_status_changed",
                "control", control.id,
                {"from": previous_impl, "to": status.value,
                 "verification_before": before.value, "verification_after": after.value},
                now,
            )
            return after

        return self.transact(control_id, mutate)

    def mark_reviewed(self, control_id: str, actor_id: str, notes: str = "") -> datetime:
        """Record a human review; returns the next review due date."""
        now = self.clock()

        def mutate(session: Session, control: ControlRecord) -> datetime:
            status = VerificationStatus(control.verification_status)
            control.last_reviewed_at = now
            control.next_review_at = now + timedelta(days=control.review_frequency_days or 90)
            control.updated_at = now

            self.ledger.append(session, VerificationHistoryEntry(
                control_id=control.id,
                event=HistoryEvent.MANUAL_REVIEW,
                status_before=status,
                status_after=status,
                reason=notes or "Control reviewed",
                metrics={"next_review_at": control.next_review_at.isoformat()},
                actor_type=ActorType.USER,
                actor_id=actor_id,
                created_at=now,
            ))
            record_audit(
                session, control.organization_id, actor_id, "control.reviewed",
                "control", control.id, {"notes": notes}, now,
            )
            return control.next_review_at

        return self.transact(control_id, mutate)

    def reset_verification(
        self, control_id: str, actor_id: str, reason: str = "", remove_automation: bool = False
    ) -> VerificationStatus:
        """Explicit manual reset to unverified, the only way back to the initial state."""
        now = self.clock()

        def mutate(session: Session, control: ControlRecord) -> VerificationStatus:
            before = VerificationStatus(control.verification_status)
            control.verification_status = VerificationStatus.UNVERIFIED.value
            control.verification_details = VerificationDetails(
                reason=reason or "Verification reset", manual_actor=actor_id
            ).model_dump(mode="json")
            if remove_automation:
                control.is_automated = False
                control.automation_source = None
            control.updated_at = now

            self.ledger.append(session, VerificationHistoryEntry(
                control_id=control.id,
                event=HistoryEvent.MANUAL_RESET,
                status_before=before,
                status_after=VerificationStatus.UNVERIFIED,
                reason=reason or "Verification reset",
                metrics={"automation_removed": remove_automation},
                actor_type=ActorType.USER,
                actor_id=actor_id,
                created_at=now,
            ))
            record_audit(
                session, control.organization_id, actor_id, "control.verification_reset",
                "control", control.id,
                {"from": before.value, "automation_removed": remove_automation, "reason": reason},
                now,
            )
            return VerificationStatus.UNVERIFIED

        return self.transact(control_id, mutate)
