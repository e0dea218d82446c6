"""Staleness monitor.

Verified evidence ages out without manual intervention: once ``verified_at``
is older than the validity window, a verified control reads as stale.
``evaluate`` is pure; ``StalenessMonitor.sweep`` persists the downgrade.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.control import ControlState, VerificationStatus
from ..models.history import ActorType, HistoryEvent, VerificationHistoryEntry
from ..storage.database import Database
from ..storage.ledger import HistoryLedger
from ..storage.tables import ControlRecord
from .config import get_validity_days
from .reconciler import VerificationReconciler

logger = logging.getLogger(__name__)


def evaluate(control: ControlState, now: datetime, validity_days: int) -> VerificationStatus:
    """Current verification status after applying the validity window."""
    status = control.verification_status
    if status != VerificationStatus.VERIFIED or control.verified_at is None:
        return status
    if now - control.verified_at > timedelta(days=validity_days):
        return VerificationStatus.STALE
    return status


class StalenessMonitor:
    def __init__(
        self,
        db: Database,
        config: dict,
        reconciler: Optional[VerificationReconciler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.reconciler = reconciler or VerificationReconciler(
            db, HistoryLedger(db.session_factory), self.clock, config=config
        )

    def validity_days(self, control: ControlState) -> int:
        return get_validity_days(self.config, control.organization_id, control.validity_days)

    def check(self, control_id: str) -> VerificationStatus:
        """Persist a verified to stale downgrade for one control if it is due."""
        now = self.clock()

        def mutate(session: Session, record: ControlRecord) -> VerificationStatus:
            state = record.to_state()
            validity = self.validity_days(state)
            after = evaluate(state, now, validity)
            if after == state.verification_status:
                return after
            record.verification_status = after.value
            record.updated_at = now
            self.reconciler.ledger.append(session, VerificationHistoryEntry(
                control_id=record.id,
                event=HistoryEvent.STALENESS,
                status_before=state.verification_status,
                status_after=after,
                reason=(
                    f"Verification older than {validity} days "
                    f"(verified {state.verified_at.isoformat()})"
                ),
                metrics={"validity_days": validity},
                provider=state.verification_source,
                actor_type=ActorType.SYSTEM,
                actor_id="staleness-monitor",
                created_at=now,
            ))
            logger.info("Control %s verification went stale", record.id)
            return after

        return self.reconciler.transact(control_id, mutate)

    def sweep(self, organization_id: Optional[str] = None) -> list[str]:
        """Check every verified control; returns the ids that went stale."""
        with self.db.session_factory() as session:
            query = select(ControlRecord.id).where(
                ControlRecord.verification_status == VerificationStatus.VERIFIED.value,
                ControlRecord.deleted_at.is_(None),
            )
            if organization_id:
                query = query.where(ControlRecord.organization_id == organization_id)
            control_ids = list(session.execute(query).scalars())

        stale = [cid for cid in control_ids if self.check(cid) == VerificationStatus.STALE]
        if stale:
            logger.info("Staleness sweep marked %d controls stale", len(stale))
        return stale
