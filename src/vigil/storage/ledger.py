"""Verification history ledger.

Append-only: there is deliberately no update or delete here. Entries for one
control carry a monotonic sequence so creation order survives identical
timestamps.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models.control import VerificationStatus
from ..models.history import VerificationHistoryEntry
from .tables import VerificationHistoryRecord

MAX_HISTORY_LIMIT = 500


class HistoryLedger:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def append(self, session: Session, entry: VerificationHistoryEntry) -> VerificationHistoryEntry:
        """Add an entry inside the caller's transaction; it commits or rolls back with it."""
        last = session.execute(
            select(func.max(VerificationHistoryRecord.sequence)).where(
                VerificationHistoryRecord.control_id == entry.control_id
            )
        ).scalar()
        record = VerificationHistoryRecord(
            control_id=entry.control_id,
            sequence=(last or 0) + 1,
            event=entry.event.value,
            status_before=entry.status_before.value,
            status_after=entry.status_after.value,
            outcome=entry.outcome,
            confidence=entry.confidence.value if entry.confidence else None,
            reason=entry.reason,
            metrics=dict(entry.metrics),
            provider=entry.provider,
            actor_type=entry.actor_type.value,
            actor_id=entry.actor_id,
            created_at=entry.created_at,
        )
        session.add(record)
        session.flush()
        return record.to_entry()

    def list(self, control_id: str, limit: int = 50) -> list[VerificationHistoryEntry]:
        """Most recent first, at most ``limit`` entries.

        ``limit`` must be between 1 and ``MAX_HISTORY_LIMIT``; anything else
        raises ValueError rather than returning a truncated page.
        """
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        with self.session_factory() as session:
            records = session.execute(
                select(VerificationHistoryRecord)
                .where(VerificationHistoryRecord.control_id == control_id)
                .order_by(VerificationHistoryRecord.sequence.desc())
                .limit(limit)
            ).scalars().all()
            return [r.to_entry() for r in records]

    def state_as_of(self, control_id: str, when: datetime) -> VerificationStatus:
        """Verification status recorded for a control at a point in time."""
        with self.session_factory() as session:
            record = session.execute(
                select(VerificationHistoryRecord)
                .where(
                    VerificationHistoryRecord.control_id == control_id,
                    VerificationHistoryRecord.created_at <= when,
                )
                .order_by(VerificationHistoryRecord.sequence.desc())
                .limit(1)
            ).scalar_one_or_none()
        if record is None:
            return VerificationStatus.UNVERIFIED
        return VerificationStatus(record.status_after)
