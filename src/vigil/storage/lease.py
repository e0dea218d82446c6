"""Per-(organization, integration) sync leases with expiry.

A lease row replaces a process-wide "sync in progress" flag: whoever holds an
unexpired row owns the sync, and a crashed holder's lease simply expires.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .tables import SyncLeaseRecord

logger = logging.getLogger(__name__)


class LeaseManager:
    def __init__(self, session_factory: Callable[[], Session], ttl_seconds: int = 900):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)

    def acquire(
        self, organization_id: str, integration_id: str, holder: str, now: datetime
    ) -> Optional[str]:
        """Take the lease. Returns None on success, else the current holder."""
        with self.session_factory() as session:
            session.add(SyncLeaseRecord(
                organization_id=organization_id,
                integration_id=integration_id,
                holder=holder,
                acquired_at=now,
                expires_at=now + self.ttl,
            ))
            try:
                session.commit()
                return None
            except IntegrityError:
                session.rollback()

            # A row exists: take it over only if it expired or is already ours
            taken = session.execute(
                update(SyncLeaseRecord)
                .where(
                    SyncLeaseRecord.organization_id == organization_id,
                    SyncLeaseRecord.integration_id == integration_id,
                    or_(SyncLeaseRecord.expires_at <= now, SyncLeaseRecord.holder == holder),
                )
                .values(holder=holder, acquired_at=now, expires_at=now + self.ttl)
            )
            session.commit()
            if taken.rowcount == 1:
                return None
            current = session.get(SyncLeaseRecord, (organization_id, integration_id))
            return current.holder if current is not None else "unknown"

    def release(self, organization_id: str, integration_id: str, holder: str) -> None:
        with self.session_factory() as session:
            session.execute(
                delete(SyncLeaseRecord).where(
                    SyncLeaseRecord.organization_id == organization_id,
                    SyncLeaseRecord.integration_id == integration_id,
                    SyncLeaseRecord.holder == holder,
                )
            )
            session.commit()

    def holder(self, organization_id: str, integration_id: str, now: datetime) -> Optional[str]:
        with self.session_factory() as session:
            lease = session.execute(
                select(SyncLeaseRecord).where(
                    SyncLeaseRecord.organization_id == organization_id,
                    SyncLeaseRecord.integration_id == integration_id,
                    SyncLeaseRecord.expires_at > now,
                )
            ).scalar_one_or_none()
            return lease.holder if lease is not None else None
