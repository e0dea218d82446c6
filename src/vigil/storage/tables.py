"""ORM tables for controls, verification history, integrations and evidence."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from ..models.control import (
    Confidence,
    ControlState,
    CoverageLevel,
    EvidenceItem,
    FrameworkMapping,
    ImplementationStatus,
    VerificationDetails,
    VerificationStatus,
)
from ..models.history import ActorType, HistoryEvent, VerificationHistoryEntry
from .database import Base, UTCDateTime, utcnow


def new_id() -> str:
    return str(uuid4())


class ControlRecord(Base):  # type: ignore[valid-type, misc]
    """Verification-relevant fields of a control.

    ``version`` is an optimistic lock: every UPDATE checks and bumps it, so a
    concurrent writer that read an older row fails instead of clobbering it.
    """

    __tablename__ = "controls"

    id = Column(String(64), primary_key=True, default=new_id)
    organization_id = Column(String(64), nullable=False, index=True)
    code = Column(String(64), nullable=False, default="")
    name = Column(String(255), nullable=False, default="")
    implementation_status = Column(
        String(32), nullable=False, default=ImplementationStatus.NOT_STARTED.value
    )
    verification_status = Column(
        String(16), nullable=False, default=VerificationStatus.UNVERIFIED.value
    )
    verified_at = Column(UTCDateTime, nullable=True)
    verification_source = Column(String(64), nullable=True)
    verification_details = Column(JSON, nullable=True)
    last_reconciled_at = Column(UTCDateTime, nullable=True)  # written only by automated outcomes
    is_automated = Column(Boolean, nullable=False, default=False)
    automation_source = Column(String(64), nullable=True)
    review_frequency_days = Column(Integer, nullable=False, default=90)
    last_reviewed_at = Column(UTCDateTime, nullable=True)
    next_review_at = Column(UTCDateTime, nullable=True)
    validity_days = Column(Integer, nullable=True)  # overrides the organization policy
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)  # soft delete only
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_state(self) -> ControlState:
        return ControlState(
            id=self.id,
            organization_id=self.organization_id,
            code=self.code or "",
            name=self.name or "",
            implementation_status=ImplementationStatus(self.implementation_status),
            verification_status=VerificationStatus(self.verification_status),
            verified_at=self.verified_at,
            verification_source=self.verification_source,
            verification_details=VerificationDetails(**(self.verification_details or {})),
            is_automated=bool(self.is_automated),
            automation_source=self.automation_source,
            review_frequency_days=self.review_frequency_days or 90,
            last_reviewed_at=self.last_reviewed_at,
            next_review_at=self.next_review_at,
            validity_days=self.validity_days,
            deleted_at=self.deleted_at,
        )


class VerificationHistoryRecord(Base):  # type: ignore[valid-type, misc]
    """Append-only ledger row. Never updated or deleted."""

    __tablename__ = "verification_history"
    __table_args__ = (
        UniqueConstraint("control_id", "sequence", name="uq_history_control_sequence"),
        Index("ix_history_control_created", "control_id", "created_at"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    control_id = Column(String(64), ForeignKey("controls.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    event = Column(String(32), nullable=False)
    status_before = Column(String(16), nullable=False)
    status_after = Column(String(16), nullable=False)
    outcome = Column(String(16), nullable=True)
    confidence = Column(String(8), nullable=True)
    reason = Column(Text, nullable=False, default="")
    metrics = Column(JSON, nullable=True)
    provider = Column(String(64), nullable=True)
    actor_type = Column(String(16), nullable=False)
    actor_id = Column(String(64), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def to_entry(self) -> VerificationHistoryEntry:
        return VerificationHistoryEntry(
            id=self.id,
            control_id=self.control_id,
            sequence=self.sequence,
            event=HistoryEvent(self.event),
            status_before=VerificationStatus(self.status_before),
            status_after=VerificationStatus(self.status_after),
            outcome=self.outcome,
            confidence=Confidence(self.confidence) if self.confidence else None,
            reason=self.reason or "",
            metrics=self.metrics or {},
            provider=self.provider,
            actor_type=ActorType(self.actor_type),
            actor_id=self.actor_id,
            created_at=self.created_at,
        )


class IntegrationRecord(Base):  # type: ignore[valid-type, misc]
    __tablename__ = "integrations"

    id = Column(String(64), primary_key=True, default=new_id)
    organization_id = Column(String(64), nullable=False, index=True)
    type = Column(String(32), nullable=False)  # github, gsuite, aws
    name = Column(String(255), nullable=False, default="")
    status = Column(String(16), nullable=False, default="active")
    credentials = Column(JSON, nullable=True)  # decrypted by the credential vault upstream
    config = Column(JSON, nullable=True)
    sync_frequency_minutes = Column(Integer, nullable=True)
    last_sync_at = Column(UTCDateTime, nullable=True)
    next_sync_at = Column(UTCDateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    last_error_at = Column(UTCDateTime, nullable=True)
    credentials_updated_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)


class SyncRunRecord(Base):  # type: ignore[valid-type, misc]
    """One sync pass of an integration, kept for operators."""

    __tablename__ = "sync_runs"

    id = Column(String(64), primary_key=True, default=new_id)
    organization_id = Column(String(64), nullable=False, index=True)
    integration_id = Column(String(64), ForeignKey("integrations.id"), nullable=False, index=True)
    trigger = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="running")  # running, completed, failed
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    evidence_generated = Column(Integer, nullable=False, default=0)
    controls_verified = Column(Integer, nullable=False, default=0)
    controls_failed = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)


class ControlRuleRecord(Base):  # type: ignore[valid-type, misc]
    """Control mapping rule. A null integration_id applies to every integration."""

    __tablename__ = "control_mapping_rules"

    id = Column(String(64), primary_key=True, default=new_id)
    organization_id = Column(String(64), nullable=False, index=True)
    control_id = Column(String(64), ForeignKey("controls.id"), nullable=False, index=True)
    integration_id = Column(String(64), ForeignKey("integrations.id"), nullable=True)
    fact_type = Column(String(64), nullable=True)
    provider = Column(String(32), nullable=True)
    requirement_code = Column(String(64), nullable=True)
    confidence = Column(String(8), nullable=True)


class FrameworkMappingRecord(Base):  # type: ignore[valid-type, misc]
    __tablename__ = "control_framework_mappings"
    __table_args__ = (
        UniqueConstraint("control_id", "framework", "requirement_code", name="uq_control_requirement"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    control_id = Column(String(64), ForeignKey("controls.id"), nullable=False, index=True)
    framework = Column(String(64), nullable=False, default="")
    requirement_code = Column(String(64), nullable=False)
    coverage = Column(String(16), nullable=False, default=CoverageLevel.FULL.value)

    def to_mapping(self) -> FrameworkMapping:
        return FrameworkMapping(
            requirement_code=self.requirement_code,
            framework=self.framework or "",
            coverage=CoverageLevel(self.coverage),
        )


class EvidenceRecord(Base):  # type: ignore[valid-type, misc]
    __tablename__ = "evidence"

    id = Column(String(64), primary_key=True, default=new_id)
    organization_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="")
    source = Column(String(32), nullable=False, default="manual")  # manual | integration
    integration_id = Column(String(64), ForeignKey("integrations.id"), nullable=True)
    provider = Column(String(32), nullable=True)
    fact_type = Column(String(64), nullable=True)
    passed = Column(Boolean, nullable=True)
    metrics = Column(JSON, nullable=True)
    collected_at = Column(UTCDateTime, nullable=False, default=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)

    def to_item(self) -> EvidenceItem:
        return EvidenceItem(
            id=self.id,
            collected_at=self.collected_at,
            from_integration=self.source == "integration",
            source=self.provider or self.source,
            deleted_at=self.deleted_at,
        )


class EvidenceLinkRecord(Base):  # type: ignore[valid-type, misc]
    __tablename__ = "evidence_controls"

    evidence_id = Column(String(64), ForeignKey("evidence.id"), primary_key=True)
    control_id = Column(String(64), ForeignKey("controls.id"), primary_key=True, index=True)


class SyncLeaseRecord(Base):  # type: ignore[valid-type, misc]
    """Single-flight lease per (organization, integration), released or left to expire."""

    __tablename__ = "sync_leases"

    organization_id = Column(String(64), primary_key=True)
    integration_id = Column(String(64), primary_key=True)
    holder = Column(String(128), nullable=False)
    acquired_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)


class AuditLogRecord(Base):  # type: ignore[valid-type, misc]
    __tablename__ = "audit_log"

    id = Column(String(64), primary_key=True, default=new_id)
    organization_id = Column(String(64), nullable=False, index=True)
    actor_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
