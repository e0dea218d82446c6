"""Read helpers over the verification tables.

Writes to controls go through the reconciler only; these helpers load and
convert rows for the engine and orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..compliance.mapping import ControlMappingRule, rules_for_framework_mappings
from ..errors import ControlNotFound, IntegrationNotFound
from ..models.control import EvidenceItem, FrameworkMapping
from ..models.sync import IntegrationStatus
from .tables import (
    AuditLogRecord,
    ControlRecord,
    ControlRuleRecord,
    EvidenceLinkRecord,
    EvidenceRecord,
    FrameworkMappingRecord,
    IntegrationRecord,
)


def get_control(session: Session, control_id: str) -> ControlRecord:
    control = session.get(ControlRecord, control_id)
    if control is None or control.deleted_at is not None:
        raise ControlNotFound(control_id)
    return control


def get_integration(session: Session, integration_id: str) -> IntegrationRecord:
    integration = session.get(IntegrationRecord, integration_id)
    if integration is None or integration.deleted_at is not None:
        raise IntegrationNotFound(integration_id)
    return integration


def list_integrations(session: Session, organization_id: Optional[str] = None) -> list[IntegrationRecord]:
    query = select(IntegrationRecord).where(IntegrationRecord.deleted_at.is_(None))
    if organization_id:
        query = query.where(IntegrationRecord.organization_id == organization_id)
    return list(session.execute(query.order_by(IntegrationRecord.created_at)).scalars())


def evidence_for_control(session: Session, control_id: str) -> list[EvidenceItem]:
    records = session.execute(
        select(EvidenceRecord)
        .join(EvidenceLinkRecord, EvidenceLinkRecord.evidence_id == EvidenceRecord.id)
        .where(EvidenceLinkRecord.control_id == control_id, EvidenceRecord.deleted_at.is_(None))
        .order_by(EvidenceRecord.collected_at.desc())
    ).scalars()
    return [r.to_item() for r in records]


def framework_mappings_for_control(session: Session, control_id: str) -> list[FrameworkMapping]:
    records = session.execute(
        select(FrameworkMappingRecord).where(FrameworkMappingRecord.control_id == control_id)
    ).scalars()
    return [r.to_mapping() for r in records]


def _rule_from_record(record: ControlRuleRecord) -> ControlMappingRule:
    return ControlMappingRule(
        control_id=record.control_id,
        fact_type=record.fact_type,
        provider=record.provider,
        requirement_code=record.requirement_code,
        confidence=record.confidence,
    )


def rules_for_integration(
    session: Session,
    integration: IntegrationRecord,
    control_ids: Optional[set[str]] = None,
) -> list[ControlMappingRule]:
    """Mapping rules that apply to findings from one integration.

    Explicit rules come first, then rules derived from each control's
    framework requirement mappings. Controls that are soft-deleted or marked
    not applicable never receive candidates.
    """
    live_controls = select(ControlRecord.id).where(
        ControlRecord.organization_id == integration.organization_id,
        ControlRecord.deleted_at.is_(None),
        ControlRecord.implementation_status != "not_applicable",
    )
    if control_ids is not None:
        live_controls = live_controls.where(ControlRecord.id.in_(control_ids))

    rule_records = session.execute(
        select(ControlRuleRecord)
        .where(
            ControlRuleRecord.control_id.in_(live_controls),
            or_(
                ControlRuleRecord.integration_id.is_(None),
                ControlRuleRecord.integration_id == integration.id,
            ),
            or_(
                ControlRuleRecord.provider.is_(None),
                ControlRuleRecord.provider == integration.type,
            ),
        )
        .order_by(ControlRuleRecord.control_id, ControlRuleRecord.id)
    ).scalars()
    rules = [_rule_from_record(r) for r in rule_records]

    mappings: dict[str, list[FrameworkMapping]] = {}
    for record in session.execute(
        select(FrameworkMappingRecord).where(FrameworkMappingRecord.control_id.in_(live_controls))
    ).scalars():
        mappings.setdefault(record.control_id, []).append(record.to_mapping())
    rules.extend(rules_for_framework_mappings(mappings, provider=integration.type))
    return rules


def integrations_for_control(session: Session, control: ControlRecord) -> list[IntegrationRecord]:
    """Integrations of the control's organization with at least one rule for this control."""
    mapped: list[IntegrationRecord] = []
    for integration in list_integrations(session, control.organization_id):
        if integration.status == IntegrationStatus.DISABLED.value:
            continue
        if rules_for_integration(session, integration, control_ids={control.id}):
            mapped.append(integration)
    return mapped


def record_audit(
    session: Session,
    organization_id: str,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    details: dict[str, Any],
    now: datetime,
) -> None:
    """Write an audit log entry inside the caller's transaction."""
    session.add(AuditLogRecord(
        organization_id=organization_id,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        created_at=now,
    ))
