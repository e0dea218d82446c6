"""Finding normalizer.

Maps provider findings onto an organization's controls through declarative
mapping rules. Everything here is pure: the same findings and rules always
produce the same candidates.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from pydantic import BaseModel

from ..models.control import Confidence, CoverageLevel, FrameworkMapping
from ..models.finding import Finding, VerificationCandidate


class ControlMappingRule(BaseModel):
    """Declares which findings count as verification signals for a control.

    A rule matches on fact type (exact or wildcard such as ``mfa-*``),
    optionally restricted to one provider, or on a framework requirement code
    carried by the finding. ``confidence`` pins the candidate's confidence,
    which is how a rule marks itself low-confidence.
    """

    control_id: str
    fact_type: Optional[str] = None
    provider: Optional[str] = None
    requirement_code: Optional[str] = None
    confidence: Optional[Confidence] = None

    @property
    def label(self) -> str:
        if self.requirement_code:
            return f"requirement:{self.requirement_code}"
        return f"{self.provider or '*'}:{self.fact_type or '*'}"


def match_fact_pattern(fact_type: str, pattern: str) -> bool:
    """Test if a fact type matches a pattern.

    Supports exact matches and wildcard patterns (e.g., mfa-*).
    """
    if "*" in pattern:
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        return bool(re.match(regex, fact_type))
    return fact_type == pattern


def rule_matches(rule: ControlMappingRule, finding: Finding) -> bool:
    if rule.provider and rule.provider != finding.provider:
        return False
    if rule.requirement_code:
        if rule.requirement_code not in finding.requirement_codes:
            return False
        return rule.fact_type is None or match_fact_pattern(finding.fact_type, rule.fact_type)
    if rule.fact_type is None:
        return False
    return match_fact_pattern(finding.fact_type, rule.fact_type)


def assign_confidence(rule: ControlMappingRule, finding: Finding) -> Confidence:
    """Partial data is always low confidence; otherwise the rule wins over the finding."""
    if finding.partial:
        return Confidence.LOW
    if rule.confidence is not None:
        return rule.confidence
    return finding.confidence


def normalize(finding: Finding, rules: Iterable[ControlMappingRule]) -> list[VerificationCandidate]:
    """Produce one verification candidate per control whose rule matches the finding.

    A finding nobody maps is discarded by returning an empty list. When two
    rules for the same control match, the first rule in order is kept.
    """
    candidates: list[VerificationCandidate] = []
    seen: set[str] = set()

    for rule in rules:
        if rule.control_id in seen or not rule_matches(rule, finding):
            continue
        seen.add(rule.control_id)
        candidates.append(VerificationCandidate(
            control_id=rule.control_id,
            provider=finding.provider,
            fact_type=finding.fact_type,
            passed=finding.passed,
            confidence=assign_confidence(rule, finding),
            reason=finding.reason or finding.title,
            metrics=dict(finding.metrics),
            observed_at=finding.observed_at,
            integration_id=finding.integration_id,
            matched_by=rule.label,
        ))

    return candidates


def rules_for_framework_mappings(
    mappings: dict[str, list[FrameworkMapping]],
    provider: Optional[str] = None,
) -> list[ControlMappingRule]:
    """Derive requirement-code rules from control to framework requirement mappings.

    Minimal coverage mappings produce low-confidence rules, since the
    requirement only loosely describes the control.
    """
    rules: list[ControlMappingRule] = []
    for control_id in sorted(mappings):
        for mapping in mappings[control_id]:
            rules.append(ControlMappingRule(
                control_id=control_id,
                provider=provider,
                requirement_code=mapping.requirement_code,
                confidence=Confidence.LOW if mapping.coverage == CoverageLevel.MINIMAL else None,
            ))
    return rules
