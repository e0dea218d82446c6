"""Mapping rule and remediation YAML loading.

A rules file looks like::

    rules:
      - control: ctl-access
        fact_type: mfa-*
        provider: gsuite
        confidence: low
      - control: ctl-change-mgmt
        requirement: CC8.1
    remediation:
      - provider: github
        fact_type: branch-protection-enabled
        steps: ["..."]
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .mapping import ControlMappingRule
from .remediation import RemediationRule

logger = logging.getLogger(__name__)


def parse_rules(content: dict) -> list[ControlMappingRule]:
    rules: list[ControlMappingRule] = []
    for raw in content.get("rules", []) or []:
        rules.append(ControlMappingRule(
            control_id=raw.get("control") or raw.get("control_id", ""),
            fact_type=raw.get("fact_type"),
            provider=raw.get("provider"),
            requirement_code=raw.get("requirement") or raw.get("requirement_code"),
            confidence=raw.get("confidence"),
        ))
    return rules


def parse_remediation(content: dict) -> list[RemediationRule]:
    return [RemediationRule(**raw) for raw in content.get("remediation", []) or []]


def _read_yaml(path: Path) -> dict:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8-sig")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Skipping unreadable rules file %s: %s", path, e)
        return {}


def load_rule_files(rules_path: Path) -> tuple[list[ControlMappingRule], list[RemediationRule]]:
    """Load mapping and remediation rules from a file or every *.yaml under a directory."""
    if not rules_path.exists():
        return [], []

    files = sorted(rules_path.rglob("*.yaml")) if rules_path.is_dir() else [rules_path]
    mapping_rules: list[ControlMappingRule] = []
    remediation_rules: list[RemediationRule] = []
    for path in files:
        content = _read_yaml(path)
        if not isinstance(content, dict):
            logger.warning("Skipping rules file %s: expected a mapping at the top level", path)
            continue
        try:
            file_rules = parse_rules(content)
            file_remediation = parse_remediation(content)
        except (ValidationError, TypeError, AttributeError) as e:
            logger.warning("Skipping invalid rules file %s: %s", path, e)
            continue
        mapping_rules.extend(file_rules)
        remediation_rules.extend(file_remediation)
    return mapping_rules, remediation_rules
