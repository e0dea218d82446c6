"""Layered configuration for Vigil.

Loads and merges configuration from:
1. Default settings (built-in)
2. Project config (.vigil/config.yaml)
3. CLI parameters (override)
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "database": {
        "url": "sqlite:///vigil.db",
        "echo": False,
    },
    "sync": {
        "timeout_seconds": 120,
        "retry_attempts": 3,
        "retry_delay_seconds": 5,
        "rate_limit_delay_seconds": 30,
        "max_retry_delay_seconds": 300,
        "lease_ttl_seconds": 900,
        "max_concurrent_syncs": 3,
        "manual_timeout_seconds": 300,
        "default_frequency_minutes": 1440,
    },
    "verification": {
        "validity_days": 30,
        "organizations": {},
    },
    "health": {
        "history_limit": 50,
    },
    "providers": {
        "github": {
            "api_url": "https://api.github.com",
            "max_protection_repos": 20,
            "max_alert_repos": 10,
            "protection_threshold": 80,
        },
        "gsuite": {
            "api_url": "https://admin.googleapis.com/admin/directory/v1",
            "mfa_threshold": 95,
            "inactive_days": 90,
        },
        "aws": {
            "region": "us-east-1",
            "mfa_threshold": 95,
            "min_password_length": 14,
        },
    },
}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts. Arrays are replaced, not merged."""
    result = {}
    for key in base:
        result[key] = base[key]
    for key, value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            result[key] = deep_merge(base_value, value)
        else:
            result[key] = value
    return result


def load_project_config(project_path: Path) -> dict:
    """Load project configuration from .vigil/config.yaml."""
    config_path = project_path / ".vigil" / "config.yaml"
    if not config_path.exists():
        return {}
    try:
        content = config_path.read_text(encoding="utf-8-sig")  # utf-8-sig strips BOM
        return yaml.safe_load(content) or {}
    except (OSError, yaml.YAMLError):
        return {}


def get_validity_days(
    config: dict,
    organization_id: Optional[str] = None,
    control_override: Optional[int] = None,
) -> int:
    """Resolve the evidence validity window: control, then organization, then default."""
    if control_override:
        return int(control_override)
    verification = config.get("verification", {})
    if organization_id:
        org_policy = (verification.get("organizations") or {}).get(organization_id) or {}
        if org_policy.get("validity_days"):
            return int(org_policy["validity_days"])
    return int(verification.get("validity_days", 30))


def get_effective_config(
    project_path: Optional[Path] = None,
    cli_overrides: Optional[dict] = None,
) -> dict:
    """Get the fully resolved configuration."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    if project_path is not None:
        project_config = load_project_config(project_path)
        if project_config:
            config = deep_merge(config, project_config)

    env_url = os.environ.get("VIGIL_DATABASE_URL")
    if env_url:
        config = deep_merge(config, {"database": {"url": env_url}})

    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    return config
