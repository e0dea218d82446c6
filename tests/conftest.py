"""Shared fixtures for Vigil tests."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from vigil.core.config import DEFAULT_CONFIG, deep_merge
from vigil.errors import ProviderError
from vigil.models.control import Confidence
from vigil.models.finding import Finding
from vigil.storage.database import Database
from vigil.storage.tables import (
    ControlRecord,
    ControlRuleRecord,
    EvidenceLinkRecord,
    EvidenceRecord,
    FrameworkMappingRecord,
    IntegrationRecord,
)

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Controllable clock injected wherever the engine asks for the time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter:
    def __init__(self, findings: list[Finding], error: Optional[Exception] = None):
        self.findings = findings
        self.error = error
        self.gate: Optional[object] = None

    async def fetch_with_retry(self) -> list[Finding]:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.findings)


class FakeProviders:
    """Provider factory returning canned findings or errors per integration."""

    def __init__(self):
        self.findings: dict[str, list[Finding]] = {}
        self.errors: dict[str, ProviderError] = {}
        self.gates: dict[str, object] = {}
        self.calls: dict[str, int] = {}

    def __call__(self, integration_type, organization_id, integration_id, credentials, config=None,
                 integration_config=None):
        self.calls[integration_id] = self.calls.get(integration_id, 0) + 1
        adapter = FakeAdapter(self.findings.get(integration_id, []), self.errors.get(integration_id))
        adapter.gate = self.gates.get(integration_id)
        return adapter


class Seeder:
    """Inserts rows directly, bypassing the reconciler."""

    def __init__(self, db: Database, clock: Clock):
        self.db = db
        self.clock = clock

    def control(self, control_id: str = "ctl-1", organization_id: str = "org-1", **kwargs) -> str:
        kwargs.setdefault("code", control_id.upper())
        kwargs.setdefault("name", f"Control {control_id}")
        kwargs.setdefault("created_at", self.clock() - timedelta(days=365))
        kwargs.setdefault("updated_at", self.clock() - timedelta(days=365))
        with self.db.session() as session:
            session.add(ControlRecord(id=control_id, organization_id=organization_id, **kwargs))
        return control_id

    def integration(
        self, integration_id: str = "int-gh", organization_id: str = "org-1", type: str = "github", **kwargs
    ) -> str:
        kwargs.setdefault("name", type.title())
        kwargs.setdefault("credentials", {"access_token": "test-token"})
        with self.db.session() as session:
            session.add(IntegrationRecord(
                id=integration_id, organization_id=organization_id, type=type, **kwargs
            ))
        return integration_id

    def rule(self, control_id: str, fact_type: Optional[str] = None, organization_id: str = "org-1",
             **kwargs) -> None:
        with self.db.session() as session:
            session.add(ControlRuleRecord(
                organization_id=organization_id, control_id=control_id, fact_type=fact_type, **kwargs
            ))

    def mapping(self, control_id: str, requirement_code: str, framework: str = "soc2",
                coverage: str = "full") -> None:
        with self.db.session() as session:
            session.add(FrameworkMappingRecord(
                control_id=control_id, framework=framework,
                requirement_code=requirement_code, coverage=coverage,
            ))

    def evidence(self, control_id: str, age_days: int = 1, source: str = "manual",
                 organization_id: str = "org-1") -> str:
        with self.db.session() as session:
            record = EvidenceRecord(
                organization_id=organization_id,
                title="Uploaded evidence",
                source=source,
                collected_at=self.clock() - timedelta(days=age_days),
            )
            session.add(record)
            session.flush()
            session.add(EvidenceLinkRecord(evidence_id=record.id, control_id=control_id))
            return record.id

    def get_control(self, control_id: str) -> ControlRecord:
        with self.db.session_factory() as session:
            return session.get(ControlRecord, control_id)

    def get_integration(self, integration_id: str) -> IntegrationRecord:
        with self.db.session_factory() as session:
            return session.get(IntegrationRecord, integration_id)


@pytest.fixture
def clock() -> Clock:
    return Clock(FIXED_NOW)


@pytest.fixture
def config() -> dict:
    """Default config against an in-memory database with no retry delays."""
    return deep_merge(copy.deepcopy(DEFAULT_CONFIG), {
        "database": {"url": "sqlite://"},
        "sync": {
            "retry_attempts": 2,
            "retry_delay_seconds": 0,
            "rate_limit_delay_seconds": 0,
            "timeout_seconds": 5,
        },
    })


@pytest.fixture
def db(config: dict):
    database = Database.from_config(config)
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def seed(db: Database, clock: Clock) -> Seeder:
    return Seeder(db, clock)


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def make_finding(clock: Clock):
    """Build a Finding with sensible defaults."""

    def _make(fact_type: str, passed: bool = True, provider: str = "github",
              integration_id: str = "int-gh", **kwargs) -> Finding:
        kwargs.setdefault("confidence", Confidence.HIGH)
        kwargs.setdefault("reason", f"{fact_type} {'ok' if passed else 'failing'}")
        kwargs.setdefault("observed_at", clock())
        return Finding(
            provider=provider,
            fact_type=fact_type,
            passed=passed,
            integration_id=integration_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """Create a project directory with a .vigil config pointing at a file database."""
    project = tmp_path / "test-project"
    project.mkdir()
    vigil_dir = project / ".vigil"
    vigil_dir.mkdir()
    db_path = (tmp_path / "vigil.db").as_posix()
    (vigil_dir / "config.yaml").write_text(
        f'database:\n  url: "sqlite:///{db_path}"\n\nverification:\n  validity_days: 45\n',
        encoding="utf-8",
    )
    return project
