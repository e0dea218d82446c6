"""Exception hierarchy for the verification engine."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class VigilError(Exception):
    """Base class for all engine errors."""


class ProviderErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ProviderError(VigilError):
    """A provider adapter could not obtain findings.

    Transient errors (rate limit, timeout, outage) are retried with backoff.
    Permanent errors (revoked credential, unsupported API) are not.
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        cause: str,
        provider: str = "",
        retry_after: Optional[float] = None,
        rate_limited: bool = False,
    ):
        super().__init__(f"{provider or 'provider'} {kind.value} error: {cause}")
        self.kind = kind
        self.cause = cause
        self.provider = provider
        self.retry_after = retry_after
        self.rate_limited = rate_limited

    @property
    def is_transient(self) -> bool:
        return self.kind == ProviderErrorKind.TRANSIENT

    @classmethod
    def transient(cls, cause: str, provider: str = "", **kwargs) -> "ProviderError":
        return cls(ProviderErrorKind.TRANSIENT, cause, provider=provider, **kwargs)

    @classmethod
    def permanent(cls, cause: str, provider: str = "") -> "ProviderError":
        return cls(ProviderErrorKind.PERMANENT, cause, provider=provider)


class PersistenceFailure(VigilError):
    """The atomic control update plus history append did not commit."""

    def __init__(self, control_id: str, cause: str):
        super().__init__(f"Failed to persist verification for control {control_id}: {cause}")
        self.control_id = control_id
        self.cause = cause


class SyncInProgress(VigilError):
    """Another worker holds the sync lease for this integration."""

    def __init__(self, organization_id: str, integration_id: str, holder: str = ""):
        super().__init__(
            f"Sync already in progress for integration {integration_id} "
            f"(organization {organization_id}){f' held by {holder}' if holder else ''}"
        )
        self.organization_id = organization_id
        self.integration_id = integration_id
        self.holder = holder


class ControlNotFound(VigilError):
    def __init__(self, control_id: str):
        super().__init__(f"Control not found: {control_id}")
        self.control_id = control_id


class IntegrationNotFound(VigilError):
    def __init__(self, integration_id: str):
        super().__init__(f"Integration not found: {integration_id}")
        self.integration_id = integration_id


class VerificationTimeout(VigilError):
    """A manual verification did not finish within the caller's deadline."""

    def __init__(self, control_id: str, timeout: float):
        super().__init__(
            f"Verification of control {control_id} did not complete within {timeout:g}s"
        )
        self.control_id = control_id
        self.timeout = timeout
