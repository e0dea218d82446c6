"""Provider adapter abstraction with retry logic.

Every adapter talks to exactly one external system of record and translates
its responses into normalized findings. Adapters never see controls.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

import httpx

from ..errors import ProviderError
from ..models.finding import Finding
from ..utils.sanitize import sanitize_error

logger = logging.getLogger(__name__)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol that all provider adapters must implement."""

    name: str

    async def fetch_findings(self) -> list[Finding]: ...


class BaseProvider:
    """Base class with shared credential handling and retry logic."""

    name: str = "base"
    required_credentials: tuple[str, ...] = ()

    def __init__(
        self,
        organization_id: str,
        integration_id: str,
        credentials: dict,
        provider_config: Optional[dict] = None,
        common_config: Optional[dict] = None,
    ):
        self.organization_id = organization_id
        self.integration_id = integration_id
        self.credentials = credentials or {}
        self.config = provider_config or {}
        self.common = common_config or {}
        self.max_attempts = self.common.get("retry_attempts", 3)
        self.retry_delay = self.common.get("retry_delay_seconds", 5)
        self.rate_limit_delay = self.common.get("rate_limit_delay_seconds", 30)
        self.max_retry_delay = self.common.get("max_retry_delay_seconds", 300)
        self.timeout = self.common.get("timeout_seconds", 120)

    def validate_credentials(self) -> list[str]:
        """Return the required credential keys that are missing."""
        return [key for key in self.required_credentials if not self.credentials.get(key)]

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def finding(self, fact_type: str, passed: bool, **kwargs) -> Finding:
        """Build a finding stamped with this adapter's identity."""
        kwargs.setdefault("observed_at", self.now())
        return Finding(
            provider=self.name,
            fact_type=fact_type,
            passed=passed,
            integration_id=self.integration_id,
            **kwargs,
        )

    def ensure_credentials(self) -> None:
        missing = self.validate_credentials()
        if missing:
            raise ProviderError.permanent(
                f"Missing required credentials: {', '.join(missing)}", provider=self.name
            )

    async def fetch_findings(self) -> list[Finding]:
        raise NotImplementedError

    async def fetch_with_retry(self) -> list[Finding]:
        """Wrap fetch_findings() with a timeout and retry for transient errors."""
        rate_limit_max = max(self.max_attempts, 5)
        last_error: Optional[ProviderError] = None

        for attempt in range(1, rate_limit_max + 1):
            try:
                return await asyncio.wait_for(self.fetch_findings(), timeout=self.timeout)
            except asyncio.TimeoutError:
                last_error = ProviderError.transient(
                    f"timed out after {self.timeout}s", provider=self.name
                )
            except ProviderError as e:
                last_error = e

            if not last_error.is_transient:
                raise ProviderError(
                    last_error.kind,
                    sanitize_error(last_error.cause),
                    provider=self.name,
                )

            effective_max = rate_limit_max if last_error.rate_limited else self.max_attempts
            if attempt >= effective_max:
                break

            # Rate limits: honour Retry-After or use the longer base. Others: standard backoff.
            if last_error.retry_after is not None:
                wait_time = last_error.retry_after
            else:
                base_delay = self.rate_limit_delay if last_error.rate_limited else self.retry_delay
                wait_time = base_delay * min(attempt, 3)
            wait_time = min(wait_time, self.max_retry_delay)
            logger.warning(
                "%s transient error (attempt %d/%d), retrying in %ss: %s",
                self.name, attempt, effective_max, wait_time, sanitize_error(last_error.cause),
            )
            await asyncio.sleep(wait_time)

        cause = sanitize_error(last_error.cause) if last_error else "Max retries exceeded"
        raise ProviderError.transient(
            f"retries exhausted: {cause}",
            provider=self.name,
            rate_limited=bool(last_error and last_error.rate_limited),
        )


def classify_http_error(provider: str, error: Exception) -> ProviderError:
    """Map an httpx failure to a transient or permanent provider error."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        body = ""
        try:
            body = error.response.text[:200]
        except (httpx.ResponseNotRead, UnicodeDecodeError):
            pass
        cause = f"{status} | {body}" if body else str(status)
        remaining = error.response.headers.get("x-ratelimit-remaining")
        if status == 429 or (status == 403 and remaining == "0"):
            retry_after = error.response.headers.get("retry-after")
            return ProviderError.transient(
                cause,
                provider=provider,
                rate_limited=True,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status in (400, 401, 403, 404, 410):
            return ProviderError.permanent(cause, provider=provider)
        return ProviderError.transient(cause, provider=provider)
    if isinstance(error, httpx.TimeoutException):
        return ProviderError.transient(f"timeout: {error}", provider=provider)
    if isinstance(error, httpx.TransportError):
        return ProviderError.transient(f"network error: {error}", provider=provider)
    return ProviderError.transient(str(error), provider=provider)


PROVIDER_TYPES = ("github", "gsuite", "aws")


def get_provider(
    integration_type: str,
    organization_id: str,
    integration_id: str,
    credentials: dict,
    config: Optional[dict] = None,
    integration_config: Optional[dict] = None,
) -> BaseProvider:
    """Factory function to create the adapter for an integration type."""
    config = config or {}
    providers_config = config.get("providers", {})

    # Provider defaults, then per-integration settings
    provider_config = dict(providers_config.get(integration_type, {}))
    provider_config.update(integration_config or {})
    common_config = dict(config.get("sync", {}))

    if integration_type == "github":
        from .github import GitHubProvider
        return GitHubProvider(organization_id, integration_id, credentials, provider_config, common_config)
    elif integration_type == "gsuite":
        from .google_workspace import GoogleWorkspaceProvider
        return GoogleWorkspaceProvider(organization_id, integration_id, credentials, provider_config, common_config)
    elif integration_type == "aws":
        from .aws import AWSProvider
        return AWSProvider(organization_id, integration_id, credentials, provider_config, common_config)
    else:
        raise ValueError(f"Unknown integration type: {integration_type}")
