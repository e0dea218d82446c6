"""Google Workspace identity adapter.

Collects the user directory, 2-Step Verification enrollment, admin roles and
login recency through the Admin SDK Directory API. Expects an OAuth access
token issued to a service account with domain-wide delegation and the
admin.directory.user.readonly / admin.directory.group.readonly scopes.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import httpx

from ..models.control import Confidence
from ..models.finding import Finding
from .base import BaseProvider, classify_http_error


class GoogleWorkspaceProvider(BaseProvider):
    name = "gsuite"
    required_credentials = ("access_token",)

    transport: Optional[httpx.AsyncBaseTransport] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.get(
                "api_url", "https://admin.googleapis.com/admin/directory/v1"
            ),
            headers={"Authorization": f"Bearer {self.credentials['access_token']}"},
            timeout=self.timeout,
            transport=self.transport,
        )

    async def fetch_findings(self) -> list[Finding]:
        self.ensure_credentials()
        try:
            async with self._client() as client:
                users = await self._paginate(client, "/users", "users", 500)
                groups = await self._paginate(client, "/groups", "groups", 200)
        except httpx.HTTPError as e:
            raise classify_http_error(self.name, e) from e

        active = [u for u in users if not u.get("suspended") and not u.get("archived")]
        return [
            self._directory_finding(users, active, groups),
            self._mfa_finding(active),
            self._admin_finding(users),
            self._inactive_finding(active),
        ]

    async def _paginate(
        self, client: httpx.AsyncClient, path: str, key: str, page_size: int
    ) -> list[dict]:
        items: list[dict] = []
        page_token: Optional[str] = None
        params = {"customer": self.config.get("customer", "my_customer"), "maxResults": page_size}
        if self.config.get("domain"):
            params["domain"] = self.config["domain"]

        while True:
            if page_token:
                params["pageToken"] = page_token
            response = await client.get(path, params=params)
            response.raise_for_status()
            data = response.json()
            items.extend(data.get(key) or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return items

    def _directory_finding(self, users: list[dict], active: list[dict], groups: list[dict]) -> Finding:
        admins = [u for u in users if u.get("isAdmin") or u.get("isDelegatedAdmin")]
        return self.finding(
            "user-directory-maintained",
            len(users) > 0,
            title="Google Workspace User Directory",
            confidence=Confidence.HIGH,
            reason=f"User directory maintained with {len(active)} active users",
            metrics={
                "total_users": len(users),
                "active_users": len(active),
                "suspended_users": sum(1 for u in users if u.get("suspended")),
                "admin_users": len(admins),
                "total_groups": len(groups),
            },
            requirement_codes=["A.5.9", "A.5.16", "CC6.1", "CC6.2"],
            keywords=["user", "directory", "identity", "inventory"],
        )

    def _mfa_finding(self, active: list[dict]) -> Finding:
        threshold = int(self.config.get("mfa_threshold", 95))
        enrolled = [u for u in active if u.get("isEnrolledIn2Sv")]
        enforced = [u for u in active if u.get("isEnforcedIn2Sv")]
        rate = round(len(enrolled) / len(active) * 100) if active else 100
        passed = rate >= threshold
        confidence = Confidence.HIGH if rate >= 100 else Confidence.MEDIUM if rate >= 80 else Confidence.LOW
        return self.finding(
            "mfa-enforced",
            passed,
            title="Google Workspace MFA Enforcement Status",
            confidence=confidence,
            reason=(
                f"{rate}% of users have MFA enabled (threshold: {threshold}%)"
                if passed else f"Only {rate}% of users have MFA (requires {threshold}%)"
            ),
            metrics={
                "total_active_users": len(active),
                "users_with_mfa": len(enrolled),
                "users_without_mfa": len(active) - len(enrolled),
                "users_with_enforced_mfa": len(enforced),
                "mfa_enforcement_rate": rate,
                "threshold": threshold,
            },
            requirement_codes=["A.5.17", "A.8.5", "CC6.1"],
            keywords=["mfa", "multi-factor", "2fa", "authentication"],
        )

    def _admin_finding(self, users: list[dict]) -> Finding:
        super_admins = [u for u in users if u.get("isAdmin")]
        delegated = [u for u in users if u.get("isDelegatedAdmin") and not u.get("isAdmin")]
        all_have_mfa = all(u.get("isEnrolledIn2Sv") for u in super_admins + delegated)
        return self.finding(
            "admin-mfa-enforced",
            all_have_mfa,
            title="Google Workspace Privileged Access Status",
            confidence=Confidence.HIGH if all_have_mfa else Confidence.LOW,
            reason=(
                "All admin accounts have MFA enabled"
                if all_have_mfa else "Some admin accounts lack MFA protection"
            ),
            metrics={
                "super_admin_count": len(super_admins),
                "delegated_admin_count": len(delegated),
                "admins_without_mfa": sum(
                    1 for u in super_admins + delegated if not u.get("isEnrolledIn2Sv")
                ),
            },
            requirement_codes=["A.8.2", "A.5.18", "CC6.3"],
            keywords=["admin", "privileged", "super admin"],
        )

    def _inactive_finding(self, active: list[dict]) -> Finding:
        inactive_days = int(self.config.get("inactive_days", 90))
        cutoff = self.now() - timedelta(days=inactive_days)
        inactive = [u for u in active if _last_login(u) is None or _last_login(u) < cutoff]
        passed = not inactive
        return self.finding(
            "inactive-accounts-reviewed",
            passed,
            title="Google Workspace Inactive Users",
            confidence=Confidence.MEDIUM,
            reason=(
                f"No active accounts idle for more than {inactive_days} days"
                if passed else
                f"{len(inactive)} user accounts have been inactive for over {inactive_days} days"
            ),
            metrics={
                "inactive_user_count": len(inactive),
                "total_active_users": len(active),
                "inactive_days": inactive_days,
            },
            requirement_codes=["A.5.18", "CC6.2", "CC6.6"],
            keywords=["inactive", "access review", "user lifecycle"],
        )


def _last_login(user: dict) -> Optional[datetime]:
    value = user.get("lastLoginTime")
    if not value:
        return None
    # The API reports 1970-01-01T00:00:00.000Z for accounts that never signed in
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return None if parsed.year <= 1970 else parsed
