"""GitHub source-code host adapter.

Collects repository inventory, default-branch protection and Dependabot
alert data through the GitHub REST API. Requires a token with the repo,
read:org and security_events scopes.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..models.control import Confidence
from ..models.finding import Finding
from .base import BaseProvider, classify_http_error

logger = logging.getLogger(__name__)


class GitHubProvider(BaseProvider):
    name = "github"
    required_credentials = ("access_token",)

    transport: Optional[httpx.AsyncBaseTransport] = None

    def _client(self) -> httpx.AsyncClient:
        headers = {
            "Authorization": f"Bearer {self.credentials['access_token']}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        return httpx.AsyncClient(
            base_url=self.config.get("api_url", "https://api.github.com"),
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def fetch_findings(self) -> list[Finding]:
        self.ensure_credentials()
        try:
            async with self._client() as client:
                repos = await self._list_repositories(client)
                active = [r for r in repos if not r.get("archived") and not r.get("disabled")]
                protection = await self._collect_branch_protection(client, active)
                alerts = await self._collect_security_alerts(client, active)
        except httpx.HTTPError as e:
            raise classify_http_error(self.name, e) from e

        return [
            self._inventory_finding(repos),
            self._branch_protection_finding(protection),
            self._security_alerts_finding(alerts),
        ]

    async def _list_repositories(self, client: httpx.AsyncClient) -> list[dict]:
        organization = self.config.get("organization")
        include_private = self.config.get("include_private", True)
        if organization:
            response = await client.get(
                f"/orgs/{organization}/repos",
                params={"per_page": 100, "type": "all" if include_private else "public"},
            )
        else:
            response = await client.get(
                "/user/repos",
                params={"per_page": 100, "visibility": "all" if include_private else "public"},
            )
        response.raise_for_status()
        return response.json()

    async def _collect_branch_protection(
        self, client: httpx.AsyncClient, repos: list[dict]
    ) -> dict:
        limit = int(self.config.get("max_protection_repos", 20))
        entries: list[dict] = []
        rate_limited = False

        for repo in [r for r in repos if not r.get("fork")][:limit]:
            owner = repo["owner"]["login"]
            branch = repo.get("default_branch", "main")
            response = await client.get(
                f"/repos/{owner}/{repo['name']}/branches/{branch}/protection"
            )
            entry: dict = {"repo": repo["full_name"], "branch": branch, "protected": False}
            if response.status_code == 200:
                data = response.json()
                reviews = data.get("required_pull_request_reviews") or {}
                checks = data.get("required_status_checks") or {}
                entry["protected"] = True
                entry["required_reviews"] = bool(reviews)
                entry["required_reviewers"] = reviews.get("required_approving_review_count", 0)
                entry["status_checks"] = bool(checks)
                entry["enforce_admins"] = bool((data.get("enforce_admins") or {}).get("enabled"))
            elif response.status_code == 404:
                # 404 means no protection, which is valid data
                pass
            elif _is_rate_limited(response):
                rate_limited = True
                break
            else:
                entry["error"] = f"{response.status_code}"
            entries.append(entry)

        evaluated = [e for e in entries if "error" not in e]
        protected = [e for e in evaluated if e["protected"]]
        rate = round(len(protected) / len(evaluated) * 100) if evaluated else 0
        return {
            "entries": entries,
            "partial": rate_limited,
            "summary": {
                "total_repos": len(entries),
                "protected_repos": len(protected),
                "unprotected_repos": len(evaluated) - len(protected),
                "with_required_reviews": sum(1 for e in protected if e.get("required_reviews")),
                "with_status_checks": sum(1 for e in protected if e.get("status_checks")),
                "protection_rate": rate,
            },
        }

    async def _collect_security_alerts(
        self, client: httpx.AsyncClient, repos: list[dict]
    ) -> dict:
        limit = int(self.config.get("max_alert_repos", 10))
        entries: list[dict] = []
        rate_limited = False

        for repo in repos[:limit]:
            owner = repo["owner"]["login"]
            response = await client.get(
                f"/repos/{owner}/{repo['name']}/dependabot/alerts",
                params={"state": "open", "per_page": 100},
            )
            if response.status_code == 200:
                alerts = response.json()
                severities = [
                    (a.get("security_vulnerability") or {}).get("severity") for a in alerts
                ]
                entries.append({
                    "repo": repo["full_name"],
                    "scanning": True,
                    "alerts": len(alerts),
                    "critical": severities.count("critical"),
                    "high": severities.count("high"),
                    "medium": severities.count("medium"),
                    "low": severities.count("low"),
                })
            elif _is_rate_limited(response):
                rate_limited = True
                break
            else:
                # 403/404 usually means Dependabot is not enabled
                entries.append({"repo": repo["full_name"], "scanning": False, "alerts": 0,
                                "critical": 0, "high": 0, "medium": 0, "low": 0})

        scanned = [e for e in entries if e["scanning"]]
        return {
            "entries": entries,
            "partial": rate_limited,
            "summary": {
                "repos_checked": len(entries),
                "repos_scanned": len(scanned),
                "repos_with_alerts": sum(1 for e in scanned if e["alerts"] > 0),
                "total_alerts": sum(e["alerts"] for e in scanned),
                "critical_alerts": sum(e["critical"] for e in scanned),
                "high_alerts": sum(e["high"] for e in scanned),
                "medium_alerts": sum(e["medium"] for e in scanned),
                "low_alerts": sum(e["low"] for e in scanned),
            },
        }

    def _inventory_finding(self, repos: list[dict]) -> Finding:
        private = sum(1 for r in repos if r.get("private"))
        has_repos = len(repos) > 0
        return self.finding(
            "repository-inventory",
            has_repos,
            title="GitHub Repository Inventory",
            confidence=Confidence.HIGH,
            reason=(
                f"Repository inventory maintained with {len(repos)} repositories tracked"
                if has_repos else "No repositories found in connected account"
            ),
            metrics={
                "total_repositories": len(repos),
                "private_repositories": private,
                "public_repositories": len(repos) - private,
            },
            requirement_codes=["A.5.9", "A.8.4", "CC6.1"],
            keywords=["asset", "inventory", "repository", "source code"],
        )

    def _branch_protection_finding(self, data: dict) -> Finding:
        summary = data["summary"]
        threshold = int(self.config.get("protection_threshold", 80))
        rate = summary["protection_rate"]
        passed = rate >= threshold
        confidence = Confidence.HIGH if rate >= 90 else Confidence.MEDIUM if rate >= 50 else Confidence.LOW
        return self.finding(
            "branch-protection-enabled",
            passed,
            title="GitHub Branch Protection Status",
            confidence=confidence,
            reason=(
                f"{rate}% of repositories have branch protection enabled (threshold: {threshold}%)"
                if passed else
                f"Only {rate}% of repositories have branch protection (requires {threshold}%)"
            ),
            metrics={**summary, "threshold": threshold},
            partial=data["partial"],
            requirement_codes=["A.8.9", "A.8.25", "A.8.32", "CC8.1", "CC6.1"],
            keywords=["change management", "code review", "branch protection", "pull request"],
        )

    def _security_alerts_finding(self, data: dict) -> Finding:
        summary = data["summary"]
        passed = summary["repos_scanned"] > 0
        no_severe = summary["critical_alerts"] == 0 and summary["high_alerts"] == 0
        if no_severe:
            confidence = Confidence.HIGH
        elif summary["critical_alerts"] == 0:
            confidence = Confidence.MEDIUM
        else:
            confidence = Confidence.LOW
        if not passed:
            reason = "Security scanning not detected on repositories"
        elif no_severe:
            reason = "Security scanning enabled with no critical or high severity alerts"
        else:
            reason = (
                f"Security scanning enabled but {summary['critical_alerts']} critical and "
                f"{summary['high_alerts']} high alerts need attention"
            )
        return self.finding(
            "vulnerability-scanning-enabled",
            passed,
            title="GitHub Security Alerts Summary",
            confidence=confidence,
            reason=reason,
            metrics=summary,
            partial=data["partial"],
            requirement_codes=["A.8.8", "A.8.7", "A.8.25", "A.8.28", "CC7.1", "CC3.2"],
            keywords=["vulnerability", "security scan", "dependabot", "dependency"],
        )


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"
