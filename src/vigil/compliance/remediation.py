"""Remediation guidance for failed verifications.

A rule table keyed by (provider, fact type, failure reason pattern) mapping to
an ordered list of steps. Lookup takes the most specific matching rule.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from pydantic import BaseModel

from .mapping import match_fact_pattern


class RemediationRule(BaseModel):
    provider: str = "*"
    fact_type: str = "*"
    reason_pattern: Optional[str] = None
    steps: list[str]

    def matches(self, provider: str, fact_type: str, reason: str) -> bool:
        if not match_fact_pattern(provider, self.provider):
            return False
        if not match_fact_pattern(fact_type, self.fact_type):
            return False
        if self.reason_pattern and not re.search(self.reason_pattern, reason or "", re.IGNORECASE):
            return False
        return True

    @property
    def specificity(self) -> int:
        score = 0
        if self.provider != "*":
            score += 1
        if "*" not in self.fact_type:
            score += 2
        if self.reason_pattern:
            score += 4
        return score


DEFAULT_REMEDIATION_RULES: list[RemediationRule] = [
    RemediationRule(
        provider="github",
        fact_type="branch-protection-enabled",
        steps=[
            "Open the repository settings and add a branch protection rule for the default branch.",
            "Require pull request reviews before merging.",
            "Require status checks to pass before merging.",
            "Apply the rule to administrators as well.",
        ],
    ),
    RemediationRule(
        provider="github",
        fact_type="branch-protection-enabled",
        reason_pattern=r"rate limit|partial",
        steps=[
            "Wait for the GitHub API rate limit to reset and run the sync again.",
            "Use a token with a higher rate limit if the organization has many repositories.",
        ],
    ),
    RemediationRule(
        provider="github",
        fact_type="vulnerability-scanning-enabled",
        steps=[
            "Enable Dependabot alerts under Code security and analysis for each repository.",
            "Grant the integration token the security_events scope.",
        ],
    ),
    RemediationRule(
        provider="github",
        fact_type="repository-inventory",
        steps=["Confirm the integration is connected to the correct GitHub organization."],
    ),
    RemediationRule(
        provider="gsuite",
        fact_type="mfa-enforced",
        steps=[
            "In the Google Admin console, open Security > Authentication > 2-Step Verification.",
            "Allow users to turn on 2-Step Verification and set enforcement to On.",
            "Follow up with users who have not enrolled.",
        ],
    ),
    RemediationRule(
        provider="gsuite",
        fact_type="admin-mfa-enforced",
        steps=[
            "Enroll every super admin and delegated admin in 2-Step Verification.",
            "Prefer security keys for administrator accounts.",
        ],
    ),
    RemediationRule(
        provider="gsuite",
        fact_type="inactive-accounts-reviewed",
        steps=[
            "Review accounts that have not signed in recently.",
            "Suspend or delete accounts that are no longer needed.",
        ],
    ),
    RemediationRule(
        provider="aws",
        fact_type="mfa-enforced",
        steps=[
            "Assign an MFA device to every IAM user with console access.",
            "Attach a policy that denies actions when aws:MultiFactorAuthPresent is false.",
        ],
    ),
    RemediationRule(
        provider="aws",
        fact_type="password-policy-configured",
        reason_pattern=r"no account password policy",
        steps=[
            "Create an account password policy in IAM > Account settings.",
            "Require a minimum length of 14 characters and all character classes.",
        ],
    ),
    RemediationRule(
        provider="aws",
        fact_type="password-policy-configured",
        steps=["Raise the minimum length to 14 and require symbols, numbers, upper and lower case."],
    ),
    RemediationRule(
        provider="aws",
        fact_type="audit-logging-enabled",
        steps=[
            "Create a multi-region CloudTrail trail and start logging.",
            "Encrypt the trail with a KMS key.",
        ],
    ),
    RemediationRule(
        provider="aws",
        fact_type="storage-encryption-enabled",
        steps=["Enable default server-side encryption (SSE-S3 or SSE-KMS) on every S3 bucket."],
    ),
    RemediationRule(
        provider="aws",
        fact_type="public-access-blocked",
        steps=[
            "Turn on all four S3 Block Public Access settings at the account level.",
            "Review bucket policies and ACLs that grant public access.",
        ],
    ),
    RemediationRule(
        steps=[
            "Review the verification details and fix the underlying issue.",
            "Run a new sync to confirm the fix.",
        ],
    ),
]


def lookup_remediation(
    provider: str,
    fact_type: str,
    reason: str = "",
    rules: Optional[Iterable[RemediationRule]] = None,
) -> list[str]:
    """Return the steps of the most specific rule, or [] if nothing matches."""
    candidates = [
        r for r in (DEFAULT_REMEDIATION_RULES if rules is None else rules)
        if r.matches(provider, fact_type, reason)
    ]
    if not candidates:
        return []
    # max() keeps the first rule on ties, so table order breaks ties
    return list(max(candidates, key=lambda r: r.specificity).steps)
