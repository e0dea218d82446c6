"""AWS cloud account adapter.

Collects IAM (MFA, password policy), CloudTrail and S3 configuration with
boto3. The credentials need SecurityAudit (read-only) permissions.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from ..errors import ProviderError
from ..models.control import Confidence
from ..models.finding import Finding
from .base import BaseProvider

THROTTLING_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "SlowDown",
}
TRANSIENT_ERROR_CODES = {
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "RequestTimeout",
}
PERMANENT_ERROR_CODES = {
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "AuthFailure",
    "AccessDenied",
    "AccessDeniedException",
}


class AWSProvider(BaseProvider):
    name = "aws"
    required_credentials = ("access_key_id", "secret_access_key")

    session_factory: Optional[Callable[..., Any]] = None

    def _session(self):
        factory = self.session_factory or boto3.session.Session
        return factory(
            aws_access_key_id=self.credentials["access_key_id"],
            aws_secret_access_key=self.credentials["secret_access_key"],
            aws_session_token=self.credentials.get("session_token"),
            region_name=self.config.get("region", "us-east-1"),
        )

    async def fetch_findings(self) -> list[Finding]:
        self.ensure_credentials()
        # boto3 is blocking; keep it off the event loop
        return await asyncio.to_thread(self._collect)

    def _collect(self) -> list[Finding]:
        try:
            session = self._session()
            session.client("sts").get_caller_identity()
            iam = session.client("iam")
            findings = [self._mfa_finding(iam), self._password_policy_finding(iam)]
            findings.append(self._cloudtrail_finding(session.client("cloudtrail")))
            findings.extend(self._s3_findings(session.client("s3")))
            return findings
        except ClientError as e:
            raise classify_client_error(e) from e
        except NoCredentialsError as e:
            raise ProviderError.permanent(str(e), provider=self.name) from e
        except BotoCoreError as e:
            # Endpoint, connection and read timeout failures
            raise ProviderError.transient(str(e), provider=self.name) from e

    def _mfa_finding(self, iam) -> Finding:
        users: list[dict] = []
        for page in iam.get_paginator("list_users").paginate():
            users.extend(page.get("Users", []))

        with_mfa = 0
        for user in users:
            devices = iam.list_mfa_devices(UserName=user["UserName"]).get("MFADevices", [])
            if devices:
                with_mfa += 1

        threshold = int(self.config.get("mfa_threshold", 95))
        rate = round(with_mfa / len(users) * 100) if users else 100
        passed = rate >= threshold
        confidence = Confidence.HIGH if rate >= 100 else Confidence.MEDIUM if rate >= 80 else Confidence.LOW
        return self.finding(
            "mfa-enforced",
            passed,
            title="AWS IAM MFA Enforcement Status",
            confidence=confidence,
            reason=(
                f"{rate}% of IAM users have MFA enabled (threshold: {threshold}%)"
                if passed else f"Only {rate}% of IAM users have MFA (requires {threshold}%)"
            ),
            metrics={
                "total_users": len(users),
                "users_with_mfa": with_mfa,
                "users_without_mfa": len(users) - with_mfa,
                "mfa_enforcement_rate": rate,
                "threshold": threshold,
            },
            requirement_codes=["A.5.17", "A.8.5", "CC6.1"],
            keywords=["mfa", "multi-factor", "authentication", "iam"],
        )

    def _password_policy_finding(self, iam) -> Finding:
        try:
            policy = iam.get_account_password_policy().get("PasswordPolicy", {})
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "NoSuchEntity":
                raise
            policy = None

        min_length = int(self.config.get("min_password_length", 14))
        if policy is None:
            return self.finding(
                "password-policy-configured",
                False,
                title="AWS IAM Password Policy",
                confidence=Confidence.HIGH,
                reason="No account password policy is configured",
                metrics={"configured": False},
                requirement_codes=["A.5.17", "CC6.1"],
                keywords=["password", "credential"],
            )

        strong = (
            policy.get("MinimumPasswordLength", 0) >= min_length
            and bool(policy.get("RequireSymbols"))
            and bool(policy.get("RequireNumbers"))
            and bool(policy.get("RequireUppercaseCharacters"))
            and bool(policy.get("RequireLowercaseCharacters"))
        )
        return self.finding(
            "password-policy-configured",
            strong,
            title="AWS IAM Password Policy",
            confidence=Confidence.HIGH if strong else Confidence.MEDIUM,
            reason=(
                "Password policy meets security requirements"
                if strong else "Password policy does not meet all security requirements"
            ),
            metrics={
                "configured": True,
                "minimum_password_length": policy.get("MinimumPasswordLength"),
                "require_symbols": policy.get("RequireSymbols"),
                "require_numbers": policy.get("RequireNumbers"),
                "require_uppercase": policy.get("RequireUppercaseCharacters"),
                "require_lowercase": policy.get("RequireLowercaseCharacters"),
                "max_password_age": policy.get("MaxPasswordAge"),
            },
            requirement_codes=["A.5.17", "CC6.1"],
            keywords=["password", "credential"],
        )

    def _cloudtrail_finding(self, cloudtrail) -> Finding:
        trails = cloudtrail.describe_trails().get("trailList", [])
        active = multi_region_active = encrypted = 0
        for trail in trails:
            status = cloudtrail.get_trail_status(Name=trail.get("TrailARN", trail["Name"]))
            logging_on = bool(status.get("IsLogging"))
            if logging_on:
                active += 1
                if trail.get("IsMultiRegionTrail"):
                    multi_region_active += 1
            if trail.get("KmsKeyId"):
                encrypted += 1

        passed = multi_region_active > 0
        return self.finding(
            "audit-logging-enabled",
            passed,
            title="AWS CloudTrail Audit Logging Status",
            confidence=Confidence.HIGH if encrypted > 0 else Confidence.MEDIUM,
            reason=(
                f"Active multi-region CloudTrail configured with {active} trails"
                if passed else "No active multi-region CloudTrail found - audit logging may be incomplete"
            ),
            metrics={
                "total_trails": len(trails),
                "active_trails": active,
                "multi_region_active_trails": multi_region_active,
                "encrypted_trails": encrypted,
            },
            requirement_codes=["A.8.15", "A.8.16", "CC7.2"],
            keywords=["audit", "logging", "cloudtrail", "monitoring"],
        )

    def _s3_findings(self, s3) -> list[Finding]:
        buckets = s3.list_buckets().get("Buckets", [])
        encrypted = blocked = 0
        for bucket in buckets:
            name = bucket["Name"]
            try:
                rules = s3.get_bucket_encryption(Bucket=name).get(
                    "ServerSideEncryptionConfiguration", {}
                ).get("Rules", [])
                if rules:
                    encrypted += 1
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") != "ServerSideEncryptionConfigurationNotFoundError":
                    raise
            try:
                config = s3.get_public_access_block(Bucket=name).get(
                    "PublicAccessBlockConfiguration", {}
                )
                if all(config.get(k) for k in (
                    "BlockPublicAcls", "BlockPublicPolicy", "IgnorePublicAcls", "RestrictPublicBuckets"
                )):
                    blocked += 1
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") != "NoSuchPublicAccessBlockConfiguration":
                    raise

        total = len(buckets)
        rate = round(encrypted / total * 100) if total else 100
        confidence = Confidence.HIGH if rate >= 100 else Confidence.MEDIUM if rate >= 80 else Confidence.LOW
        public = total - blocked
        return [
            self.finding(
                "storage-encryption-enabled",
                rate >= 100,
                title="AWS S3 Bucket Encryption Status",
                confidence=confidence,
                reason=(
                    f"All {total} S3 buckets are encrypted at rest"
                    if rate >= 100 else f"Only {encrypted} of {total} S3 buckets are encrypted ({rate}%)"
                ),
                metrics={"total_buckets": total, "encrypted_buckets": encrypted, "encryption_rate": rate},
                requirement_codes=["A.8.24", "CC6.1", "CC6.7"],
                keywords=["encryption", "data at rest", "s3"],
            ),
            self.finding(
                "public-access-blocked",
                public == 0,
                title="AWS S3 Public Access Status",
                confidence=Confidence.HIGH,
                reason=(
                    "All S3 buckets block public access"
                    if public == 0 else f"{public} buckets have public access not fully blocked"
                ),
                metrics={"total_buckets": total, "publicly_accessible": public},
                requirement_codes=["A.8.3", "CC6.1"],
                keywords=["public access", "s3", "data exposure"],
            ),
        ]


def classify_client_error(error: ClientError) -> ProviderError:
    """Map a botocore ClientError to a transient or permanent provider error."""
    code = error.response.get("Error", {}).get("Code", "")
    message = error.response.get("Error", {}).get("Message", str(error))
    cause = f"{code}: {message}" if code else message
    if code in THROTTLING_ERROR_CODES:
        return ProviderError.transient(cause, provider=AWSProvider.name, rate_limited=True)
    if code in PERMANENT_ERROR_CODES:
        return ProviderError.permanent(cause, provider=AWSProvider.name)
    if code in TRANSIENT_ERROR_CODES:
        return ProviderError.transient(cause, provider=AWSProvider.name)
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    if status >= 500:
        return ProviderError.transient(cause, provider=AWSProvider.name)
    return ProviderError.permanent(cause, provider=AWSProvider.name)
