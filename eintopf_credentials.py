"""
Short-lived, role-scoped AWS credentials for fleet operations.

The long-lived identity (environment or named profile) is only used to call
sts:AssumeRole; every EC2 call made by the sweep runs under the assumed role.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import boto3
import botocore

from eintopf_common import BOTO_CONFIG, REGION, CredentialError, log

RENEW_MARGIN = timedelta(minutes=5)


@dataclass(frozen=True)
class Credentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime

    def expires_soon(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expiration - now <= RENEW_MARGIN


class CredentialProvider:
    """Assume a fixed role under a caller-chosen session name."""

    def __init__(
        self,
        role_arn: str,
        session_name: str,
        region: str = REGION,
        profile: Optional[str] = None,
        duration_seconds: int = 3600,
    ):
        self.role_arn = role_arn
        self.session_name = session_name
        self.region = region
        self.profile = profile
        self.duration_seconds = duration_seconds
        self._cached: Optional[Credentials] = None

    def _sts(self):
        session = boto3.session.Session(profile_name=self.profile, region_name=self.region)
        return session.client("sts", region_name=self.region, config=BOTO_CONFIG)

    def obtain(self) -> Credentials:
        if self._cached and not self._cached.expires_soon():
            return self._cached
        try:
            resp = self._sts().assume_role(
                RoleArn=self.role_arn,
                RoleSessionName=self.session_name,
                DurationSeconds=self.duration_seconds,
            )
        except botocore.exceptions.ClientError as exc:
            msg = exc.response.get("Error", {}).get("Message", str(exc))
            raise CredentialError(f"Unable to assume role {self.role_arn}: {msg}") from exc
        except botocore.exceptions.BotoCoreError as exc:
            raise CredentialError(f"Unable to assume role {self.role_arn}: {exc}") from exc

        raw = resp["Credentials"]
        self._cached = Credentials(
            access_key_id=raw["AccessKeyId"],
            secret_access_key=raw["SecretAccessKey"],
            session_token=raw["SessionToken"],
            expiration=raw["Expiration"],
        )
        log(f"Assumed role {self.role_arn} as '{self.session_name}' (expires {self._cached.expiration})")
        return self._cached

    def session(self):
        """A boto3 session bound to the assumed-role credentials."""
        creds = self.obtain()
        return boto3.session.Session(
            aws_access_key_id=creds.access_key_id,
            aws_secret_access_key=creds.secret_access_key,
            aws_session_token=creds.session_token,
            region_name=self.region,
        )
