# Copyright 2025 iGenius S.p.A
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from transform_deploy.aws.errors import error_code
from transform_deploy.exceptions import AuthorizationError
from transform_deploy.helpers.logger import setup_logger

logger = setup_logger(__name__, level=logging.INFO)

ASSUME_ROLE_GUIDANCE = (
    "1. The role '{role}' exists in your account",
    "2. Your IAM user/role has permission to assume this role",
    "3. The role trust policy allows your IAM user/role to assume it",
)


@dataclass(frozen=True)
class AwsCredentials:
    """Temporary credentials returned by STS AssumeRole."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime | None = None

    @classmethod
    def from_sts(cls, payload: dict[str, Any]) -> "AwsCredentials":
        return cls(
            access_key_id=payload["AccessKeyId"],
            secret_access_key=payload["SecretAccessKey"],
            session_token=payload["SessionToken"],
            expiration=payload.get("Expiration"),
        )

    def __repr__(self) -> str:
        return f"AwsCredentials(access_key_id={self.access_key_id!r}, expiration={self.expiration!r})"


@dataclass
class AwsSession:
    """Explicit AWS context threaded through every AWS-facing call.

    With ``credentials`` unset the default boto3 credential chain applies.
    Clients are created lazily and cached per service.
    """

    region: str
    credentials: AwsCredentials | None = None
    _session: Any = field(default=None, init=False, repr=False)
    _clients: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def _boto(self) -> boto3.session.Session:
        if self._session is None:
            if self.credentials is None:
                self._session = boto3.session.Session(region_name=self.region)
            else:
                self._session = boto3.session.Session(
                    aws_access_key_id=self.credentials.access_key_id,
                    aws_secret_access_key=self.credentials.secret_access_key,
                    aws_session_token=self.credentials.session_token,
                    region_name=self.region,
                )
        return self._session

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self._boto().client(service)
        return self._clients[service]

    def account_id(self) -> str:
        return self.client("sts").get_caller_identity()["Account"]


class CredentialBroker:
    """Trades the caller's identity for a deployment role's temporary credentials."""

    def __init__(self, base: AwsSession):
        self.base = base

    def role_arn(self, role_name: str) -> str:
        try:
            account = self.base.account_id()
        except (ClientError, BotoCoreError) as e:
            raise AuthorizationError(
                f"Unable to determine the caller's AWS account: {e}",
                guidance=["Check that AWS credentials are configured for this shell"],
            ) from e
        return f"arn:aws:iam::{account}:role/{role_name}"

    def assume(self, role_name: str, session_name: str = "DeploymentSession") -> AwsSession:
        role_arn = self.role_arn(role_name)
        logger.info(f"Assuming role: [cyan]{role_arn}[/cyan]")
        try:
            response = self.base.client("sts").assume_role(
                RoleArn=role_arn, RoleSessionName=session_name
            )
        except (ClientError, BotoCoreError) as e:
            code = error_code(e)
            raise AuthorizationError(
                f"Failed to assume role {role_arn}" + (f" ({code})" if code else ""),
                guidance=[line.format(role=role_name) for line in ASSUME_ROLE_GUIDANCE],
            ) from e

        credentials = AwsCredentials.from_sts(response["Credentials"])
        logger.info("Successfully assumed deployment role")
        return AwsSession(region=self.base.region, credentials=credentials)


def open_session(
    region: str,
    role_name: str | None,
    skip_assume_role: bool,
    session_name: str = "DeploymentSession",
) -> AwsSession:
    """Return the session a run works with: the caller's own, or an assumed role's."""
    base = AwsSession(region=region)
    if skip_assume_role or not role_name:
        logger.info("Skipping role assumption; using the caller's credentials")
        return base
    return CredentialBroker(base).assume(role_name, session_name=session_name)


def role_name_for_prefix(prefix: str) -> str:
    return f"{prefix}-Deployment-Role"


def prefix_from_cluster(cluster_name: str) -> str:
    return cluster_name[: -len("-cluster")] if cluster_name.endswith("-cluster") else cluster_name
