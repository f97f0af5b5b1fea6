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

from datetime import datetime, timezone

import pytest

from transform_deploy.aws import credentials as mod
from transform_deploy.aws.credentials import (
    AwsCredentials,
    AwsSession,
    CredentialBroker,
    open_session,
    prefix_from_cluster,
    role_name_for_prefix,
)
from transform_deploy.exceptions import AuthorizationError

STS_CREDENTIALS = {
    "AccessKeyId": "ASIAEXAMPLE",
    "SecretAccessKey": "secret-value",
    "SessionToken": "token",
    "Expiration": datetime(2030, 1, 1, tzinfo=timezone.utc),
}


class FakeSts:
    def __init__(self, account="123456789012", assume_error=None):
        self.account = account
        self.assume_error = assume_error
        self.assumed = []

    def get_caller_identity(self):
        return {"Account": self.account}

    def assume_role(self, RoleArn, RoleSessionName):
        self.assumed.append((RoleArn, RoleSessionName))
        if self.assume_error:
            raise self.assume_error
        return {"Credentials": dict(STS_CREDENTIALS)}


def _base_session(sts) -> AwsSession:
    session = AwsSession(region="eu-west-1")
    session._clients["sts"] = sts
    return session


def test_assume_returns_session_bound_to_temporary_credentials():
    sts = FakeSts()
    assumed = CredentialBroker(_base_session(sts)).assume("shop-Deployment-Role")

    assert sts.assumed == [
        ("arn:aws:iam::123456789012:role/shop-Deployment-Role", "DeploymentSession")
    ]
    assert assumed.region == "eu-west-1"
    assert assumed.credentials == AwsCredentials.from_sts(STS_CREDENTIALS)


def test_assume_failure_carries_guidance(aws_error):
    sts = FakeSts(assume_error=aws_error("AccessDenied", "not authorized to perform"))

    with pytest.raises(AuthorizationError) as exc:
        CredentialBroker(_base_session(sts)).assume("shop-Deployment-Role")

    assert "AccessDenied" in str(exc.value)
    assert any("trust policy" in line for line in exc.value.guidance)
    assert any("shop-Deployment-Role" in line for line in exc.value.guidance)


def test_credentials_repr_hides_secret():
    creds = AwsCredentials.from_sts(STS_CREDENTIALS)
    assert "secret-value" not in repr(creds)
    assert "token" not in repr(creds)


def test_session_builds_boto_session_from_explicit_credentials(mocker):
    boto_session = mocker.patch.object(mod.boto3.session, "Session")
    creds = AwsCredentials.from_sts(STS_CREDENTIALS)

    session = AwsSession(region="us-east-1", credentials=creds)
    session.client("s3")
    session.client("s3")

    boto_session.assert_called_once_with(
        aws_access_key_id="ASIAEXAMPLE",
        aws_secret_access_key="secret-value",
        aws_session_token="token",
        region_name="us-east-1",
    )
    # clients are cached per service
    boto_session.return_value.client.assert_called_once_with("s3")


def test_open_session_skip_assume_role_uses_caller_credentials(mocker):
    assume = mocker.patch.object(CredentialBroker, "assume")

    session = open_session("us-east-1", "Some-Role", skip_assume_role=True)

    assert session.credentials is None
    assume.assert_not_called()


def test_role_names():
    assert prefix_from_cluster("shop-cluster") == "shop"
    assert prefix_from_cluster("shop") == "shop"
    assert role_name_for_prefix("shop") == "shop-Deployment-Role"
