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

import pytest

from transform_deploy.platform.protocols import (
    ClientFactory,
    DeploymentKind,
    DeploymentTarget,
    InvocationStatus,
    StackOutcome,
)


@pytest.mark.parametrize(
    "status, outcome",
    [
        ("CREATE_IN_PROGRESS", StackOutcome.IN_PROGRESS),
        ("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS", StackOutcome.IN_PROGRESS),
        ("CREATE_COMPLETE", StackOutcome.SUCCEEDED),
        ("UPDATE_COMPLETE", StackOutcome.SUCCEEDED),
        ("CREATE_FAILED", StackOutcome.FAILED),
        ("ROLLBACK_COMPLETE", StackOutcome.FAILED),
        ("UPDATE_ROLLBACK_COMPLETE", StackOutcome.FAILED),
        ("ROLLBACK_IN_PROGRESS", StackOutcome.FAILED),
    ],
)
def test_stack_outcome_classify(status, outcome):
    assert StackOutcome.classify(status) is outcome


def test_invocation_status_parse_and_activity():
    assert InvocationStatus.parse("InProgress") is InvocationStatus.IN_PROGRESS
    assert InvocationStatus.parse("Delayed").is_active
    assert not InvocationStatus.parse("Success").is_active
    assert not InvocationStatus.parse("TimedOut").is_active
    # unknown statuses count as failures
    assert InvocationStatus.parse("Exploded") is InvocationStatus.FAILED
    assert InvocationStatus.parse(None) is InvocationStatus.FAILED


def test_deployment_kind_from_value():
    assert DeploymentKind("ec2") is DeploymentKind.EC2
    with pytest.raises(ValueError):
        DeploymentKind("lambda")


def test_deployment_target_validation_and_label():
    assert DeploymentTarget(DeploymentKind.EC2, instance_id="i-1").label == "ec2:i-1"
    ecs = DeploymentTarget(DeploymentKind.ECS, stack_name="shop-app", cluster_name="c")
    assert ecs.label == "ecs:c/shop-app"

    with pytest.raises(ValueError, match="instance id"):
        DeploymentTarget(DeploymentKind.EC2)
    with pytest.raises(ValueError, match="cluster name"):
        DeploymentTarget(DeploymentKind.ECS, stack_name="shop-app")


def test_fake_sessions_satisfy_client_factory(session_factory):
    assert isinstance(session_factory("eu-west-1"), ClientFactory)
