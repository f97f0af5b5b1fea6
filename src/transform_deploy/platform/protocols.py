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

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class DeploymentKind(str, Enum):
    """Supported deployment targets."""

    EC2 = "ec2"
    ECS = "ecs"


class InvocationStatus(str, Enum):
    """SSM command invocation states, as reported by GetCommandInvocation."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    DELAYED = "Delayed"
    SUCCESS = "Success"
    CANCELLED = "Cancelled"
    CANCELLING = "Cancelling"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"

    @property
    def is_active(self) -> bool:
        return self in {
            InvocationStatus.PENDING,
            InvocationStatus.IN_PROGRESS,
            InvocationStatus.DELAYED,
            InvocationStatus.CANCELLING,
        }

    @classmethod
    def parse(cls, raw: str | None) -> "InvocationStatus":
        try:
            return cls(raw)
        except ValueError:
            # Undocumented states are treated as failures
            return cls.FAILED


class StackOutcome(str, Enum):
    """Coarse classification of a CloudFormation stack status."""

    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @classmethod
    def classify(cls, status: str) -> "StackOutcome":
        if "FAILED" in status or "ROLLBACK" in status:
            return cls.FAILED
        if status.endswith("_COMPLETE"):
            return cls.SUCCEEDED
        return cls.IN_PROGRESS


@dataclass(frozen=True)
class DeploymentTarget:
    """Compute unit a deployment lands on.

    Attributes
    ----------
    kind: DeploymentKind
        ``ec2`` for a single instance, ``ecs`` for a container service.
    instance_id: str | None
        EC2 instance id (``ec2`` only).
    stack_name: str | None
        Application stack name (``ecs`` only).
    cluster_name: str | None
        ECS cluster name (``ecs`` only).
    """

    kind: DeploymentKind
    instance_id: str | None = None
    stack_name: str | None = None
    cluster_name: str | None = None

    def __post_init__(self):
        if self.kind is DeploymentKind.EC2 and not self.instance_id:
            raise ValueError("An ec2 target needs an instance id")
        if self.kind is DeploymentKind.ECS and not (self.stack_name and self.cluster_name):
            raise ValueError("An ecs target needs a stack name and a cluster name")

    @property
    def label(self) -> str:
        if self.kind is DeploymentKind.EC2:
            return f"ec2:{self.instance_id}"
        return f"ecs:{self.cluster_name}/{self.stack_name}"


@dataclass
class CommandInvocation:
    """A remote script run tracked by its command id."""

    command_id: str
    instance_id: str
    status: InvocationStatus = InvocationStatus.PENDING
    stdout: str = ""
    stderr: str = ""
    status_details: str = ""


@runtime_checkable
class ClientFactory(Protocol):
    """Anything able to hand out boto3 clients for a service name."""

    region: str

    def client(self, service: str) -> Any: ...


@runtime_checkable
class Confirmer(Protocol):
    """Asks the operator a yes/no question."""

    def __call__(self, question: str) -> bool: ...
