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

"""Parameter resolution for every deployment path.

Each path declares a table of :class:`FieldSpec`. Values are layered as
``static default < defaults.yaml < persisted state < explicit flag`` per field,
every missing required field is collected, and the result is validated by a
pydantic model. Nothing here talks to AWS.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import re
from typing import Annotated, Any, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from transform_deploy.config.defaults import section_defaults
from transform_deploy.exceptions import ConfigurationError
from transform_deploy.helpers.logger import setup_logger
from transform_deploy.platform.protocols import DeploymentKind

logger = setup_logger(__name__, level=logging.INFO)

M = TypeVar("M", bound=BaseModel)

REQUIRED: Any = object()  # sentinel: no default, must be supplied

DEFAULT_REGION = "us-east-1"
DEFAULT_EC2_ROLE_NAME = "AWSTransformDotNET-Infra-Deployment-Role"

INSTANCE_ID_PATTERN = re.compile(r"^i-[0-9a-f]{8}([0-9a-f]{9})?$")
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_REGION_PATTERN = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d$")

ALLOWED_CPU = (256, 512, 1024, 2048, 4096)
ALLOWED_MEMORY = (512, 1024, 2048, 4096, 8192, 16384)


@dataclass(frozen=True)
class FieldSpec:
    """One resolvable parameter.

    ``label`` is the name reported to the operator; ``state_key`` is the key
    looked up in the persisted state file, if the field can come from there.
    """

    name: str
    label: str
    state_key: str | None = None
    default: Any = REQUIRED

    @property
    def required(self) -> bool:
        return self.default is REQUIRED


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


class ParameterResolver:
    """Layer explicit values, persisted state and defaults for a field table."""

    def __init__(self, fields: Sequence[FieldSpec]):
        self.fields = tuple(fields)

    def resolve(
        self,
        explicit: Mapping[str, Any],
        state: Mapping[str, Any] | None = None,
        defaults: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        state = state or {}
        defaults = defaults or {}
        resolved: dict[str, Any] = {}
        missing: list[str] = []

        for spec in self.fields:
            value = explicit.get(spec.name)
            source = "flag"
            if not _present(value) and spec.state_key and _present(state.get(spec.state_key)):
                value, source = state[spec.state_key], "state"
            if not _present(value) and spec.name in defaults:
                value, source = defaults[spec.name], "defaults"
            if not _present(value) and not spec.required:
                value, source = spec.default, "builtin"
            if not _present(value) and spec.required:
                missing.append(spec.label)
                continue
            logger.debug(f"{spec.label} = {value!r} (from {source})")
            resolved[spec.name] = value

        if missing:
            raise ConfigurationError(missing=missing)
        return resolved

    def labels(self) -> dict[str, str]:
        return {spec.name: spec.label for spec in self.fields}


def _problems(exc: ValidationError, labels: Mapping[str, str]) -> list[str]:
    out = []
    for err in exc.errors():
        loc = err.get("loc") or ()
        name = str(loc[0]) if loc else ""
        msg = err.get("msg", "invalid value")
        out.append(f"{labels.get(name, name)}: {msg}" if name else msg)
    return out


def build_parameters(
    model: type[M],
    fields: Sequence[FieldSpec],
    explicit: Mapping[str, Any],
    state: Mapping[str, Any] | None = None,
    defaults: Mapping[str, Any] | None = None,
) -> M:
    """Resolve ``fields`` and validate the result into ``model``.

    Raises ConfigurationError listing every missing field, or every invalid one.
    """
    resolver = ParameterResolver(fields)
    values = resolver.resolve(explicit, state=state, defaults=defaults)
    try:
        return model.model_validate(values)
    except ValidationError as e:
        raise ConfigurationError(problems=_problems(e, resolver.labels())) from e


def parse_kind(value: str | DeploymentKind | None) -> DeploymentKind:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(missing=["--deployment-type"])
    try:
        return DeploymentKind(str(getattr(value, "value", value)).lower())
    except ValueError as e:
        supported = ", ".join(k.value for k in DeploymentKind)
        raise ConfigurationError(
            message=f"Unsupported deployment type: {value}. Currently supported types: {supported}"
        ) from e


def path_defaults(kind: DeploymentKind, fields: Sequence[FieldSpec]) -> dict[str, Any]:
    """defaults.yaml overrides for ``kind``, restricted to the fields of a table."""
    names = {f.name for f in fields}
    return {k: v for k, v in section_defaults(kind.value).items() if k in names}


# --- Field tables -------------------------------------------------------------

EC2_INFRA_FIELDS = (
    FieldSpec("stack_name", "StackName"),
    FieldSpec("region", "Region", default=DEFAULT_REGION),
    FieldSpec("subnet_id", "SubnetId"),
    FieldSpec("security_group_id", "SecurityGroupId"),
    FieldSpec("instance_profile", "InstanceProfile"),
    FieldSpec("instance_type", "InstanceType", default="t3.medium"),
    FieldSpec("ami_id", "AmiId", default=None),
    FieldSpec("template_file", "TemplateFile", default="ec2_infra_template.yml"),
    FieldSpec("role_name", "RoleName", default=DEFAULT_EC2_ROLE_NAME),
)

ECS_INFRA_FIELDS = (
    FieldSpec("stack_name", "StackName"),
    FieldSpec("target_name", "TargetName"),
    FieldSpec("region", "Region", default=DEFAULT_REGION),
    FieldSpec("vpc_id", "VpcId", default=""),
    FieldSpec("public_subnet_ids", "PublicSubnetIds", default=""),
    FieldSpec("private_subnet_ids", "PrivateSubnetIds", default=""),
    FieldSpec("alb_arn", "AlbArn", default=""),
    FieldSpec("alb_security_group_id", "AlbSecurityGroupId", default=""),
    FieldSpec("ecs_cluster_name", "EcsClusterName", default=""),
    FieldSpec("ecs_security_group_id", "EcsSecurityGroupId", default=""),
    FieldSpec("certificate_arn", "CertificateArn", default=""),
    FieldSpec("alb_listener_port", "AlbListenerPort", default=0),
    FieldSpec("template_file", "TemplateFile", default="ecs_infra_template.yml"),
)

EC2_APP_FIELDS = (
    FieldSpec("binary_name", "BinaryName"),
    FieldSpec("publish_directory", "PublishDirectory"),
    FieldSpec("instance_id", "EC2InstanceId", state_key="InstanceId"),
    FieldSpec("region", "Region", default=DEFAULT_REGION),
    FieldSpec("s3_bucket", "S3Bucket", default=None),
    FieldSpec("s3_prefix", "S3Prefix", default="deployments"),
    FieldSpec("runtime_version", "RuntimeVersion", default="8.0"),
    FieldSpec("app_port", "AppPort", default=80),
    FieldSpec("environment", "EnvironmentVariables", default=None),
    FieldSpec("env_file", "EnvFile", default=None),
    FieldSpec("role_name", "RoleName", default=DEFAULT_EC2_ROLE_NAME),
)

INFRA_CONFIG_KEYS = (
    "VpcId",
    "PrivateSubnetIds",
    "AlbListenerArn",
    "EcsClusterName",
    "EcsSecurityGroupId",
)

ECS_APP_FIELDS = (
    FieldSpec("application_name", "ApplicationName"),
    FieldSpec("image_uri", "ImageUri"),
    FieldSpec("region", "Region", default=DEFAULT_REGION),
    FieldSpec("cpu", "Cpu", default=256),
    FieldSpec("memory", "Memory", default=512),
    FieldSpec("container_port", "ContainerPort", default=80),
    FieldSpec("environment", "EnvironmentVariables", default=None),
    FieldSpec("env_file", "EnvFile", default=None),
    FieldSpec("host_header", "HostHeader", default=""),
    FieldSpec("path_pattern", "PathPattern", default="/*"),
    FieldSpec("cw_log_configuration", "CwLogConfiguration", default=""),
    FieldSpec("task_count", "TaskCount", default=1),
    FieldSpec("health_check_path", "HealthCheckPath", default="/"),
    FieldSpec("template_file", "TemplateFile", default="application_deployment.yml"),
    FieldSpec("vpc_id", "VpcId", state_key="VpcId"),
    FieldSpec("private_subnet_ids", "PrivateSubnetIds", state_key="PrivateSubnetIds"),
    FieldSpec("alb_listener_arn", "AlbListenerArn", state_key="AlbListenerArn"),
    FieldSpec("ecs_cluster_name", "EcsClusterName", state_key="EcsClusterName"),
    FieldSpec("ecs_security_group_id", "EcsSecurityGroupId", state_key="EcsSecurityGroupId"),
)

BOOTSTRAP_FIELDS = (
    FieldSpec("stack_name", "StackName", default="AWSTransform-Deploy-IAM-Role-Stack"),
    FieldSpec("region", "Region", default=DEFAULT_REGION),
    FieldSpec("template_file", "TemplateFile", default="iam_roles.yml"),
    FieldSpec("create_s3_bucket", "CreateS3Bucket", default=True),
    FieldSpec("kms_key_arn", "KmsKeyArn", default=""),
)

LOG_FIELDS = (
    FieldSpec("instance_id", "EC2InstanceId", state_key="InstanceId"),
    FieldSpec("region", "Region", default=DEFAULT_REGION),
    FieldSpec("binary_name", "BinaryName", default=None),
    FieldSpec("log_path", "LogPath", default=None),
    FieldSpec("role_name", "RoleName", default=DEFAULT_EC2_ROLE_NAME),
)


# --- Models -------------------------------------------------------------------


def _cfn(key: str, value: Any) -> dict[str, str]:
    return {"ParameterKey": key, "ParameterValue": "" if value is None else str(value)}


class _Parameters(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    region: str = DEFAULT_REGION

    @field_validator("region")
    @classmethod
    def _check_region(cls, v: str) -> str:
        if not _REGION_PATTERN.match(v):
            raise ValueError(f"'{v}' is not an AWS region name")
        return v


def _check_name(v: str) -> str:
    if not _NAME_PATTERN.match(v):
        raise ValueError("only letters, digits, '.', '_' and '-' are allowed")
    return v


def _check_template(v: Path) -> Path:
    if not Path(v).is_file():
        raise ValueError(f"template file {v} not found")
    return Path(v)


ResourceName = Annotated[str, AfterValidator(_check_name)]
TemplatePath = Annotated[Path, AfterValidator(_check_template)]


class Ec2InfraParameters(_Parameters):
    stack_name: ResourceName
    subnet_id: str
    security_group_id: str
    instance_profile: str
    instance_type: str = "t3.medium"
    ami_id: str | None = None
    template_file: TemplatePath
    role_name: str = DEFAULT_EC2_ROLE_NAME

    def stack_parameters(self) -> list[dict[str, str]]:
        params = [
            _cfn("SubnetId", self.subnet_id),
            _cfn("SecurityGroupId", self.security_group_id),
            _cfn("InstanceProfile", self.instance_profile),
            _cfn("InstanceType", self.instance_type),
        ]
        if self.ami_id:
            params.append(_cfn("AmiId", self.ami_id))
        return params


class EcsInfraParameters(_Parameters):
    stack_name: ResourceName
    target_name: ResourceName
    vpc_id: str = ""
    public_subnet_ids: str = ""
    private_subnet_ids: str = ""
    alb_arn: str = ""
    alb_security_group_id: str = ""
    ecs_cluster_name: str = ""
    ecs_security_group_id: str = ""
    certificate_arn: str = ""
    alb_listener_port: int = Field(default=0, ge=0, le=65535)
    template_file: TemplatePath

    @property
    def role_name(self) -> str:
        return f"{self.target_name}-Deployment-Role"

    def stack_parameters(self) -> list[dict[str, str]]:
        return [
            _cfn("TargetName", self.target_name),
            _cfn("VpcId", self.vpc_id),
            _cfn("PublicSubnetIds", self.public_subnet_ids),
            _cfn("PrivateSubnetIds", self.private_subnet_ids),
            _cfn("AlbArn", self.alb_arn),
            _cfn("AlbSecurityGroupId", self.alb_security_group_id),
            _cfn("EcsClusterName", self.ecs_cluster_name),
            _cfn("EcsSecurityGroupId", self.ecs_security_group_id),
            _cfn("CertificateArn", self.certificate_arn),
            _cfn("AlbListenerPort", self.alb_listener_port),
        ]


class Ec2AppParameters(_Parameters):
    binary_name: ResourceName
    publish_directory: Path
    instance_id: str
    s3_bucket: str | None = None
    s3_prefix: str = "deployments"
    runtime_version: str = "8.0"
    app_port: int = Field(default=80, ge=1, le=65535)
    environment: dict[str, str] | None = None
    env_file: Path | None = None
    role_name: str = DEFAULT_EC2_ROLE_NAME

    @field_validator("publish_directory")
    @classmethod
    def _check_publish_directory(cls, v: Path) -> Path:
        if not Path(v).is_dir():
            raise ValueError(f"{v} is not a directory")
        return Path(v)

    @field_validator("instance_id")
    @classmethod
    def _check_instance_id(cls, v: str) -> str:
        if not INSTANCE_ID_PATTERN.match(v):
            raise ValueError(f"'{v}' is not an EC2 instance id")
        return v

    @field_validator("runtime_version")
    @classmethod
    def _check_runtime(cls, v: str) -> str:
        if not re.match(r"^\d+\.\d+$", v):
            raise ValueError("expected a channel such as 8.0")
        return v

    @property
    def s3_key(self) -> str:
        prefix = self.s3_prefix.strip("/")
        return f"{prefix}/{self.binary_name}.zip" if prefix else f"{self.binary_name}.zip"


class EcsAppParameters(_Parameters):
    application_name: ResourceName
    image_uri: str
    cpu: int = 256
    memory: int = 512
    container_port: int = Field(default=80, ge=1, le=65535)
    environment: dict[str, str] | None = None
    env_file: Path | None = None
    host_header: str = ""
    path_pattern: str = "/*"
    cw_log_configuration: str = ""
    task_count: int = Field(default=1, ge=1)
    health_check_path: str = "/"
    template_file: TemplatePath
    vpc_id: str
    private_subnet_ids: str
    alb_listener_arn: str
    ecs_cluster_name: str
    ecs_security_group_id: str

    @field_validator("cpu")
    @classmethod
    def _check_cpu(cls, v: int) -> int:
        if v not in ALLOWED_CPU:
            raise ValueError(f"must be one of: {', '.join(map(str, ALLOWED_CPU))}")
        return v

    @field_validator("memory")
    @classmethod
    def _check_memory(cls, v: int) -> int:
        if v not in ALLOWED_MEMORY:
            raise ValueError(f"must be one of: {', '.join(map(str, ALLOWED_MEMORY))}")
        return v

    @property
    def stack_name(self) -> str:
        return f"{self.application_name}-app"

    def stack_parameters(
        self,
        *,
        environment: Mapping[str, str],
        listener_priority: int,
        execution_role_arn: str,
        task_role_arn: str,
    ) -> list[dict[str, str]]:
        return [
            _cfn("ApplicationName", self.application_name),
            _cfn("VpcId", self.vpc_id),
            _cfn("PrivateSubnetIds", self.private_subnet_ids),
            _cfn("AlbListenerArn", self.alb_listener_arn),
            _cfn("EcsClusterName", self.ecs_cluster_name),
            _cfn("EcsSecurityGroupId", self.ecs_security_group_id),
            _cfn("ContainerImageUri", self.image_uri),
            _cfn("Cpu", self.cpu),
            _cfn("Memory", self.memory),
            _cfn("ContainerPort", self.container_port),
            _cfn("EnvironmentVariables", json.dumps(dict(environment), sort_keys=True)),
            _cfn("HostHeader", self.host_header),
            _cfn("PathPattern", self.path_pattern),
            _cfn("CwLogConfiguration", self.cw_log_configuration),
            _cfn("TaskCount", self.task_count),
            _cfn("HealthCheckPath", self.health_check_path),
            _cfn("ListenerRulePriority", listener_priority),
            _cfn("ExecutionRoleArn", execution_role_arn),
            _cfn("TaskRoleArn", task_role_arn),
        ]


class LogParameters(_Parameters):
    instance_id: str
    binary_name: str | None = None
    log_path: str | None = None
    role_name: str = DEFAULT_EC2_ROLE_NAME

    @field_validator("instance_id")
    @classmethod
    def _check_instance_id(cls, v: str) -> str:
        if not INSTANCE_ID_PATTERN.match(v):
            raise ValueError(f"'{v}' is not an EC2 instance id (expected i-xxxxxxxx)")
        return v

    @field_validator("binary_name")
    @classmethod
    def _check_binary(cls, v: str | None) -> str | None:
        return None if v is None else _check_name(v)

    @field_validator("log_path")
    @classmethod
    def _check_log_path(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("/"):
            raise ValueError("must be an absolute path")
        return v

    @model_validator(mode="after")
    def _check_target(self) -> "LogParameters":
        if not (self.binary_name or self.log_path):
            raise ValueError("either BinaryName or LogPath is required")
        return self


class BootstrapParameters(_Parameters):
    stack_name: ResourceName = "AWSTransform-Deploy-IAM-Role-Stack"
    template_file: TemplatePath
    create_s3_bucket: bool = True
    kms_key_arn: str = ""

    @field_validator("kms_key_arn")
    @classmethod
    def _check_kms(cls, v: str) -> str:
        if v and not v.startswith("arn:"):
            raise ValueError("expected a KMS key ARN")
        return v

    def stack_parameters(self) -> list[dict[str, str]]:
        params = [_cfn("CreateS3Bucket", "true" if self.create_s3_bucket else "false")]
        if self.kms_key_arn:
            params.append(_cfn("KmsKeyArn", self.kms_key_arn))
        return params
