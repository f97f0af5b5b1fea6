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

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError

from transform_deploy.aws.errors import aws_failure, error_message
from transform_deploy.backends.artifact import ArtifactShipper, ShippedArtifact
from transform_deploy.backends.remote import RemoteExecutor
from transform_deploy.backends.stack import ExistingStackPolicy, StackDeployer, StackResult
from transform_deploy.config.parameters import (
    INFRA_CONFIG_KEYS,
    BootstrapParameters,
    Ec2AppParameters,
    Ec2InfraParameters,
    EcsAppParameters,
    EcsInfraParameters,
)
from transform_deploy.config.settings import get_settings
from transform_deploy.core.state import StateFile
from transform_deploy.exceptions import ConfigurationError, ResourceStateError
from transform_deploy.helpers.logger import setup_logger
from transform_deploy.platform.protocols import (
    ClientFactory,
    CommandInvocation,
    Confirmer,
    DeploymentKind,
    DeploymentTarget,
)
from transform_deploy.remote.script import (
    BUNDLE_DIR,
    ServiceLayout,
    as_ssm_commands,
    render_deploy_script,
    render_env_file,
    render_service_unit,
)

logger = setup_logger(__name__, level=logging.INFO)

BOOTSTRAP_ROLE_OUTPUTS = ("EcsTaskExecutionRoleArn", "EcsTaskRoleArn")
BOOTSTRAP_BUCKET_OUTPUT = "S3BucketName"


def _gitignore_for(workdir: Path) -> Path:
    path = get_settings().gitignore_path
    return path if path.is_absolute() else workdir / path


def bootstrap_outputs(session: ClientFactory) -> dict[str, str]:
    """Outputs of the bootstrap stack, or an empty mapping if it was never deployed."""
    return StackDeployer(session).stack_outputs(get_settings().bootstrap_stack_name)


@dataclass
class InfraDeployment:
    """Provision the infrastructure stack of one target kind and record its outputs.

    Typical flow:
    >>> dep = InfraDeployment(DeploymentKind.ECS, params, session)
    >>> outputs = dep.run()

    An existing EC2 stack is deleted and recreated, an existing ECS stack is
    updated in place; both only after confirmation.
    """

    kind: DeploymentKind
    params: Ec2InfraParameters | EcsInfraParameters
    session: ClientFactory
    confirm: Confirmer | None = None
    assume_yes: bool = False
    workdir: Path = field(default_factory=Path.cwd)

    @property
    def policy(self) -> ExistingStackPolicy:
        if self.kind is DeploymentKind.EC2:
            return ExistingStackPolicy.RECREATE
        return ExistingStackPolicy.UPDATE

    @property
    def state_file(self) -> StateFile:
        return StateFile.for_kind(self.kind, self.workdir)

    def state_payload(self, outputs: Mapping[str, str]) -> dict[str, str]:
        if self.kind is DeploymentKind.EC2:
            instance_id = outputs.get("InstanceId")
            if not instance_id:
                raise ResourceStateError(
                    f"Stack {self.params.stack_name} has no InstanceId output"
                )
            return {"InstanceId": instance_id}
        missing = [k for k in INFRA_CONFIG_KEYS if not outputs.get(k)]
        if missing:
            logger.warning(
                f"Stack {self.params.stack_name} lacks outputs needed by application "
                f"deployments: {', '.join(missing)}"
            )
        return dict(outputs)

    def run(self) -> dict[str, str]:
        deployer = StackDeployer(self.session, confirm=self.confirm)
        result = deployer.deploy(
            self.params.stack_name,
            self.params.template_file,
            self.params.stack_parameters(),
            timeout_s=get_settings().infra_stack_timeout_s,
            policy=self.policy,
            assume_yes=self.assume_yes,
        )
        payload = self.state_payload(result.outputs)
        state = self.state_file
        state.save(payload)
        state.ensure_ignored(_gitignore_for(self.workdir))
        self._report(result)
        return payload

    def _report(self, result: StackResult) -> None:
        if self.kind is DeploymentKind.EC2:
            logger.info(f"Instance [cyan]{result.outputs.get('InstanceId')}[/cyan] is provisioned")
        else:
            logger.info(
                f"Cluster [cyan]{result.outputs.get('EcsClusterName', '?')}[/cyan] is ready "
                f"for application deployments"
            )


@dataclass
class Ec2ApplicationDeployment:
    """Ship a publish directory to an instance and (re)start it as a systemd unit."""

    params: Ec2AppParameters
    session: ClientFactory
    environment: Mapping[str, str] = field(default_factory=dict)

    @property
    def target(self) -> DeploymentTarget:
        return DeploymentTarget(DeploymentKind.EC2, instance_id=self.params.instance_id)

    @property
    def layout(self) -> ServiceLayout:
        return ServiceLayout(self.params.binary_name)

    def bucket(self) -> str:
        if self.params.s3_bucket:
            return self.params.s3_bucket
        bucket = bootstrap_outputs(self.session).get(BOOTSTRAP_BUCKET_OUTPUT)
        if not bucket:
            raise ConfigurationError(
                missing=["S3Bucket"],
                message=(
                    f"No artifact bucket: pass --s3-bucket or deploy the "
                    f"{get_settings().bootstrap_stack_name} stack with bucket creation enabled"
                ),
            )
        return bucket

    def bundle_files(self) -> dict[str, str]:
        """Generated files shipped inside the archive under the bundle directory."""
        layout = self.layout
        files = {
            f"{BUNDLE_DIR}/{layout.unit_name}": render_service_unit(
                layout, port=self.params.app_port, has_env_file=bool(self.environment)
            )
        }
        if self.environment:
            files[f"{BUNDLE_DIR}/{layout.env_file_name}"] = render_env_file(self.environment)
        return files

    def run(self) -> CommandInvocation:
        target = self.target
        logger.info(f"Deploying [bold]{self.params.binary_name}[/bold] to {target.label}")
        executor = RemoteExecutor(self.session)
        executor.ensure_ready(target.instance_id)

        try:
            files = self.bundle_files()
        except ValueError as e:
            raise ConfigurationError(problems=[str(e)]) from e
        shipped: ShippedArtifact = ArtifactShipper(self.session).ship(
            self.params.publish_directory,
            self.params.binary_name,
            self.bucket(),
            self.params.s3_key,
            extra_files=files,
        )

        script = render_deploy_script(
            self.layout,
            artifact_uri=shipped.uri,
            region=self.params.region,
            runtime_version=self.params.runtime_version,
        )
        invocation = executor.run(
            target.instance_id,
            as_ssm_commands(script),
            comment=f"Deploy {self.params.binary_name}",
            check_ready=False,
        )
        logger.info(f"[bold green]{self.params.binary_name} is running on {target.label}")
        return invocation


@dataclass
class EcsApplicationDeployment:
    """Deploy a container image as the ``<application>-app`` stack on the shared cluster."""

    params: EcsAppParameters
    session: ClientFactory
    environment: Mapping[str, str] = field(default_factory=dict)
    confirm: Confirmer | None = None
    assume_yes: bool = False

    @property
    def target(self) -> DeploymentTarget:
        return DeploymentTarget(
            DeploymentKind.ECS,
            stack_name=self.params.stack_name,
            cluster_name=self.params.ecs_cluster_name,
        )

    def role_arns(self) -> tuple[str, str]:
        outputs = bootstrap_outputs(self.session)
        missing = [k for k in BOOTSTRAP_ROLE_OUTPUTS if not outputs.get(k)]
        if missing:
            raise ConfigurationError(
                missing=missing,
                message=(
                    f"Bootstrap stack {get_settings().bootstrap_stack_name} is missing or "
                    f"incomplete; run `transform-deploy bootstrap` first"
                ),
            )
        return outputs["EcsTaskExecutionRoleArn"], outputs["EcsTaskRoleArn"]

    def next_listener_priority(self) -> int:
        """Lowest positive rule priority not yet used on the listener."""
        elbv2 = self.session.client("elbv2")
        used: set[int] = set()
        request = {"ListenerArn": self.params.alb_listener_arn}
        try:
            while True:
                resp = elbv2.describe_rules(**request)
                for rule in resp.get("Rules", []):
                    priority = str(rule.get("Priority", ""))
                    if priority.isdigit():
                        used.add(int(priority))
                marker = resp.get("NextMarker")
                if not marker:
                    break
                request["Marker"] = marker
        except (ClientError, BotoCoreError) as e:
            raise aws_failure(
                f"Reading rules of listener {self.params.alb_listener_arn}",
                e,
                guidance=["Check the Elastic Load Balancing permissions of the deployment role"],
            ) from e
        priority = 1
        while priority in used:
            priority += 1
        return priority

    def listener_priority(self, deployer: StackDeployer) -> int:
        """Keep the priority of an existing application stack, else pick a free one."""
        existing = deployer.describe(self.params.stack_name)
        if existing is not None:
            for p in existing.get("Parameters", []):
                value = str(p.get("ParameterValue", ""))
                if p.get("ParameterKey") == "ListenerRulePriority" and value.isdigit():
                    return int(value)
        return self.next_listener_priority()

    def run(self) -> StackResult:
        target = self.target
        execution_role_arn, task_role_arn = self.role_arns()
        deployer = StackDeployer(self.session, confirm=self.confirm)
        priority = self.listener_priority(deployer)
        logger.info(f"Deploying {self.params.image_uri} to {target.label} (rule priority {priority})")

        result = deployer.deploy(
            self.params.stack_name,
            self.params.template_file,
            self.params.stack_parameters(
                environment=self.environment,
                listener_priority=priority,
                execution_role_arn=execution_role_arn,
                task_role_arn=task_role_arn,
            ),
            timeout_s=get_settings().app_stack_timeout_s,
            policy=ExistingStackPolicy.UPDATE,
            assume_yes=self.assume_yes,
        )
        for key, value in result.outputs.items():
            logger.info(f"{key}: {value}", extra={"markup": False})
        return result


@dataclass
class Bootstrap:
    """One-time account prerequisites: the ECS service-linked role and the IAM role stack."""

    params: BootstrapParameters
    session: ClientFactory
    confirm: Confirmer | None = None
    assume_yes: bool = False

    def ensure_service_linked_role(self) -> bool:
        """Create the ECS service-linked role. Returns False if it already existed."""
        try:
            self.session.client("iam").create_service_linked_role(
                AWSServiceName="ecs.amazonaws.com"
            )
        except (ClientError, BotoCoreError) as e:
            if "has been taken" in error_message(e):
                logger.info("ECS service-linked role already exists")
                return False
            raise aws_failure(
                "Creating the ECS service-linked role",
                e,
                guidance=["Check that the caller may call iam:CreateServiceLinkedRole"],
            ) from e
        logger.info("Created the ECS service-linked role")
        return True

    def run(self) -> dict[str, str]:
        if not self.params.create_s3_bucket:
            logger.warning(
                "Bucket creation is disabled; EC2 deployments will need --s3-bucket"
            )
        self.ensure_service_linked_role()
        result = StackDeployer(self.session, confirm=self.confirm).deploy(
            self.params.stack_name,
            self.params.template_file,
            self.params.stack_parameters(),
            timeout_s=get_settings().infra_stack_timeout_s,
            policy=ExistingStackPolicy.UPDATE,
            capabilities=("CAPABILITY_NAMED_IAM",),
            assume_yes=self.assume_yes,
        )
        return result.outputs
