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

from collections.abc import Iterator
from contextlib import contextmanager
import logging
from pathlib import Path
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
import typer
from typing_extensions import Annotated

from ..aws.credentials import (
    AwsSession,
    open_session,
    prefix_from_cluster,
    role_name_for_prefix,
)
from ..aws.errors import aws_failure
from ..backends.logs import LogFetcher
from ..config.defaults import section_defaults
from ..config.environment import parse_env_pairs, resolve_environment
from ..config.parameters import (
    BOOTSTRAP_FIELDS,
    EC2_APP_FIELDS,
    EC2_INFRA_FIELDS,
    ECS_APP_FIELDS,
    ECS_INFRA_FIELDS,
    LOG_FIELDS,
    BootstrapParameters,
    Ec2AppParameters,
    Ec2InfraParameters,
    EcsAppParameters,
    EcsInfraParameters,
    LogParameters,
    build_parameters,
    parse_kind,
    path_defaults,
)
from ..config.settings import get_settings
from ..core.state import StateFile
from ..deploy.deployment import (
    Bootstrap,
    Ec2ApplicationDeployment,
    EcsApplicationDeployment,
    InfraDeployment,
)
from ..exceptions import (
    AuthorizationError,
    ConfigurationError,
    OperatorDeclined,
    StackDeploymentError,
    TransformDeployError,
)
from ..helpers.logger import set_level, setup_logger
from ..platform.protocols import DeploymentKind
from ..utils.version import get_version

app = typer.Typer(name="transform-deploy CLI", no_args_is_help=True)

console = Console()
logger = setup_logger("transform_deploy.cli", level=logging.INFO, console=console)

DeploymentTypeOpt = Annotated[
    Optional[str],
    typer.Option("--deployment-type", "-t", help="Deployment target: ec2 or ecs."),
]
RegionOpt = Annotated[
    Optional[str], typer.Option("--region", help="AWS region. Defaults to us-east-1.")
]
RoleNameOpt = Annotated[
    Optional[str],
    typer.Option("--role-name", help="IAM role assumed for EC2 deployments."),
]
SkipAssumeRoleOpt = Annotated[
    bool,
    typer.Option(
        "--skip-assume-role",
        help="Use the caller's own credentials instead of assuming the deployment role.",
    ),
]
YesOpt = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Answer yes to confirmation prompts."),
]
TemplateOpt = Annotated[
    Optional[Path], typer.Option("--template-file", help="CloudFormation template file.")
]


def _explicit(**values: Any) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def _log_failure(error: TransformDeployError) -> None:
    logger.error(str(error))
    guidance = getattr(error, "guidance", [])
    if guidance:
        logger.error("Please check:")
    for line in guidance:
        logger.error(line, extra={"markup": False})


@contextmanager
def _reported(ctx: typer.Context) -> Iterator[None]:
    """Map domain errors to log records and exit codes."""
    try:
        yield
    except OperatorDeclined as e:
        logger.info(str(e))
        raise typer.Exit(0)
    except ConfigurationError as e:
        logger.error(str(e))
        typer.echo(ctx.get_help())
        raise typer.Exit(1)
    except AuthorizationError as e:
        _log_failure(e)
        raise typer.Exit(1)
    except StackDeploymentError as e:
        logger.error(str(e))
        if e.suggestion:
            logger.warning(f"Suggested solution: {e.suggestion}", extra={"markup": False})
        raise typer.Exit(1)
    except TransformDeployError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    except (ClientError, BotoCoreError) as e:
        _log_failure(aws_failure("AWS request", e))
        raise typer.Exit(1)


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Enable debug logging.")
    ] = False,
):
    """Provision AWS infrastructure and deploy applications to EC2 or ECS."""
    set_level(logging.DEBUG if verbose else get_settings().log_level)


@app.command("version", short_help="Show the version of the transform-deploy CLI")
def version(short: bool = False):
    v = get_version()
    print(v if short else f"transform-deploy CLI Version: {v}")
    raise typer.Exit()


@app.command("infra", short_help="Create or update the infrastructure stack")
def infra(
    ctx: typer.Context,
    deployment_type: DeploymentTypeOpt = None,
    stack_name: Annotated[Optional[str], typer.Option("--stack-name")] = None,
    region: RegionOpt = None,
    subnet_id: Annotated[Optional[str], typer.Option("--subnet-id", help="EC2 only.")] = None,
    security_group_id: Annotated[
        Optional[str], typer.Option("--security-group-id", help="EC2 only.")
    ] = None,
    instance_profile: Annotated[
        Optional[str], typer.Option("--instance-profile", help="EC2 only.")
    ] = None,
    instance_type: Annotated[
        Optional[str], typer.Option("--instance-type", help="EC2 only.")
    ] = None,
    ami_id: Annotated[Optional[str], typer.Option("--ami-id", help="EC2 only.")] = None,
    target_name: Annotated[
        Optional[str],
        typer.Option("--target-name", help="ECS only. Prefix of the deployment role."),
    ] = None,
    vpc_id: Annotated[Optional[str], typer.Option("--vpc-id", help="ECS only.")] = None,
    public_subnet_ids: Annotated[
        Optional[str], typer.Option("--public-subnet-ids", help="ECS only.")
    ] = None,
    private_subnet_ids: Annotated[
        Optional[str], typer.Option("--private-subnet-ids", help="ECS only.")
    ] = None,
    alb_arn: Annotated[Optional[str], typer.Option("--alb-arn", help="ECS only.")] = None,
    alb_security_group_id: Annotated[
        Optional[str], typer.Option("--alb-security-group-id", help="ECS only.")
    ] = None,
    ecs_cluster_name: Annotated[
        Optional[str], typer.Option("--ecs-cluster-name", help="ECS only.")
    ] = None,
    ecs_security_group_id: Annotated[
        Optional[str], typer.Option("--ecs-security-group-id", help="ECS only.")
    ] = None,
    certificate_arn: Annotated[
        Optional[str], typer.Option("--certificate-arn", help="ECS only.")
    ] = None,
    alb_listener_port: Annotated[
        Optional[int], typer.Option("--alb-listener-port", help="ECS only.")
    ] = None,
    template_file: TemplateOpt = None,
    role_name: RoleNameOpt = None,
    skip_assume_role: SkipAssumeRoleOpt = False,
    yes: YesOpt = False,
):
    """
    Provision the infrastructure a deployment target needs.

    On success the stack outputs are written to a local state file that later
    `deploy` and `logs` runs read.
    """
    with _reported(ctx):
        kind = parse_kind(deployment_type)
        explicit = _explicit(
            stack_name=stack_name,
            region=region,
            subnet_id=subnet_id,
            security_group_id=security_group_id,
            instance_profile=instance_profile,
            instance_type=instance_type,
            ami_id=ami_id,
            target_name=target_name,
            vpc_id=vpc_id,
            public_subnet_ids=public_subnet_ids,
            private_subnet_ids=private_subnet_ids,
            alb_arn=alb_arn,
            alb_security_group_id=alb_security_group_id,
            ecs_cluster_name=ecs_cluster_name,
            ecs_security_group_id=ecs_security_group_id,
            certificate_arn=certificate_arn,
            alb_listener_port=alb_listener_port,
            template_file=template_file,
            role_name=role_name,
        )
        params: Ec2InfraParameters | EcsInfraParameters
        if kind is DeploymentKind.EC2:
            params = build_parameters(
                Ec2InfraParameters,
                EC2_INFRA_FIELDS,
                explicit,
                defaults=path_defaults(kind, EC2_INFRA_FIELDS),
            )
        else:
            params = build_parameters(
                EcsInfraParameters,
                ECS_INFRA_FIELDS,
                explicit,
                defaults=path_defaults(kind, ECS_INFRA_FIELDS),
            )

        session = open_session(params.region, params.role_name, skip_assume_role)
        InfraDeployment(kind, params, session, assume_yes=yes).run()


@app.command("deploy", short_help="Deploy an application to EC2 or ECS")
def deploy(
    ctx: typer.Context,
    deployment_type: DeploymentTypeOpt = None,
    region: RegionOpt = None,
    binary_name: Annotated[
        Optional[str], typer.Option("--binary-name", help="EC2 only. Executable name.")
    ] = None,
    publish_directory: Annotated[
        Optional[Path],
        typer.Option("--publish-directory", help="EC2 only. Build output to ship."),
    ] = None,
    instance_id: Annotated[
        Optional[str],
        typer.Option("--instance-id", help="EC2 only. Defaults to the infra state file."),
    ] = None,
    s3_bucket: Annotated[
        Optional[str],
        typer.Option("--s3-bucket", help="EC2 only. Defaults to the bootstrap bucket."),
    ] = None,
    s3_prefix: Annotated[Optional[str], typer.Option("--s3-prefix", help="EC2 only.")] = None,
    runtime_version: Annotated[
        Optional[str], typer.Option("--runtime-version", help="EC2 only. e.g. 8.0")
    ] = None,
    app_port: Annotated[Optional[int], typer.Option("--app-port", help="EC2 only.")] = None,
    application_name: Annotated[
        Optional[str], typer.Option("--application-name", help="ECS only.")
    ] = None,
    image_uri: Annotated[Optional[str], typer.Option("--image-uri", help="ECS only.")] = None,
    cpu: Annotated[Optional[int], typer.Option("--cpu", help="ECS only.")] = None,
    memory: Annotated[Optional[int], typer.Option("--memory", help="ECS only.")] = None,
    container_port: Annotated[
        Optional[int], typer.Option("--container-port", help="ECS only.")
    ] = None,
    host_header: Annotated[Optional[str], typer.Option("--host-header", help="ECS only.")] = None,
    path_pattern: Annotated[
        Optional[str], typer.Option("--path-pattern", help="ECS only.")
    ] = None,
    cw_log_configuration: Annotated[
        Optional[str], typer.Option("--cw-log-configuration", help="ECS only.")
    ] = None,
    task_count: Annotated[Optional[int], typer.Option("--task-count", help="ECS only.")] = None,
    health_check_path: Annotated[
        Optional[str], typer.Option("--health-check-path", help="ECS only.")
    ] = None,
    template_file: TemplateOpt = None,
    env: Annotated[
        Optional[list[str]],
        typer.Option("--env", "-e", help="KEY=VALUE environment variable. Repeatable."),
    ] = None,
    env_file: Annotated[
        Optional[Path],
        typer.Option("--env-file", help="Environment override file. Defaults to <publish dir>/.env."),
    ] = None,
    role_name: RoleNameOpt = None,
    skip_assume_role: SkipAssumeRoleOpt = False,
    yes: YesOpt = False,
):
    """
    Deploy an application.

    EC2: package the publish directory, upload it to S3 and install it as a
    systemd service on the instance. ECS: deploy the image as an
    `<application-name>-app` stack on the cluster recorded by `infra`.
    """
    with _reported(ctx):
        kind = parse_kind(deployment_type)
        overrides = parse_env_pairs(env or [])
        explicit = _explicit(
            region=region,
            binary_name=binary_name,
            publish_directory=publish_directory,
            instance_id=instance_id,
            s3_bucket=s3_bucket,
            s3_prefix=s3_prefix,
            runtime_version=runtime_version,
            app_port=app_port,
            application_name=application_name,
            image_uri=image_uri,
            cpu=cpu,
            memory=memory,
            container_port=container_port,
            host_header=host_header,
            path_pattern=path_pattern,
            cw_log_configuration=cw_log_configuration,
            task_count=task_count,
            health_check_path=health_check_path,
            template_file=template_file,
            env_file=env_file,
            role_name=role_name,
        )
        state = StateFile.for_kind(kind).load()

        if kind is DeploymentKind.EC2:
            ec2_params = build_parameters(
                Ec2AppParameters,
                EC2_APP_FIELDS,
                explicit,
                state=state,
                defaults=path_defaults(kind, EC2_APP_FIELDS),
            )
            environment = resolve_environment(
                publish_directory=ec2_params.publish_directory,
                env_file=ec2_params.env_file,
                overrides={**(ec2_params.environment or {}), **overrides},
            )
            session = open_session(ec2_params.region, ec2_params.role_name, skip_assume_role)
            Ec2ApplicationDeployment(ec2_params, session, environment).run()
            return

        ecs_params = build_parameters(
            EcsAppParameters,
            ECS_APP_FIELDS,
            explicit,
            state=state,
            defaults=path_defaults(kind, ECS_APP_FIELDS),
        )
        environment = resolve_environment(
            publish_directory=None,
            env_file=ecs_params.env_file,
            overrides={**(ecs_params.environment or {}), **overrides},
        )
        role = role_name_for_prefix(prefix_from_cluster(ecs_params.ecs_cluster_name))
        session = open_session(ecs_params.region, role, skip_assume_role)
        EcsApplicationDeployment(ecs_params, session, environment, assume_yes=yes).run()


@app.command("logs", short_help="Print service diagnostics or a log file from an instance")
def logs(
    ctx: typer.Context,
    instance_id: Annotated[
        Optional[str],
        typer.Option("--instance-id", help="Defaults to the EC2 infra state file."),
    ] = None,
    binary_name: Annotated[
        Optional[str], typer.Option("--binary-name", help="Service to diagnose.")
    ] = None,
    log_path: Annotated[
        Optional[str], typer.Option("--log-path", help="Absolute path of a file to print.")
    ] = None,
    tail: Annotated[int, typer.Option("--tail", help="Lines to print.")] = 200,
    region: RegionOpt = None,
    role_name: RoleNameOpt = None,
    skip_assume_role: SkipAssumeRoleOpt = False,
):
    with _reported(ctx):
        explicit = _explicit(
            instance_id=instance_id,
            binary_name=binary_name,
            log_path=log_path,
            region=region,
            role_name=role_name,
        )
        params = build_parameters(
            LogParameters,
            LOG_FIELDS,
            explicit,
            state=StateFile.for_kind(DeploymentKind.EC2).load(),
            defaults=path_defaults(DeploymentKind.EC2, LOG_FIELDS),
        )
        session = open_session(params.region, params.role_name, skip_assume_role)
        LogFetcher(session, console=console).fetch(params, tail_lines=tail)


@app.command("bootstrap", short_help="Create the deployment roles and artifact bucket")
def bootstrap(
    ctx: typer.Context,
    stack_name: Annotated[Optional[str], typer.Option("--stack-name")] = None,
    region: RegionOpt = None,
    template_file: TemplateOpt = None,
    kms_key_arn: Annotated[
        Optional[str], typer.Option("--kms-key-arn", help="Optional KMS key for the bucket.")
    ] = None,
    disable_bucket_creation: Annotated[
        bool,
        typer.Option("--disable-bucket-creation", help="Do not create the artifact bucket."),
    ] = False,
    yes: YesOpt = False,
):
    """
    One-time account setup, run with the caller's own credentials.

    Ensures the ECS service-linked role exists and deploys the IAM role stack.
    """
    with _reported(ctx):
        explicit = _explicit(
            stack_name=stack_name,
            region=region,
            template_file=template_file,
            kms_key_arn=kms_key_arn,
            create_s3_bucket=not disable_bucket_creation,
        )
        defaults = {
            "stack_name": get_settings().bootstrap_stack_name,
            **section_defaults("bootstrap"),
        }
        params = build_parameters(BootstrapParameters, BOOTSTRAP_FIELDS, explicit, defaults=defaults)
        outputs = Bootstrap(params, AwsSession(region=params.region), assume_yes=yes).run()
        for key, value in outputs.items():
            logger.info(f"{key}: {value}", extra={"markup": False})


if __name__ == "__main__":
    app()
