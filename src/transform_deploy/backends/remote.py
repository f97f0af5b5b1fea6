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

from collections.abc import Sequence
import logging
import time

from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console

from transform_deploy.aws.errors import aws_failure, call_with_retries, error_code
from transform_deploy.config.settings import get_settings
from transform_deploy.exceptions import (
    AgentOfflineError,
    AuthorizationError,
    InstanceUnavailableError,
    RemoteCommandError,
)
from transform_deploy.helpers.logger import log_block, setup_logger
from transform_deploy.platform.protocols import (
    ClientFactory,
    CommandInvocation,
    InvocationStatus,
)

logger = setup_logger(__name__, level=logging.INFO)

SHELL_DOCUMENT = "AWS-RunShellScript"
DISPATCH_NON_RETRIABLE = ("InvalidInstanceId", "AccessDeniedException", "AccessDenied")

EC2_GUIDANCE = ["Check the EC2 permissions of the deployment role"]
SSM_GUIDANCE = [
    "Check the SSM permissions of the deployment role",
    "Check that the instance profile allows the SSM agent to register",
]

_GONE_STATES = {"terminated", "shutting-down", "stopping", "stopped"}


class RemoteExecutor:
    """Run shell scripts on an EC2 instance through SSM Run Command.

    A run goes through three gates: the instance must exist, its agent must
    report ``Online``, and the dispatched command must finish with ``Success``.
    """

    def __init__(
        self,
        session: ClientFactory,
        *,
        console: Console | None = None,
        poll_interval_s: float | None = None,
        attempts: int | None = None,
    ):
        settings = get_settings()
        self.session = session
        self.console = console or Console()
        self.poll_interval_s = (
            settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        )
        self.attempts = attempts or settings.max_attempts
        self.agent_poll_attempts = settings.agent_poll_attempts
        self.instance_poll_attempts = settings.instance_poll_attempts
        self.command_timeout_s = settings.command_timeout_s

    # --- Gates ------------------------------------------------------------------

    def instance_state(self, instance_id: str) -> str | None:
        """Current EC2 state name, or None when the instance is not (yet) visible."""
        try:
            resp = self.session.client("ec2").describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            if error_code(e).startswith("InvalidInstanceID"):
                return None
            raise aws_failure(f"Describing instance {instance_id}", e, guidance=EC2_GUIDANCE) from e
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance.get("State", {}).get("Name")
        return None

    def wait_instance_exists(self, instance_id: str) -> str:
        """Wait until the instance is running. Terminated or stopped ones fail at once."""
        state: str | None = None
        for attempt in range(1, self.instance_poll_attempts + 1):
            state = self.instance_state(instance_id)
            if state == "running":
                logger.info(f"Instance {instance_id} is running")
                return state
            if state in _GONE_STATES:
                raise InstanceUnavailableError(instance_id, state)
            logger.debug(
                f"Instance {instance_id} state {state or 'not found'} "
                f"({attempt}/{self.instance_poll_attempts})"
            )
            if attempt < self.instance_poll_attempts:
                time.sleep(self.poll_interval_s)
        raise InstanceUnavailableError(instance_id, state)

    def agent_status(self, instance_id: str) -> str | None:
        try:
            resp = self.session.client("ssm").describe_instance_information(
                Filters=[{"Key": "InstanceIds", "Values": [instance_id]}]
            )
        except (ClientError, BotoCoreError) as e:
            failure = aws_failure(f"Checking the SSM agent of {instance_id}", e, guidance=SSM_GUIDANCE)
            if isinstance(failure, AuthorizationError):
                raise failure from e
            logger.warning(f"Agent status check for {instance_id} failed: {e}")
            return None
        info = resp.get("InstanceInformationList", [])
        return info[0].get("PingStatus") if info else None

    def wait_agent_online(self, instance_id: str) -> None:
        with self.console.status(f"[bold green]Waiting for SSM agent on {instance_id}…") as spinner:
            for attempt in range(1, self.agent_poll_attempts + 1):
                ping = self.agent_status(instance_id)
                if ping == "Online":
                    logger.info(f"SSM agent on {instance_id} is online")
                    return
                spinner.update(
                    f"[yellow]SSM agent on {instance_id}: {ping or 'not registered'} "
                    f"({attempt}/{self.agent_poll_attempts})"
                )
                if attempt < self.agent_poll_attempts:
                    time.sleep(self.poll_interval_s)
        raise AgentOfflineError(
            f"SSM agent did not go online on {instance_id} "
            f"after {self.agent_poll_attempts} checks"
        )

    def ensure_ready(self, instance_id: str) -> None:
        """Both gates: the instance is running and its agent is online."""
        self.wait_instance_exists(instance_id)
        self.wait_agent_online(instance_id)

    # --- Commands ---------------------------------------------------------------

    def dispatch(
        self,
        instance_id: str,
        commands: Sequence[str],
        *,
        comment: str = "",
        timeout_s: int | None = None,
    ) -> CommandInvocation:
        ssm = self.session.client("ssm")
        timeout_s = timeout_s or self.command_timeout_s
        params = {
            "InstanceIds": [instance_id],
            "DocumentName": SHELL_DOCUMENT,
            "Parameters": {
                "commands": list(commands),
                "executionTimeout": [str(timeout_s)],
            },
        }
        if comment:
            params["Comment"] = comment[:100]

        resp = call_with_retries(
            f"Sending command to {instance_id}",
            lambda: ssm.send_command(**params),
            attempts=self.attempts,
            non_retriable=DISPATCH_NON_RETRIABLE,
        )
        command_id = resp["Command"]["CommandId"]
        logger.info(f"Command [cyan]{command_id}[/cyan] sent to {instance_id}")
        return CommandInvocation(command_id=command_id, instance_id=instance_id)

    def poll(self, invocation: CommandInvocation) -> CommandInvocation:
        """Refresh ``invocation`` in place from GetCommandInvocation."""
        try:
            resp = self.session.client("ssm").get_command_invocation(
                CommandId=invocation.command_id, InstanceId=invocation.instance_id
            )
        except (ClientError, BotoCoreError) as e:
            # Right after SendCommand the invocation is not registered yet
            if error_code(e) == "InvocationDoesNotExist":
                invocation.status = InvocationStatus.PENDING
                return invocation
            raise aws_failure(
                f"Reading command {invocation.command_id}", e, guidance=SSM_GUIDANCE
            ) from e
        invocation.status = InvocationStatus.parse(resp.get("Status"))
        invocation.stdout = resp.get("StandardOutputContent", "") or ""
        invocation.stderr = resp.get("StandardErrorContent", "") or ""
        invocation.status_details = resp.get("StatusDetails", "") or ""
        return invocation

    def wait_for_command(
        self, invocation: CommandInvocation, *, timeout_s: int | None = None
    ) -> CommandInvocation:
        # Allow queueing on top of the execution timeout given to the agent
        deadline = time.monotonic() + (timeout_s or self.command_timeout_s) + 60
        with self.console.status(f"[bold green]Running command {invocation.command_id}…") as spinner:
            while True:
                self.poll(invocation)
                if not invocation.status.is_active:
                    break
                if time.monotonic() >= deadline:
                    raise RemoteCommandError(
                        invocation.command_id,
                        InvocationStatus.TIMED_OUT.value,
                        invocation.stderr,
                        invocation.stdout,
                    )
                spinner.update(f"[yellow]Command {invocation.command_id}: {invocation.status.value}")
                time.sleep(self.poll_interval_s)

        if invocation.status is not InvocationStatus.SUCCESS:
            log_block(logger, invocation.stdout, level=logging.WARNING)
            log_block(logger, invocation.stderr, level=logging.ERROR)
            raise RemoteCommandError(
                invocation.command_id,
                invocation.status.value,
                invocation.stderr,
                invocation.stdout,
                details=invocation.status_details,
            )
        return invocation

    def run(
        self,
        instance_id: str,
        commands: Sequence[str],
        *,
        comment: str = "",
        timeout_s: int | None = None,
        check_ready: bool = True,
    ) -> CommandInvocation:
        """Dispatch ``commands`` and wait for them; stdout is logged on success.

        With ``check_ready`` the instance and agent gates run first.
        """
        if check_ready:
            self.ensure_ready(instance_id)
        invocation = self.dispatch(instance_id, commands, comment=comment, timeout_s=timeout_s)
        self.wait_for_command(invocation, timeout_s=timeout_s)
        log_block(logger, invocation.stdout)
        return invocation
