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

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from pathlib import Path
import time
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.table import Table
import typer

from transform_deploy.aws.errors import aws_failure, error_code, error_message
from transform_deploy.config.settings import get_settings
from transform_deploy.exceptions import (
    ConfigurationError,
    OperatorDeclined,
    StackDeploymentError,
    StackTimeoutError,
)
from transform_deploy.helpers.logger import setup_logger
from transform_deploy.platform.protocols import ClientFactory, Confirmer, StackOutcome

logger = setup_logger(__name__, level=logging.INFO)

# CloudFormation rejects inline template bodies above this size
MAX_TEMPLATE_BODY_BYTES = 51_200

FAILURE_SUGGESTIONS: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("cannot be assumed", "trust"),
        "Check IAM role permissions and trust relationships",
    ),
    (("vpc", "subnet"), "Verify VPC ID exists and is in the correct region"),
    (("ecs cluster", "cluster"), "Verify ECS cluster name is correct and the cluster exists"),
    (("certificate",), "Ensure the ACM certificate ARN is valid and in the correct region"),
)
DEFAULT_SUGGESTION = "Review CloudFormation documentation and check AWS Console for more details"


def suggest_fix(reason: str) -> str:
    """Map a failure reason to a human suggestion by keyword."""
    text = reason.lower()
    for keywords, suggestion in FAILURE_SUGGESTIONS:
        if any(k in text for k in keywords):
            return suggestion
    return DEFAULT_SUGGESTION


class ExistingStackPolicy(str, Enum):
    """What to do, after confirmation, when the stack already exists."""

    UPDATE = "update"
    RECREATE = "recreate"


@dataclass
class StackResult:
    stack_name: str
    status: str
    action: str  # "create" | "update" | "none"
    outputs: dict[str, str] = field(default_factory=dict)


class EventPrinter:
    """Print stack events once per (logical resource, status) pair.

    Events older than ``since`` belong to earlier operations and are skipped.
    """

    def __init__(self, since: datetime):
        self.since = since
        self.seen: set[tuple[str, str]] = set()

    def new_events(self, events: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        fresh = []
        # DescribeStackEvents lists newest first
        for ev in reversed(list(events)):
            ts = ev.get("Timestamp")
            if isinstance(ts, datetime) and ts < self.since:
                continue
            key = (ev.get("LogicalResourceId", ""), ev.get("ResourceStatus", ""))
            if key in self.seen:
                continue
            self.seen.add(key)
            fresh.append(ev)
        return fresh

    def emit(self, events: Iterable[dict[str, Any]]) -> int:
        fresh = self.new_events(events)
        for ev in fresh:
            reason = ev.get("ResourceStatusReason")
            line = (
                f"{ev.get('LogicalResourceId', '?')} "
                f"({ev.get('ResourceType', '?')}): {ev.get('ResourceStatus', '?')}"
            )
            if reason:
                line += f" - {reason}"
            logger.info(line, extra={"markup": False})
        return len(fresh)


def _default_confirm(question: str) -> bool:
    return typer.confirm(question, default=False)


class StackDeployer:
    """Create-or-update a CloudFormation stack and follow it to a terminal status."""

    def __init__(
        self,
        session: ClientFactory,
        *,
        confirm: Confirmer | None = None,
        console: Console | None = None,
        poll_interval_s: float | None = None,
        recent_events: int = 25,
    ):
        settings = get_settings()
        self.session = session
        self.confirm = confirm or _default_confirm
        self.console = console or Console()
        self.poll_interval_s = (
            settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        )
        self.recent_events = recent_events
        self.tags = [{"Key": settings.provenance_tag_key, "Value": settings.provenance_tag_value}]

    @property
    def cfn(self):
        return self.session.client("cloudformation")

    # --- Query ----------------------------------------------------------------

    def describe(self, stack_name: str) -> dict[str, Any] | None:
        """Return the stack description, or None when no such stack exists."""
        try:
            stacks = self.cfn.describe_stacks(StackName=stack_name).get("Stacks", [])
        except (ClientError, BotoCoreError) as e:
            if error_code(e) == "ValidationError" and "does not exist" in error_message(e):
                return None
            raise self._wrap(f"Describing stack {stack_name}", e) from e
        if not stacks or stacks[0].get("StackStatus") == "DELETE_COMPLETE":
            return None
        return stacks[0]

    def stack_outputs(self, stack_name: str) -> dict[str, str]:
        stack = self.describe(stack_name)
        if stack is None:
            return {}
        return self._outputs(stack)

    @staticmethod
    def _outputs(stack: dict[str, Any]) -> dict[str, str]:
        return {o["OutputKey"]: str(o.get("OutputValue", "")) for o in stack.get("Outputs", [])}

    # --- Deploy -----------------------------------------------------------------

    def deploy(
        self,
        stack_name: str,
        template_file: Path,
        parameters: Sequence[dict[str, str]],
        *,
        timeout_s: float,
        policy: ExistingStackPolicy = ExistingStackPolicy.UPDATE,
        capabilities: Sequence[str] = ("CAPABILITY_IAM",),
        assume_yes: bool = False,
    ) -> StackResult:
        """Run one stack operation end to end.

        Raises OperatorDeclined if the operator refuses to touch an existing
        stack, StackTimeoutError if the stack does not settle in ``timeout_s``
        and StackDeploymentError on a FAILED or ROLLBACK status.
        """
        body = self._template_body(template_file)
        existing = self.describe(stack_name)
        action = "create"

        if existing is not None:
            self._show_existing(existing)
            verb = "update" if policy is ExistingStackPolicy.UPDATE else "delete and recreate"
            logger.warning(f"There is already a stack named [bold]{stack_name}[/bold].")
            if not (assume_yes or self.confirm(f"Do you want to {verb} the existing stack?")):
                logger.info(f"Stack {verb} cancelled by user.")
                raise OperatorDeclined(f"Operator declined to {verb} stack {stack_name}")
            if policy is ExistingStackPolicy.RECREATE:
                self.delete(stack_name, timeout_s=timeout_s)
            else:
                action = "update"

        since = datetime.now(timezone.utc) - timedelta(seconds=5)
        request = {
            "StackName": stack_name,
            "TemplateBody": body,
            "Parameters": list(parameters),
            "Capabilities": list(capabilities),
            "Tags": self.tags,
        }

        if action == "update":
            logger.info(f"Updating stack [cyan]{stack_name}[/cyan]")
            try:
                self.cfn.update_stack(**request)
            except (ClientError, BotoCoreError) as e:
                if "No updates are to be performed" in error_message(e):
                    logger.info(f"Stack {stack_name} is already up to date")
                    return StackResult(
                        stack_name, existing["StackStatus"], "none", self._outputs(existing)
                    )
                raise self._wrap(f"Initiating update of stack {stack_name}", e) from e
        else:
            logger.info(f"Creating stack [cyan]{stack_name}[/cyan]")
            try:
                self.cfn.create_stack(**request)
            except (ClientError, BotoCoreError) as e:
                raise self._wrap(f"Initiating creation of stack {stack_name}", e) from e

        status = self.wait(stack_name, since=since, timeout_s=timeout_s)
        if StackOutcome.classify(status) is StackOutcome.FAILED:
            raise self._failure(stack_name, status, since)

        logger.info(f"[bold green]Stack {stack_name} reached {status}")
        return StackResult(stack_name, status, action, self.stack_outputs(stack_name))

    def wait(self, stack_name: str, *, since: datetime, timeout_s: float) -> str:
        """Poll status and events until a terminal status; return that status."""
        printer = EventPrinter(since)
        deadline = time.monotonic() + timeout_s
        with self.console.status(f"[bold green]Waiting for stack {stack_name}…") as spinner:
            while True:
                stack = self.describe(stack_name)
                status = stack["StackStatus"] if stack else "DELETE_COMPLETE"
                printer.emit(self._recent_events(stack_name))
                if StackOutcome.classify(status) is not StackOutcome.IN_PROGRESS:
                    return status
                if time.monotonic() >= deadline:
                    raise StackTimeoutError(stack_name, timeout_s)
                spinner.update(f"[yellow]Stack {stack_name}: {status}")
                time.sleep(self.poll_interval_s)

    def delete(self, stack_name: str, *, timeout_s: float) -> None:
        logger.info(f"Deleting stack [cyan]{stack_name}[/cyan]")
        since = datetime.now(timezone.utc) - timedelta(seconds=5)
        try:
            self.cfn.delete_stack(StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(f"Deleting stack {stack_name}", e) from e
        status = self.wait(stack_name, since=since, timeout_s=timeout_s)
        if status != "DELETE_COMPLETE":
            raise self._failure(stack_name, status, since)

    # --- Diagnostics ------------------------------------------------------------

    def failed_resources(self, stack_name: str, since: datetime | None = None) -> list[tuple[str, str]]:
        """(logical id, reason) of every *_FAILED event, oldest first. Best effort."""
        failures: list[tuple[str, str]] = []
        try:
            paginator = self.cfn.get_paginator("describe_stack_events")
            for page in paginator.paginate(StackName=stack_name):
                for ev in page.get("StackEvents", []):
                    ts = ev.get("Timestamp")
                    if since is not None and isinstance(ts, datetime) and ts < since:
                        continue
                    if ev.get("ResourceStatus", "").endswith("_FAILED"):
                        failures.append(
                            (ev.get("LogicalResourceId", "?"), ev.get("ResourceStatusReason", ""))
                        )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Could not read failure events for {stack_name}: {e}")
        failures.reverse()
        return failures

    def _failure(self, stack_name: str, status: str, since: datetime) -> StackDeploymentError:
        failures = self.failed_resources(stack_name, since)
        for resource, reason in failures:
            logger.error(f"Failed resource: {resource}", extra={"markup": False})
            logger.error(f"Reason: {reason}", extra={"markup": False})
        suggestion = suggest_fix(" ".join(reason for _, reason in failures))
        return StackDeploymentError(stack_name, status, failures, suggestion)

    def _recent_events(self, stack_name: str) -> list[dict[str, Any]]:
        try:
            events = self.cfn.describe_stack_events(StackName=stack_name).get("StackEvents", [])
        except (ClientError, BotoCoreError) as e:
            if "does not exist" in error_message(e):
                return []
            raise self._wrap(f"Reading events of stack {stack_name}", e) from e
        return events[: self.recent_events]

    # --- Helpers -------------------------------------------------------------------

    def _template_body(self, template_file: Path) -> str:
        path = Path(template_file)
        if not path.is_file():
            raise ConfigurationError(message=f"Template file {path} not found")
        body = path.read_text()
        if len(body.encode()) > MAX_TEMPLATE_BODY_BYTES:
            raise ConfigurationError(
                message=f"Template {path} exceeds {MAX_TEMPLATE_BODY_BYTES} bytes"
            )
        return body

    def _show_existing(self, stack: dict[str, Any]) -> None:
        table = Table(title=f"Existing stack {stack.get('StackName', '')}")
        table.add_column("Key")
        table.add_column("Value")
        table.add_row("StackStatus", str(stack.get("StackStatus", "")))
        if stack.get("LastUpdatedTime") or stack.get("CreationTime"):
            table.add_row(
                "LastUpdated", str(stack.get("LastUpdatedTime") or stack.get("CreationTime"))
            )
        for key, value in self._outputs(stack).items():
            table.add_row(key, value)
        self.console.print(table)

    @staticmethod
    def _wrap(operation: str, exc: BaseException) -> Exception:
        return aws_failure(
            operation,
            exc,
            guidance=["Check the CloudFormation permissions of the deployment role"],
        )
