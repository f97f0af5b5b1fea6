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

"""Custom exceptions."""

from collections.abc import Sequence


class TransformDeployError(Exception):
    """Base class for all custom exceptions.

    Useful to catch all of them.
    """


class ConfigurationError(TransformDeployError):
    """Missing or invalid parameters, detected before any AWS call."""

    def __init__(
        self,
        missing: Sequence[str] = (),
        problems: Sequence[str] = (),
        message: str | None = None,
    ):
        """Raise the ConfigurationError.

        Args:
            missing (Sequence[str]): Labels of every required value that could not be resolved.
            problems (Sequence[str]): Validation problems found on resolved values.
            message (str | None): Free-form message, used when neither list applies.
        """
        self.missing = list(missing)
        self.problems = list(problems)
        parts = []
        if message:
            parts.append(message)
        if self.missing:
            parts.append(f"Missing required parameters: {', '.join(self.missing)}")
        if self.problems:
            parts.append(f"Invalid parameters: {'; '.join(self.problems)}")
        super().__init__(". ".join(parts) or "Invalid configuration")


class AuthorizationError(TransformDeployError):
    """Role assumption failed or AWS denied access."""

    def __init__(self, message: str, guidance: Sequence[str] = ()):
        self.guidance = list(guidance)
        super().__init__(message)


class RetryExhaustedError(TransformDeployError):
    """A retried operation failed on every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


class ResourceStateError(TransformDeployError):
    """A remote resource ended up in a state the run cannot continue from."""


class StackDeploymentError(ResourceStateError):
    """The stack reached a FAILED or ROLLBACK status."""

    def __init__(
        self,
        stack_name: str,
        status: str,
        failures: Sequence[tuple[str, str]] = (),
        suggestion: str | None = None,
    ):
        self.stack_name = stack_name
        self.status = status
        self.failures = list(failures)
        self.suggestion = suggestion
        super().__init__(f"Stack '{stack_name}' deployment failed with status {status}")


class StackTimeoutError(ResourceStateError):
    """The stack did not settle within the allotted wall-clock time."""

    def __init__(self, stack_name: str, timeout_s: float):
        self.stack_name = stack_name
        self.timeout_s = timeout_s
        super().__init__(
            f"Timed out after {int(timeout_s)}s waiting for stack '{stack_name}'; "
            "check the CloudFormation console before re-running"
        )


class InstanceUnavailableError(ResourceStateError):
    """The target instance does not exist or is being removed."""

    def __init__(self, instance_id: str, state: str | None):
        self.instance_id = instance_id
        self.state = state
        super().__init__(f"Instance {instance_id} is not available (state: {state or 'not found'})")


class AgentOfflineError(ResourceStateError):
    """The SSM agent of the target never reported Online."""


class RemoteCommandError(ResourceStateError):
    """A remote command invocation ended in a non-success status."""

    def __init__(
        self,
        command_id: str,
        status: str,
        stderr: str = "",
        stdout: str = "",
        details: str = "",
    ):
        self.command_id = command_id
        self.status = status
        self.stderr = stderr
        self.stdout = stdout
        self.details = details
        reported = f"{status} ({details})" if details and details != status else status
        super().__init__(f"Remote command {command_id} finished with status {reported}")


class OperatorDeclined(TransformDeployError):
    """The operator answered "no" to a confirmation. Not a failure."""
