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

from collections.abc import Callable, Collection, Sequence
import logging
from typing import TypeVar

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from transform_deploy.exceptions import (
    AuthorizationError,
    ResourceStateError,
    RetryExhaustedError,
    TransformDeployError,
)
from transform_deploy.helpers.logger import setup_logger

logger = setup_logger(__name__, level=logging.INFO)

T = TypeVar("T")

ACCESS_DENIED_CODES = frozenset({"AccessDenied", "AccessDeniedException"})

CREDENTIALS_GUIDANCE = (
    "Configure AWS credentials for this shell (aws configure, AWS_PROFILE or AWS_ACCESS_KEY_ID)",
)

_MISSING_CREDENTIALS = (NoCredentialsError, PartialCredentialsError)


def error_code(exc: BaseException) -> str:
    """Best-effort AWS error code of ``exc``.

    ``ClientError`` carries it in its response; wrapper exceptions raised by the
    S3 transfer manager only carry it in their message.
    """
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "") or ""
    cause = exc.__cause__ or exc.__context__
    if isinstance(cause, ClientError):
        return error_code(cause)
    text = str(exc)
    for code in ("NoSuchBucket", "AccessDenied", "InvalidInstanceId", "ThrottlingException"):
        if code in text:
            return code
    return ""


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message", "") or str(exc)
    return str(exc)


def aws_failure(
    operation: str,
    exc: BaseException,
    guidance: Sequence[str] = ("Check the IAM permissions of the deployment role",),
) -> TransformDeployError:
    """Translate a botocore failure into the error taxonomy.

    Missing credentials and access-denied codes become ``AuthorizationError``,
    anything else a ``ResourceStateError``.
    """
    if isinstance(exc, _MISSING_CREDENTIALS):
        return AuthorizationError(f"{operation} failed: {exc}", guidance=list(CREDENTIALS_GUIDANCE))
    code = error_code(exc)
    if code in ACCESS_DENIED_CODES or code == "UnauthorizedOperation":
        return AuthorizationError(
            f"{operation} was denied: {error_message(exc)}", guidance=list(guidance)
        )
    if code:
        return ResourceStateError(f"{operation} failed: {code}: {error_message(exc)}")
    return ResourceStateError(f"{operation} failed: {exc}")


def _log_retry(operation: str, attempts: int) -> Callable[[RetryCallState], None]:
    def log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        code = error_code(exc) if exc else ""
        delay = state.next_action.sleep if state.next_action else 0
        logger.warning(
            f"{operation} attempt {state.attempt_number}/{attempts} failed "
            f"({code or type(exc).__name__}); retrying in {delay:g}s"
        )

    return log


def call_with_retries(
    operation: str,
    fn: Callable[[], T],
    *,
    attempts: int = 5,
    non_retriable: Collection[str] = (),
    retry_on: tuple[type[BaseException], ...] = (ClientError, BotoCoreError),
) -> T:
    """Call ``fn`` up to ``attempts`` times, sleeping 2, 4, 8, … seconds in between.

    Errors whose code is in ``non_retriable`` and missing credentials abort
    immediately and are translated by :func:`aws_failure`.
    """

    def fatal(exc: BaseException) -> bool:
        return isinstance(exc, _MISSING_CREDENTIALS) or error_code(exc) in non_retriable

    def transient(exc: BaseException) -> bool:
        return isinstance(exc, retry_on) and not fatal(exc)

    retrying = Retrying(
        retry=retry_if_exception(transient),
        wait=wait_exponential(multiplier=2),
        stop=stop_after_attempt(attempts),
        before_sleep=_log_retry(operation, attempts),
        reraise=True,
    )
    try:
        return retrying(fn)
    except retry_on as e:
        if not fatal(e):
            raise RetryExhaustedError(operation, attempts, e) from e
        raise aws_failure(operation, e) from e
