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

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "transform_deploy"


def _as_level(level: int | str) -> int:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level!r}")
        return resolved
    return level


def _rich_handler(console: Console, level: int, tracebacks: bool) -> RichHandler:
    return RichHandler(
        level=level,
        console=console,
        rich_tracebacks=tracebacks,
        markup=True,
        show_time=True,
        show_level=True,
        show_path=False,
    )


def setup_logger(
    name: str = ROOT_LOGGER,
    level: int | str = logging.INFO,
    console: Console | None = None,
    to_stderr: bool = False,
) -> logging.Logger:
    """Logger with timestamped, severity-tagged rich output.

    INFO and below go to stdout and WARNING and above to stderr. When stdout is
    not a terminal, or ``to_stderr`` is set, everything goes to stderr so that
    piped output stays clean. Handlers pass every record through; the logger
    level alone decides what is emitted. Calling it again for the same name only
    updates the level.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_as_level(level))
    logger.propagate = False

    if logger.handlers:
        return logger

    stderr_console = Console(stderr=True)
    if to_stderr or not sys.stdout.isatty():
        logger.addHandler(_rich_handler(stderr_console, logging.DEBUG, tracebacks=True))
        return logger

    stdout_handler = _rich_handler(console or Console(), logging.DEBUG, tracebacks=False)
    stdout_handler.addFilter(lambda record: record.levelno <= logging.INFO)
    logger.addHandler(stdout_handler)
    logger.addHandler(_rich_handler(stderr_console, logging.WARNING, tracebacks=True))
    return logger


def set_level(level: int | str, root: str = ROOT_LOGGER) -> None:
    """Apply ``level`` to every logger created under ``root``."""
    level = _as_level(level)
    for name, obj in logging.Logger.manager.loggerDict.items():
        if isinstance(obj, logging.Logger) and (name == root or name.startswith(root + ".")):
            obj.setLevel(level)


def log_block(logger: logging.Logger, text: str, level: int = logging.INFO, prefix: str = "") -> None:
    """Log every non-empty line of ``text`` as its own record."""
    for line in text.splitlines():
        if line.strip():
            logger.log(level, f"{prefix}{line}", extra={"markup": False})
