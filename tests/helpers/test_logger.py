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

import pytest

from transform_deploy.helpers.logger import log_block, set_level, setup_logger


def test_setup_logger_is_idempotent():
    first = setup_logger("transform_deploy.tests.idempotent", level=logging.INFO)
    handlers = list(first.handlers)

    second = setup_logger("transform_deploy.tests.idempotent", level=logging.WARNING)

    assert second is first
    assert second.handlers == handlers
    assert second.level == logging.WARNING
    assert second.propagate is False


def test_setup_logger_accepts_level_names():
    logger = setup_logger("transform_deploy.tests.named", level="warning")
    assert logger.level == logging.WARNING


def test_unknown_level_name_is_rejected():
    with pytest.raises(ValueError, match="loud"):
        set_level("loud")


def test_stderr_only_output_uses_a_single_handler():
    logger = setup_logger("transform_deploy.tests.stderr", level=logging.DEBUG, to_stderr=True)

    (handler,) = logger.handlers
    assert handler.level == logging.DEBUG


def test_set_level_reaches_child_loggers_only():
    child = setup_logger("transform_deploy.tests.child", level=logging.INFO)
    outsider = logging.getLogger("someone_else")
    outsider.setLevel(logging.INFO)

    set_level("debug")

    assert child.level == logging.DEBUG
    assert outsider.level == logging.INFO
    set_level(logging.INFO)


class _Collect(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)


def test_log_block_logs_each_non_empty_line():
    logger = logging.getLogger("transform_deploy.tests.block")
    logger.setLevel(logging.DEBUG)
    handler = _Collect()
    logger.addHandler(handler)
    try:
        log_block(logger, "first\n\n  \nsecond [red]x[/red]\n", level=logging.WARNING, prefix="| ")
    finally:
        logger.removeHandler(handler)

    assert [r.getMessage() for r in handler.records] == ["| first", "| second [red]x[/red]"]
    assert all(r.levelno == logging.WARNING for r in handler.records)
    assert all(r.markup is False for r in handler.records)
