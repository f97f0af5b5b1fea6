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

from collections.abc import Iterable, Mapping
import logging
from pathlib import Path

from dotenv import dotenv_values

from transform_deploy.exceptions import ConfigurationError
from transform_deploy.helpers.logger import setup_logger

logger = setup_logger(__name__, level=logging.INFO)

OVERRIDE_FILE_NAME = ".env"


def parse_env_pairs(pairs: Iterable[str]) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` flags."""
    out: dict[str, str] = {}
    bad = []
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            bad.append(pair)
            continue
        out[key.strip()] = value
    if bad:
        raise ConfigurationError(problems=[f"--env expects KEY=VALUE, got {b!r}" for b in bad])
    return out


def load_env_file(path: Path) -> dict[str, str]:
    values = dotenv_values(path)
    return {k: v for k, v in values.items() if v is not None}


def resolve_environment(
    *,
    publish_directory: Path | None,
    env_file: Path | None,
    overrides: Mapping[str, str] | None,
) -> dict[str, str]:
    """Environment shared by both deployment targets.

    The override file (``--env-file``, else ``<publish dir>/.env``) comes first,
    explicit ``--env`` values win over it.
    """
    environment: dict[str, str] = {}
    candidate = env_file
    if candidate is None and publish_directory is not None:
        candidate = Path(publish_directory) / OVERRIDE_FILE_NAME
        if not candidate.is_file():
            candidate = None
    if candidate is not None:
        if not Path(candidate).is_file():
            raise ConfigurationError(message=f"Environment file {candidate} not found")
        environment.update(load_env_file(Path(candidate)))
        logger.info(f"Loaded {len(environment)} environment variable(s) from {candidate}")
    environment.update(overrides or {})
    return environment
