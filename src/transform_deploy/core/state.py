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

import json
import logging
from pathlib import Path
from typing import Any

from transform_deploy.exceptions import ConfigurationError
from transform_deploy.helpers.logger import setup_logger
from transform_deploy.platform.protocols import DeploymentKind

logger = setup_logger(__name__, level=logging.INFO)

STATE_FILE_NAMES = {
    DeploymentKind.EC2: "instance_id_from_infra_deployment.config",
    DeploymentKind.ECS: "application_infrastructure.config",
}


def flatten_outputs(raw: Any) -> dict[str, str]:
    """Accept a flat mapping or a CloudFormation ``[{OutputKey, OutputValue}]`` list."""
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        out: dict[str, str] = {}
        for item in raw:
            if isinstance(item, dict) and "OutputKey" in item:
                out[item["OutputKey"]] = str(item.get("OutputValue", ""))
        return out
    raise ValueError(f"Unsupported state payload of type {type(raw).__name__}")


class StateFile:
    """Local JSON file carrying identifiers from an infrastructure run to later runs.

    There is no locking: concurrent runs against one workspace overwrite each other.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def for_kind(cls, kind: DeploymentKind, directory: Path | None = None) -> "StateFile":
        return cls((directory or Path.cwd()) / STATE_FILE_NAMES[kind])

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> dict[str, str]:
        if not self.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
            return flatten_outputs(raw)
        except ValueError as e:
            raise ConfigurationError(message=f"State file {self.path} is not valid JSON: {e}") from e

    def save(self, data: dict[str, str]) -> None:
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")
        logger.info(f"Wrote infrastructure details to [cyan]{self.path}[/cyan]")

    def ensure_ignored(self, gitignore: Path) -> bool:
        """Append this file's name to ``gitignore`` unless listed. Returns True if appended."""
        entry = self.path.name
        gitignore = Path(gitignore)
        if gitignore.is_file():
            content = gitignore.read_text()
            if entry in (line.strip() for line in content.splitlines()):
                return False
            prefix = "" if not content or content.endswith("\n") else "\n"
            with gitignore.open("a") as fh:
                fh.write(f"{prefix}{entry}\n")
        else:
            gitignore.write_text(f"{entry}\n")
        logger.debug(f"Added {entry} to {gitignore}")
        return True
