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

import base64
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
import re
import shlex

import jinja2

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

# Generated files travel inside the archive under this directory
BUNDLE_DIR = ".deploy"

RUNTIME_DIR = "/usr/share/dotnet"

_BINARY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _shell_quote(value: object) -> str:
    return shlex.quote(str(value))


def _environment() -> jinja2.Environment:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(TEMPLATES_DIR),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
    )
    env.filters["shell_quote"] = _shell_quote
    return env


@dataclass(frozen=True)
class ServiceLayout:
    """Fixed on-host locations of a deployed binary."""

    binary_name: str

    def __post_init__(self):
        if not _BINARY_PATTERN.match(self.binary_name):
            raise ValueError(f"Invalid binary name: {self.binary_name!r}")

    @property
    def deploy_dir(self) -> PurePosixPath:
        return PurePosixPath("/var/www") / self.binary_name

    @property
    def log_dir(self) -> PurePosixPath:
        return PurePosixPath("/var/log") / self.binary_name

    @property
    def stdout_log(self) -> PurePosixPath:
        return self.log_dir / "stdout.log"

    @property
    def stderr_log(self) -> PurePosixPath:
        return self.log_dir / "stderr.log"

    @property
    def executable(self) -> PurePosixPath:
        return self.deploy_dir / self.binary_name

    @property
    def unit_name(self) -> str:
        return f"{self.binary_name}.service"

    @property
    def env_file_name(self) -> str:
        return f"{self.binary_name}.env"

    @property
    def env_file(self) -> PurePosixPath:
        return self.deploy_dir / BUNDLE_DIR / self.env_file_name


def render_service_unit(layout: ServiceLayout, *, port: int, has_env_file: bool) -> str:
    return (
        _environment()
        .get_template("service.unit.j2")
        .render(layout=layout, port=int(port), env_file=has_env_file, runtime_dir=RUNTIME_DIR)
    )


def render_env_file(environment: Mapping[str, str]) -> str:
    """Render ``KEY="value"`` lines in systemd EnvironmentFile syntax."""
    lines = []
    for key, value in sorted(environment.items()):
        if not _ENV_KEY_PATTERN.match(key):
            raise ValueError(f"Invalid environment variable name: {key!r}")
        text = str(value)
        if "\n" in text or "\r" in text:
            raise ValueError(f"Environment variable {key} must not contain newlines")
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        lines.append(f'{key}="{escaped}"')
    return "\n".join(lines) + ("\n" if lines else "")


def render_deploy_script(
    layout: ServiceLayout,
    *,
    artifact_uri: str,
    region: str,
    runtime_version: str,
    settle_seconds: int = 5,
    journal_lines: int = 50,
    tail_lines: int = 50,
) -> str:
    """Idempotent install-and-restart script, ending with a health report."""
    if not artifact_uri.startswith("s3://"):
        raise ValueError(f"Artifact URI must be an s3:// URI, got {artifact_uri!r}")
    return (
        _environment()
        .get_template("deploy_service.sh.j2")
        .render(
            layout=layout,
            artifact_uri=artifact_uri,
            archive_path=f"/tmp/{layout.binary_name}.zip",
            region=region,
            runtime_version=runtime_version,
            runtime_dir=RUNTIME_DIR,
            bundle_dir=BUNDLE_DIR,
            settle_seconds=int(settle_seconds),
            journal_lines=int(journal_lines),
            tail_lines=int(tail_lines),
        )
    )


def render_diagnostics(layout: ServiceLayout, *, journal_lines: int = 50, tail_lines: int = 50) -> str:
    return (
        _environment()
        .get_template("diagnostics.sh.j2")
        .render(layout=layout, journal_lines=int(journal_lines), tail_lines=int(tail_lines))
    )


def render_print_file(path: str, *, tail_lines: int = 200) -> str:
    if not path.startswith("/"):
        raise ValueError(f"Log path must be absolute, got {path!r}")
    return (
        _environment()
        .get_template("print_file.sh.j2")
        .render(path=path, tail_lines=int(tail_lines))
    )


def as_ssm_commands(script: str) -> list[str]:
    """Wrap ``script`` for AWS-RunShellScript, which runs commands with /bin/sh.

    The script travels base64-encoded and is piped into bash, so no quoting of
    its body is needed.
    """
    encoded = base64.b64encode(script.encode()).decode()
    return [f"printf %s {encoded} | base64 -d | bash"]
