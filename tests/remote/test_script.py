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

import pytest

from transform_deploy.remote.script import (
    ServiceLayout,
    as_ssm_commands,
    render_deploy_script,
    render_diagnostics,
    render_env_file,
    render_print_file,
    render_service_unit,
)


@pytest.fixture
def layout() -> ServiceLayout:
    return ServiceLayout("MvcStore")


def test_layout_paths(layout):
    assert str(layout.deploy_dir) == "/var/www/MvcStore"
    assert str(layout.stdout_log) == "/var/log/MvcStore/stdout.log"
    assert str(layout.stderr_log) == "/var/log/MvcStore/stderr.log"
    assert str(layout.executable) == "/var/www/MvcStore/MvcStore"
    assert layout.unit_name == "MvcStore.service"
    assert str(layout.env_file) == "/var/www/MvcStore/.deploy/MvcStore.env"


@pytest.mark.parametrize("name", ["", "../etc", "a b", "app;rm", "-flag"])
def test_layout_rejects_unsafe_binary_names(name):
    with pytest.raises(ValueError):
        ServiceLayout(name)


def test_service_unit_with_env_file(layout):
    unit = render_service_unit(layout, port=8080, has_env_file=True)

    assert "WorkingDirectory=/var/www/MvcStore\n" in unit
    assert "ExecStart=/var/www/MvcStore/MvcStore\n" in unit
    assert "EnvironmentFile=-/var/www/MvcStore/.deploy/MvcStore.env\n" in unit
    assert "Environment=ASPNETCORE_URLS=http://0.0.0.0:8080\n" in unit
    assert "StandardOutput=append:/var/log/MvcStore/stdout.log\n" in unit
    assert "StandardError=append:/var/log/MvcStore/stderr.log\n" in unit
    for line in ("Restart=always", "NoNewPrivileges=true", "ProtectSystem=full", "PrivateTmp=true", "PrivateDevices=true"):
        assert line in unit


def test_service_unit_without_env_file(layout):
    unit = render_service_unit(layout, port=80, has_env_file=False)
    assert "EnvironmentFile" not in unit
    # no blank line left behind by the conditional block
    assert "\n\nEnvironment=DOTNET_ROOT" not in unit


def test_env_file_escaping():
    text = render_env_file({"B": 'say "hi"', "A": "C:\\path", "EMPTY": ""})
    assert text.splitlines() == ['A="C:\\\\path"', 'B="say \\"hi\\""', 'EMPTY=""']


def test_env_file_rejects_bad_keys_and_newlines():
    with pytest.raises(ValueError):
        render_env_file({"1BAD": "x"})
    with pytest.raises(ValueError):
        render_env_file({"GOOD": "two\nlines"})


def test_env_file_empty():
    assert render_env_file({}) == ""


def test_deploy_script_quotes_every_value(layout):
    script = render_deploy_script(
        layout,
        artifact_uri="s3://my bucket/deployments/it's.zip",
        region="us-east-1",
        runtime_version="8.0",
    )

    assert "ARTIFACT_URI='s3://my bucket/deployments/it'\"'\"'s.zip'" in script
    assert "BINARY_NAME=MvcStore" in script
    assert "UNIT_NAME=MvcStore.service" in script
    assert 'mv "${DEPLOY_DIR}/.deploy/${UNIT_NAME}" "/etc/systemd/system/${UNIT_NAME}"' in script
    assert "set -euo pipefail" in script


def test_deploy_script_order(layout):
    script = render_deploy_script(
        layout, artifact_uri="s3://b/k.zip", region="eu-west-1", runtime_version="8.0"
    )
    steps = [
        "dotnet-install.sh --channel",
        'systemctl stop "${UNIT_NAME}"',
        'rm -rf "${DEPLOY_DIR}" "${LOG_DIR}"',
        'aws s3 cp "${ARTIFACT_URI}"',
        "unzip -o -q",
        'chmod +x "${DEPLOY_DIR}/${BINARY_NAME}"',
        "systemctl daemon-reload",
        'systemctl enable "${UNIT_NAME}"',
        'systemctl start "${UNIT_NAME}"',
        'systemctl status "${UNIT_NAME}" --no-pager',
        'journalctl -u "${UNIT_NAME}"',
        'tail -n 50 "${LOG_DIR}/stderr.log"',
    ]
    positions = [script.index(s) for s in steps]
    assert positions == sorted(positions)


def test_deploy_script_requires_s3_uri(layout):
    with pytest.raises(ValueError):
        render_deploy_script(layout, artifact_uri="/tmp/x.zip", region="us-east-1", runtime_version="8.0")


def test_diagnostics_and_print_file(layout):
    diag = render_diagnostics(layout, journal_lines=10, tail_lines=5)
    assert "journalctl -u \"${UNIT_NAME}\" -n 10" in diag
    assert 'tail -n 5 "${LOG_DIR}/stdout.log"' in diag

    printed = render_print_file("/var/log/My App/out.log")
    assert "TARGET_FILE='/var/log/My App/out.log'" in printed
    with pytest.raises(ValueError):
        render_print_file("relative.log")


def test_ssm_commands_carry_script_intact():
    script = "#!/bin/bash\necho \"$HOME\" 'quoted' `tick`\n"
    commands = as_ssm_commands(script)

    assert len(commands) == 1
    assert commands[0].startswith("printf %s ")
    assert commands[0].endswith(" | base64 -d | bash")
    encoded = commands[0].split()[2]
    assert base64.b64decode(encoded).decode() == script
