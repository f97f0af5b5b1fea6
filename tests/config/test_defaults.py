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

from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

import transform_deploy.config.defaults as mod
from transform_deploy.config.parameters import ECS_APP_FIELDS, path_defaults
from transform_deploy.platform.protocols import DeploymentKind


def _write_yaml(p: Path, data) -> None:
    p.write_text(yaml.safe_dump(data, sort_keys=False))


def _use(mocker, defaults: Path) -> None:
    mocker.patch.object(
        mod, "get_settings", return_value=SimpleNamespace(defaults_file=str(defaults))
    )
    mod.reload_defaults_cache()


# --- _find_defaults_file ------------------------------------------------------


def test_find_defaults_file_prefers_settings_defaults_file(mocker, tmp_path: Path):
    defaults = tmp_path / "defaults.yaml"
    _write_yaml(defaults, {"a": 1})

    mocker.patch.object(
        mod, "get_settings", return_value=SimpleNamespace(defaults_file=str(defaults))
    )
    # Ensure _DEFAULT_FILES does not interfere
    mocker.patch.object(mod, "_DEFAULT_FILES", [])

    assert mod._find_defaults_file() == defaults


def test_find_defaults_file_uses_searchers_when_no_settings_value(mocker, tmp_path: Path):
    defaults = tmp_path / "defaults.yaml"
    _write_yaml(defaults, {"a": 1})

    mocker.patch.object(mod, "get_settings", return_value=SimpleNamespace(defaults_file=None))
    # First searcher returns None, second returns our file
    mocker.patch.object(mod, "_DEFAULT_FILES", [lambda: None, lambda: defaults])

    assert mod._find_defaults_file() == defaults


def test_find_defaults_file_returns_none_when_nothing_found(mocker):
    mocker.patch.object(mod, "get_settings", return_value=SimpleNamespace(defaults_file=None))
    mocker.patch.object(mod, "_DEFAULT_FILES", [lambda: None, lambda: None])
    assert mod._find_defaults_file() is None


# --- _load_defaults (with cache) ---------------------------------------------


def test_load_defaults_reads_yaml_and_caches(mocker, tmp_path: Path):
    defaults = tmp_path / "defaults.yaml"
    _write_yaml(defaults, {"ecs": {"cpu": 512}})
    _use(mocker, defaults)

    assert mod._load_defaults() == {"ecs": {"cpu": 512}}

    # Modify file after first load; should still get cached data
    _write_yaml(defaults, {"ecs": {"cpu": 1024}})
    assert mod._load_defaults() == {"ecs": {"cpu": 512}}

    mod.reload_defaults_cache()
    assert mod._load_defaults() == {"ecs": {"cpu": 1024}}


@pytest.mark.parametrize("payload", [42, ["x", "y"], None])
def test_load_defaults_non_dict_returns_empty(mocker, tmp_path: Path, payload):
    defaults = tmp_path / "defaults.yaml"
    _write_yaml(defaults, payload)
    _use(mocker, defaults)

    assert mod._load_defaults() == {}


# --- lookups ------------------------------------------------------------------


def test_get_by_dots():
    d = {"a": {"b": {"c": 123}}}
    assert mod._get_by_dots(d, "a.b.c") == 123
    assert mod._get_by_dots(d, "a.b.x") is None
    assert mod._get_by_dots(d, "x.y") is None


def test_section_defaults(mocker, tmp_path: Path):
    defaults = tmp_path / "defaults.yaml"
    _write_yaml(defaults, {"ecs": {"cpu": 512, "task_count": 2}, "ec2": "oops"})
    _use(mocker, defaults)

    assert mod.section_defaults("ecs") == {"cpu": 512, "task_count": 2}
    assert mod.section_defaults("ec2") == {}
    assert mod.section_defaults("missing") == {}


def test_path_defaults_only_keeps_fields_of_the_table(mocker, tmp_path: Path):
    defaults = tmp_path / "defaults.yaml"
    _write_yaml(defaults, {"ecs": {"cpu": 1024, "not_a_field": True}})
    _use(mocker, defaults)

    assert path_defaults(DeploymentKind.ECS, ECS_APP_FIELDS) == {"cpu": 1024}
