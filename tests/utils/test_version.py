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

from importlib.metadata import PackageNotFoundError

from transform_deploy.utils import version as version_mod


def test_installed_distribution_version(monkeypatch):
    monkeypatch.setattr(version_mod, "version", lambda name: "9.9.9")
    assert version_mod.get_version() == "9.9.9"


def test_source_tree_fallback(monkeypatch):
    def not_installed(name):
        raise PackageNotFoundError(name)

    monkeypatch.setattr(version_mod, "version", not_installed)
    monkeypatch.setattr(version_mod, "_source_tree_version", lambda path: f"read:{path.name}")
    assert version_mod.get_version() == "read:pyproject.toml"


def test_source_tree_version_without_pyproject(tmp_path):
    assert version_mod._source_tree_version(tmp_path / "pyproject.toml") == "0.0.0+unknown"


def test_source_tree_version_reads_project_table(tmp_path):
    pyproject = tmp_path / "pyproject.toml"
    pyproject.write_text('[project]\nname = "x"\nversion = "1.4.2"\n')
    assert version_mod._source_tree_version(pyproject) == "1.4.2"
