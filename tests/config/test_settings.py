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

from transform_deploy.config.settings import get_settings, reload_settings_cache


def test_settings_defaults():
    s = get_settings()
    assert s.poll_interval_s == 5.0
    assert s.max_attempts == 5
    assert s.agent_poll_attempts == 60
    assert s.infra_stack_timeout_s == 900
    assert s.app_stack_timeout_s == 600
    assert s.bootstrap_stack_name == "AWSTransform-Deploy-IAM-Role-Stack"
    assert s.defaults_file == s.home / "defaults.yaml"


def test_settings_read_prefixed_environment(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("TRANSFORM_DEPLOY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("TRANSFORM_DEPLOY_DEFAULTS", str(tmp_path / "d.yaml"))
    reload_settings_cache()

    s = get_settings()
    assert s.max_attempts == 3
    assert s.defaults_file == tmp_path / "d.yaml"


def test_get_settings_is_cached(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("TRANSFORM_DEPLOY_POLL_INTERVAL_S", "1")
    assert get_settings() is first

    reload_settings_cache()
    assert get_settings().poll_interval_s == 1.0
