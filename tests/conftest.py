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

from botocore.exceptions import ClientError
import pytest

from transform_deploy.config.defaults import reload_defaults_cache
from transform_deploy.config.settings import reload_settings_cache


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeSession:
    """Stands in for AwsSession: hands out pre-built fake clients by service name."""

    def __init__(self, region: str = "us-east-1", **clients):
        self.region = region
        self.clients = clients
        self.requested: list[str] = []

    def client(self, service: str):
        self.requested.append(service)
        return self.clients[service]


@pytest.fixture(autouse=True)
def clear_caches_between_tests(monkeypatch, tmp_path):
    monkeypatch.setenv("TRANSFORM_DEPLOY_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("TRANSFORM_DEPLOY_DEFAULTS", raising=False)
    # before each test
    reload_settings_cache()
    reload_defaults_cache()
    yield
    # after each test
    reload_settings_cache()
    reload_defaults_cache()


@pytest.fixture
def sleeps(monkeypatch):
    """Record time.sleep calls instead of sleeping."""
    calls: list[float] = []
    monkeypatch.setattr("time.sleep", lambda s: calls.append(s))
    return calls


@pytest.fixture
def aws_error():
    """Factory for botocore ClientErrors carrying an AWS error code."""
    return client_error


@pytest.fixture
def session_factory():
    return FakeSession
