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

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized environment configuration for transform-deploy.

    Env var naming: TRANSFORM_DEPLOY_<FIELD_NAME> (custom aliases below).
    A .env file in CWD or ~/.transform_deploy/.env is read automatically.
    """

    model_config = SettingsConfigDict(
        env_prefix="TRANSFORM_DEPLOY_",
        env_file=(".env", "~/.transform_deploy/.env"),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # --- General -------------------------------------------------------------
    log_level: str = "INFO"
    home: Path = Field(
        default=Path("~/.transform_deploy").expanduser(),
        description="Path to transform-deploy home directory",
    )
    defaults_file: Path | None = Field(
        default_factory=lambda data: data["home"] / "defaults.yaml",
        alias="TRANSFORM_DEPLOY_DEFAULTS",
        description="Path to YAML with overridable parameter defaults",
    )

    # --- Polling / retries ---------------------------------------------------
    poll_interval_s: float = Field(
        default=5.0, description="Seconds between status polls of stacks, agents and commands"
    )
    max_attempts: int = Field(
        default=5, description="Attempts for retried uploads and remote dispatches"
    )
    agent_poll_attempts: int = Field(
        default=60, description="Heartbeat polls before the SSM agent is declared offline"
    )
    instance_poll_attempts: int = Field(
        default=60, description="Polls while waiting for a new instance to become visible"
    )
    infra_stack_timeout_s: int = Field(
        default=900, description="Wall-clock limit for infrastructure stack operations"
    )
    app_stack_timeout_s: int = Field(
        default=600, description="Wall-clock limit for application stack operations"
    )
    command_timeout_s: int = Field(
        default=600, description="Execution time limit of remote commands"
    )

    # --- Workspace -----------------------------------------------------------
    gitignore_path: Path = Field(
        default=Path(".gitignore"),
        description="Ignore-list that state files are appended to",
    )

    # --- Stacks --------------------------------------------------------------
    provenance_tag_key: str = "CreatedFor"
    provenance_tag_value: str = "AWSTransform"
    bootstrap_stack_name: str = Field(
        default="AWSTransform-Deploy-IAM-Role-Stack",
        description="Stack holding deployment roles and the artifact bucket",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Cached accessor. Call this wherever you need settings.
    Tests can `cache_clear()` before reading to pick up monkeypatched env.
    """
    return Settings()


def reload_settings_cache() -> None:
    get_settings.cache_clear()  # type: ignore[attr-defined]
