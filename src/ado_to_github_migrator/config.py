"""
Configuration loading, validation and initialisation.

The configuration lives in a YAML file with three sections: ``azure_devops``,
``github`` and ``migration``. String values of the form ``${VAR}`` are replaced
with the named environment variable.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigError

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH: Final[str] = "./configs/config.yaml"
DEFAULT_GITHUB_BASE_URL: Final[str] = "https://api.github.com"
DEFAULT_CHECKPOINT_FILE: Final[str] = "./migration_checkpoint.json"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _text_keys(value: Any) -> Any:
    # YAML keys like 1: [...] arrive as ints
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(key): item for key, item in value.items()}
    return value


def _lower_keys(value: Any) -> Any:
    value = _text_keys(value)
    if isinstance(value, dict):
        return {key.lower(): item for key, item in value.items()}
    return value


class WorkItemQuery(_Section):
    """Selects the work items to migrate.

    Explicit ``ids`` win over ``wiql``; with neither, a query is built from the
    type, state and area path filters.
    """

    wiql: str = ""
    ids: list[int] = Field(default_factory=list)
    work_item_types: list[str] = Field(default_factory=list)
    states: list[str] = Field(default_factory=list)
    area_paths: list[str] = Field(default_factory=list)


class AzureDevOpsConfig(_Section):
    organization_url: str = ""
    personal_access_token: str = ""
    project: str = ""
    query: WorkItemQuery = Field(default_factory=WorkItemQuery)

    @field_validator("query", mode="before")
    @classmethod
    def empty_query(cls, v: Any) -> Any:
        return {} if v is None else v


class GitHubConfig(_Section):
    token: str = ""
    app_certificate_path: str = ""
    app_id: int = 0
    installation_id: int = 0
    owner: str = ""
    repository: str = ""
    base_url: str = DEFAULT_GITHUB_BASE_URL

    @model_validator(mode="after")
    def check_app_credentials(self) -> GitHubConfig:
        """An app certificate needs both the app and the installation id."""
        if self.uses_app_auth and (not self.app_id or not self.installation_id):
            msg = "github.app_id and github.installation_id are required when using app_certificate_path"
            raise ValueError(msg)
        return self

    @property
    def repo_path(self) -> str:
        return f"{self.owner}/{self.repository}"

    @property
    def uses_app_auth(self) -> bool:
        return bool(self.app_certificate_path)


class FieldMappingConfig(_Section):
    """Tables and switches consumed by the field mapper.

    ``type_mapping`` is keyed by lower-cased work item type, ``priority_mapping``
    by the priority value as text.
    """

    state_mapping: dict[str, str] = Field(default_factory=dict)
    type_mapping: dict[str, list[str]] = Field(default_factory=dict)
    priority_mapping: dict[str, list[str]] = Field(default_factory=dict)
    include_severity_label: bool = False
    include_area_path_label: bool = False
    time_zone: str = "UTC"

    @field_validator("state_mapping", "priority_mapping", mode="before")
    @classmethod
    def stringify_keys(cls, v: Any) -> Any:
        return _text_keys(v)

    @field_validator("type_mapping", mode="before")
    @classmethod
    def lower_type_keys(cls, v: Any) -> Any:
        return _lower_keys(v)


class MigrationConfig(_Section):
    batch_size: int = 50
    dry_run: bool = False
    include_comments: bool = True
    resume_from_checkpoint: bool = False
    checkpoint_file: str = DEFAULT_CHECKPOINT_FILE
    batch_delay: float = Field(default=2.0, ge=0, description="Seconds to wait between batches")
    field_mapping: FieldMappingConfig = Field(default_factory=FieldMappingConfig)
    user_mapping: dict[str, str] = Field(default_factory=dict)

    @field_validator("field_mapping", mode="before")
    @classmethod
    def empty_field_mapping(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("user_mapping", mode="before")
    @classmethod
    def lower_user_keys(cls, v: Any) -> Any:
        return _lower_keys(v)


class Config(_Section):
    azure_devops: AzureDevOpsConfig = Field(default_factory=AzureDevOpsConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)

    @field_validator("azure_devops", "github", "migration", mode="before")
    @classmethod
    def empty_section(cls, v: Any) -> Any:
        return {} if v is None else v


def _expand_env_vars(data: Any) -> Any:
    """Recursively replace ``${VAR}`` strings with environment variable values."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    if isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        var_name = data[2:-1]
        env_value = os.environ.get(var_name)
        if env_value is None:
            msg = f"Environment variable '{var_name}' referenced in configuration is not set"
            raise ConfigError(msg)
        return env_value
    return data


def _describe(error: ValidationError) -> str:
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        problems.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return "; ".join(problems)


def config_from_dict(data: dict[str, Any]) -> Config:
    """Build a Config from parsed YAML, applying defaults for missing values.

    Raises:
        ConfigError: On unknown keys or values of the wrong type
    """
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid configuration: {_describe(e)}"
        raise ConfigError(msg) from e


def load_config(config_path: str | Path | None = None) -> Config:
    """Load and validate the configuration file.

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    logger.info(f"Loading configuration from {path}")

    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as e:
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg) from e
    except (OSError, yaml.YAMLError) as e:
        msg = f"Error reading configuration file {path}: {e}"
        raise ConfigError(msg) from e

    if not raw:
        msg = f"Empty configuration file: {path}"
        raise ConfigError(msg)
    if not isinstance(raw, dict):
        msg = f"Configuration file {path} must contain a mapping"
        raise ConfigError(msg)

    config = config_from_dict(_expand_env_vars(raw))
    validate_config(config)
    return config


def validate_config(config: Config) -> None:
    """Check required settings.

    Credentials are not required here: they may come from the environment or
    the pass store when the clients are built. A non-positive batch size is
    accepted; the engine substitutes its own default.

    Raises:
        ConfigError: On the first problem found
    """
    # Attribute assignments after loading bypass the model validators
    _ = config_from_dict(config.model_dump())
    if not config.azure_devops.organization_url:
        msg = "azure_devops.organization_url is required"
        raise ConfigError(msg)
    if not config.azure_devops.project:
        msg = "azure_devops.project is required"
        raise ConfigError(msg)
    if not config.github.owner:
        msg = "github.owner is required"
        raise ConfigError(msg)
    if not config.github.repository:
        msg = "github.repository is required"
        raise ConfigError(msg)


def default_config() -> Config:
    """Return a starting configuration with placeholder values and example mappings."""
    return Config(
        azure_devops=AzureDevOpsConfig(
            organization_url="https://dev.azure.com/your-organization",
            project="your-project-name",
            query=WorkItemQuery(
                work_item_types=["Bug", "User Story", "Task"],
                states=["New", "Active", "Resolved"],
            ),
        ),
        github=GitHubConfig(
            owner="your-github-username-or-org",
            repository="your-repository-name",
        ),
        migration=MigrationConfig(
            field_mapping=FieldMappingConfig(
                state_mapping={
                    "New": "open",
                    "Active": "open",
                    "Resolved": "open",
                    "Closed": "closed",
                    "Done": "closed",
                },
                type_mapping={
                    "bug": ["bug"],
                    "user story": ["enhancement"],
                    "task": ["task"],
                    "epic": ["epic"],
                },
                priority_mapping={
                    "1": ["priority:critical"],
                    "2": ["priority:high"],
                    "3": ["priority:medium"],
                    "4": ["priority:low"],
                },
                include_severity_label=True,
                include_area_path_label=True,
            ),
        ),
    )


def save_config(config: Config, config_path: str | Path | None = None) -> Path:
    """Write the configuration as YAML, creating the directory if needed."""
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
    return path
