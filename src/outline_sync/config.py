"""Configuration management for the directory to Outline sync."""

from pathlib import Path
from typing import Annotated, Any

import yaml  # type: ignore[import-untyped]
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ConfigError(Exception):
    """Raised when required configuration is missing or malformed."""


class OutlineConfig(BaseSettings):
    """Outline API configuration."""

    model_config = SettingsConfigDict(env_prefix="OUTLINE_")

    base_url: str = Field(description="Outline base URL (e.g., https://wiki.example.org)")
    api_token: str = Field(description="Outline API token")
    admin_email: str = Field(
        default="admin@epfl.ch",
        description="Service admin account, never touched by the sync",
    )
    timeout: float = Field(default=10.0, description="Request timeout in seconds")

    @property
    def api_url(self) -> str:
        """Get the RPC API root."""
        return f"{self.base_url.rstrip('/')}/api"


class DirectoryConfig(BaseSettings):
    """Organizational directory API configuration."""

    model_config = SettingsConfigDict(env_prefix="EPFL_API_")

    url: str = Field(description="Directory API base URL")
    username: str = Field(description="Directory API username")
    password: str = Field(description="Directory API password")
    timeout: float = Field(default=10.0, description="Request timeout in seconds")
    max_groups: int = Field(
        default=200,
        description="Upper bound on groups visited when expanding nested groups",
    )


class SyncConfig(BaseSettings):
    """Reconciliation behavior configuration."""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    directory_admin_group: str = Field(
        description="Directory group whose (nested) members are Outline admins",
    )
    admin_group_name: str = Field(default="admin", description="Reserved Outline admin group")
    allowed_collections: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["welcome"],
        description="Collections never deleted by the sync",
    )
    allowed_units_file: Path | None = Field(
        default=None,
        description="Optional YAML/JSON list of unit names taking part in the sync",
    )
    access_group: str | None = Field(
        default=None,
        description="Directory group kept in line with authorization holders",
    )
    authorization_right_id: str | None = Field(
        default=None,
        description="Directory right whose holders get unit group access",
    )
    collection_permission: str = Field(default="read", description="Default collection permission")
    collection_private: bool = Field(default=False, description="Create collections as private")
    group_permission: str = Field(
        default="read_write",
        description="Permission granted to a unit group on its collection",
    )

    @field_validator("allowed_collections", mode="before")
    @classmethod
    def _split_collections(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, list):
            return [str(v).strip().lower() for v in value if str(v).strip()]
        return value

    @property
    def authorizations_enabled(self) -> bool:
        return bool(self.authorization_right_id)


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    outline: OutlineConfig = Field(default_factory=OutlineConfig)  # type: ignore[arg-type]
    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)  # type: ignore[arg-type]
    sync: SyncConfig = Field(default_factory=SyncConfig)  # type: ignore[arg-type]

    @classmethod
    def from_yaml(cls, path: Path) -> "AppConfig":
        """Load configuration from a YAML file, with the environment filling the gaps."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {path}")

        # Build each section separately so env values merge with the file's keys
        return cls(
            outline=OutlineConfig(**(data.get("outline") or {})),
            directory=DirectoryConfig(**(data.get("directory") or {})),
            sync=SyncConfig(**(data.get("sync") or {})),
        )


def _describe_validation_error(err: ValidationError) -> str:
    missing = []
    invalid = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        if e["type"] == "missing":
            missing.append(f"{err.title}.{loc}" if loc else err.title)
        else:
            invalid.append(f"{loc or err.title}: {e['msg']}")
    parts = []
    if missing:
        parts.append(f"missing required values: {', '.join(missing)}")
    if invalid:
        parts.append(f"invalid values: {'; '.join(invalid)}")
    return "; ".join(parts) or str(err)


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration from environment and optional YAML file.

    Raises:
        ConfigError: If a required value is missing or a value fails validation.
    """
    try:
        if config_path:
            return AppConfig.from_yaml(config_path)
        return AppConfig()
    except ValidationError as e:
        raise ConfigError(_describe_validation_error(e)) from None
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from None
