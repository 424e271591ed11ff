"""Configuration for forge-login.

Settings come from, in increasing priority: model defaults, a JSON or YAML
file, ``FORGE_LOGIN_*`` environment variables (a ``.env`` file in the
working directory is loaded first) and CLI overrides.
"""

from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

if TYPE_CHECKING:
    from forge_login.oauth.providers import OAuthProvider

logger = logging.getLogger(__name__)

ENV_PREFIX = "FORGE_LOGIN_"

PROVIDER_NAMES = ("github", "gitlab", "azure", "bitbucket")


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Config(BaseModel):
    """Configuration for the login subsystem.

    Configuration can be loaded from:
    - Environment variables with FORGE_LOGIN_ prefix
    - Optional .env file in the working directory
    - Optional configuration file passed via CLI
    """

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")

    # Loopback callback server
    callback_host: str = Field(
        default="127.0.0.1", description="Interface the callback server binds to"
    )
    preferred_ports: list[int] = Field(
        default_factory=lambda: [8080, 8081],
        description="Callback ports tried before an ephemeral port",
    )
    bitbucket_port: int = Field(
        default=8085, ge=1, le=65535, description="Fixed Bitbucket callback port"
    )
    callback_timeout: float = Field(
        default=300.0, gt=0, description="Seconds to wait for the browser callback"
    )

    # Token endpoint
    http_timeout: float = Field(
        default=30.0, gt=0, description="Token endpoint request timeout in seconds"
    )

    # Provider defaults
    gitlab_url: str = Field(
        default="https://gitlab.com", description="GitLab instance base URL"
    )
    azure_tenant: str = Field(default="common", description="Entra ID tenant")
    azure_redirect_uri: str = Field(
        default="leviathan://oauth/azure/callback",
        description="Custom-scheme redirect registered for Azure",
    )

    # Provider client credentials
    github_client_id: str | None = Field(default=None, description="GitHub client ID")
    github_client_secret: SecretStr | None = Field(
        default=None, description="GitHub client secret"
    )
    gitlab_client_id: str | None = Field(default=None, description="GitLab client ID")
    gitlab_client_secret: SecretStr | None = Field(
        default=None, description="GitLab client secret"
    )
    azure_client_id: str | None = Field(default=None, description="Azure client ID")
    azure_client_secret: SecretStr | None = Field(
        default=None, description="Azure client secret"
    )
    bitbucket_client_id: str | None = Field(
        default=None, description="Bitbucket client ID"
    )
    bitbucket_client_secret: SecretStr | None = Field(
        default=None, description="Bitbucket client secret"
    )

    model_config = {
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("preferred_ports", mode="before")
    @classmethod
    def split_port_list(cls, v: Any) -> Any:
        """Accept a comma separated port list from the environment."""
        if isinstance(v, str):
            return [int(p) for p in v.split(",") if p.strip()]
        return v

    @field_validator("gitlab_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Drop a trailing slash so endpoint paths join cleanly."""
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_preferred_ports(self) -> Config:
        """Validate preferred callback ports."""
        invalid = [p for p in self.preferred_ports if not 1 <= p <= 65535]
        if invalid:
            msg = f"preferred_ports out of range: {invalid}"
            raise ValueError(msg)
        if len(set(self.preferred_ports)) != len(self.preferred_ports):
            msg = "preferred_ports must not contain duplicates"
            raise ValueError(msg)
        return self

    def client_id_for(self, provider: OAuthProvider | str) -> str | None:
        """Return the configured client ID for a provider."""
        value: str | None = getattr(self, f"{_provider_key(provider)}_client_id")
        return value

    def client_secret_for(self, provider: OAuthProvider | str) -> str | None:
        """Return the configured client secret for a provider, unwrapped."""
        secret: SecretStr | None = getattr(self, f"{_provider_key(provider)}_client_secret")
        return secret.get_secret_value() if secret else None


def _provider_key(provider: OAuthProvider | str) -> str:
    key = str(getattr(provider, "value", provider)).lower()
    if key not in PROVIDER_NAMES:
        msg = f"Unknown OAuth provider: {provider}"
        raise ConfigError(msg)
    return key


def _load_env_config(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """Collect ``FORGE_LOGIN_<FIELD>`` variables for every Config field.

    Values stay strings; pydantic coerces them, and ``preferred_ports``
    accepts a comma separated list.
    """
    return {
        name: os.environ[f"{prefix}{name.upper()}"]
        for name in Config.model_fields
        if f"{prefix}{name.upper()}" in os.environ
    }


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a file (JSON or YAML)."""
    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        try:
            import yaml
        except ImportError:
            msg = "PyYAML is required to load YAML configuration files"
            raise ConfigError(msg) from None
        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    if key.endswith("_client_secret") and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv(find_dotenv(usecwd=True))

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Config(**config_dict)
    except Exception as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
