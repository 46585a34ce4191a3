"""Configuration system for deskauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.deskauth] section (project-level)
3. ./deskauth.toml (project-level, explicit)
4. ~/.config/deskauth/config.toml (user-level, overrides project)
5. File named by DESKAUTH_CONFIG_FILE
6. Environment variables (highest priority)

Section environment variables use DESKAUTH_<SECTION>__ prefixes.
Example: DESKAUTH_TIMEOUT__AUTH_FLOW, DESKAUTH_STORE__BACKEND
Provider credentials: DESKAUTH__PROVIDERS__GMAIL__CLIENT_ID
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .exceptions import ConfigurationError
from .types import OAuthConfig


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("deskauth")


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    # Project-level pyproject.toml [tool.deskauth] (lowest file priority)
    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    # Explicit deskauth.toml (project-level)
    deskauth_toml = Path("deskauth.toml")
    if deskauth_toml.exists():
        files.append(deskauth_toml)

    # User-level config (overrides project configs)
    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "deskauth" / "config.toml"
    else:
        user_config = Path("~/.config/deskauth/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    # Environment variable override for config file (highest file priority)
    env_config = os.environ.get("DESKAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config(files: list[Path] | None = None) -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files() if files is None else files:
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        # Handle pyproject.toml [tool.deskauth] section
        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("deskauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
}

_REDACTED = "********"


class _EnvFirstSettings(BaseSettings):
    """Settings whose environment variables override values from TOML files."""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # TOML values arrive as init kwargs
        return env_settings, init_settings, dotenv_settings, file_secret_settings


class TimeoutSettings(_EnvFirstSettings):
    """Timeouts for the browser flow and HTTP requests.

    Environment prefix: DESKAUTH_TIMEOUT__
    Example: DESKAUTH_TIMEOUT__AUTH_FLOW=120
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_TIMEOUT__",
        extra="ignore",
    )

    auth_flow: float = Field(
        default=300.0, ge=1.0, description="Seconds to wait for the browser redirect"
    )
    http: float = Field(default=30.0, ge=0.5, description="Per-request HTTP timeout in seconds")


class RefreshSettings(_EnvFirstSettings):
    """Background refresh settings.

    Environment prefix: DESKAUTH_REFRESH__
    Example: DESKAUTH_REFRESH__LEAD_TIME_SECONDS=120
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_REFRESH__",
        extra="ignore",
    )

    lead_time_seconds: int = Field(
        default=300, ge=0, description="Refresh this many seconds before token expiry"
    )

    @property
    def lead_time_ms(self) -> int:
        """Lead time in milliseconds."""
        return self.lead_time_seconds * 1000


class RetrySettings(_EnvFirstSettings):
    """Retry policy for transient token-endpoint failures.

    Environment prefix: DESKAUTH_RETRY__
    Example: DESKAUTH_RETRY__MAX_ATTEMPTS=5
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_RETRY__",
        extra="ignore",
    )

    max_attempts: int = Field(default=3, ge=1, description="Total attempts per request")
    backoff_initial: float = Field(default=0.5, ge=0.0, description="First backoff delay (s)")
    backoff_max: float = Field(default=8.0, ge=0.0, description="Maximum backoff delay (s)")


class LogSettings(_EnvFirstSettings):
    """Logging settings.

    Environment prefix: DESKAUTH_LOG__
    Example: DESKAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class StoreSettings(_EnvFirstSettings):
    """Token store selection.

    Environment prefix: DESKAUTH_STORE__
    Example: DESKAUTH_STORE__BACKEND=keyring
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_STORE__",
        extra="ignore",
    )

    backend: Literal["memory", "keyring"] = Field(
        default="memory", description="Token storage backend: memory or keyring"
    )
    service_name: str = Field(default="deskauth", description="Keyring service name")


class ProviderCredentials(BaseModel):
    """Client credentials for one provider.

    TOML section: [providers.<name>]
    """

    client_id: str = ""
    client_secret: str = ""
    redirect_port: int | None = Field(default=None, ge=0, le=65535)
    scopes: list[str] = Field(default_factory=list)

    @field_validator("scopes", mode="before")
    @classmethod
    def parse_scopes(cls, v: Any) -> list[str]:
        """Accept space- or comma-separated strings from env vars."""
        if isinstance(v, str):
            return [s for s in v.replace(",", " ").split() if s]
        return v or []


_SECTIONS: dict[str, type[BaseSettings]] = {
    "timeout": TimeoutSettings,
    "refresh": RefreshSettings,
    "retry": RetrySettings,
    "log": LogSettings,
    "store": StoreSettings,
}


class DeskAuthSettings(_EnvFirstSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: DESKAUTH__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.deskauth] section
    3. ./deskauth.toml (project-level)
    4. ~/.config/deskauth/config.toml (user-level, overrides project)
    5. DESKAUTH_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Nested settings
    timeout: TimeoutSettings = Field(default_factory=TimeoutSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    log: LogSettings = Field(default_factory=LogSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    callback_host: str = Field(
        default="127.0.0.1", description="Loopback address the redirect listener binds"
    )
    providers: dict[str, ProviderCredentials] = Field(
        default_factory=dict,
        description="Client credentials keyed by provider profile name",
    )

    # Tracks which files contributed values (for CLI display)
    _sources: ClassVar[list[Path]] = []

    def __init__(self, **data: Any) -> None:
        # Load TOML configuration first
        files = _find_config_files()
        toml_config = _load_toml_config(files)
        DeskAuthSettings._sources = files

        # Merge TOML config with explicit data (explicit takes precedence)
        merged = _deep_merge(toml_config, data)

        # Build sections here so their own DESKAUTH_<SECTION>__ variables
        # still override the file values
        for name, section_cls in _SECTIONS.items():
            if isinstance(merged.get(name), dict):
                merged[name] = section_cls(**merged[name])

        super().__init__(**merged)

    @field_validator("providers", mode="before")
    @classmethod
    def _normalize_provider_names(cls, v: Any) -> Any:
        """Env vars arrive upper- or mixed-case; profile names are lowercase."""
        if isinstance(v, dict):
            return {str(k).lower(): val for k, val in v.items()}
        return v

    def credentials(self, provider: str) -> ProviderCredentials:
        """Credentials for a provider (empty when not configured)."""
        return self.providers.get(provider, ProviderCredentials())

    def oauth_config(self, provider: str) -> OAuthConfig:
        """Build the flow configuration for a provider.

        Raises
        ------
        ConfigurationError
            If no client ID is configured for the provider.
        """
        creds = self.credentials(provider)
        if not creds.client_id:
            msg = (
                f"No client_id configured for provider '{provider}'. "
                f"Set DESKAUTH__PROVIDERS__{provider.upper()}__CLIENT_ID "
                f"or [providers.{provider}] in deskauth.toml"
            )
            raise ConfigurationError(msg, provider=provider)
        return OAuthConfig(
            client_id=creds.client_id,
            client_secret=creds.client_secret or None,
            redirect_port=creds.redirect_port,
            scopes=tuple(creds.scopes),
        )

    @property
    def sources(self) -> list[Path]:
        """Config files that were read, lowest precedence first."""
        return list(self._sources)

    def _dump_redacted(self) -> dict[str, Any]:
        data = self.model_dump(exclude={"providers"})
        data["providers"] = {
            name: {
                **creds.model_dump(exclude=_SENSITIVE_FIELDS),
                **{field: _REDACTED for field in _SENSITIVE_FIELDS if getattr(creds, field)},
            }
            for name, creds in self.providers.items()
        }
        return data

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# deskauth Configuration", "# Generated by: deskauth config --toml", ""]
        data = self._dump_redacted()

        lines.append(f'callback_host = "{self.callback_host}"')
        lines.append("")

        for section_name in ("timeout", "refresh", "retry", "log", "store"):
            lines.append(f"[{section_name}]")
            lines.extend(
                f"{name} = {_toml_value(value)}" for name, value in data[section_name].items()
            )
            lines.append("")

        for provider, values in data["providers"].items():
            lines.append(f"[providers.{provider}]")
            lines.extend(
                f"{name} = {_toml_value(value)}"
                for name, value in values.items()
                if value is not None
            )
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# deskauth Environment Variables",
            "# Generated by: deskauth config --env",
            "",
        ]
        data = self._dump_redacted()

        lines.append(f'export DESKAUTH__CALLBACK_HOST="{self.callback_host}"')
        for section_name in ("timeout", "refresh", "retry", "log", "store"):
            for name, value in data[section_name].items():
                env_name = f"DESKAUTH_{section_name.upper()}__{name.upper()}"
                lines.append(f'export {env_name}="{_env_value(value)}"')

        for provider, values in data["providers"].items():
            for name, value in values.items():
                if value is None:
                    continue
                env_name = f"DESKAUTH__PROVIDERS__{provider.upper()}__{name.upper()}"
                lines.append(f'export {env_name}="{_env_value(value)}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["deskauth Configuration", "=" * 60, ""]
        data = self._dump_redacted()

        show_sections = [
            ("Timeouts", "timeout"),
            ("Refresh", "refresh"),
            ("Retry", "retry"),
            ("Logging", "log"),
            ("Token Store", "store"),
        ]
        lines.append(f"  {'callback_host':20} = {self.callback_host}")
        for display_name, attr_name in show_sections:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in data[attr_name].items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:20} = {value_str}")

        for provider, values in data["providers"].items():
            lines.append(f"\nProvider: {provider}")
            lines.append("-" * 40)
            for field_name, field_value in values.items():
                lines.append(f"  {field_name:20} = {field_value}")

        return "\n".join(lines)


def _toml_value(value: Any) -> str:
    if isinstance(value, list):
        return "[" + ", ".join(f'"{v}"' for v in value) + "]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


def _env_value(value: Any) -> str:
    if isinstance(value, list):
        return " ".join(str(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@lru_cache(maxsize=1)
def get_settings() -> DeskAuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return DeskAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> DeskAuthSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
