"""
Configuration management for instctl.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/instctl/config.yml or --config path)
3. Environment variables (INSTCTL_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)
"""

from __future__ import annotations

import os
import string
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/instctl/config.yml")


def _xdg_dir(env_name: str, fallback: str) -> Path:
    base = os.environ.get(env_name)
    if base:
        return Path(base) / "instctl"
    return Path.home() / fallback / "instctl"


# =============================================================================
# Logging Configuration
# =============================================================================


def _check_template(template: list[str], placeholders: set[str]) -> list[str]:
    """Reject argv templates with unknown or malformed placeholders."""
    for arg in template:
        try:
            fields = {
                field for _, field, _, _ in string.Formatter().parse(arg) if field is not None
            }
        except ValueError as e:
            raise ValueError(f"Invalid template argument {arg!r}: {e}") from e
        unknown = fields - placeholders
        if unknown:
            raise ValueError(
                f"Unknown placeholder {{{sorted(unknown)[0]}}} in {arg!r}. "
                f"Must be one of: {', '.join(sorted(placeholders))}"
            )
    return template


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of plain text.
    """

    level: str = Field(
        default="warning",
        description="Log level: debug, info, warning, error",
    )
    json_format: bool = Field(
        default=False,
        description="Emit one JSON object per log record",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Paths Configuration
# =============================================================================


class PathsConfig(BaseModel):
    """Filesystem locations used for local instances.

    Attributes:
        data_root: Parent of every instance data directory.
        runstate_root: Parent of per-instance runtime directories.
        projects_root: Directory holding project-to-instance links.
        install_root: Directory where server builds are installed.
        systemd_unit_dir: Directory for generated user unit files.
    """

    data_root: str = Field(
        default_factory=lambda: str(_xdg_dir("XDG_DATA_HOME", ".local/share") / "data"),
        description="Parent directory of instance data directories",
    )
    runstate_root: str = Field(
        default_factory=lambda: str(_xdg_dir("XDG_CACHE_HOME", ".cache") / "run"),
        description="Parent directory of instance runtime directories",
    )
    projects_root: str = Field(
        default_factory=lambda: str(_xdg_dir("XDG_CONFIG_HOME", ".config") / "projects"),
        description="Directory with project-to-instance links",
    )
    install_root: str = Field(
        default_factory=lambda: str(
            _xdg_dir("XDG_DATA_HOME", ".local/share") / "portable"
        ),
        description="Directory where server builds are installed",
    )
    systemd_unit_dir: str = Field(
        default_factory=lambda: str(
            Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
            / "systemd"
            / "user"
        ),
        description="Directory for generated systemd user units",
    )


# =============================================================================
# Collaborator Configuration
# =============================================================================


class CatalogConfig(BaseModel):
    """Package catalog settings.

    Attributes:
        base_url: Base URL serving one ``<channel>.json`` index per channel.
        timeout: HTTP timeout in seconds.
    """

    base_url: str = Field(
        default="https://packages.instctl.dev/catalog",
        description="Base URL of the package catalog",
    )
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")


class InstallerConfig(BaseModel):
    """Package installer settings.

    ``command`` is an argv template; ``{version}``, ``{url}``, ``{sha256}``
    and ``{install_dir}`` are substituted before running it.
    """

    command: list[str] = Field(
        default_factory=lambda: [
            "instctl-install-server",
            "--version",
            "{version}",
            "--url",
            "{url}",
            "--dest",
            "{install_dir}",
        ],
        description="Installer argv template",
    )
    server_binary: str = Field(
        default="bin/edgedb-server",
        description="Server executable path relative to the install directory",
    )
    timeout: float = Field(default=900.0, gt=0, description="Install timeout in seconds")

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        return _check_template(v, {"version", "url", "sha256", "install_dir"})


class ProtocolConfig(BaseModel):
    """Administrative client settings.

    Dump and restore are argv templates; ``{host}``, ``{port}``, ``{user}``,
    ``{path}`` and ``{instance}`` are substituted.
    """

    host: str = Field(default="localhost", description="Server host")
    admin_user: str = Field(default="edgedb", description="Administrative user")
    dump_command: list[str] = Field(
        default_factory=lambda: [
            "edgedb",
            "--host",
            "{host}",
            "--port",
            "{port}",
            "--user",
            "{user}",
            "--tls-security",
            "insecure",
            "dump",
            "--all",
            "--include-secrets",
            "--format=dir",
            "{path}",
        ],
        description="Dump argv template",
    )
    restore_command: list[str] = Field(
        default_factory=lambda: [
            "edgedb",
            "--host",
            "{host}",
            "--port",
            "{port}",
            "--user",
            "{user}",
            "--tls-security",
            "insecure",
            "restore",
            "--all",
            "{path}",
        ],
        description="Restore argv template",
    )
    connect_timeout: float = Field(
        default=10.0, gt=0, description="Single connection attempt timeout"
    )
    command_timeout: float = Field(
        default=3600.0, gt=0, description="Dump/restore command timeout in seconds"
    )

    @field_validator("dump_command", "restore_command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Only connection placeholders can be substituted."""
        return _check_template(v, {"host", "port", "user", "path", "instance"})


class UpgradeConfig(BaseModel):
    """Upgrade behaviour.

    Attributes:
        restore_wait_timeout: Seconds to wait for a freshly installed server.
        stop_timeout: Seconds to wait for a spawned server to exit.
        revert_command: Template of the command printed when revert is needed.
    """

    restore_wait_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds to wait for the new server to accept connections",
    )
    stop_timeout: float = Field(
        default=60.0, gt=0, description="Seconds to wait for a spawned server to exit"
    )
    revert_command: str = Field(
        default="instctl instance revert -I {name!r}",
        description="Operator command printed when an upgrade must be reverted",
    )


class CloudConfig(BaseModel):
    """Cloud control plane settings."""

    api_url: str = Field(
        default="https://api.instctl.cloud/v1",
        description="Cloud REST API base URL",
    )
    secret_key: str | None = Field(
        default=None,
        description="Secret key used as bearer token",
    )
    timeout: float = Field(default=60.0, gt=0, description="HTTP timeout in seconds")


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """Root configuration model for instctl."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    installer: InstallerConfig = Field(default_factory=InstallerConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    cloud: CloudConfig = Field(default_factory=CloudConfig)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = "INSTCTL_") -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    ``INSTCTL_UPGRADE__RESTORE_WAIT_TIMEOUT=600``.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "INSTCTL_",
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Values from the command line, applied last.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
