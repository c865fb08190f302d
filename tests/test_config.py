"""
Tests for the configuration module.

This test module validates:
- Configuration loading from YAML files
- Environment variable overrides
- Command-line overrides
- Configuration precedence (defaults < YAML < env vars < overrides)
- Pydantic model validation with invalid inputs
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from unittest import mock

import pytest
import yaml
from pydantic import ValidationError

from instctl.config import (
    AppConfig,
    InstallerConfig,
    LoggingConfig,
    PathsConfig,
    ProtocolConfig,
    UpgradeConfig,
    _deep_merge,
    _load_env_config,
    _load_yaml_config,
    _parse_env_value,
    load_config,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Path of a config file inside tmp_path (not yet written)."""
    return tmp_path / "config.yml"


@pytest.fixture
def sample_yaml_config() -> dict[str, Any]:
    """Sample YAML configuration for testing."""
    return {
        "logging": {"level": "info"},
        "paths": {"data_root": "/srv/instctl/data"},
        "upgrade": {"restore_wait_timeout": 600},
        "installer": {"command": ["fetch", "{url}", "{install_dir}"]},
    }


@pytest.fixture(autouse=True)
def _clean_env() -> Any:
    """Run every test without INSTCTL_* variables from the outer environment."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("INSTCTL_")}
    with mock.patch.dict(os.environ, env, clear=True):
        yield


# =============================================================================
# Defaults and Validation
# =============================================================================


class TestDefaultConfiguration:
    """Tests for default configuration values."""

    def test_app_config_defaults(self) -> None:
        config = AppConfig()

        assert config.logging.level == "warning"
        assert config.logging.json_format is False
        assert config.upgrade.restore_wait_timeout == 300.0
        assert config.upgrade.revert_command == "instctl instance revert -I {name!r}"
        assert config.protocol.admin_user == "edgedb"
        assert config.cloud.secret_key is None

    def test_paths_follow_xdg(self, tmp_path: Path) -> None:
        with mock.patch.dict(
            os.environ,
            {"XDG_DATA_HOME": str(tmp_path / "share"), "XDG_CONFIG_HOME": str(tmp_path / "cfg")},
        ):
            paths = PathsConfig()

        assert paths.data_root == str(tmp_path / "share" / "instctl" / "data")
        assert paths.install_root == str(tmp_path / "share" / "instctl" / "portable")
        assert paths.projects_root == str(tmp_path / "cfg" / "instctl" / "projects")
        assert paths.systemd_unit_dir == str(tmp_path / "cfg" / "systemd" / "user")


class TestConfigurationValidation:
    """Tests for configuration validation."""

    @pytest.mark.parametrize(
        "level, expected",
        [("DEBUG", "debug"), ("info", "info"), ("warn", "warning"), ("Error", "error")],
    )
    def test_log_level_normalized(self, level: str, expected: str) -> None:
        assert LoggingConfig(level=level).level == expected

    def test_log_level_invalid(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(level="verbose")

    def test_timeouts_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            UpgradeConfig(restore_wait_timeout=0)

    @pytest.mark.parametrize(
        "command",
        [["cli", "restore", "{database}"], ["cli", "{path"], ["cli", "{}"]],
    )
    def test_protocol_template_placeholders(self, command: list[str]) -> None:
        with pytest.raises(ValidationError):
            ProtocolConfig(restore_command=command)

    def test_installer_template_placeholders(self) -> None:
        assert InstallerConfig(command=["fetch", "{url}", "{sha256}"]).command[1] == "{url}"
        with pytest.raises(ValidationError):
            InstallerConfig(command=["fetch", "{port}"])


# =============================================================================
# YAML Loading
# =============================================================================


class TestYAMLConfigLoading:
    """Tests for YAML configuration loading."""

    def test_load_yaml_config_success(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        temp_config_file.write_text(yaml.dump(sample_yaml_config))

        assert _load_yaml_config(temp_config_file) == sample_yaml_config

    def test_load_yaml_config_file_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            _load_yaml_config(tmp_path / "missing.yml")

    def test_load_yaml_config_empty_file(self, temp_config_file: Path) -> None:
        temp_config_file.write_text("")

        assert _load_yaml_config(temp_config_file) == {}

    def test_load_config_with_yaml_file(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        temp_config_file.write_text(yaml.dump(sample_yaml_config))

        config = load_config(config_path=temp_config_file)

        assert config.logging.level == "info"
        assert config.paths.data_root == "/srv/instctl/data"
        assert config.upgrade.restore_wait_timeout == 600.0
        assert config.installer.command == ["fetch", "{url}", "{install_dir}"]

    def test_invalid_yaml(self, temp_config_file: Path) -> None:
        temp_config_file.write_text("logging: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_config(config_path=temp_config_file)

    def test_missing_default_path_is_ignored(self, tmp_path: Path) -> None:
        with mock.patch("instctl.config.DEFAULT_CONFIG_PATH", tmp_path / "none.yml"):
            config = load_config()

        assert config.logging.level == "warning"


# =============================================================================
# Environment Variables
# =============================================================================


class TestEnvironmentVariableLoading:
    """Tests for environment variable configuration loading."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("true", True),
            ("off", False),
            ("600", 600),
            ("2.5", 2.5),
            ("a, b", ["a", "b"]),
            ("https://api.test", "https://api.test"),
        ],
    )
    def test_parse_env_value(self, raw: str, expected: Any) -> None:
        assert _parse_env_value(raw) == expected

    def test_load_env_config_nested(self) -> None:
        with mock.patch.dict(
            os.environ,
            {
                "INSTCTL_UPGRADE__RESTORE_WAIT_TIMEOUT": "900",
                "INSTCTL_CLOUD__SECRET_KEY": "nebula",
                "OTHER_VAR": "ignored",
            },
        ):
            result = _load_env_config()

        assert result == {
            "upgrade": {"restore_wait_timeout": 900},
            "cloud": {"secret_key": "nebula"},
        }

    def test_custom_prefix(self) -> None:
        with mock.patch.dict(os.environ, {"TEST_LOGGING__LEVEL": "debug"}):
            assert _load_env_config("TEST_") == {"logging": {"level": "debug"}}


# =============================================================================
# Precedence
# =============================================================================


class TestConfigurationPrecedence:
    """Tests for configuration precedence."""

    def test_env_overrides_yaml(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        temp_config_file.write_text(yaml.dump(sample_yaml_config))

        with mock.patch.dict(os.environ, {"INSTCTL_LOGGING__LEVEL": "error"}):
            config = load_config(config_path=str(temp_config_file))

        assert config.logging.level == "error"
        assert config.paths.data_root == "/srv/instctl/data"

    def test_overrides_win(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        temp_config_file.write_text(yaml.dump(sample_yaml_config))

        with mock.patch.dict(os.environ, {"INSTCTL_LOGGING__LEVEL": "error"}):
            config = load_config(
                config_path=temp_config_file,
                overrides={"logging": {"level": "debug"}},
            )

        assert config.logging.level == "debug"
        assert config.upgrade.restore_wait_timeout == 600.0


class TestDeepMerge:
    """Tests for _deep_merge."""

    def test_nested(self) -> None:
        base = {"upgrade": {"stop_timeout": 60, "restore_wait_timeout": 300}}
        override = {"upgrade": {"stop_timeout": 10}}

        assert _deep_merge(base, override) == {
            "upgrade": {"stop_timeout": 10, "restore_wait_timeout": 300}
        }

    def test_does_not_modify_original(self) -> None:
        base = {"a": {"b": 1}}

        _deep_merge(base, {"a": {"b": 2}, "c": 3})

        assert base == {"a": {"b": 1}}
