"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from testfleet.config import (
    ConfigError,
    ConfigErrorCode,
    YamlConfigResolver,
    load_config,
    load_config_from_dict,
    merge_overrides,
    resolve_env_var,
)
from testfleet.models.options import GlobalSetupOptions


def minimal_config() -> dict[str, object]:
    """Return minimal valid config dict."""
    return {
        "device": {
            "type": "iOS.Simulator",
            "devices": ["iPhone 15", "iPhone 15 Pro"],
        },
        "behavior": {"init": {"keep_lock_file": False}},
        "session": {"auto_start": True},
        "artifacts": {"root_dir": "artifacts", "plugins": {"log": "all"}},
    }


def test_load_config_from_dict_success() -> None:
    """Test loading valid config from dict."""
    # Given a minimal valid config dict
    data = minimal_config()

    # When loading config
    config = load_config_from_dict(data)

    # Then the device type is normalized and defaults are applied
    assert config.device.type == "ios.simulator"
    assert config.device.platform == "ios"
    assert config.device.allocation_timeout_s == 60.0
    assert config.session.server is None
    assert config.session.server_port == 0
    assert config.logger.level == "INFO"
    assert config.artifacts.logs_enabled is True


def test_load_config_from_dict_missing_device_fails() -> None:
    """Test that a config without a device section is rejected."""
    # Given a config dict without device
    data = minimal_config()
    del data["device"]

    # When loading config
    with pytest.raises(ConfigError) as exc_info:
        load_config_from_dict(data)

    # Then a validation error names the missing field
    assert exc_info.value.code == ConfigErrorCode.VALIDATION_FAILED
    assert "device" in str(exc_info.value)


def test_session_server_must_be_websocket_url() -> None:
    """Test that session.server only accepts ws/wss URLs."""
    # Given a config with an http server address
    data = minimal_config()
    data["session"] = {"server": "http://localhost:8099"}

    # When loading config
    with pytest.raises(ConfigError) as exc_info:
        load_config_from_dict(data)

    # Then validation fails on session.server
    assert "session -> server" in str(exc_info.value)


def test_session_server_port_parsed_from_url() -> None:
    # Given a config with an explicit relay address
    data = minimal_config()
    data["session"] = {"auto_start": True, "server": "ws://localhost:8099"}

    # When loading config
    config = load_config_from_dict(data)

    # Then the requested port is derived from the URL
    assert config.session.server_port == 8099


@pytest.mark.parametrize(
    ("artifacts", "expected"),
    [
        ({}, False),
        ({"root_dir": "out"}, False),
        ({"root_dir": "out", "plugins": {"log": "none"}}, False),
        ({"root_dir": "out", "plugins": {"log": "failing"}}, True),
        ({"root_dir": "out", "plugins": {"log": {"enabled": False}}}, False),
        ({"root_dir": "out", "plugins": {"log": {"enabled": True}}}, True),
        ({"plugins": {"log": "all"}}, False),
    ],
)
def test_logs_enabled_requires_root_dir_and_log_plugin(
    artifacts: dict[str, object], expected: bool
) -> None:
    # Given an artifacts section
    data = minimal_config()
    data["artifacts"] = artifacts

    # When loading config
    config = load_config_from_dict(data)

    # Then log merging is enabled only with a root dir and an active log plugin
    assert config.artifacts.logs_enabled is expected


def test_load_config_from_yaml_file(tmp_path: Path) -> None:
    """Test loading config from YAML file."""
    # Given a YAML config file
    config_file = tmp_path / "testfleet.yaml"
    config_file.write_text(
        """
device:
  type: android.emulator
  devices: [Pixel_API_34]
logger:
  level: debug
  options:
    show_metadata: true
"""
    )

    # When loading config
    config = load_config(config_file)

    # Then values are parsed and normalized
    assert config.device.type == "android.emulator"
    assert config.device.devices == ["Pixel_API_34"]
    assert config.logger.level == "DEBUG"
    assert config.logger.options.show_metadata is True


def test_load_config_applies_overrides(tmp_path: Path) -> None:
    # Given a YAML config file and nested overrides
    config_file = tmp_path / "testfleet.yaml"
    config_file.write_text("device:\n  type: ios.simulator\n  devices: [a]\n")
    overrides = {"device": {"allocation_timeout_s": 5}, "behavior": {"init": {"keep_lock_file": True}}}

    # When loading config with overrides
    config = load_config(config_file, overrides)

    # Then overrides win and untouched keys survive
    assert config.device.devices == ["a"]
    assert config.device.allocation_timeout_s == 5.0
    assert config.behavior.init.keep_lock_file is True


def test_load_config_missing_file(tmp_path: Path) -> None:
    """Test error when config file doesn't exist."""
    # Given a path that does not exist
    missing = tmp_path / "missing.yaml"

    # When loading config
    with pytest.raises(ConfigError) as exc_info:
        load_config(missing)

    # Then the error code identifies the missing file
    assert exc_info.value.code == ConfigErrorCode.FILE_NOT_FOUND
    assert exc_info.value.path == missing


@pytest.mark.parametrize(
    ("content", "code"),
    [
        ("", ConfigErrorCode.EMPTY_FILE),
        ("- a\n- b\n", ConfigErrorCode.ROOT_NOT_MAPPING),
        ("device: [unclosed\n", ConfigErrorCode.YAML_INVALID),
        ("device:\n  devices: []\n", ConfigErrorCode.VALIDATION_FAILED),
    ],
)
def test_load_config_rejects_bad_files(
    tmp_path: Path, content: str, code: ConfigErrorCode
) -> None:
    # Given a malformed config file
    config_file = tmp_path / "bad.yaml"
    config_file.write_text(content)

    # When loading config
    with pytest.raises(ConfigError) as exc_info:
        load_config(config_file)

    # Then the error carries a stable code
    assert exc_info.value.code == code


def test_merge_overrides_does_not_mutate_base() -> None:
    # Given a nested base mapping
    base = {"device": {"type": "ios.simulator", "devices": ["a"]}}

    # When merging overrides
    merged = merge_overrides(base, {"device": {"devices": ["b"]}})

    # Then the result is merged and the base is untouched
    assert merged == {"device": {"type": "ios.simulator", "devices": ["b"]}}
    assert base["device"]["devices"] == ["a"]


def test_resolve_env_var_required_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    # Given an unset environment variable
    monkeypatch.delenv("TESTFLEET_UNSET_VAR", raising=False)

    # When resolving it as required
    with pytest.raises(ConfigError) as exc_info:
        resolve_env_var("TESTFLEET_UNSET_VAR")

    # Then a missing-variable error is raised
    assert exc_info.value.code == ConfigErrorCode.ENV_VAR_MISSING
    assert resolve_env_var("TESTFLEET_UNSET_VAR", required=False) is None


@pytest.mark.asyncio
async def test_yaml_resolver_uses_env_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Given a config path published through the environment
    config_file = tmp_path / "testfleet.yaml"
    config_file.write_text("device:\n  type: ios.simulator\n")
    monkeypatch.setenv("TESTFLEET_CONFIG_PATH", str(config_file))

    # When resolving without an explicit path
    config = await YamlConfigResolver().resolve(GlobalSetupOptions())

    # Then the env path is used
    assert config.device.type == "ios.simulator"


@pytest.mark.asyncio
async def test_yaml_resolver_overrides_only() -> None:
    # Given no path at all but a complete override mapping
    options = GlobalSetupOptions(overrides={"device": {"type": "android.attached"}})

    # When resolving
    config = await YamlConfigResolver().resolve(options)

    # Then the overrides alone form the config
    assert config.device.type == "android.attached"


@pytest.mark.asyncio
async def test_yaml_resolver_without_any_source_fails() -> None:
    # Given no path, no env var, and no overrides
    resolver = YamlConfigResolver()

    # When resolving
    with pytest.raises(ConfigError) as exc_info:
        await resolver.resolve(GlobalSetupOptions())

    # Then the error says the path is missing
    assert exc_info.value.code == ConfigErrorCode.PATH_MISSING
