"""Configuration loading and validation."""

from testfleet.config.loader import (
    ConfigError,
    ConfigErrorCode,
    YamlConfigResolver,
    load_config,
    load_config_from_dict,
    merge_overrides,
    resolve_env_var,
)

__all__ = [
    "ConfigError",
    "ConfigErrorCode",
    "YamlConfigResolver",
    "load_config",
    "load_config_from_dict",
    "merge_overrides",
    "resolve_env_var",
]
