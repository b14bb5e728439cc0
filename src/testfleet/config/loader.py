"""Configuration loading and validation."""

from __future__ import annotations

import asyncio
import copy
import logging
import os
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from testfleet.errors import ConfigurationError
from testfleet.models.config import Config

if TYPE_CHECKING:
    from testfleet.models.options import GlobalSetupOptions

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "TESTFLEET_CONFIG_PATH"


class ConfigErrorCode(str, Enum):
    """Stable config error codes for CLI and runtime mapping."""

    FILE_NOT_FOUND = "CONFIG_FILE_NOT_FOUND"
    YAML_INVALID = "CONFIG_YAML_INVALID"
    EMPTY_FILE = "CONFIG_EMPTY_FILE"
    ROOT_NOT_MAPPING = "CONFIG_ROOT_NOT_MAPPING"
    VALIDATION_FAILED = "CONFIG_VALIDATION_FAILED"
    PATH_MISSING = "CONFIG_PATH_MISSING"
    ENV_VAR_MISSING = "CONFIG_ENV_VAR_MISSING"
    SNAPSHOT_INVALID = "CONFIG_SNAPSHOT_INVALID"
    UNKNOWN = "CONFIG_UNKNOWN"


class ConfigError(ConfigurationError):
    """Configuration loading or validation error."""

    def __init__(
        self,
        message: str,
        *,
        code: ConfigErrorCode = ConfigErrorCode.UNKNOWN,
        path: Path | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.code = code
        self.path = path


def load_config(path: Path, overrides: dict[str, Any] | None = None) -> Config:
    """Load and validate configuration from YAML file.

    Args:
        path: Path to YAML config file
        overrides: Nested mapping merged over the file contents

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If file not found, YAML invalid, or validation fails
    """
    if not path.exists():
        raise ConfigError(
            f"Config file not found: {path}",
            code=ConfigErrorCode.FILE_NOT_FOUND,
            path=path,
        )

    try:
        with path.open() as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML in {path}: {e}",
            code=ConfigErrorCode.YAML_INVALID,
            path=path,
            cause=e,
        ) from e

    if raw is None:
        raise ConfigError(
            f"Config file is empty: {path}",
            code=ConfigErrorCode.EMPTY_FILE,
            path=path,
        )

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Config must be a YAML mapping, got {type(raw).__name__}",
            code=ConfigErrorCode.ROOT_NOT_MAPPING,
            path=path,
        )

    if overrides:
        raw = merge_overrides(raw, overrides)

    try:
        return Config.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(
            format_validation_error(e, path),
            code=ConfigErrorCode.VALIDATION_FAILED,
            path=path,
            cause=e,
        ) from e


def load_config_from_dict(data: dict[str, Any]) -> Config:
    """Load and validate configuration from a dict (useful for testing).

    Raises:
        ConfigError: If validation fails
    """
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            format_validation_error(e, path=None),
            code=ConfigErrorCode.VALIDATION_FAILED,
            cause=e,
        ) from e


def merge_overrides(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Return a deep copy of `base` with `overrides` merged in recursively."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_overrides(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def resolve_env_var(env_var_name: str, required: bool = True) -> str | None:
    """Resolve environment variable by name.

    Raises:
        ConfigError: If required and not found
    """
    value = os.environ.get(env_var_name)
    if value is None and required:
        raise ConfigError(
            f"Required environment variable not set: {env_var_name}",
            code=ConfigErrorCode.ENV_VAR_MISSING,
        )
    return value


def format_validation_error(e: ValidationError, path: Path | None = None) -> str:
    """Format Pydantic validation error for human readability."""
    prefix = f"Config validation failed ({path}):" if path else "Config validation failed:"
    errors = []
    for err in e.errors():
        loc = " -> ".join(str(x) for x in err["loc"])
        msg = err["msg"]
        errors.append(f"  {loc}: {msg}")
    return prefix + "\n" + "\n".join(errors)


class YamlConfigResolver:
    """Resolves run configuration from a YAML file plus CLI-style overrides.

    The file path comes from the setup options, falling back to the
    `TESTFLEET_CONFIG_PATH` environment variable.
    """

    def __init__(self, default_path: Path | None = None) -> None:
        self._default_path = default_path

    async def resolve(self, options: GlobalSetupOptions) -> Config:
        path = options.config_path or self._default_path
        if path is None:
            env_value = resolve_env_var(CONFIG_PATH_ENV, required=False)
            path = Path(env_value) if env_value else None
        if path is None:
            if options.overrides:
                return load_config_from_dict(options.overrides)
            raise ConfigError(
                f"No config path given and {CONFIG_PATH_ENV} is not set",
                code=ConfigErrorCode.PATH_MISSING,
            )
        config = await asyncio.to_thread(load_config, Path(path), options.overrides)
        logger.info("Config loaded from %s", path)
        return config
