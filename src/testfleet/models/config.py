"""Resolved run configuration models."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator


class DeviceConfig(BaseModel):
    """Device under test selection for every worker."""

    type: str
    devices: list[str] = Field(default_factory=list)
    allocation_timeout_s: float = Field(default=60.0, gt=0)
    allocation_poll_interval_s: float = Field(default=0.5, gt=0)
    driver: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def platform(self) -> str:
        """Lock-file namespace for this device type (``ios`` or ``android``)."""
        return self.type.split(".", 1)[0]


class InitBehaviorConfig(BaseModel):
    """Global init behavior."""

    keep_lock_file: bool = False


class BehaviorConfig(BaseModel):
    init: InitBehaviorConfig = Field(default_factory=InitBehaviorConfig)


class SessionConfig(BaseModel):
    """Auxiliary relay server settings."""

    auto_start: bool = False
    server: str | None = None
    session_id: str | None = None

    @field_validator("server")
    @classmethod
    def _validate_server(cls, value: str | None) -> str | None:
        if value is None:
            return None
        parsed = urlparse(value)
        if parsed.scheme not in {"ws", "wss"} or not parsed.hostname:
            raise ValueError(f"session.server must be a ws:// or wss:// URL, got {value!r}")
        return value

    @property
    def server_port(self) -> int:
        """Port requested by `server`, or 0 for an OS-assigned port."""
        if not self.server:
            return 0
        return urlparse(self.server).port or 0


class LoggerOptions(BaseModel):
    """Human-readable log rendering options."""

    show_date: bool = True
    show_pid: bool = True
    show_logger_name: bool = True
    show_metadata: bool = False


class LoggerConfig(BaseModel):
    level: str = "INFO"
    options: LoggerOptions = Field(default_factory=LoggerOptions)

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value


class LogPluginConfig(BaseModel):
    enabled: bool = True


class ArtifactPluginsConfig(BaseModel):
    log: str | LogPluginConfig = "none"


class ArtifactsConfig(BaseModel):
    """Where merged run artifacts are written."""

    root_dir: str | None = None
    name: str = "testfleet"
    plugins: ArtifactPluginsConfig = Field(default_factory=ArtifactPluginsConfig)

    @property
    def logs_enabled(self) -> bool:
        """Return whether per-process logs should be merged into artifacts."""
        if not self.root_dir:
            return False
        log_config = self.plugins.log
        if isinstance(log_config, str):
            return log_config != "none"
        return log_config.enabled


class Config(BaseModel):
    """Fully resolved run configuration shared by every process."""

    device: DeviceConfig
    behavior: BehaviorConfig = Field(default_factory=BehaviorConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logger: LoggerConfig = Field(default_factory=LoggerConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
