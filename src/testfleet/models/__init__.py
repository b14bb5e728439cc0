"""Typed data models."""

from testfleet.models.config import (
    ArtifactsConfig,
    BehaviorConfig,
    Config,
    DeviceConfig,
    LoggerConfig,
    LoggerOptions,
    SessionConfig,
)

__all__ = [
    "ArtifactsConfig",
    "BehaviorConfig",
    "Config",
    "DeviceConfig",
    "LoggerConfig",
    "LoggerOptions",
    "SessionConfig",
]
