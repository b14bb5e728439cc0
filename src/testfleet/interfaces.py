"""Collaborator interfaces consumed by the orchestration layer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from testfleet.devices.allocation import DeviceCookie
    from testfleet.models.config import Config, DeviceConfig
    from testfleet.models.options import GlobalSetupOptions


class ConfigResolver(Protocol):
    """Produces the fully resolved run configuration."""

    async def resolve(self, options: GlobalSetupOptions) -> Config:
        """Resolve configuration; raise ConfigurationError when invalid."""
        ...


class GlobalLifecycleHandler(Protocol):
    """Environment-specific hooks around the whole run (e.g. device farm warm-up)."""

    async def global_init(self) -> None:
        ...

    async def global_cleanup(self) -> None:
        ...

    def emergency_cleanup(self) -> None:
        """Synchronous best-effort cleanup run from a signal handler."""
        ...


EnvironmentFactory = Callable[["DeviceConfig"], Awaitable["GlobalLifecycleHandler | None"]]


class DeviceDriver(Protocol):
    """Per device type driver that boots and powers down leased instances."""

    async def prepare(self, cookie: DeviceCookie) -> DeviceCookie:
        """Bring the leased device to a usable state."""
        ...

    async def shutdown(self, cookie: DeviceCookie) -> None:
        """Power down the device instance named by `cookie`."""
        ...


class AuxiliaryServer(Protocol):
    """Always-on transport server for out-of-process automation."""

    @property
    def port(self) -> int:
        ...

    async def open(self) -> None:
        ...

    async def close(self) -> None:
        ...

    def close_sync(self) -> None:
        """Stop listening without awaiting; used from signal handlers."""
        ...


AuxiliaryServerFactory = Callable[[int], AuxiliaryServer]


@dataclass(frozen=True, slots=True)
class BusyResource:
    """A resource the native test framework reports as keeping the app busy."""

    name: str
    reason: str


class BusyResourceInspector(Protocol):
    """Opaque bridge into the native framework's busy-resource registry."""

    def list_busy_resources(self) -> list[BusyResource]:
        ...
