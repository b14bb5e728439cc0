"""Device allocation: pluggable selection policy over the shared registry."""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from testfleet.devices.registry import DeviceRegistry
from testfleet.errors import DeviceUnavailableError

if TYPE_CHECKING:
    from testfleet.interfaces import DeviceDriver
    from testfleet.models.config import DeviceConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeviceCookie:
    """Handle naming the concrete device a worker leased."""

    device_id: str
    platform: str
    holder_pid: int
    driver_data: dict[str, Any] = field(default_factory=dict, compare=False)


class AllocationDriver(ABC):
    """Per-platform policy deciding which devices to try, and in what order."""

    def __init__(self, platform: str, device_driver: DeviceDriver | None = None) -> None:
        self.platform = platform
        self._device_driver = device_driver

    @abstractmethod
    async def candidates(self, device_config: DeviceConfig) -> list[str]:
        """Device ids to attempt, most preferred first."""
        raise NotImplementedError

    async def prepare(self, cookie: DeviceCookie, device_config: DeviceConfig) -> DeviceCookie:
        _ = device_config
        if self._device_driver is None:
            return cookie
        return await self._device_driver.prepare(cookie)

    async def release(self, cookie: DeviceCookie, *, shutdown: bool) -> None:
        if shutdown and self._device_driver is not None:
            await self._device_driver.shutdown(cookie)


class PoolAllocationDriver(AllocationDriver):
    """Picks the first free id from the configured device pool."""

    async def candidates(self, device_config: DeviceConfig) -> list[str]:
        return list(dict.fromkeys(device_config.devices))


class DeviceAllocator:
    """Leases devices through `DeviceRegistry` with bounded retry."""

    def __init__(
        self,
        driver: AllocationDriver,
        registry: DeviceRegistry,
        *,
        holder_pid: int | None = None,
    ) -> None:
        self._driver = driver
        self._registry = registry
        self._holder_pid = holder_pid if holder_pid is not None else os.getpid()
        self._leased: dict[str, DeviceCookie] = {}

    @property
    def leased(self) -> list[DeviceCookie]:
        return list(self._leased.values())

    async def allocate(
        self,
        device_config: DeviceConfig,
        *,
        timeout_s: float | None = None,
    ) -> DeviceCookie:
        """Lease one device, retrying while all candidates are busy.

        Raises:
            DeviceUnavailableError: No candidate became free before the timeout
        """
        timeout = timeout_s if timeout_s is not None else device_config.allocation_timeout_s
        poll_interval = device_config.allocation_poll_interval_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        candidates: list[str] = []

        while True:
            candidates = await self._driver.candidates(device_config)
            for device_id in candidates:
                if not await self._registry.try_acquire(device_id, holder_pid=self._holder_pid):
                    continue
                cookie = DeviceCookie(
                    device_id=device_id,
                    platform=self._driver.platform,
                    holder_pid=self._holder_pid,
                )
                try:
                    cookie = await self._driver.prepare(cookie, device_config)
                except BaseException:
                    await self._registry.release(device_id)
                    raise
                self._leased[device_id] = cookie
                logger.info("Allocated device: type=%s id=%s", device_config.type, device_id)
                return cookie

            remaining = deadline - loop.time()
            if not candidates or remaining <= 0:
                raise DeviceUnavailableError(device_config.type, timeout, candidates=candidates)
            logger.debug(
                "All %d candidate device(s) busy; retrying in %.2fs",
                len(candidates),
                min(poll_interval, remaining),
            )
            await asyncio.sleep(min(poll_interval, remaining))

    async def free(self, cookie: DeviceCookie, *, shutdown: bool = False) -> None:
        """Release a lease; freeing an unknown or already-free cookie is a no-op."""
        leased = self._leased.pop(cookie.device_id, None)
        if leased is None:
            logger.debug("Device already free: id=%s", cookie.device_id)
            return
        try:
            await self._driver.release(leased, shutdown=shutdown)
        finally:
            await self._registry.release(leased.device_id)
        logger.info("Freed device: id=%s shutdown=%s", leased.device_id, shutdown)

    async def free_all(self, *, shutdown: bool = False) -> None:
        for cookie in list(self._leased.values()):
            try:
                await self.free(cookie, shutdown=shutdown)
            except Exception as exc:
                logger.error("Failed to free device %s: %s", cookie.device_id, exc, exc_info=exc)


class DeviceAllocatorFactory(ABC):
    """Builds an allocator whose registry discipline is shared by every platform."""

    def create_device_allocator(
        self,
        device_config: DeviceConfig,
        *,
        registry: DeviceRegistry | None = None,
        device_driver: DeviceDriver | None = None,
    ) -> DeviceAllocator:
        driver = self._create_driver(device_config, device_driver)
        return DeviceAllocator(
            driver,
            registry or DeviceRegistry.for_platform(driver.platform),
        )

    @abstractmethod
    def _create_driver(
        self, device_config: DeviceConfig, device_driver: DeviceDriver | None
    ) -> AllocationDriver:
        raise NotImplementedError


class PoolAllocatorFactory(DeviceAllocatorFactory):
    def _create_driver(
        self, device_config: DeviceConfig, device_driver: DeviceDriver | None
    ) -> AllocationDriver:
        return PoolAllocationDriver(device_config.platform, device_driver)


def with_driver_data(cookie: DeviceCookie, **data: Any) -> DeviceCookie:
    """Return `cookie` with extra driver-specific fields merged in."""
    return replace(cookie, driver_data={**cookie.driver_data, **data})
