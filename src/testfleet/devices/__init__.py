"""Device leasing across worker processes."""

from testfleet.devices.allocation import (
    AllocationDriver,
    DeviceAllocator,
    DeviceAllocatorFactory,
    DeviceCookie,
    PoolAllocationDriver,
    PoolAllocatorFactory,
)
from testfleet.devices.registry import DeviceRegistry, registry_namespaces_for

__all__ = [
    "AllocationDriver",
    "DeviceAllocator",
    "DeviceAllocatorFactory",
    "DeviceCookie",
    "DeviceRegistry",
    "PoolAllocationDriver",
    "PoolAllocatorFactory",
    "registry_namespaces_for",
]
