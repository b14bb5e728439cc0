"""Mock implementations for testing."""

from tests.testfleet.mocks.devices import MockBusyResourceInspector, MockDeviceDriver
from tests.testfleet.mocks.environment import (
    MockConfigResolver,
    MockLifecycleHandler,
    MockRelayServer,
    MockSignalHook,
    environment_factory_for,
)
from tests.testfleet.mocks.log_capture import ListHandler, make_config

__all__ = [
    "ListHandler",
    "MockBusyResourceInspector",
    "MockConfigResolver",
    "MockDeviceDriver",
    "MockLifecycleHandler",
    "MockRelayServer",
    "MockSignalHook",
    "environment_factory_for",
    "make_config",
]
