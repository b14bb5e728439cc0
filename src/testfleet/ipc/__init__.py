"""Primary/worker message bus."""

from testfleet.ipc.client import IPCClient, IPCLogHandler
from testfleet.ipc.protocol import (
    ConfigBroadcast,
    IPCMessage,
    LogRecordMessage,
    RegisterWorker,
    WorkersCountBroadcast,
)
from testfleet.ipc.server import IPCServer, IPCServerState

__all__ = [
    "ConfigBroadcast",
    "IPCClient",
    "IPCLogHandler",
    "IPCMessage",
    "IPCServer",
    "IPCServerState",
    "LogRecordMessage",
    "RegisterWorker",
    "WorkersCountBroadcast",
]
