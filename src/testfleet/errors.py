"""Error hierarchy for testfleet run orchestration."""

from __future__ import annotations


class TestfleetError(Exception):
    """Base exception for all orchestration errors.

    Preserves the originating exception via chaining so callers can log the
    full stack without unwrapping.
    """

    __test__ = False

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class ConfigurationError(TestfleetError):
    """Resolved config or session snapshot is missing or malformed."""


class DuplicateInitializationError(TestfleetError):
    """Global setup was invoked more than once on the same context."""

    def __init__(self, message: str = "Cannot initialize primary context more than once.") -> None:
        super().__init__(message)


class DeviceUnavailableError(TestfleetError):
    """No device could be leased before the allocation timeout elapsed."""

    def __init__(
        self,
        device_type: str,
        timeout_s: float,
        *,
        candidates: list[str] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            f"No free {device_type} device after {timeout_s:.1f}s "
            f"(candidates: {', '.join(candidates or []) or 'none'})",
            cause=cause,
        )
        self.device_type = device_type
        self.timeout_s = timeout_s
        self.candidates = list(candidates or [])


class LockCorruptionError(TestfleetError):
    """Device lock file is invalid or held past the lock timeout."""

    def __init__(self, path: str, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(f"{message} ({path})", cause=cause)
        self.path = path


class IPCTransportError(TestfleetError):
    """IPC bus failed to bind, listen, or connect."""


class AddressInUseError(IPCTransportError):
    """Another live server already owns the IPC endpoint."""

    def __init__(self, server_id: str, address: str) -> None:
        super().__init__(
            f"IPC endpoint {server_id!r} is already bound at {address}; "
            "a previous run may not have been cleaned up"
        )
        self.server_id = server_id
        self.address = address


class MergeFailureError(TestfleetError):
    """A sink failed while merging per-process logs."""

    def __init__(
        self,
        sink_name: str,
        source_files: list[str],
        *,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            f"Log merge failed in sink {sink_name!r}; "
            f"{len(source_files)} source log file(s) were kept",
            cause=cause,
        )
        self.sink_name = sink_name
        self.source_files = list(source_files)
