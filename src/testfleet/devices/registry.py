"""Cross-process device lease registry backed by an advisory-locked file."""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from testfleet.errors import LockCorruptionError

logger = logging.getLogger(__name__)

REGISTRY_DIR_ENV = "TESTFLEET_REGISTRY_DIR"

_NAMESPACES_BY_DEVICE_TYPE: dict[str, tuple[str, ...]] = {
    "ios.none": ("ios",),
    "ios.simulator": ("ios",),
    "android.attached": ("android",),
    "android.emulator": ("android",),
    "android.genycloud": ("android", "android.genycloud"),
}


class RegistryEntry(BaseModel):
    busy: bool = False
    holder_pid: int | None = None


def registry_namespaces_for(device_type: str) -> tuple[str, ...]:
    """Lock-file namespaces that a run with `device_type` must reset."""
    known = _NAMESPACES_BY_DEVICE_TYPE.get(device_type)
    if known is not None:
        return known
    return (device_type.split(".", 1)[0],)


def default_registry_dir() -> Path:
    value = os.environ.get(REGISTRY_DIR_ENV)
    if value:
        return Path(value)
    return Path.home() / ".testfleet"


def pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DeviceRegistry:
    """Mutually exclusive device leases shared by every process on the host.

    The JSON registry maps device id to ``{busy, holder_pid}``. Every
    read-modify-write happens under an exclusive ``flock`` on a sidecar
    ``.lock`` file; acquisition is non-blocking with bounded retry so a
    wedged holder surfaces as LockCorruptionError instead of a hang.
    Busy entries whose holder process has exited are reclaimed on read.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_s: float = 5.0,
        retry_interval_s: float = 0.05,
        is_alive: Callable[[int], bool] = pid_is_alive,
    ) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_timeout_s = lock_timeout_s
        self._retry_interval_s = retry_interval_s
        self._is_alive = is_alive

    @classmethod
    def for_platform(cls, platform: str, directory: Path | None = None, **kwargs: Any) -> DeviceRegistry:
        base = directory or default_registry_dir()
        return cls(base / f"device.registry.{platform}.json", **kwargs)

    async def try_acquire(self, device_id: str, *, holder_pid: int | None = None) -> bool:
        """Mark `device_id` busy for `holder_pid`; False when someone else holds it."""
        pid = holder_pid if holder_pid is not None else os.getpid()
        async with self._locked():
            entries = self._read_entries()
            entry = entries.get(device_id)
            if entry is not None and entry.busy:
                return False
            entries[device_id] = RegistryEntry(busy=True, holder_pid=pid)
            self._write_entries(entries)
        logger.debug("Device leased: id=%s pid=%d registry=%s", device_id, pid, self.path)
        return True

    async def release(self, device_id: str) -> bool:
        """Clear the lease on `device_id`; returns whether it was busy."""
        async with self._locked():
            entries = self._read_entries()
            entry = entries.pop(device_id, None)
            if entry is None:
                return False
            self._write_entries(entries)
        logger.debug("Device released: id=%s registry=%s", device_id, self.path)
        return entry.busy

    async def is_busy(self, device_id: str) -> bool:
        async with self._locked():
            entry = self._read_entries().get(device_id)
        return entry is not None and entry.busy

    async def busy_devices(self) -> dict[str, int | None]:
        async with self._locked():
            entries = self._read_entries()
        return {device_id: entry.holder_pid for device_id, entry in entries.items() if entry.busy}

    async def reset(self) -> None:
        """Forget every lease in this namespace."""
        try:
            async with self._locked():
                self._write_entries({})
        except OSError as exc:
            raise LockCorruptionError(
                str(self.path), f"Failed to reset device registry: {exc}", cause=exc
            ) from exc
        logger.info("Device registry reset: %s", self.path)

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_timeout_s
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if loop.time() >= deadline:
                        raise LockCorruptionError(
                            str(self.lock_path),
                            f"Device registry lock still held after {self._lock_timeout_s:.1f}s",
                        ) from None
                    await asyncio.sleep(self._retry_interval_s)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _read_entries(self) -> dict[str, RegistryEntry]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not text.strip():
            return {}

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LockCorruptionError(
                str(self.path), "Device registry is not valid JSON", cause=exc
            ) from exc
        if not isinstance(raw, dict):
            raise LockCorruptionError(
                str(self.path), f"Device registry root must be an object, got {type(raw).__name__}"
            )

        entries: dict[str, RegistryEntry] = {}
        for device_id, value in raw.items():
            try:
                entry = RegistryEntry.model_validate(value)
            except ValidationError as exc:
                holder = value.get("holder_pid") if isinstance(value, dict) else None
                if isinstance(holder, int) and self._is_alive(holder):
                    raise LockCorruptionError(
                        str(self.path),
                        f"Invalid entry for {device_id!r} held by live pid {holder}",
                        cause=exc,
                    ) from exc
                logger.warning("Reclaiming invalid device registry entry: id=%s", device_id)
                continue

            if entry.busy and entry.holder_pid is not None and not self._is_alive(entry.holder_pid):
                logger.warning(
                    "Reclaiming device abandoned by dead pid: id=%s pid=%d",
                    device_id,
                    entry.holder_pid,
                )
                continue
            entries[device_id] = entry
        return entries

    def _write_entries(self, entries: dict[str, RegistryEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {device_id: entry.model_dump() for device_id, entry in entries.items()}
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
