"""Worker-side IPC bus client."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

from testfleet.errors import IPCTransportError
from testfleet.ipc.protocol import (
    MAX_MESSAGE_BYTES,
    ConfigBroadcast,
    LogRecordMessage,
    RegisterWorker,
    WorkersCountBroadcast,
    decode_message,
    encode_message,
    socket_path_for,
)
from testfleet.logs.entries import LogEntry

if TYPE_CHECKING:
    from testfleet.models.config import Config

logger = logging.getLogger(__name__)

MAX_PENDING_LOG_BYTES = 4 * 1024 * 1024


class IPCClient:
    """Connects a worker process to the primary's IPC server."""

    def __init__(
        self,
        server_id: str,
        *,
        socket_path: Path | None = None,
        on_message: Callable[[BaseModel], None] | None = None,
    ) -> None:
        self._server_id = server_id
        self._socket_path = socket_path or socket_path_for(server_id)
        self._on_message = on_message
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._config: Config | None = None
        self._config_received = asyncio.Event()
        self._workers_count = 0
        self._dropped_logs = 0

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def config(self) -> Config | None:
        return self._config

    @property
    def workers_count(self) -> int:
        return self._workers_count

    @property
    def dropped_logs(self) -> int:
        return self._dropped_logs

    async def connect(self, *, timeout_s: float = 5.0, retry_interval_s: float = 0.1) -> None:
        """Connect, retrying until the server endpoint appears or timeout elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        last_error: Exception | None = None

        while True:
            try:
                self._reader, self._writer = await asyncio.open_unix_connection(
                    str(self._socket_path),
                    limit=MAX_MESSAGE_BYTES,
                )
                break
            except OSError as exc:
                last_error = exc
            if loop.time() >= deadline:
                raise IPCTransportError(
                    f"Could not connect to IPC server {self._server_id!r} at "
                    f"{self._socket_path} within {timeout_s:.1f}s",
                    cause=last_error,
                ) from last_error
            await asyncio.sleep(retry_interval_s)

        self._read_task = asyncio.create_task(self._read_loop())
        logger.debug("Connected to IPC server: id=%s", self._server_id)

    async def register_worker(self, worker_id: int, log_file: str | None = None) -> None:
        await self._send(RegisterWorker(worker_id=worker_id, log_file=log_file))

    def send_log(self, message: LogRecordMessage) -> bool:
        """Queue a log record for the primary without awaiting the drain.

        Records are dropped while more than MAX_PENDING_LOG_BYTES are still
        waiting in the transport, so a slow primary cannot grow the buffer
        without bound.
        """
        writer = self._writer
        if writer is None or writer.is_closing():
            return False
        if writer.transport.get_write_buffer_size() > MAX_PENDING_LOG_BYTES:
            self._dropped_logs += 1
            return False
        writer.write(encode_message(message))
        return True

    async def wait_for_config(self, timeout_s: float = 10.0) -> Config | None:
        try:
            await asyncio.wait_for(self._config_received.wait(), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise IPCTransportError(
                f"No config broadcast from IPC server {self._server_id!r} within {timeout_s:.1f}s"
            ) from exc
        return self._config

    async def close(self) -> None:
        task = self._read_task
        self._read_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        writer = self._writer
        self._writer = None
        if writer is None:
            return
        if self._dropped_logs:
            logger.warning(
                "Dropped %d log record(s) while the IPC server was not reading",
                self._dropped_logs,
            )
        try:
            await writer.drain()
        except (ConnectionError, RuntimeError):
            pass
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("IPC client close did not finish cleanly: %s", exc)

    async def _send(self, message: BaseModel) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            raise IPCTransportError(f"IPC client for {self._server_id!r} is not connected")
        try:
            writer.write(encode_message(message))
            await writer.drain()
        except ConnectionError as exc:
            raise IPCTransportError(
                f"IPC server {self._server_id!r} closed the connection", cause=exc
            ) from exc

    async def _read_loop(self) -> None:
        reader = self._reader
        if reader is None:
            return
        try:
            while True:
                line = await reader.readline()
                if not line:
                    logger.debug("IPC server closed the connection: id=%s", self._server_id)
                    return
                try:
                    message = decode_message(line)
                except ValidationError as exc:
                    logger.error("Dropped invalid IPC broadcast: %s", exc)
                    continue
                self._apply(message)
        except (ConnectionError, ValueError) as exc:
            logger.debug("IPC client read loop ended: %s", exc)

    def _apply(self, message: BaseModel) -> None:
        match message:
            case ConfigBroadcast(config=config):
                self._config = config
                self._config_received.set()
            case WorkersCountBroadcast(value=value):
                self._workers_count = value
            case _:
                logger.debug("Ignoring IPC message: kind=%s", getattr(message, "kind", "?"))
        if self._on_message is not None:
            self._on_message(message)


class IPCLogHandler(logging.Handler):
    """Ships local log records to the primary over the IPC bus."""

    def __init__(self, client: IPCClient, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self._client = client
        self._emitting = False

    def emit(self, record: logging.LogRecord) -> None:
        if self._emitting or getattr(record, "remote", False):
            return
        self._emitting = True
        try:
            entry = LogEntry.from_record(record)
            self._client.send_log(
                LogRecordMessage(
                    time=entry.time.isoformat(),
                    level=entry.level,
                    meta=entry.meta,
                    args=entry.args,
                )
            )
        except Exception:
            self.handleError(record)
        finally:
            self._emitting = False
