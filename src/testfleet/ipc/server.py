"""Primary-side IPC bus server over a Unix-domain stream socket."""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

from testfleet.errors import AddressInUseError, IPCTransportError
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
from testfleet.logs.entries import normalize_time

if TYPE_CHECKING:
    from testfleet.models.config import Config
    from testfleet.session.state import SessionState

logger = logging.getLogger(__name__)

REMOTE_LOGGER_NAME = "testfleet.remote"
_PROBE_TIMEOUT_S = 0.5
_DISPOSE_WAIT_S = 1.0
_LEVEL_ALIASES = {"trace": logging.DEBUG, "fatal": logging.CRITICAL, "warn": logging.WARNING}


class IPCServerState(StrEnum):
    """Lifecycle state of an IPC server instance."""

    UNSTARTED = "unstarted"
    LISTENING = "listening"
    DISPOSED = "disposed"


def level_number(level: str) -> int:
    name = level.lower()
    if name in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[name]
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else logging.INFO


class IPCServer:
    """Hosts the run's message bus; one instance per run.

    Workers register, receive config and worker-count broadcasts, and ship
    log records. Each connection is a single ordered stream, so broadcasts
    reach a given worker in the order they were sent.
    """

    def __init__(
        self,
        *,
        session_state: SessionState,
        config: Config | None = None,
        log_sink: logging.Logger | None = None,
        socket_path: Path | None = None,
    ) -> None:
        self._session_state = session_state
        self._config = config if config is not None else session_state.config
        self._log_sink = log_sink or logging.getLogger(REMOTE_LOGGER_NAME)
        self._socket_path = socket_path or socket_path_for(session_state.ipc_server_id)
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._client_tasks: set[asyncio.Task[None]] = set()
        self._workers_count = 0
        self._state = IPCServerState.UNSTARTED

    @property
    def id(self) -> str:
        return self._session_state.ipc_server_id

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def state(self) -> IPCServerState:
        return self._state

    @property
    def workers_count(self) -> int:
        return self._workers_count

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def set_config(self, config: Config | None) -> None:
        """Replace the config sent in subsequent broadcasts."""
        self._config = config

    async def start(self) -> None:
        """Bind the endpoint and begin accepting workers.

        Raises:
            AddressInUseError: A live server already answers on this endpoint
            IPCTransportError: Bind failed, or this instance was disposed
        """
        if self._state is IPCServerState.DISPOSED:
            raise IPCTransportError(f"IPC server {self.id!r} was disposed; create a new instance")
        if self._state is IPCServerState.LISTENING:
            raise IPCTransportError(f"IPC server {self.id!r} is already listening")

        path = self._socket_path
        if path.exists():
            if await self._endpoint_is_live(path):
                raise AddressInUseError(self.id, str(path))
            logger.warning("Removing stale IPC socket from a previous run: %s", path)
            path.unlink(missing_ok=True)

        try:
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(path),
                limit=MAX_MESSAGE_BYTES,
            )
        except OSError as exc:
            raise IPCTransportError(
                f"Failed to bind IPC endpoint {self.id!r} at {path}: {exc}", cause=exc
            ) from exc

        self._state = IPCServerState.LISTENING
        logger.info("IPC server listening: id=%s socket=%s", self.id, path)

    def on_register_worker(self, worker_id: int, log_file: str | None = None) -> int:
        """Record a worker and broadcast config plus worker count to all clients.

        The count is the highest worker id seen so far, never decremented.
        """
        self._workers_count = max(self._workers_count, int(worker_id))
        if log_file:
            self._session_state.add_log_file(log_file, worker_id)
        logger.debug(
            "Worker registered: worker_id=%d workers_count=%d",
            worker_id,
            self._workers_count,
        )
        # Every registration re-broadcasts to all clients, single-worker runs included.
        self.broadcast(ConfigBroadcast(config=self._config))
        self.broadcast(WorkersCountBroadcast(value=self._workers_count))
        return self._workers_count

    def broadcast(self, message: BaseModel) -> None:
        """Fan out to every connected client; disconnected clients are dropped."""
        payload = encode_message(message)
        for writer in list(self._clients):
            if writer.is_closing():
                self._clients.discard(writer)
                continue
            try:
                writer.write(payload)
            except (ConnectionError, RuntimeError) as exc:
                logger.debug("Dropping IPC client after write failure: %s", exc)
                self._clients.discard(writer)

    def on_log(self, message: LogRecordMessage) -> None:
        """Hand a worker's log record to the local sink with its original time."""
        try:
            when = normalize_time(message.time)
        except ValueError as exc:
            logger.warning("Dropped worker log record with invalid time: %s", exc)
            return

        meta = message.meta
        text = " ".join(str(arg) for arg in message.args)
        record = self._log_sink.makeRecord(
            self._log_sink.name,
            level_number(message.level),
            fn=str(meta.get("logger") or "remote"),
            lno=0,
            msg="%s",
            args=(text,),
            exc_info=None,
            extra={
                "remote": True,
                "worker_index": meta.get("worker_index", 0),
                "remote_logger": meta.get("logger"),
            },
        )
        record.created = when.timestamp()
        record.msecs = (record.created - int(record.created)) * 1000
        pid = meta.get("pid")
        if isinstance(pid, int):
            record.process = pid
        self._log_sink.handle(record)

    async def dispose(self) -> None:
        """Close the endpoint; safe to call repeatedly or before start."""
        server = self._server
        tasks = list(self._client_tasks)
        self.dispose_sync()
        if server is None:
            return
        for task in tasks:
            task.cancel()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=_DISPOSE_WAIT_S)
        except (asyncio.TimeoutError, OSError, RuntimeError) as exc:
            logger.debug("IPC server wait_closed did not finish cleanly: %s", exc)

    def dispose_sync(self) -> None:
        """Close the endpoint without awaiting; used from signal handlers."""
        if self._state is not IPCServerState.LISTENING:
            return
        self._state = IPCServerState.DISPOSED

        server = self._server
        self._server = None
        if server is not None:
            try:
                server.close()
            except Exception as exc:
                logger.error("IPC server close failed: %s", exc, exc_info=exc)

        for writer in list(self._clients):
            try:
                writer.close()
            except Exception as exc:
                logger.debug("IPC client close failed: %s", exc)
        self._clients.clear()

        try:
            self._socket_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove IPC socket %s: %s", self._socket_path, exc)
        logger.info("IPC server disposed: id=%s", self.id)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._state is not IPCServerState.LISTENING:
            writer.close()
            return
        task = asyncio.current_task()
        if task is not None:
            self._client_tasks.add(task)
        self._clients.add(writer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = decode_message(line)
                except ValidationError as exc:
                    logger.error("Dropped invalid IPC message: %s", exc)
                    continue
                self._dispatch(message)
        except (ConnectionError, asyncio.IncompleteReadError, ValueError) as exc:
            logger.debug("IPC client connection ended: %s", exc)
        finally:
            self._clients.discard(writer)
            if task is not None:
                self._client_tasks.discard(task)
            writer.close()

    def _dispatch(self, message: BaseModel) -> None:
        match message:
            case RegisterWorker(worker_id=worker_id, log_file=log_file):
                self.on_register_worker(worker_id, log_file)
            case LogRecordMessage():
                self.on_log(message)
            case _:
                logger.warning(
                    "Ignoring unexpected IPC message from worker: kind=%s",
                    getattr(message, "kind", "?"),
                )

    @staticmethod
    async def _endpoint_is_live(path: Path) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(path)),
                timeout=_PROBE_TIMEOUT_S,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        return True
