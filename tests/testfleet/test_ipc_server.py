"""Tests for the primary-side IPC server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest

from testfleet.errors import AddressInUseError, IPCTransportError
from testfleet.ipc.protocol import (
    ConfigBroadcast,
    LogRecordMessage,
    RegisterWorker,
    WorkersCountBroadcast,
    decode_message,
    encode_message,
    socket_path_for,
)
from testfleet.ipc.server import IPCServer, IPCServerState, level_number
from testfleet.session.state import SessionState
from tests.testfleet.mocks import ListHandler, make_config


async def _wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class _RawClient:
    """Bare socket client that records every decoded broadcast."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.messages: list[object] = []
        self._task = asyncio.create_task(self._read())

    @classmethod
    async def connect(cls, path: Path) -> _RawClient:
        reader, writer = await asyncio.open_unix_connection(str(path))
        return cls(reader, writer)

    async def _read(self) -> None:
        while True:
            line = await self.reader.readline()
            if not line:
                return
            self.messages.append(decode_message(line))

    def counts(self) -> list[int]:
        return [m.value for m in self.messages if isinstance(m, WorkersCountBroadcast)]

    async def send(self, message: object) -> None:
        self.writer.write(encode_message(message))  # type: ignore[arg-type]
        await self.writer.drain()

    async def close(self) -> None:
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self.writer.close()


def _make_server(**kwargs: object) -> IPCServer:
    state = SessionState.create(config=make_config())
    return IPCServer(session_state=state, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_start_binds_socket_and_dispose_removes_it() -> None:
    # Given an unstarted server
    server = _make_server()
    assert server.state is IPCServerState.UNSTARTED

    # When starting it
    await server.start()

    # Then the endpoint exists at the id-derived path
    assert server.state is IPCServerState.LISTENING
    assert server.socket_path == socket_path_for(server.id)
    assert server.socket_path.exists()

    # When disposing
    await server.dispose()

    # Then the endpoint is gone
    assert server.state is IPCServerState.DISPOSED
    assert not server.socket_path.exists()


@pytest.mark.asyncio
async def test_dispose_is_idempotent_and_safe_before_start() -> None:
    # Given a server that never started
    server = _make_server()

    # When disposing twice
    await server.dispose()
    server.dispose_sync()

    # Then nothing fails and the server remains unstarted
    assert server.state is IPCServerState.UNSTARTED

    # When started then disposed repeatedly
    await server.start()
    await server.dispose()
    await server.dispose()
    server.dispose_sync()

    # Then it stays disposed
    assert server.state is IPCServerState.DISPOSED


@pytest.mark.asyncio
async def test_restart_after_dispose_is_rejected() -> None:
    # Given a disposed server
    server = _make_server()
    await server.start()
    await server.dispose()

    # When starting it again
    with pytest.raises(IPCTransportError):
        await server.start()


@pytest.mark.asyncio
async def test_second_live_server_on_same_endpoint_fails() -> None:
    # Given a live server
    state = SessionState.create(config=make_config())
    first = IPCServer(session_state=state)
    await first.start()
    try:
        # When another server binds the same id
        second = IPCServer(session_state=state)
        with pytest.raises(AddressInUseError) as exc_info:
            await second.start()

        # Then the error names the server id
        assert exc_info.value.server_id == state.ipc_server_id
        assert first.socket_path.exists()
    finally:
        await first.dispose()


@pytest.mark.asyncio
async def test_stale_socket_file_is_replaced(short_tmp_dir: Path) -> None:
    # Given a leftover regular file where the socket should be
    state = SessionState.create(config=make_config())
    stale = socket_path_for(state.ipc_server_id)
    stale.write_text("")

    # When starting the server
    server = IPCServer(session_state=state)
    await server.start()

    # Then the stale file is replaced by a live endpoint
    try:
        client = await _RawClient.connect(stale)
        await _wait_until(lambda: server.client_count == 1)
        await client.close()
    finally:
        await server.dispose()


@pytest.mark.asyncio
async def test_out_of_order_registration_broadcasts_running_max_to_all_clients() -> None:
    # Given a server with two connected clients
    server = _make_server()
    await server.start()
    clients = [await _RawClient.connect(server.socket_path) for _ in range(2)]
    await _wait_until(lambda: server.client_count == 2)

    # When workers 3, 1, 2 register
    results = [server.on_register_worker(worker_id) for worker_id in (3, 1, 2)]

    # Then every client sees the non-decreasing count 3, 3, 3
    assert results == [3, 3, 3]
    await _wait_until(lambda: all(len(c.counts()) == 3 for c in clients))
    for client in clients:
        assert client.counts() == [3, 3, 3]
    assert server.workers_count == 3

    for client in clients:
        await client.close()
    await server.dispose()


@pytest.mark.asyncio
async def test_registration_broadcasts_config_before_count() -> None:
    # Given a server and one connected client
    server = _make_server()
    await server.start()
    client = await _RawClient.connect(server.socket_path)
    await _wait_until(lambda: server.client_count == 1)

    # When a worker registers over the wire with its log file
    await client.send(RegisterWorker(worker_id=1, log_file="/tmp/worker-1.jsonl"))

    # Then the client receives config then count, and the log file is tracked
    await _wait_until(lambda: len(client.messages) == 2)
    assert isinstance(client.messages[0], ConfigBroadcast)
    assert client.messages[0].config == server._config
    assert isinstance(client.messages[1], WorkersCountBroadcast)
    assert client.messages[1].value == 1
    assert server._session_state.log_files == ["/tmp/worker-1.jsonl"]

    await client.close()
    await server.dispose()


@pytest.mark.asyncio
async def test_broadcast_preserves_send_order_per_client() -> None:
    # Given a connected client
    server = _make_server()
    await server.start()
    client = await _RawClient.connect(server.socket_path)
    await _wait_until(lambda: server.client_count == 1)

    # When broadcasting a sequence of counts
    for value in range(10):
        server.broadcast(WorkersCountBroadcast(value=value))

    # Then they arrive in send order
    await _wait_until(lambda: len(client.counts()) == 10)
    assert client.counts() == list(range(10))

    await client.close()
    await server.dispose()


@pytest.mark.asyncio
async def test_invalid_message_is_dropped_and_connection_survives() -> None:
    # Given a connected client
    server = _make_server()
    await server.start()
    client = await _RawClient.connect(server.socket_path)
    await _wait_until(lambda: server.client_count == 1)

    # When it sends garbage followed by a valid registration
    client.writer.write(b'{"kind": "bogus"}\n')
    await client.send(RegisterWorker(worker_id=2))

    # Then the registration is still processed
    await _wait_until(lambda: server.workers_count == 2)

    await client.close()
    await server.dispose()


@pytest.mark.asyncio
async def test_disconnected_client_is_dropped_from_broadcasts() -> None:
    # Given two clients, one of which disconnects
    server = _make_server()
    await server.start()
    stays = await _RawClient.connect(server.socket_path)
    leaves = await _RawClient.connect(server.socket_path)
    await _wait_until(lambda: server.client_count == 2)
    await leaves.close()
    await _wait_until(lambda: server.client_count == 1)

    # When registering a worker
    server.on_register_worker(1)

    # Then the remaining client still gets the broadcast
    await _wait_until(lambda: stays.counts() == [1])

    await stays.close()
    await server.dispose()


def test_on_log_preserves_original_time(list_handler: ListHandler) -> None:
    # Given a server with a capturing log sink
    sink = logging.getLogger("tests.ipc.sink")
    sink.setLevel(logging.DEBUG)
    sink.propagate = False
    sink.addHandler(list_handler)
    server = _make_server(log_sink=sink)
    try:
        # When a worker record arrives with an offset timestamp string
        server.on_log(
            LogRecordMessage(
                time="2024-05-01T10:00:00.250+02:00",
                level="warn",
                meta={"pid": 4242, "worker_index": 2, "logger": "app.flow"},
                args=["device", "busy"],
            )
        )

        # Then the sink receives the record at the original instant
        assert len(list_handler.records) == 1
        record = list_handler.records[0]
        expected = datetime(2024, 5, 1, 8, 0, 0, 250000, tzinfo=timezone.utc).timestamp()
        assert record.created == pytest.approx(expected)
        assert record.levelno == logging.WARNING
        assert record.getMessage() == "device busy"
        assert record.process == 4242
        assert record.remote is True
        assert record.worker_index == 2
    finally:
        sink.removeHandler(list_handler)


def test_on_log_drops_invalid_time(list_handler: ListHandler) -> None:
    # Given a server with a capturing log sink
    sink = logging.getLogger("tests.ipc.sink.invalid")
    sink.propagate = False
    sink.addHandler(list_handler)
    server = _make_server(log_sink=sink)
    try:
        # When a record with an unparseable time arrives
        server.on_log(LogRecordMessage(time="yesterday", args=["x"]))

        # Then nothing is forwarded
        assert list_handler.records == []
    finally:
        sink.removeHandler(list_handler)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("trace", logging.DEBUG),
        ("debug", logging.DEBUG),
        ("info", logging.INFO),
        ("warn", logging.WARNING),
        ("ERROR", logging.ERROR),
        ("fatal", logging.CRITICAL),
        ("unknown", logging.INFO),
    ],
)
def test_level_number(name: str, expected: int) -> None:
    assert level_number(name) == expected
