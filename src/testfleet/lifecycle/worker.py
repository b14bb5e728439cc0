"""Worker process context and entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from testfleet.devices.allocation import DeviceAllocatorFactory, PoolAllocatorFactory
from testfleet.errors import TestfleetError
from testfleet.ipc.client import IPCClient, IPCLogHandler
from testfleet.lifecycle.context import Context
from testfleet.logging_setup import (
    attach_handler,
    close_log_file,
    configure_logging,
    detach_handler,
    new_log_file_path,
)
from testfleet.models.options import WorkerSetupOptions
from testfleet.session.state import SessionState

if TYPE_CHECKING:
    from testfleet.interfaces import BusyResourceInspector
    from testfleet.logs.trace import Tracer

logger = logging.getLogger(__name__)

WORKER_INDEX_ENV = "TESTFLEET_WORKER_INDEX"
DEVICE_ID_ENV = "TESTFLEET_DEVICE_ID"


class WorkerContext(Context):
    """Joins a run started by a primary process in another process."""

    def __init__(
        self,
        *,
        client_factory: Callable[[str], IPCClient] = IPCClient,
        busy_resource_inspector: BusyResourceInspector | None = None,
        log_shipping_level: int = logging.WARNING,
        configure_log_sink: bool = True,
        tracer: Tracer | None = None,
    ) -> None:
        super().__init__(tracer=tracer)
        self._client_factory = client_factory
        self._busy_resource_inspector = busy_resource_inspector
        self._log_shipping_level = log_shipping_level
        self._configure_log_sink = configure_log_sink
        self._client: IPCClient | None = None
        self._log_handler: IPCLogHandler | None = None

    @property
    def client(self) -> IPCClient | None:
        return self._client

    def restore_session_state(self) -> SessionState:
        return SessionState.from_environment()

    async def setup(self, options: WorkerSetupOptions | None = None) -> None:
        """Load the snapshot, register with the primary, and wait for config.

        Raises:
            ConfigurationError: Snapshot missing or malformed
            IPCTransportError: Primary unreachable or silent
        """
        options = options or WorkerSetupOptions()
        state = self.session_state
        worker_index = options.worker_index or int(os.environ.get(WORKER_INDEX_ENV, "1"))
        state.worker_index = worker_index
        config = self.config

        log_file: str | None = None
        if self._configure_log_sink:
            path = new_log_file_path(worker_index)
            configure_logging(log_level=config.logger.level, worker_index=worker_index, log_file=path)
            log_file = str(path)
            state.add_log_file(log_file, worker_index)

        client = self._client_factory(state.ipc_server_id)
        await client.connect()
        self._client = client
        self._log_handler = IPCLogHandler(client, level=self._log_shipping_level)
        attach_handler(self._log_handler)

        await client.register_worker(worker_index, log_file)
        broadcast_config = await client.wait_for_config(options.config_wait_timeout_s)
        if broadcast_config is not None:
            state.config = broadcast_config

        await super().setup(options)

    async def teardown(self) -> None:
        self.report_busy_resources()
        await super().teardown()

        if self._log_handler is not None:
            detach_handler(self._log_handler)
            self._log_handler = None
        client = self._client
        self._client = None
        if client is not None:
            await client.close()
        if self._configure_log_sink:
            close_log_file()

    def report_busy_resources(self) -> int:
        """Log whatever the native framework still reports as busy."""
        inspector = self._busy_resource_inspector
        if inspector is None:
            return 0
        try:
            resources = inspector.list_busy_resources()
        except Exception as exc:
            logger.warning("Busy resource inspection failed: %s", exc, exc_info=exc)
            return 0
        for resource in resources:
            logger.warning("App still busy: %s (%s)", resource.name, resource.reason)
        return len(resources)


async def run_worker(
    command: Sequence[str],
    *,
    worker_index: int | None = None,
    allocator_factory: DeviceAllocatorFactory | None = None,
) -> int:
    """Join the run, lease a device, and run `command` with its output logged."""
    context = WorkerContext()
    await context.setup(WorkerSetupOptions(worker_index=worker_index))
    try:
        config = context.config
        env = dict(os.environ)
        env[WORKER_INDEX_ENV] = str(context.session_state.worker_index)

        allocator = None
        cookie = None
        if config.device.devices:
            allocator = (allocator_factory or PoolAllocatorFactory()).create_device_allocator(
                config.device
            )
            cookie = await allocator.allocate(config.device)
            env[DEVICE_ID_ENV] = cookie.device_id
            context.tracer.instant(cat="device", name="leased", args={"device_id": cookie.device_id})

        try:
            return await _run_command(command, env)
        finally:
            if allocator is not None and cookie is not None:
                await allocator.free(cookie)
    finally:
        await context.teardown()


async def _run_command(command: Sequence[str], env: dict[str, str]) -> int:
    if not command:
        logger.warning("No test command given; worker has nothing to run")
        return 0

    output_logger = logging.getLogger("testfleet.test")
    process = await asyncio.create_subprocess_exec(
        *command,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    assert process.stdout is not None
    async for raw_line in process.stdout:
        output_logger.info("%s", raw_line.decode("utf-8", errors="replace").rstrip())
    return_code = await process.wait()
    logger.info("Test command exited: rc=%d", return_code)
    return return_code


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="testfleet worker process")
    parser.add_argument("--worker-index", type=int, default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)
    if args.command and args.command[0] == "--":
        args.command = args.command[1:]
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        return asyncio.run(run_worker(args.command, worker_index=args.worker_index))
    except TestfleetError as exc:
        print(f"✗ Worker setup failed: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
