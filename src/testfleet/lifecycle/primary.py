"""Primary-process orchestrator: global setup, worker admission, global teardown."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from testfleet.devices.registry import DeviceRegistry, registry_namespaces_for
from testfleet.errors import ConfigurationError, DuplicateInitializationError, MergeFailureError
from testfleet.ipc.server import IPCServer
from testfleet.lifecycle.context import Context
from testfleet.lifecycle.signals import SignalExitHook
from testfleet.logging_setup import close_log_file, configure_logging, new_log_file_path
from testfleet.logs.merge import LogMergePipeline, relocate_logs_sync
from testfleet.models.options import GlobalSetupOptions, WorkerSetupOptions
from testfleet.relay.server import SessionRelayServer
from testfleet.session.state import SessionState

if TYPE_CHECKING:
    from testfleet.interfaces import (
        AuxiliaryServer,
        AuxiliaryServerFactory,
        ConfigResolver,
        EnvironmentFactory,
        GlobalLifecycleHandler,
    )
    from testfleet.logs.trace import Tracer
    from testfleet.models.config import Config, DeviceConfig

logger = logging.getLogger(__name__)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def _default_merge_pipeline(config: Config) -> LogMergePipeline:
    return LogMergePipeline(name=config.artifacts.name, logger_options=config.logger.options)


class PrimaryContext(Context):
    """One-shot entry/exit gate for a distributed run.

    Construct once per process and pass by reference. `global_setup` may run
    at most once per instance; normal and emergency teardown share
    idempotent per-resource close operations, and whichever path starts
    first claims teardown so the other does nothing.
    """

    def __init__(
        self,
        *,
        config_resolver: ConfigResolver,
        ipc_server_factory: Callable[[SessionState], IPCServer] | None = None,
        environment_factory: EnvironmentFactory | None = None,
        registry_factory: Callable[[str], DeviceRegistry] = DeviceRegistry.for_platform,
        relay_server_factory: AuxiliaryServerFactory | None = None,
        merge_pipeline_factory: Callable[[Config], LogMergePipeline] = _default_merge_pipeline,
        signal_hook: SignalExitHook | None = None,
        configure_log_sink: bool = True,
        tracer: Tracer | None = None,
    ) -> None:
        super().__init__(tracer=tracer)
        self._config_resolver = config_resolver
        self._ipc_server_factory = ipc_server_factory or (
            lambda state: IPCServer(session_state=state)
        )
        self._environment_factory = environment_factory
        self._registry_factory = registry_factory
        self._relay_server_factory = relay_server_factory or (
            lambda port: SessionRelayServer(port=port)
        )
        self._merge_pipeline_factory = merge_pipeline_factory
        self._signal_hook = signal_hook or SignalExitHook()
        self._configure_log_sink = configure_log_sink

        self._dirty = False
        self._teardown_path: str | None = None
        self._ipc_server: IPCServer | None = None
        self._lifecycle_handler: GlobalLifecycleHandler | None = None
        self._relay_server: AuxiliaryServer | None = None
        self._log_file: Path | None = None

    @property
    def ipc_server(self) -> IPCServer | None:
        return self._ipc_server

    @property
    def relay_server(self) -> AuxiliaryServer | None:
        return self._relay_server

    @property
    def log_file(self) -> Path | None:
        return self._log_file

    @property
    def teardown_path(self) -> str | None:
        """Which teardown ran: ``"normal"``, ``"emergency"``, or None."""
        return self._teardown_path

    def restore_session_state(self) -> SessionState:
        return SessionState.create()

    async def resolve_config(self, options: GlobalSetupOptions | None = None) -> Config:
        state = self.session_state
        if state.config is None:
            state.config = await self._config_resolver.resolve(options or GlobalSetupOptions())
        return state.config

    async def global_setup(self, options: GlobalSetupOptions | None = None) -> None:
        """Initialize the run once.

        Raises:
            DuplicateInitializationError: Called a second time on this instance
            ConfigurationError: Config could not be resolved
            IPCTransportError: IPC bus could not bind
            LockCorruptionError: Device lock files could not be reset
        """
        if self._dirty:
            raise DuplicateInitializationError()
        self._dirty = True
        options = options or GlobalSetupOptions()

        self._signal_hook.install(self.emergency_teardown)

        config = await self.resolve_config(options)
        state = self.session_state

        if self._configure_log_sink:
            self._log_file = new_log_file_path(0)
            configure_logging(log_level=config.logger.level, worker_index=0, log_file=self._log_file)

        self.tracer.begin(
            cat="lifecycle",
            name=" ".join(options.argv) or "testfleet",
            args={"session_id": state.session_id, "ipc_server_id": state.ipc_server_id},
        )

        ipc_server = self._ipc_server_factory(state)
        self._ipc_server = ipc_server
        await ipc_server.start()

        if self._environment_factory is not None:
            handler = await self._environment_factory(config.device)
            if handler is not None:
                self._lifecycle_handler = handler
                await handler.global_init()

        if not config.behavior.init.keep_lock_file:
            await self._reset_lock_files(config.device)

        if config.session.auto_start:
            relay = self._relay_server_factory(config.session.server_port)
            await relay.open()
            self._relay_server = relay
            if not config.session.server:
                config.session.server = f"ws://localhost:{relay.port}"

        state.write()
        state.publish()
        logger.info(
            "Global setup complete: session=%s snapshot=%s",
            state.session_id,
            state.config_snapshot_path,
        )

    async def setup(self, options: WorkerSetupOptions | None = None) -> None:
        """Run an in-band worker inside the primary process."""
        options = options or WorkerSetupOptions()
        worker_index = options.worker_index or 1
        if self._ipc_server is None:
            raise ConfigurationError("global_setup must complete before worker setup")
        self.session_state.worker_index = worker_index
        self._ipc_server.on_register_worker(worker_index)
        await super().setup(options)

    async def global_teardown(self) -> None:
        """Release run-wide resources, then merge process logs.

        Cleanup failures are logged and do not stop later steps; a merge
        failure leaves the raw logs in place and is only logged.
        """
        if not self._claim_teardown("normal"):
            logger.warning("Global teardown skipped: %s teardown already ran", self._teardown_path)
            return

        handler = self._lifecycle_handler
        self._lifecycle_handler = None
        if handler is not None:
            try:
                await handler.global_cleanup()
            except Exception as exc:
                logger.error("Environment global cleanup failed: %s", exc, exc_info=exc)

        relay = self._relay_server
        self._relay_server = None
        if relay is not None:
            try:
                await relay.close()
            except Exception as exc:
                logger.error("Relay server close failed: %s", exc, exc_info=exc)

        ipc_server = self._ipc_server
        if ipc_server is not None:
            await ipc_server.dispose()

        self._remove_snapshot()
        self._signal_hook.uninstall()

        try:
            self.tracer.end(cat="lifecycle")
            await self._finalize_logs()
        except MergeFailureError as exc:
            logger.warning("%s; raw process logs kept: %s", exc, ", ".join(exc.source_files))
        except Exception as exc:
            logger.error("Encountered an error while merging the process logs: %s", exc, exc_info=exc)

    def emergency_teardown(self, signum: int) -> None:
        """Best-effort synchronous cleanup for termination signals; never raises."""
        if not self._claim_teardown("emergency"):
            return
        signal_name = _signal_name(signum)
        logger.warning("Received %s; running emergency teardown", signal_name)

        handler = self._lifecycle_handler
        self._lifecycle_handler = None
        if handler is not None:
            try:
                handler.emergency_cleanup()
            except Exception as exc:
                logger.error("Environment emergency cleanup failed: %s", exc, exc_info=exc)

        if self._relay_server is not None:
            try:
                self._relay_server.close_sync()
            except Exception as exc:
                logger.error("Relay server close failed: %s", exc, exc_info=exc)

        if self._ipc_server is not None:
            self._ipc_server.dispose_sync()
        self._remove_snapshot()

        try:
            self.tracer.end(cat="lifecycle", args={"abort_signal": signal_name})
            self._finalize_logs_sync()
        except Exception as exc:
            logger.error("Encountered an error while relocating the process logs: %s", exc, exc_info=exc)

    def _claim_teardown(self, path: str) -> bool:
        if self._teardown_path is not None:
            return False
        self._teardown_path = path
        return True

    def _remove_snapshot(self) -> None:
        state = self._session_state
        if state is None:
            return
        try:
            state.remove_snapshot()
        except OSError as exc:
            logger.error("Failed to remove session snapshot: %s", exc, exc_info=exc)
        state.unpublish()

    def _process_log_files(self) -> list[str]:
        state = self.session_state
        files = [str(self._log_file)] if self._log_file is not None else []
        return [*files, *state.ordered_log_files()]

    def _logs_root(self) -> Path | None:
        config = self.session_state.config
        if config is None or not config.artifacts.logs_enabled or not config.artifacts.root_dir:
            return None
        return Path(config.artifacts.root_dir)

    async def _finalize_logs(self) -> None:
        root_dir = self._logs_root()
        if root_dir is None:
            return
        config = self.config
        close_log_file()
        pipeline = self._merge_pipeline_factory(config)
        await pipeline.run(self._process_log_files(), root_dir)

    def _finalize_logs_sync(self) -> None:
        root_dir = self._logs_root()
        if root_dir is None:
            return
        close_log_file()
        moved = relocate_logs_sync(self._process_log_files(), root_dir)
        logger.info("Relocated %d process log file(s) to %s", len(moved), root_dir)

    async def _reset_lock_files(self, device_config: DeviceConfig) -> None:
        for namespace in registry_namespaces_for(device_config.type):
            registry = self._registry_factory(namespace)
            await registry.reset()
