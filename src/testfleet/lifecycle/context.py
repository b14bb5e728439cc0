"""Run-context contracts shared by primary and worker processes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from testfleet.errors import ConfigurationError
from testfleet.logging_setup import set_worker_index
from testfleet.logs.trace import Tracer

if TYPE_CHECKING:
    from testfleet.models.config import Config
    from testfleet.models.options import GlobalSetupOptions, WorkerSetupOptions
    from testfleet.session.state import SessionState

logger = logging.getLogger(__name__)


class RunContext(Protocol):
    """Public lifecycle contract used by test-runner adapters."""

    async def global_setup(self, options: GlobalSetupOptions | None = None) -> None:
        ...

    async def setup(self, options: WorkerSetupOptions | None = None) -> None:
        ...

    async def teardown(self) -> None:
        ...

    async def global_teardown(self) -> None:
        ...


class ContextInternals(Protocol):
    """Operations reserved for context implementations, not for adapters."""

    @property
    def session_state(self) -> SessionState:
        ...

    def restore_session_state(self) -> SessionState:
        ...

    async def resolve_config(self, options: GlobalSetupOptions | None = None) -> Config:
        ...


class Context:
    """Common per-worker lifecycle; subclasses decide where session state comes from."""

    def __init__(self, *, tracer: Tracer | None = None) -> None:
        self.tracer = tracer or Tracer()
        self._session_state: SessionState | None = None
        self._worker_span_open = False

    @property
    def session_state(self) -> SessionState:
        if self._session_state is None:
            self._session_state = self.restore_session_state()
        return self._session_state

    @property
    def config(self) -> Config:
        config = self.session_state.config
        if config is None:
            raise ConfigurationError("Run configuration has not been resolved yet")
        return config

    def restore_session_state(self) -> SessionState:
        raise NotImplementedError

    async def resolve_config(self, options: GlobalSetupOptions | None = None) -> Config:
        _ = options
        return self.config

    async def global_setup(self, options: GlobalSetupOptions | None = None) -> None:
        _ = options
        raise ConfigurationError(f"{type(self).__name__} cannot perform global setup")

    async def global_teardown(self) -> None:
        raise ConfigurationError(f"{type(self).__name__} cannot perform global teardown")

    async def setup(self, options: WorkerSetupOptions | None = None) -> None:
        _ = options
        state = self.session_state
        set_worker_index(state.worker_index)
        self.tracer.begin(
            cat="worker",
            name=f"worker {state.worker_index}",
            args={"session_id": state.session_id, "worker_index": state.worker_index},
        )
        self._worker_span_open = True
        logger.info("Worker %d ready", state.worker_index)

    async def teardown(self) -> None:
        if self._worker_span_open:
            self.tracer.end(cat="worker")
            self._worker_span_open = False
