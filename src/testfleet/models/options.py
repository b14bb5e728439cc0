"""Setup options passed by process entry points."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True, slots=True)
class GlobalSetupOptions:
    """Inputs for primary-process global setup."""

    config_path: Path | None = None
    overrides: dict[str, Any] = field(default_factory=dict)
    argv: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class WorkerSetupOptions:
    """Inputs for per-worker setup; `worker_index` is 1-based."""

    worker_index: int | None = None
    config_wait_timeout_s: float = 10.0
