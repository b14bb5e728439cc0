"""Run-wide session snapshot shared from primary to worker processes."""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from testfleet.config.loader import ConfigError, ConfigErrorCode, format_validation_error
from testfleet.logs.entries import normalize_time
from testfleet.models.config import Config

logger = logging.getLogger(__name__)

SNAPSHOT_PATH_ENV = "TESTFLEET_CONFIG_SNAPSHOT_PATH"


def _new_snapshot_path() -> str:
    return str(Path(tempfile.gettempdir()) / f"testfleet-{uuid.uuid4().hex}.json")


class SessionState(BaseModel):
    """Serializable run config plus this process's identity."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    worker_index: int = Field(default=0, ge=0)
    config_snapshot_path: str = Field(default_factory=_new_snapshot_path)
    ipc_server_id: str = ""
    log_files: list[str] = Field(default_factory=list)
    log_file_workers: dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    config: Config | None = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalize_created_at(cls, value: Any) -> datetime:
        return normalize_time(value)

    @classmethod
    def create(
        cls,
        *,
        config: Config | None = None,
        session_id: str | None = None,
    ) -> SessionState:
        """Fresh primary state with a process-unique snapshot path."""
        state = cls(
            ipc_server_id=f"primary-{os.getpid()}",
            config=config,
        )
        if session_id:
            state.session_id = session_id
        return state

    def add_log_file(self, path: str | os.PathLike[str], worker_index: int | None = None) -> None:
        value = str(path)
        if value not in self.log_files:
            self.log_files.append(value)
        if worker_index is not None:
            self.log_file_workers[value] = worker_index

    def ordered_log_files(self) -> list[str]:
        """Log files by owning worker index; files without one keep arrival order at the end."""
        unknown = max(self.log_file_workers.values(), default=0) + 1
        return sorted(self.log_files, key=lambda path: self.log_file_workers.get(path, unknown))

    def serialize(self) -> str:
        return self.model_dump_json()

    @classmethod
    def deserialize(cls, payload: str | bytes, *, source: Path | None = None) -> SessionState:
        """Parse a snapshot, raising ConfigError when it is malformed."""
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise ConfigError(
                "Session snapshot is invalid:\n" + format_validation_error(e, source),
                code=ConfigErrorCode.SNAPSHOT_INVALID,
                path=source,
                cause=e,
            ) from e

    def write(self, path: Path | None = None) -> Path:
        """Persist atomically to `path` (default: the snapshot path)."""
        target = Path(path or self.config_snapshot_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp_path.write_text(self.serialize(), encoding="utf-8")
        os.replace(tmp_path, target)
        logger.debug("Session snapshot written: %s", target)
        return target

    @classmethod
    def load(cls, path: Path) -> SessionState:
        try:
            payload = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigError(
                f"Session snapshot not found: {path}",
                code=ConfigErrorCode.FILE_NOT_FOUND,
                path=path,
                cause=e,
            ) from e
        except OSError as e:
            raise ConfigError(
                f"Session snapshot unreadable: {path}: {e}",
                code=ConfigErrorCode.SNAPSHOT_INVALID,
                path=path,
                cause=e,
            ) from e
        return cls.deserialize(payload, source=path)

    @classmethod
    def from_environment(cls) -> SessionState:
        """Load the snapshot published by the primary via the environment."""
        value = os.environ.get(SNAPSHOT_PATH_ENV)
        if not value:
            raise ConfigError(
                f"Required environment variable not set: {SNAPSHOT_PATH_ENV}",
                code=ConfigErrorCode.ENV_VAR_MISSING,
            )
        return cls.load(Path(value))

    def publish(self) -> None:
        os.environ[SNAPSHOT_PATH_ENV] = self.config_snapshot_path

    def unpublish(self) -> None:
        os.environ.pop(SNAPSHOT_PATH_ENV, None)

    def remove_snapshot(self) -> None:
        Path(self.config_snapshot_path).unlink(missing_ok=True)
