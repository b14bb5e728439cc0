"""IPC message schemas exchanged between primary and worker processes."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from testfleet.models.config import Config

MAX_MESSAGE_BYTES = 16 * 1024 * 1024


class RegisterWorker(BaseModel):
    """Worker-to-primary registration."""

    kind: Literal["register_worker"] = "register_worker"
    worker_id: int = Field(ge=1)
    log_file: str | None = None


class ConfigBroadcast(BaseModel):
    kind: Literal["config_broadcast"] = "config_broadcast"
    config: Config | None = None


class WorkersCountBroadcast(BaseModel):
    kind: Literal["workers_count_broadcast"] = "workers_count_broadcast"
    value: int = Field(ge=0)


class LogRecordMessage(BaseModel):
    """Log record shipped from a worker; `time` stays a string on the wire."""

    kind: Literal["log"] = "log"
    time: str
    level: str = "info"
    meta: dict[str, Any] = Field(default_factory=dict)
    args: list[Any] = Field(default_factory=list)


IPCMessage = Annotated[
    RegisterWorker | ConfigBroadcast | WorkersCountBroadcast | LogRecordMessage,
    Field(discriminator="kind"),
]

_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(IPCMessage)


def encode_message(message: BaseModel) -> bytes:
    """Frame a message as one JSON line."""
    return message.model_dump_json().encode("utf-8") + b"\n"


def decode_message(line: bytes) -> RegisterWorker | ConfigBroadcast | WorkersCountBroadcast | LogRecordMessage:
    return _MESSAGE_ADAPTER.validate_json(line.strip())


def socket_path_for(server_id: str) -> Path:
    """Filesystem address of the endpoint named `server_id`."""
    base = os.environ.get("TESTFLEET_IPC_DIR") or tempfile.gettempdir()
    return Path(base) / f"testfleet.{server_id}.sock"
