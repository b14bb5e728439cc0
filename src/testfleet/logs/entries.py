"""Structured log entries written to per-process JSON-lines files."""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

STANDARD_LOGRECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "message",
        "asctime",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }
)


def normalize_time(value: Any) -> datetime:
    """Coerce a timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (as they cross the IPC bus and log
    files), and epoch seconds. Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def extract_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Return non-standard attributes attached via `extra=`."""
    extras: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in STANDARD_LOGRECORD_ATTRS:
            continue
        extras[key] = value
    return extras


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class LogEntry(BaseModel):
    """One log event as persisted to a per-process file."""

    model_config = ConfigDict(extra="ignore")

    time: datetime
    level: str = "info"
    meta: dict[str, Any] = Field(default_factory=dict)
    args: list[Any] = Field(default_factory=list)

    @field_validator("time", mode="before")
    @classmethod
    def _normalize_time(cls, value: Any) -> datetime:
        return normalize_time(value)

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value

    @property
    def message(self) -> str:
        return " ".join(str(arg) for arg in self.args)

    @property
    def pid(self) -> int | None:
        value = self.meta.get("pid")
        return value if isinstance(value, int) else None

    @property
    def worker_index(self) -> int:
        value = self.meta.get("worker_index")
        return value if isinstance(value, int) else 0

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> LogEntry:
        """Build an entry from a stdlib log record, carrying extras as meta."""
        meta: dict[str, Any] = {
            "pid": record.process,
            "logger": record.name,
        }
        for key, value in extract_extras(record).items():
            meta[key] = _json_safe(value)
        meta.setdefault("worker_index", 0)
        if record.exc_info and record.exc_info[0] is not None:
            meta["error"] = "".join(traceback.format_exception(*record.exc_info)).rstrip()

        return cls(
            time=datetime.fromtimestamp(record.created, tz=timezone.utc),
            level=record.levelname,
            meta=meta,
            args=[record.getMessage()],
        )

    def to_json_line(self) -> str:
        return self.model_dump_json() + "\n"
