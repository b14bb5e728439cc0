from __future__ import annotations

import json
import logging
import logging.config
import os
import tempfile
import uuid
from pathlib import Path

from testfleet.logs.entries import LogEntry, extract_extras

_CURRENT_WORKER_INDEX = 0
_CONSOLE_HIDDEN_EXTRAS = {
    "worker_index",
    "remote",
    "remote_logger",
    "ph",
    "cat",
    "span",
    "span_args",
}


class _WorkerIndexFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "worker_index", None) is None:
            record.worker_index = _CURRENT_WORKER_INDEX
        return True


class _LocalOnlyFilter(logging.Filter):
    """Drops records relayed from other processes; they have their own files."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not getattr(record, "remote", False)


class _JsonExtraFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = {
            key: value
            for key, value in extract_extras(record).items()
            if key not in _CONSOLE_HIDDEN_EXTRAS
        }
        if not extras:
            return base
        extras_json = json.dumps(extras, indent=2, default=str, sort_keys=True)
        return f"{base}\n{extras_json}"


class JsonLinesFileHandler(logging.FileHandler):
    """Appends one `LogEntry` JSON document per record."""

    def __init__(self, filename: str | os.PathLike[str]) -> None:
        super().__init__(filename, mode="a", encoding="utf-8", delay=False)
        self.addFilter(_LocalOnlyFilter())

    def format(self, record: logging.LogRecord) -> str:
        return LogEntry.from_record(record).model_dump_json()


def set_worker_index(worker_index: int | None) -> None:
    """Set the `worker_index` value injected into log records."""
    global _CURRENT_WORKER_INDEX
    _CURRENT_WORKER_INDEX = worker_index or 0


def _install_worker_filter() -> None:
    root = logging.getLogger()
    for handler in root.handlers:
        if any(isinstance(f, _WorkerIndexFilter) for f in handler.filters):
            continue
        handler.addFilter(_WorkerIndexFilter())


def new_log_file_path(worker_index: int) -> Path:
    """Return a fresh per-process log path in the temp directory."""
    role = "primary" if worker_index == 0 else f"worker-{worker_index}"
    name = f"testfleet.{role}.{os.getpid()}.{uuid.uuid4().hex[:8]}.jsonl"
    return Path(tempfile.gettempdir()) / name


def current_log_file() -> Path | None:
    """Return the path written by the active JSON-lines handler, if any."""
    for handler in logging.getLogger().handlers:
        if isinstance(handler, JsonLinesFileHandler):
            return Path(handler.baseFilename)
    return None


def close_log_file() -> None:
    """Flush and detach the JSON-lines handler so its file can be moved."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, JsonLinesFileHandler):
            handler.flush()
            handler.close()
            root.removeHandler(handler)


def configure_logging(
    *,
    log_level: str = "INFO",
    worker_index: int | None = None,
    log_file: Path | None = None,
) -> None:
    """Configure root logging with a consistent format.

    Console lines carry the worker index plus `module:lineno` for
    multi-process debugging. When `log_file` is given, every record from
    this process is also appended to it as JSON lines for the post-run merge.
    """
    console_level_name = str(log_level).upper()
    default_console_fmt = (
        "%(asctime)s %(levelname)s [w%(worker_index)s] "
        "%(module)s:%(lineno)d %(message)s"
    )
    console_fmt = os.getenv("CONSOLE_LOG_FORMAT", default_console_fmt)

    handlers: dict[str, dict[str, object]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": console_level_name,
            "formatter": "default",
            "stream": "ext://sys.stdout",
        }
    }
    if log_file is not None:
        handlers["jsonl"] = {
            "()": "testfleet.logging_setup.JsonLinesFileHandler",
            "filename": str(log_file),
            "level": "DEBUG",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "()": "testfleet.logging_setup._JsonExtraFormatter",
                    "format": console_fmt,
                }
            },
            "handlers": handlers,
            "root": {"level": "DEBUG", "handlers": list(handlers)},
        }
    )

    _install_worker_filter()
    set_worker_index(worker_index)
    logging.captureWarnings(True)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def attach_handler(handler: logging.Handler) -> None:
    """Add `handler` to the root logger with worker-index injection."""
    root = logging.getLogger()
    if handler not in root.handlers:
        root.addHandler(handler)
    _install_worker_filter()


def detach_handler(handler: logging.Handler) -> None:
    logging.getLogger().removeHandler(handler)
