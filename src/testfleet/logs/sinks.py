"""Output encodings for the merged log sequence."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from testfleet.logs.entries import LogEntry
from testfleet.models.config import LoggerOptions

logger = logging.getLogger(__name__)

_WRITE_BATCH = 256
_DEBUG_HIDDEN_META = {"pid", "worker_index", "logger", "ph", "cat", "span", "span_args", "error"}


class LogSink(ABC):
    """Renders entries into one output file, replaced atomically on success."""

    name: str = "sink"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def write(self, entries: AsyncIterator[LogEntry]) -> int:
        """Consume `entries` and durably write the rendered file; returns entry count."""
        tmp_path = self.path.with_name(f".{self.path.name}.partial")
        count = 0
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                batch = self.header()
                async for entry in entries:
                    batch.extend(self.render(entry))
                    count += 1
                    if len(batch) >= _WRITE_BATCH:
                        await asyncio.to_thread(f.writelines, batch)
                        batch = []
                batch.extend(self.footer())
                await asyncio.to_thread(f.writelines, batch)
                f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug("Log sink %s wrote %d entries to %s", self.name, count, self.path)
        return count

    def header(self) -> list[str]:
        return []

    @abstractmethod
    def render(self, entry: LogEntry) -> list[str]:
        raise NotImplementedError

    def footer(self) -> list[str]:
        return []


class JsonlSink(LogSink):
    name = "jsonl"

    def render(self, entry: LogEntry) -> list[str]:
        return [entry.to_json_line()]


class DebugTextSink(LogSink):
    """Human-readable rendering controlled by `LoggerOptions`."""

    name = "debug"

    def __init__(self, path: Path, options: LoggerOptions | None = None) -> None:
        super().__init__(path)
        self._options = options or LoggerOptions()

    def render(self, entry: LogEntry) -> list[str]:
        options = self._options
        parts: list[str] = []
        if options.show_date:
            parts.append(entry.time.isoformat(timespec="milliseconds"))
        else:
            parts.append(entry.time.strftime("%H:%M:%S.%f")[:-3])
        parts.append(f"{entry.level.upper():<8}")
        if options.show_pid:
            role = "primary" if entry.worker_index == 0 else f"w{entry.worker_index}"
            parts.append(f"[{entry.pid or '?'}:{role}]")
        if options.show_logger_name and entry.meta.get("logger"):
            parts.append(f"{entry.meta['logger']}:")
        parts.append(self._describe(entry))

        line = " ".join(parts)
        if options.show_metadata:
            extra = {k: v for k, v in entry.meta.items() if k not in _DEBUG_HIDDEN_META}
            if extra:
                line += " " + json.dumps(extra, sort_keys=True, default=str)
        lines = [line + "\n"]
        error = entry.meta.get("error")
        if error:
            lines.extend(f"    {error_line}\n" for error_line in str(error).splitlines())
        return lines

    @staticmethod
    def _describe(entry: LogEntry) -> str:
        phase = entry.meta.get("ph")
        if phase == "B":
            return f"begin {entry.meta.get('cat', '')}: {entry.message}"
        if phase == "E":
            return f"end {entry.meta.get('cat', '')}: {entry.message}"
        return entry.message


class ChromeTraceSink(LogSink):
    """Trace-event JSON array suitable for timeline viewers.

    Span boundaries become ``B``/``E`` events; other records become instant
    events. Each process gets ``process_name`` and sort-index metadata the
    first time it appears.
    """

    name = "trace"

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self._first = True
        self._seen_pids: set[int] = set()

    def header(self) -> list[str]:
        self._first = True
        self._seen_pids = set()
        return ["["]

    def render(self, entry: LogEntry) -> list[str]:
        events: list[dict[str, Any]] = []
        pid = entry.pid or 0
        if pid not in self._seen_pids:
            self._seen_pids.add(pid)
            events.extend(self._process_metadata(pid, entry.worker_index))
        events.append(self._to_event(entry, pid))
        return [self._emit(event) for event in events]

    def footer(self) -> list[str]:
        return ["\n]\n"]

    def _emit(self, event: dict[str, Any]) -> str:
        prefix = "\n" if self._first else ",\n"
        self._first = False
        return prefix + json.dumps(event, default=str, sort_keys=True)

    @staticmethod
    def _process_metadata(pid: int, worker_index: int) -> list[dict[str, Any]]:
        label = "primary" if worker_index == 0 else f"worker {worker_index}"
        return [
            {"ph": "M", "name": "process_name", "pid": pid, "tid": 0, "args": {"name": label}},
            {
                "ph": "M",
                "name": "process_sort_index",
                "pid": pid,
                "tid": 0,
                "args": {"sort_index": worker_index},
            },
        ]

    @staticmethod
    def _to_event(entry: LogEntry, pid: int) -> dict[str, Any]:
        meta = entry.meta
        phase = meta.get("ph") if meta.get("ph") in {"B", "E", "i"} else "i"
        event: dict[str, Any] = {
            "ph": phase,
            "name": meta.get("span") or entry.message,
            "cat": meta.get("cat") or "log",
            "ts": int(entry.time.timestamp() * 1_000_000),
            "pid": pid,
            "tid": 0,
        }
        span_args = meta.get("span_args")
        if isinstance(span_args, dict) and span_args:
            event["args"] = span_args
        elif "ph" not in meta:
            event["args"] = {"level": entry.level, "logger": meta.get("logger")}
        if phase == "i":
            event["s"] = "p"
        return event
