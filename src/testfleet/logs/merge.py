"""Merge per-process JSON-lines logs into one time-ordered artifact set."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import shutil
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from pydantic import ValidationError

from testfleet.errors import MergeFailureError
from testfleet.logs.entries import LogEntry
from testfleet.logs.sinks import ChromeTraceSink, DebugTextSink, JsonlSink, LogSink
from testfleet.models.config import LoggerOptions

logger = logging.getLogger(__name__)

_READ_BATCH = 512
_FANOUT_QUEUE_SIZE = 1024


def _read_lines(handle: IO[bytes], count: int) -> list[bytes]:
    return list(itertools.islice(handle, count))


async def read_jsonl(path: Path) -> AsyncIterator[LogEntry]:
    """Lazily yield entries from a JSON-lines file; bad lines are skipped."""
    with path.open("rb") as handle:
        line_number = 0
        while True:
            lines = await asyncio.to_thread(_read_lines, handle, _READ_BATCH)
            if not lines:
                return
            for raw_line in lines:
                line_number += 1
                try:
                    line = raw_line.decode("utf-8")
                except UnicodeDecodeError as exc:
                    logger.warning(
                        "Skipping undecodable log line: file=%s line=%d error=%s",
                        path,
                        line_number,
                        exc.reason,
                    )
                    continue
                if not line.strip():
                    continue
                try:
                    yield LogEntry.model_validate_json(line)
                except ValidationError as exc:
                    logger.warning(
                        "Skipping malformed log line: file=%s line=%d error=%s",
                        path,
                        line_number,
                        exc.errors()[0]["msg"] if exc.errors() else exc,
                    )


async def merge_sorted(sources: Sequence[AsyncIterator[LogEntry]]) -> AsyncIterator[LogEntry]:
    """K-way merge by time.

    Ties keep source order first, then in-source order, so output is
    deterministic for a fixed ordering of inputs.
    """
    heap: list[tuple[float, int, int, LogEntry]] = []
    counters = [itertools.count() for _ in sources]

    async def push(index: int) -> None:
        try:
            entry = await anext(sources[index])
        except StopAsyncIteration:
            return
        heapq.heappush(heap, (entry.time.timestamp(), index, next(counters[index]), entry))

    for index in range(len(sources)):
        await push(index)

    while heap:
        _, index, _, entry = heapq.heappop(heap)
        yield entry
        await push(index)


class _SourceFailed:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


_END = object()


class _Fanout:
    """Feeds one async sequence to several consumers through bounded queues.

    A consumer that fails is abandoned so the producer never blocks on it.
    """

    def __init__(self, source: AsyncIterator[LogEntry], consumers: int) -> None:
        self._source = source
        self._queues: list[asyncio.Queue[object]] = [
            asyncio.Queue(maxsize=_FANOUT_QUEUE_SIZE) for _ in range(consumers)
        ]
        self._abandoned = [False] * consumers

    async def consume(self, index: int) -> AsyncIterator[LogEntry]:
        queue = self._queues[index]
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, _SourceFailed):
                raise RuntimeError("merged log source failed") from item.exc
            assert isinstance(item, LogEntry)
            yield item

    def abandon(self, index: int) -> None:
        self._abandoned[index] = True
        queue = self._queues[index]
        while not queue.empty():
            queue.get_nowait()

    async def pump(self) -> None:
        terminal: object = _END
        try:
            async for entry in self._source:
                for index, queue in enumerate(self._queues):
                    if not self._abandoned[index]:
                        await queue.put(entry)
        except Exception as exc:
            terminal = _SourceFailed(exc)
            raise
        finally:
            for index, queue in enumerate(self._queues):
                if not self._abandoned[index]:
                    await queue.put(terminal)


@dataclass(frozen=True, slots=True)
class MergeResult:
    outputs: list[Path]
    sources: list[Path]
    entries: int


class LogMergePipeline:
    """Merges per-process logs into `.log.jsonl`, `.log`, and `.trace.json`.

    The merged sequence is produced once and streamed to all sinks
    concurrently. Source files are deleted only after every sink has
    written its output; otherwise MergeFailureError is raised and the
    sources are kept for manual recovery.
    """

    def __init__(self, *, name: str = "testfleet", logger_options: LoggerOptions | None = None) -> None:
        self._name = name
        self._logger_options = logger_options or LoggerOptions()

    def create_sinks(self, root_dir: Path) -> list[LogSink]:
        return [
            JsonlSink(root_dir / f"{self._name}.log.jsonl"),
            DebugTextSink(root_dir / f"{self._name}.log", self._logger_options),
            ChromeTraceSink(root_dir / f"{self._name}.trace.json"),
        ]

    async def run(self, log_files: Sequence[str | Path], root_dir: Path) -> MergeResult | None:
        sources = [Path(p) for p in dict.fromkeys(str(f) for f in log_files if f)]
        sources = [p for p in sources if p.exists()]
        if not sources:
            logger.debug("No process log files to merge")
            return None

        await asyncio.to_thread(root_dir.mkdir, parents=True, exist_ok=True)
        sinks = self.create_sinks(root_dir)
        fanout = _Fanout(merge_sorted([read_jsonl(path) for path in sources]), len(sinks))

        async def run_sink(index: int, sink: LogSink) -> int:
            try:
                return await sink.write(fanout.consume(index))
            except BaseException:
                fanout.abandon(index)
                raise

        results = await asyncio.gather(
            fanout.pump(),
            *(run_sink(index, sink) for index, sink in enumerate(sinks)),
            return_exceptions=True,
        )

        names = ["reader", *(sink.name for sink in sinks)]
        for name, result in zip(names, results, strict=True):
            if isinstance(result, BaseException):
                raise MergeFailureError(
                    name,
                    [str(p) for p in sources],
                    cause=result if isinstance(result, Exception) else None,
                ) from result

        for path in sources:
            await asyncio.to_thread(path.unlink, missing_ok=True)

        entries = results[1] if isinstance(results[1], int) else 0
        logger.info("Merged %d log file(s) into %s (%d entries)", len(sources), root_dir, entries)
        return MergeResult(outputs=[sink.path for sink in sinks], sources=sources, entries=entries)


def relocate_logs_sync(log_files: Sequence[str | Path], root_dir: Path) -> list[Path]:
    """Move raw process logs into `root_dir` without merging.

    Used where awaiting is not possible (signal handlers).
    """
    root_dir.mkdir(parents=True, exist_ok=True)
    moved: list[Path] = []
    for value in dict.fromkeys(str(f) for f in log_files if f):
        source = Path(value)
        if not source.exists():
            continue
        target = root_dir / source.name
        shutil.move(str(source), str(target))
        moved.append(target)
    return moved
