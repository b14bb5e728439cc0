"""Begin/end trace spans recorded through the logging pipeline."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

TRACE_LOGGER_NAME = "testfleet.trace"


class Tracer:
    """Emits trace-span boundaries as log records.

    Spans are matched by category in LIFO order; the merge pipeline turns
    the `ph` field into `B`/`E` trace events.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(TRACE_LOGGER_NAME)
        self._open: list[tuple[str, str]] = []

    @property
    def open_spans(self) -> list[tuple[str, str]]:
        return list(self._open)

    def begin(self, *, cat: str, name: str, args: dict[str, Any] | None = None) -> None:
        self._open.append((cat, name))
        self._logger.info(
            "%s",
            name,
            extra={"ph": "B", "cat": cat, "span": name, "span_args": args or {}},
        )

    def end(self, *, cat: str, args: dict[str, Any] | None = None) -> None:
        name = self._pop(cat)
        if name is None:
            self._logger.warning("Trace span end without matching begin: cat=%s", cat)
            return
        self._logger.info(
            "%s",
            name,
            extra={"ph": "E", "cat": cat, "span": name, "span_args": args or {}},
        )

    def instant(self, *, cat: str, name: str, args: dict[str, Any] | None = None) -> None:
        self._logger.info(
            "%s",
            name,
            extra={"ph": "i", "cat": cat, "span": name, "span_args": args or {}},
        )

    @contextmanager
    def section(
        self, *, cat: str, name: str, args: dict[str, Any] | None = None
    ) -> Iterator[None]:
        self.begin(cat=cat, name=name, args=args)
        try:
            yield
        except BaseException as exc:
            self.end(cat=cat, args={"error": type(exc).__name__})
            raise
        self.end(cat=cat)

    def _pop(self, cat: str) -> str | None:
        for index in range(len(self._open) - 1, -1, -1):
            if self._open[index][0] == cat:
                return self._open.pop(index)[1]
        return None
