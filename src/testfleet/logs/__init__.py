"""Per-process log entries, trace spans, and the post-run merge."""

from testfleet.logs.entries import LogEntry, normalize_time
from testfleet.logs.merge import LogMergePipeline, MergeResult, merge_sorted, read_jsonl, relocate_logs_sync
from testfleet.logs.trace import Tracer

__all__ = [
    "LogEntry",
    "LogMergePipeline",
    "MergeResult",
    "Tracer",
    "merge_sorted",
    "normalize_time",
    "read_jsonl",
    "relocate_logs_sync",
]
