"""testfleet - multi-process end-to-end test run orchestration."""

__version__ = "0.1.0"
