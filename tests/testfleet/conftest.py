"""Shared pytest fixtures for testfleet tests."""

from __future__ import annotations

import logging
import shutil
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

# Add src and the repo root to sys.path for imports
repo_root = Path(__file__).parent.parent.parent.resolve()
for _path in (repo_root / "src", repo_root):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

import pytest

from testfleet.session.state import SNAPSHOT_PATH_ENV
from tests.testfleet.mocks.log_capture import ListHandler


@pytest.fixture
def short_tmp_dir() -> Iterator[Path]:
    """Temp dir with a short path; Unix socket paths are length-limited."""
    path = Path(tempfile.mkdtemp(prefix="tf-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolated_environment(
    short_tmp_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[None]:
    """Point IPC sockets and device registries at per-test directories."""
    monkeypatch.setenv("TESTFLEET_IPC_DIR", str(short_tmp_dir))
    monkeypatch.setenv("TESTFLEET_REGISTRY_DIR", str(short_tmp_dir / "registry"))
    monkeypatch.delenv(SNAPSHOT_PATH_ENV, raising=False)
    monkeypatch.delenv("TESTFLEET_CONFIG_PATH", raising=False)
    monkeypatch.delenv("TESTFLEET_WORKER_INDEX", raising=False)
    yield


@pytest.fixture(autouse=True)
def reset_logging_root() -> Iterator[None]:
    """Restore root logger handlers/levels after each test."""
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level

    yield

    for handler in list(root.handlers):
        if handler not in original_handlers and isinstance(handler, logging.FileHandler):
            handler.close()
        root.removeHandler(handler)
    for handler in original_handlers:
        root.addHandler(handler)
    root.setLevel(original_level)
    logging.captureWarnings(False)


@pytest.fixture
def list_handler() -> Iterator[ListHandler]:
    handler = ListHandler()
    yield handler
    handler.close()
