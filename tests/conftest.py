from __future__ import annotations

import os
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Generator, List, Mapping, Optional
from unittest.mock import MagicMock, patch

import pytest

from watchrun.config import Config
from watchrun.pipeline import Stage
from watchrun.snapshot import Snapshot
from watchrun.watcher import ChangeChannel


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def project_dir(temp_dir: Path) -> Path:
    """Fixture for a small monitored tree with an ignored subdirectory."""
    (temp_dir / "src").mkdir()
    (temp_dir / "src" / "main.go").write_text("package main\n", encoding="utf-8")
    (temp_dir / "src" / "util.go").write_text("package main\n", encoding="utf-8")
    (temp_dir / "src" / "nested").mkdir()
    (temp_dir / "src" / "nested" / "deep.go").write_text("package nested\n", encoding="utf-8")
    (temp_dir / ".git").mkdir()
    (temp_dir / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    (temp_dir / "build.log").write_text("ok\n", encoding="utf-8")
    (temp_dir / "README.md").write_text("# project\n", encoding="utf-8")
    return temp_dir


def python_stage(code: str) -> Stage:
    """Return a stage running ``code`` with the current interpreter."""
    return Stage(sys.executable, ("-c", code))


@pytest.fixture
def make_stage() -> Callable[[str], Stage]:
    return python_stage


@pytest.fixture
def pipeline_log() -> MagicMock:
    """Fixture for a pipeline log collecting the bracketing lines."""
    return MagicMock()


class FakeBuilder:
    """Snapshot builder replaying a fixed sequence; the last snapshot repeats."""

    def __init__(self, snapshots: List[Mapping[str, int]], monitor: Optional[List[str]] = None) -> None:
        self.snapshots = [Snapshot(s) for s in snapshots]
        self.monitor = monitor or ["proj"]
        self.recurse = True
        self.calls = 0
        self._lock = threading.Lock()

    def build(self) -> Snapshot:
        with self._lock:
            index = min(self.calls, len(self.snapshots) - 1)
            self.calls += 1
            return self.snapshots[index]


@pytest.fixture
def fake_builder() -> Callable[..., FakeBuilder]:
    return FakeBuilder


class FakeWatcher:
    """Watcher stand-in whose channel is fed directly by the test."""

    def __init__(self) -> None:
        self.changes = ChangeChannel()
        self.stop_calls = 0

    def stop(self) -> bool:
        self.stop_calls += 1
        return self.changes.close()

    def get_statistics(self) -> dict:
        return {}


@pytest.fixture
def fake_watcher() -> FakeWatcher:
    return FakeWatcher()


@pytest.fixture
def mock_config() -> Config:
    """Fixture for a default Config object."""
    return Config(
        monitor=["."],
        interval=0.3,
        log_level="INFO",
        stages=[Stage("make", ("build",))],
    )


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def clean_env(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run in an empty directory with no watchrun environment or user config."""
    monkeypatch.chdir(temp_dir)
    empty = temp_dir / "empty_config"
    empty.mkdir()
    for name in list(os.environ):
        if name.startswith("WATCHRUN_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(empty))
    return temp_dir


def _wait_until(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is truthy or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return _wait_until
