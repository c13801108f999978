from __future__ import annotations

import signal
import subprocess
import sys
import time
from unittest.mock import MagicMock, patch

import psutil
import pytest

from watchrun.pgroup import (
    FallbackProcessGroup,
    PosixProcessGroup,
    ProcessGroup,
    default_process_group,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


def spawn(group: ProcessGroup, code: str) -> subprocess.Popen:
    return subprocess.Popen(
        [sys.executable, "-c", code],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        **group.popen_kwargs(),
    )


def test_base_group_has_no_kill() -> None:
    group = ProcessGroup()
    assert group.popen_kwargs() == {}
    with pytest.raises(NotImplementedError):
        group.kill(MagicMock())


def test_default_process_group_matches_platform() -> None:
    group = default_process_group(grace=0.1)
    assert group.grace == 0.1
    if sys.platform == "win32":
        assert isinstance(group, FallbackProcessGroup)
    else:
        assert isinstance(group, PosixProcessGroup)


@patch("watchrun.pgroup.sys.platform", "win32")
def test_default_process_group_falls_back_on_windows() -> None:
    assert isinstance(default_process_group(), FallbackProcessGroup)


@posix_only
def test_posix_kill_terminates_sleeping_process() -> None:
    group = PosixProcessGroup(grace=0.2)
    process = spawn(group, "import time; time.sleep(30)")

    started = time.monotonic()
    timer = group.kill(process)
    assert time.monotonic() - started < 0.5
    assert timer is not None and timer.daemon

    assert process.wait(timeout=5.0) == -signal.SIGTERM
    timer.join(2.0)


@posix_only
def test_posix_kill_escalates_when_sigterm_is_ignored() -> None:
    group = PosixProcessGroup(grace=0.2)
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "sys.stdout.write('ready\\n'); sys.stdout.flush()\n"
        "time.sleep(30)\n"
    )
    process = spawn(group, code)
    assert process.stdout is not None
    assert process.stdout.readline().strip() == b"ready"

    group.kill(process)

    assert process.wait(timeout=5.0) == -signal.SIGKILL
    process.stdout.close()


@posix_only
def test_posix_kill_of_finished_process_is_noop() -> None:
    group = PosixProcessGroup(grace=0.1)
    process = spawn(group, "pass")
    process.wait(timeout=5.0)

    assert group.kill(process) is None


@posix_only
def test_posix_signal_swallows_missing_group() -> None:
    with patch("watchrun.pgroup.os.killpg", side_effect=ProcessLookupError) as mock_killpg:
        assert PosixProcessGroup._signal(12345, signal.SIGTERM) is False
    mock_killpg.assert_called_once_with(12345, signal.SIGTERM)


def test_fallback_popen_kwargs() -> None:
    kwargs = FallbackProcessGroup().popen_kwargs()
    if hasattr(subprocess, "CREATE_NEW_PROCESS_GROUP"):
        assert kwargs == {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    else:
        assert kwargs == {}


@patch("watchrun.pgroup.psutil.wait_procs")
@patch("watchrun.pgroup.psutil.Process")
def test_fallback_kill_terminates_tree_then_kills_survivors(
    mock_process_cls: MagicMock, mock_wait_procs: MagicMock
) -> None:
    parent = MagicMock(pid=100)
    child = MagicMock(pid=101)
    grandchild = MagicMock(pid=102)
    parent.children.return_value = [child, grandchild]
    mock_process_cls.return_value = parent
    grandchild.terminate.side_effect = psutil.NoSuchProcess(102)
    mock_wait_procs.return_value = ([parent, grandchild], [child])

    group = FallbackProcessGroup(grace=0.01)
    timer = group.kill(MagicMock(pid=100))
    assert timer is not None
    timer.join(2.0)

    parent.children.assert_called_once_with(recursive=True)
    for proc in (parent, child, grandchild):
        proc.terminate.assert_called_once()
    child.kill.assert_called_once()
    parent.kill.assert_not_called()


@patch("watchrun.pgroup.psutil.Process", side_effect=psutil.NoSuchProcess(100))
def test_fallback_kill_of_vanished_process(mock_process_cls: MagicMock) -> None:
    assert FallbackProcessGroup().kill(MagicMock(pid=100)) is None


def test_fallback_kill_real_process() -> None:
    group = FallbackProcessGroup(grace=0.2)
    process = spawn(group, "import time; time.sleep(30)")

    timer = group.kill(process)
    assert timer is not None
    process.wait(timeout=5.0)
    timer.join(2.0)
    assert process.returncode is not None
    assert process.stdout is not None
    process.stdout.close()
