"""
Sequential command pipelines that can be killed at any point.

A :class:`Pipeline` runs its stages one after another: a stage starts only
after the previous one exited with status zero. All stages write their
combined stdout/stderr into one OS pipe that a relay thread copies into the
pipeline's output sink, so a multi-stage run reads as a single stream
bracketed by ``run``/``done``/``fail``/``kill`` log lines.

Concurrency:
    :meth:`Pipeline.run` and :meth:`Pipeline.kill` share exactly two fields,
    the active process and the ``killed`` flag, and only touch them while
    holding ``_lock``. The lock is never held across a process wait, so a
    kill is never delayed by a running stage, and no stage can start after
    a kill has been recorded.
"""

from __future__ import annotations

import codecs
import io
import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import IO, Any, List, Optional, Protocol, Sequence, Tuple

from watchrun.pgroup import ProcessGroup, default_process_group

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Pipeline",
    "PipelineLog",
    "STAGE_SEPARATORS",
    "Stage",
    "StageError",
    "parse_stages",
    "run_pipeline",
]

STAGE_SEPARATORS = (";;", "==")


class StageError(ValueError):
    """Raised when a command line cannot be split into stages."""


class PipelineLog(Protocol):
    def info(self, msg: str) -> Any: ...

    def warning(self, msg: str) -> Any: ...

    def error(self, msg: str) -> Any: ...


@dataclass(frozen=True)
class Stage:
    """One external command of a pipeline.

    Attributes:
        command (str): Executable name or path.
        arguments (Tuple[str, ...]): Arguments passed to the command.
    """

    command: str
    arguments: Tuple[str, ...] = ()

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.arguments]

    def __str__(self) -> str:
        return " ".join(self.argv)


def parse_stages(args: Sequence[str]) -> List[Stage]:
    """Split a command line into stages at ``;;`` or ``==`` tokens.

    Args:
        args (Sequence[str]): Positional command-line arguments.

    Returns:
        List[Stage]: The stages in order. Empty when ``args`` is empty.

    Raises:
        StageError: If a separator leaves a stage without a command (leading,
            trailing or doubled separator).

    Example:
        >>> [str(s) for s in parse_stages(["make", "build", ";;", "./server", "-v"])]
        ['make build', './server -v']
    """
    stages: List[Stage] = []
    current: List[str] = []
    for position, arg in enumerate(args):
        if arg in STAGE_SEPARATORS:
            if not current:
                raise StageError(f"Empty stage before separator {arg!r} at argument {position}")
            stages.append(Stage(current[0], tuple(current[1:])))
            current = []
            continue
        current.append(arg)

    if current:
        stages.append(Stage(current[0], tuple(current[1:])))
    elif args:
        raise StageError(f"Trailing separator {args[-1]!r} without a command")
    return stages


class Pipeline:
    """One generation of a stage chain.

    Attributes:
        stages (List[Stage]): Commands to run in order.
        log (PipelineLog): Receives the stage bracketing lines.
        output (Optional[IO[Any]]): Sink for combined stdout/stderr. Binary and
            text streams are both accepted. Defaults to this process's stdout.
        directory (Optional[str]): Working directory for every stage.
        process_group (ProcessGroup): Places stages in their own group and
            kills that group.
        started (List[Stage]): Stages that were actually spawned, in order.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        log: Optional[PipelineLog] = None,
        output: Optional[IO[Any]] = None,
        directory: Optional[str] = None,
        process_group: Optional[ProcessGroup] = None,
    ) -> None:
        self.stages = list(stages)
        self.log: PipelineLog = log or logger
        self.output = output
        self.directory = directory
        self.process_group = process_group or default_process_group()
        self.started: List[Stage] = []

        self._lock = threading.Lock()
        self._active: Optional[subprocess.Popen] = None
        self._stage: Optional[Stage] = None
        self._killed = False
        self._writer: Optional[int] = None
        self._muted = False
        self._relay_thread: Optional[threading.Thread] = None
        self._kill_timer: Optional[threading.Timer] = None
        self._thread: Optional[threading.Thread] = None
        self._done = threading.Event()

    @property
    def killed(self) -> bool:
        with self._lock:
            return self._killed

    @property
    def running(self) -> bool:
        with self._lock:
            return self._active is not None

    def start(self) -> None:
        """Run the pipeline on a daemon thread."""
        self._thread = threading.Thread(target=self.run, name="Pipeline", daemon=True)
        self._thread.start()

    def run(self) -> None:
        """Run every stage in order on the calling thread.

        Stops at the first stage that fails to start, exits non-zero or is
        killed. A kill-induced exit is not reported as a failure.
        """
        try:
            for stage in self.stages:
                with self._lock:
                    if self._killed:
                        return
                    process = self._spawn(stage)
                    if process is None:
                        return
                    began = time.monotonic()

                returncode = process.wait()

                with self._lock:
                    if self._active is process:
                        self._active = None
                    killed = self._killed

                if killed:
                    return
                if returncode != 0:
                    self.log.warning(f"<< exit: {stage} (status {returncode}) >>")
                    return
                self.log.info(f"<< done: {stage} ({time.monotonic() - began:.3f}s) >>")
        finally:
            with self._lock:
                self._active = None
                self._close_output()
            self._done.set()

    def _spawn(self, stage: Stage) -> Optional[subprocess.Popen]:
        """Start ``stage``. Caller must hold ``_lock``."""
        if self._writer is None:
            self._open_output()
        self._stage = stage
        self.log.info(f"<<  run: {stage} >>")
        try:
            process = subprocess.Popen(
                stage.argv,
                cwd=self.directory,
                stdin=subprocess.DEVNULL,
                stdout=self._writer,
                stderr=self._writer,
                **self.process_group.popen_kwargs(),
            )
        except (OSError, ValueError) as e:
            self._killed = True
            self._close_output()
            self.log.error(f"<< fail: {e} >>")
            return None
        self._active = process
        self.started.append(stage)
        return process

    def kill(self) -> None:
        """Kill the active stage's process group and prevent further stages.

        Safe to call any number of times, before :meth:`run` has started or
        after it has finished. Returns once the termination signal was sent;
        :meth:`join` also waits for the hard kill that may follow.
        """
        with self._lock:
            self._killed = True
            process = self._active
            if process is None:
                return
            self._active = None
            self.log.info(f"<< kill: {self._stage} >>")
            self._muted = True
            self._close_output()
            self._kill_timer = self.process_group.kill(process)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until :meth:`run` has returned and any pending hard kill has fired.

        Return True if both happened within ``timeout``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._done.wait(timeout):
            return False
        with self._lock:
            timer = self._kill_timer
        if timer is None:
            return True
        timer.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        return not timer.is_alive()

    def _open_output(self) -> None:
        reader, self._writer = os.pipe()
        self._relay_thread = threading.Thread(
            target=self._relay, args=(reader,), name="PipelineOutput", daemon=True
        )
        self._relay_thread.start()

    def _close_output(self) -> None:
        if self._writer is not None:
            try:
                os.close(self._writer)
            except OSError as e:
                logger.debug(f"Closing output pipe failed: {e}")
            self._writer = None

    def _relay(self, reader: int) -> None:
        sink = self.output if self.output is not None else sys.stdout
        text = isinstance(sink, io.TextIOBase)
        if text and self.output is None and hasattr(sink, "buffer"):
            sink, text = sink.buffer, False
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def emit(data: Any) -> None:
            if not data:
                return
            try:
                sink.write(data)
                sink.flush()
            except (OSError, ValueError) as e:
                logger.debug(f"Writing pipeline output failed: {e}")

        try:
            while True:
                chunk = os.read(reader, 65536)
                if not chunk:
                    break
                if self._muted:
                    # Killed generation: drain without printing
                    continue
                emit(decoder.decode(chunk) if text else chunk)
            if text and not self._muted:
                # Trailing incomplete sequence
                emit(decoder.decode(b"", final=True))
        except OSError as e:
            logger.debug(f"Reading pipeline output failed: {e}")
        finally:
            os.close(reader)

    def __repr__(self) -> str:
        return f"<Pipeline stages={len(self.stages)} killed={self._killed}>"


def run_pipeline(stages: Sequence[Stage], **kwargs: Any) -> Pipeline:
    """Create a :class:`Pipeline` and start it on a background thread."""
    pipeline = Pipeline(stages, **kwargs)
    pipeline.start()
    return pipeline
