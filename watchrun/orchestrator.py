"""Restart a pipeline for every change batch a watcher publishes."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from watchrun.pipeline import Pipeline, Stage
from watchrun.watcher import Watcher

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Orchestrator"]

PipelineFactory = Callable[[Sequence[Stage]], Pipeline]


class Orchestrator:
    """Consume change batches and keep exactly one pipeline generation alive.

    Every received batch kills the previous generation before the next one is
    started, so two generations never run at the same time. The loop ends
    when the watcher's channel closes, after a final kill.

    Attributes:
        watcher (Watcher): Source of change batches.
        stages (List[Stage]): Stages started for every generation.
        pipeline_factory (PipelineFactory): Builds the pipeline for a generation.
        generations (int): Number of pipelines started so far.
    """

    def __init__(
        self,
        watcher: Watcher,
        stages: Sequence[Stage],
        pipeline_factory: Optional[PipelineFactory] = None,
        join_timeout: float = 5.0,
    ) -> None:
        self.watcher = watcher
        self.stages = list(stages)
        self.pipeline_factory: PipelineFactory = pipeline_factory or Pipeline
        self.join_timeout = join_timeout
        self.generations = 0
        self._pipeline: Optional[Pipeline] = None
        self._retired: List[Pipeline] = []
        self._shutdown = threading.Event()
        self._lock = threading.RLock()

    @property
    def pipeline(self) -> Optional[Pipeline]:
        return self._pipeline

    def run(self) -> None:
        """Consume batches until the watcher's channel is closed."""
        try:
            for batch in self.watcher.changes:
                if self._shutdown.is_set():
                    logger.debug(f"Ignoring batch of {len(batch)} changes during shutdown")
                    continue
                self._restart()
        finally:
            self._kill_current()
        logger.debug(f"Orchestrator finished after {self.generations} generations")

    def _restart(self) -> None:
        with self._lock:
            if self._shutdown.is_set():
                return
            self._kill_current()
            self._retire()
            logger.info(f"<< {datetime.now().isoformat(sep=' ', timespec='seconds')} >>")
            pipeline = self.pipeline_factory(self.stages)
            self._pipeline = pipeline
            self.generations += 1
            pipeline.start()

    def _retire(self) -> None:
        # Killed generations stay tracked until their hard kill has fired
        if self._pipeline is not None:
            self._retired.append(self._pipeline)
        self._retired = [p for p in self._retired if not p.join(0)]

    def _kill_current(self) -> None:
        with self._lock:
            if self._pipeline is not None:
                self._pipeline.kill()

    def shutdown(self) -> None:
        """Stop the watcher and kill the current pipeline.

        Safe to call from a signal handler thread; :meth:`run` returns once the
        watcher has closed its channel.
        """
        self._shutdown.set()
        self.watcher.stop()
        self._kill_current()

    def wait_for_pipeline(self) -> bool:
        """Wait until every killed generation has exited, up to ``join_timeout``.

        This includes the hard kill of processes that ignored the termination
        request, so nothing started by a pipeline outlives the caller.
        """
        with self._lock:
            pending = list(self._retired)
            if self._pipeline is not None:
                pending.append(self._pipeline)
        deadline = time.monotonic() + self.join_timeout
        finished = True
        for pipeline in pending:
            if not pipeline.join(max(0.0, deadline - time.monotonic())):
                finished = False
        if not finished:
            logger.warning(f"Pipeline did not exit within {self.join_timeout}s")
        return finished

    def get_statistics(self) -> Dict[str, Any]:
        stats = self.watcher.get_statistics()
        stats["generations"] = self.generations
        return stats


def stages_summary(stages: List[Stage]) -> str:
    return " ;; ".join(str(stage) for stage in stages)
