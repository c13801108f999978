"""
Polling file watcher.

Responsibility:
    Repeatedly snapshot the monitored paths, compare each snapshot with the
    previous one, and publish the differences as change batches on a
    :class:`ChangeChannel`.

Design:
    - **Poll and Diff**: No OS notification API is used. Every tick builds a
      fresh :class:`~watchrun.snapshot.Snapshot` and compares it to the last
      one, which keeps behaviour identical across platforms.
    - **Settle Delay**: When a difference is seen the watcher waits one
      interval and snapshots again before diffing, so half-written files are
      not reported. It re-polls once; it does not loop until the tree is
      stable, so a long burst can produce several consecutive batches.
    - **Backpressure**: The channel holds at most one undelivered batch. The
      poll thread blocks on a full channel until a consumer receives.

Lifecycle:
    ``RUNNING -> STOPPING -> STOPPED``. :meth:`Watcher.stop` performs the first
    transition exactly once; the poll thread performs the second on exit and
    closes the channel. A stop requested during a sleep or a blocked send is
    observed within one interval.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, Optional, Sequence

from watchrun.snapshot import ChangeBatch, Snapshot, SnapshotBuilder

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ChangeChannel", "Watcher", "WatcherState", "watch"]

DEFAULT_INTERVAL = 0.3


class WatcherState(int, Enum):
    RUNNING = 0
    STOPPING = 1
    STOPPED = 2


class ChangeChannel:
    """Bounded mailbox carrying change batches from the watcher to a consumer.

    Senders block while the mailbox is full. Closing is idempotent; batches
    already queued are still delivered after close.

    Attributes:
        capacity (int): Maximum number of undelivered batches.
    """

    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._condition = threading.Condition()
        self._items: Deque[ChangeBatch] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def send(
        self,
        batch: ChangeBatch,
        abort: Optional[Callable[[], bool]] = None,
        poll_interval: float = 0.1,
    ) -> bool:
        """Queue a batch, blocking while the mailbox is full.

        Args:
            batch (ChangeBatch): The batch to deliver.
            abort (Optional[Callable[[], bool]]): Checked while blocked; the send
                is abandoned once it returns True.
            poll_interval (float): How often ``abort`` is checked.

        Returns:
            bool: True if the batch was queued, False if the channel is closed or
            the send was aborted.
        """
        with self._condition:
            while len(self._items) >= self.capacity and not self._closed:
                if abort is not None and abort():
                    return False
                self._condition.wait(poll_interval if abort is not None else None)
            if self._closed:
                return False
            self._items.append(batch)
            self._condition.notify_all()
            return True

    def receive(self, timeout: Optional[float] = None) -> Optional[ChangeBatch]:
        """Return the next batch, or None on timeout or once closed and drained."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while not self._items:
                if self._closed:
                    return None
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)
            batch = self._items.popleft()
            self._condition.notify_all()
            return batch

    def close(self) -> bool:
        """Close the channel. Return True only for the call that closed it."""
        with self._condition:
            if self._closed:
                return False
            self._closed = True
            self._condition.notify_all()
            return True

    def __iter__(self) -> Iterator[ChangeBatch]:
        while True:
            batch = self.receive()
            if batch is None:
                return
            yield batch

    def __repr__(self) -> str:
        return f"<ChangeChannel pending={len(self._items)} closed={self._closed}>"


class Watcher:
    """Poll monitored paths and publish change batches.

    The first poll compares against an empty snapshot, so every existing file
    is reported as created in the first batch.

    Attributes:
        builder (SnapshotBuilder): Produces the snapshot for each poll.
        interval (float): Poll interval and settle delay, in seconds.
        changes (ChangeChannel): Channel the batches are published on.

    Example:
        >>> watcher = Watcher(SnapshotBuilder(["src"]), interval=0.3)
        >>> watcher.start()
        >>> for batch in watcher.changes:
        ...     print(len(batch), "changes")
        >>> watcher.stop()
    """

    def __init__(
        self,
        builder: SnapshotBuilder,
        interval: float = DEFAULT_INTERVAL,
        channel: Optional[ChangeChannel] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.builder = builder
        self.interval = interval
        self.changes = channel if channel is not None else ChangeChannel()

        self._condition = threading.Condition()
        self._state = WatcherState.RUNNING
        self._thread: Optional[threading.Thread] = None
        self._previous = Snapshot()

        self.polls: int = 0
        self.batches_sent: int = 0
        self.changes_sent: int = 0
        self.scan_errors: int = 0
        self.last_batch_time: float = 0.0

    @property
    def state(self) -> WatcherState:
        with self._condition:
            return self._state

    def start(self) -> None:
        """Start the poll thread.

        Raises:
            RuntimeError: If the watcher was already started or stopped.
        """
        with self._condition:
            if self._thread is not None or self._state is not WatcherState.RUNNING:
                raise RuntimeError("Watcher can only be started once")
            self._thread = threading.Thread(target=self._run, name="Watcher", daemon=True)
        logger.info(
            f"Watching {';'.join(self.builder.monitor)} every {self.interval}s "
            f"(recurse={self.builder.recurse})"
        )
        self._thread.start()

    def stop(self) -> bool:
        """Request the poll loop to stop.

        Only the first call has an effect; later calls return False. A watcher
        that was never started is moved straight to ``STOPPED`` and its channel
        closed.

        Returns:
            bool: True if this call performed the transition.
        """
        with self._condition:
            if self._state is not WatcherState.RUNNING:
                return False
            if self._thread is None:
                self._state = WatcherState.STOPPED
            else:
                self._state = WatcherState.STOPPING
            self._condition.notify_all()
            never_started = self._thread is None
        if never_started:
            self.changes.close()
        logger.debug("Watcher stop requested")
        return True

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the poll thread to exit. Return True if it has."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return self.state is WatcherState.STOPPED

    def _stopping(self) -> bool:
        with self._condition:
            return self._state is not WatcherState.RUNNING

    def _sleep(self) -> bool:
        """Sleep one interval. Return True if a stop was requested."""
        with self._condition:
            return self._condition.wait_for(
                lambda: self._state is not WatcherState.RUNNING, timeout=self.interval
            )

    def _snapshot(self) -> Optional[Snapshot]:
        self.polls += 1
        try:
            return self.builder.build()
        except Exception as e:
            self.scan_errors += 1
            logger.error(f"Snapshot failed, skipping poll: {e}", exc_info=True)
            return None

    def _run(self) -> None:
        try:
            while not self._stopping():
                current = self._snapshot()
                if current is not None and not self._previous.same(current):
                    if self._sleep():
                        break
                    settled = self._snapshot()
                    if settled is not None:
                        self._publish(settled)
                if self._sleep():
                    break
        finally:
            with self._condition:
                self._state = WatcherState.STOPPED
                self._condition.notify_all()
            self.changes.close()
            logger.debug("Watcher stopped")

    def _publish(self, settled: Snapshot) -> None:
        batch = self._previous.changes(settled)
        self._previous = settled
        if not batch:
            # Reverted during the settle delay
            return
        if logger.isEnabledFor(logging.DEBUG):
            for change in batch:
                logger.debug(f"Change: {change}")
        if self.changes.send(batch, abort=self._stopping, poll_interval=self.interval):
            self.batches_sent += 1
            self.changes_sent += len(batch)
            self.last_batch_time = time.monotonic()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "state": self.state.name,
            "polls": self.polls,
            "batches_sent": self.batches_sent,
            "changes_sent": self.changes_sent,
            "scan_errors": self.scan_errors,
            "files": len(self._previous),
        }

    def __repr__(self) -> str:
        return f"<Watcher monitor={self.builder.monitor} state={self.state.name}>"


def watch(
    monitor: Sequence[str],
    ignore: Sequence[str] = (),
    care: Sequence[str] = (),
    interval: float = DEFAULT_INTERVAL,
    recurse: bool = True,
) -> Watcher:
    """Create and start a watcher for ``monitor``."""
    watcher = Watcher(SnapshotBuilder(monitor, ignore, care, recurse), interval=interval)
    watcher.start()
    return watcher
