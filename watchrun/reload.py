"""
Live-reload fan-out for browser listeners.

Turns change batches into reload messages and dispatches them to every
registered listener. Serving the messages (HTTP, WebSocket) is left to
the listener; this module only depends on the watcher's channel and its
``stop()`` method.
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from watchrun.snapshot import Change, ChangeBatch
from watchrun.watcher import Watcher

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Action",
    "Hub",
    "Message",
    "RelayChange",
    "ReloadRelay",
    "default_on_change",
    "file_to_url",
]


class Action(str, Enum):
    """How a browser reacts to a changed file."""

    IGNORE = "ignore"
    RELOAD = "reload"
    INJECT = "inject"


OnChange = Callable[[Change], Tuple[str, Action]]
Listener = Callable[["Message"], Any]


@dataclass(frozen=True)
class RelayChange:
    kind: str
    path: str
    action: Action
    modified: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "path": self.path,
            "modified": self.modified.isoformat() if self.modified else None,
            "action": self.action.value,
        }


@dataclass(frozen=True)
class Message:
    type: str
    data: List[RelayChange] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps({"type": self.type, "data": [c.to_dict() for c in self.data]})


def file_to_url(filename: str, basedir: str = "", urlprefix: str = "") -> Optional[str]:
    """Convert ``filename`` inside ``basedir`` to a URL path under ``urlprefix``.

    Returns None when ``filename`` cannot be expressed relative to ``basedir``
    (for example on a different drive).

    >>> file_to_url("site/css/main.css", "site", "static")
    '/static/css/main.css'
    """
    try:
        rel = os.path.relpath(filename, basedir or os.curdir)
    except ValueError:
        return None
    return posixpath.join("/", urlprefix, rel.replace(os.sep, "/"))


def default_on_change(change: Change) -> Tuple[str, Action]:
    """Map a change to its URL; stylesheets are injected, everything else reloads."""
    url = file_to_url(change.path)
    if url is None:
        url = posixpath.join("/", change.path.replace(os.sep, "/"))
    if os.path.splitext(change.path)[1].lower() == ".css":
        return url, Action.INJECT
    return url, Action.RELOAD


class Hub:
    """Thread-safe registry of listeners receiving every dispatched message."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def add(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def dispatch(self, message: Message) -> int:
        """Send ``message`` to all listeners. Return how many received it."""
        with self._lock:
            listeners = list(self._listeners)
        delivered = 0
        for listener in listeners:
            try:
                listener(message)
                delivered += 1
            except Exception:
                logger.error("Reload listener failed", exc_info=True)
        return delivered


class ReloadRelay:
    """Forward a watcher's change batches to a :class:`Hub` as reload messages.

    Attributes:
        watcher (Watcher): Source of change batches.
        hub (Hub): Listeners receiving the messages.
        on_change (OnChange): Maps each change to a URL path and an action.
    """

    def __init__(self, watcher: Watcher, hub: Optional[Hub] = None, on_change: Optional[OnChange] = None) -> None:
        self.watcher = watcher
        self.hub = hub if hub is not None else Hub()
        self.on_change: OnChange = on_change or default_on_change
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._monitor, name="ReloadRelay", daemon=True)
        self._thread.start()

    def message_for(self, batch: ChangeBatch) -> Message:
        data = []
        for change in batch:
            path, action = self.on_change(change)
            data.append(RelayChange(change.kind.value, path, action, change.modified_at))
        return Message("changes", data)

    def _monitor(self) -> None:
        for batch in self.watcher.changes:
            try:
                message = self.message_for(batch)
            except Exception:
                logger.error("Failed to map change batch", exc_info=True)
                continue
            self.hub.dispatch(message)

    def reload_all(self) -> int:
        """Ask every listener to reload the whole page."""
        return self.hub.dispatch(Message("changes", [RelayChange("", "*", Action.RELOAD)]))

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self.watcher.stop()
        if self._thread is not None:
            self._thread.join(timeout)
