"""
Filesystem snapshots and the diff between two of them.

A :class:`Snapshot` maps every monitored regular file to its modification
time in nanoseconds. Snapshots are rebuilt from scratch on every poll and
never mutated; the watcher compares consecutive snapshots and turns the
difference into a batch of :class:`Change` records.

Scan Policy:
    - Directories are traversed but never recorded.
    - Symlinks are neither recorded nor followed, so a symlinked directory
      is not traversed and link cycles cannot occur.
    - Entries whose base name matches an ignore glob are skipped; an
      ignored directory prunes its whole subtree.
    - Care globs, when given, are applied after ignore filtering to the
      full path of each file.
    - Scan errors are fail-soft: an unreadable directory or a file that
      vanishes between listing and stat is skipped and the scan continues.
"""

from __future__ import annotations

import fnmatch
import glob
import logging
import os
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from watchdog.utils.patterns import match_any_paths

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Change",
    "ChangeBatch",
    "ChangeKind",
    "Snapshot",
    "SnapshotBuilder",
    "build_snapshot",
    "diff",
]

_GLOB_MAGIC = frozenset("*?[")
CASE_SENSITIVE = os.path.normcase("A") == "A"


class ChangeKind(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Change:
    """A single difference between two snapshots.

    Attributes:
        kind (ChangeKind): What happened to the file.
        path (str): Normalized absolute path of the file.
        modified (int): Modification time in nanoseconds. For deletions this is
            the last time seen before the file disappeared.
    """

    kind: ChangeKind
    path: str
    modified: int

    @property
    def modified_at(self) -> datetime:
        """Return the modification time as an aware UTC datetime."""
        return datetime.fromtimestamp(self.modified / 1e9, tz=timezone.utc)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.path}"


ChangeBatch = Tuple[Change, ...]


class Snapshot(Mapping[str, int]):
    """Immutable mapping from normalized file path to modification time."""

    __slots__ = ("_times",)

    def __init__(self, times: Optional[Mapping[str, int]] = None) -> None:
        self._times: Dict[str, int] = dict(times or {})

    def __getitem__(self, path: str) -> int:
        return self._times[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._times)

    def __len__(self) -> int:
        return len(self._times)

    def same(self, other: Mapping[str, int]) -> bool:
        """Return True if both snapshots hold the same paths with identical times."""
        if len(self) != len(other):
            return False
        for path, modified in self._times.items():
            if path not in other or other[path] != modified:
                return False
        return True

    def changes(self, following: Mapping[str, int]) -> ChangeBatch:
        """Return the changes leading from this snapshot to ``following``."""
        return diff(self, following)

    def __repr__(self) -> str:
        return f"<Snapshot files={len(self._times)}>"


def diff(previous: Mapping[str, int], following: Mapping[str, int]) -> ChangeBatch:
    """Compute the change batch between two snapshots.

    Deletions and modifications are listed first, in the iteration order of
    ``previous``, followed by creations in the iteration order of ``following``.

    Args:
        previous (Mapping[str, int]): The older snapshot.
        following (Mapping[str, int]): The newer snapshot.

    Returns:
        ChangeBatch: One ``delete`` per path only in ``previous`` (carrying the old
        time), one ``modify`` per shared path whose time differs (carrying the new
        time) and one ``create`` per path only in ``following``.

    Example:
        >>> batch = diff(Snapshot({"a": 1000}), Snapshot({"a": 1005, "b": 1006}))
        >>> [(c.kind.value, c.path, c.modified) for c in batch]
        [('modify', 'a', 1005), ('create', 'b', 1006)]
    """
    changes: List[Change] = []
    for path, modified in previous.items():
        if path not in following:
            changes.append(Change(ChangeKind.DELETE, path, modified))
            continue
        updated = following[path]
        if updated != modified:
            changes.append(Change(ChangeKind.MODIFY, path, updated))
    for path, modified in following.items():
        if path not in previous:
            changes.append(Change(ChangeKind.CREATE, path, modified))
    return tuple(changes)


def normalize_path(path: str) -> str:
    """Return the snapshot key for ``path``: absolute and case-folded where needed."""
    return os.path.normcase(os.path.abspath(path))


class SnapshotBuilder:
    """Build snapshots of a fixed set of monitored paths.

    Attributes:
        monitor (List[str]): Literal paths, directories or glob patterns. An empty
            string stands for the current directory.
        ignore (List[str]): Globs matched against base names.
        care (List[str]): Globs matched against full paths; empty means all files.
        recurse (bool): Walk directories recursively instead of listing only
            their immediate entries.
    """

    def __init__(
        self,
        monitor: Sequence[str],
        ignore: Sequence[str] = (),
        care: Sequence[str] = (),
        recurse: bool = True,
    ) -> None:
        self.monitor = list(monitor) or ["."]
        self.ignore = [os.path.normcase(pattern) for pattern in ignore]
        self.care = list(care)
        self.recurse = recurse

    def build(self) -> Snapshot:
        times: Dict[str, int] = {}
        for target in self.monitor:
            self._include_target(times, target)
        return Snapshot(times)

    def is_ignored(self, name: str) -> bool:
        """Return True if the base name matches any ignore glob."""
        name = os.path.normcase(name)
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.ignore)

    def is_cared(self, path: str) -> bool:
        if not self.care:
            return True
        try:
            return match_any_paths(
                [path], included_patterns=self.care, case_sensitive=CASE_SENSITIVE
            )
        except ValueError as e:
            logger.debug(f"Invalid care pattern while matching {path}: {e}")
            return False

    def _include_target(self, times: Dict[str, int], target: str) -> None:
        if not target:
            self._include_dir(times, ".")
            return

        is_pattern = any(c in _GLOB_MAGIC for c in target)
        if is_pattern:
            try:
                matches = sorted(glob.glob(target))
            except (OSError, ValueError) as e:
                logger.debug(f"Glob {target!r} failed: {e}")
                return
        else:
            matches = [target]

        for match in matches:
            if is_pattern and self.is_ignored(os.path.basename(match)):
                continue
            try:
                info = os.lstat(match)
            except OSError as e:
                logger.debug(f"Skipping {match}: {e}")
                continue
            if stat.S_ISDIR(info.st_mode):
                self._include_dir(times, match)
            elif stat.S_ISREG(info.st_mode):
                self._record(times, match, info.st_mtime_ns)

    def _include_dir(self, times: Dict[str, int], root: str) -> None:
        pending = [root]
        while pending:
            directory = pending.pop()
            try:
                with os.scandir(directory) as it:
                    entries = list(it)
            except OSError as e:
                logger.debug(f"Skipping unreadable directory {directory}: {e}")
                continue

            for entry in entries:
                if not entry.name or self.is_ignored(entry.name):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if self.recurse:
                            pending.append(entry.path)
                    elif entry.is_file(follow_symlinks=False):
                        info = entry.stat(follow_symlinks=False)
                        self._record(times, entry.path, info.st_mtime_ns)
                except OSError as e:
                    # Vanished between listing and stat
                    logger.debug(f"Skipping {entry.path}: {e}")

    def _record(self, times: Dict[str, int], path: str, modified: int) -> None:
        key = normalize_path(path)
        if self.is_cared(key):
            times[key] = modified

    def __repr__(self) -> str:
        return f"<SnapshotBuilder monitor={self.monitor} recurse={self.recurse}>"


def build_snapshot(
    monitor: Iterable[str],
    ignore: Iterable[str] = (),
    care: Iterable[str] = (),
    recurse: bool = True,
) -> Snapshot:
    """Build a single snapshot of ``monitor`` with the given filters."""
    return SnapshotBuilder(list(monitor), list(ignore), list(care), recurse).build()
