"""Glob lists for the ignore and care filters."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List

__all__ = ["DEFAULT_IGNORE", "Globs", "split_globs"]

DEFAULT_IGNORE: List[str] = [
    # hidden and temporary files
    ".*", "~*", "*~",
    # object files
    "*.[ao]", "*.so", "*.obj",
    # log files
    "*.log",
    # test binaries and profiles
    "*.test", "*.prof",
    # windows binary files
    "*.exe", "*.dll",
]

_SEPARATORS = re.compile(r"[;:]")


def split_globs(value: str) -> List[str]:
    """Split a ``;`` or ``:`` separated glob list, dropping empty items.

    >>> split_globs("*.tmp;build:dist")
    ['*.tmp', 'build', 'dist']
    """
    return [item.strip() for item in _SEPARATORS.split(value) if item.strip()]


@dataclass
class Globs:
    """A default glob list that can be extended or switched off.

    Attributes:
        default (List[str]): Globs used unless ``no_default`` is set.
        additional (List[str]): Globs added by the user.
        no_default (bool): Drop ``default`` from :meth:`all`.
    """

    default: List[str] = field(default_factory=list)
    additional: List[str] = field(default_factory=list)
    no_default: bool = False

    def add(self, value: str) -> None:
        self.additional.extend(split_globs(value))

    def extend(self, values: Iterable[str]) -> None:
        for value in values:
            self.add(value)

    def all(self) -> List[str]:
        if self.no_default:
            return list(self.additional)
        return list(self.default) + list(self.additional)

    def __str__(self) -> str:
        return ";".join(self.all())
