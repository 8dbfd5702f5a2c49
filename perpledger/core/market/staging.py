"""Copy-on-write staging of the market state.

A call stages its changes on views over the committed containers instead of
copying them: reads fall through to the committed data, writes and deletes
are buffered, and ``merge`` folds the buffer back in once the call commits.
A call therefore costs time in what it touches, not in the size of the
history behind it. Dropping a staged view discards its changes.
"""

from __future__ import annotations

from collections.abc import MutableMapping, Sequence
from typing import Any, Iterator


class Overlay(MutableMapping):
    """Write-buffered view over a committed ``dict``.

    Nested ``dict`` values are wrapped in their own ``Overlay`` on first
    access, so mutating a value read through the view never reaches the
    committed data before ``merge``.
    """

    __slots__ = ("_base", "_writes", "_deleted")

    def __init__(self, base: dict) -> None:
        self._base = base
        self._writes: dict = {}
        self._deleted: set = set()

    def __getitem__(self, key: Any) -> Any:
        if key in self._writes:
            return self._writes[key]
        if key in self._deleted:
            raise KeyError(key)
        value = self._base[key]
        if isinstance(value, dict):
            value = Overlay(value)
            self._writes[key] = value
        return value

    def __setitem__(self, key: Any, value: Any) -> None:
        self._deleted.discard(key)
        self._writes[key] = value

    def __delitem__(self, key: Any) -> None:
        if key not in self:
            raise KeyError(key)
        self._writes.pop(key, None)
        if key in self._base:
            self._deleted.add(key)

    def __contains__(self, key: object) -> bool:
        if key in self._writes:
            return True
        return key not in self._deleted and key in self._base

    def __iter__(self) -> Iterator[Any]:
        for key in self._base:
            if key not in self._deleted:
                yield key
        for key in self._writes:
            if key not in self._base:
                yield key

    def __len__(self) -> int:
        added = sum(1 for key in self._writes if key not in self._base)
        return len(self._base) - len(self._deleted) + added

    def __repr__(self) -> str:
        return f"Overlay({dict(self.items())!r})"

    def written(self) -> dict:
        """Entries set (or read as nested maps) through this view."""
        return self._writes

    def merge(self) -> None:
        for key in self._deleted:
            del self._base[key]
        for key, value in self._writes.items():
            if isinstance(value, Overlay) and value._base is self._base.get(key):
                value.merge()
            else:
                self._base[key] = value


class AppendLog(Sequence):
    """Append-only view over a committed ``list``."""

    __slots__ = ("_base", "_tail")

    def __init__(self, base: list) -> None:
        self._base = base
        self._tail: list = []

    def __len__(self) -> int:
        return len(self._base) + len(self._tail)

    def __getitem__(self, index: Any) -> Any:
        if isinstance(index, slice):
            start, stop, step = index.indices(len(self))
            return [self[i] for i in range(start, stop, step)]
        if index < 0:
            index += len(self)
        if not 0 <= index < len(self):
            raise IndexError(index)
        if index < len(self._base):
            return self._base[index]
        return self._tail[index - len(self._base)]

    def __repr__(self) -> str:
        return f"AppendLog({list(self)!r})"

    def append(self, value: Any) -> None:
        self._tail.append(value)

    def appended(self) -> list:
        """Entries appended through this view, preceded by the last committed one."""
        return self._base[-1:] + self._tail

    def merge(self) -> None:
        self._base.extend(self._tail)


def changed(mapping: Any) -> Any:
    """Entries written in the current call for a staged map; every entry otherwise."""
    if isinstance(mapping, Overlay):
        return mapping.written()
    return mapping


def recent(log: Any) -> list:
    """Entries appended in the current call for a staged log; the whole log otherwise."""
    if isinstance(log, AppendLog):
        return log.appended()
    return list(log)
