from __future__ import annotations

from typing import Any, Callable, Hashable, TypeVar

T = TypeVar("T")


class ComputedCache:
    """Results of earlier computations, keyed by the identity of their inputs.

    Owned by the caller and scoped to one top-level run; nothing is shared
    between instances.
    """

    def __init__(self) -> None:
        self._entries: dict[Hashable, Any] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def get_or_compute(self, key: Hashable, compute: Callable[[], T]) -> T:
        if key in self._entries:
            self.hits += 1
            return self._entries[key]
        self.misses += 1
        value = compute()
        self._entries[key] = value
        return value

    def clear(self) -> None:
        self._entries.clear()
