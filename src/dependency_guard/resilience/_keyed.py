"""
Per-key state with per-key locks.

Each dependency gets its own state object and its own ``threading.Lock``.
The map-level lock is only taken when a key is first created, so work on
different dependencies never contends after warm-up.

Critical sections under a key lock must be short and must never await:
the lock is a thread lock, which keeps state linearizable whether callers
share one event loop or run on many threads.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

S = TypeVar("S")


class KeyedEntry(Generic[S]):
    """State for one key, with the lock that guards it."""

    __slots__ = ("lock", "state")

    def __init__(self, state: S) -> None:
        self.lock = threading.Lock()
        self.state = state


class KeyedStateMap(Generic[S]):
    """Lazily created per-key state.

    Example:
        >>> states = KeyedStateMap(lambda key: [])
        >>> with states.locked("inference") as window:
        ...     window.append(now)
    """

    def __init__(self, factory: Callable[[str], S]) -> None:
        """Initialize map.

        Args:
            factory: Creates the initial state for a new key
        """
        self._factory = factory
        self._entries: dict[str, KeyedEntry[S]] = {}
        self._create_lock = threading.Lock()

    def entry(self, key: str) -> KeyedEntry[S]:
        """Get the entry for a key, creating it on first reference."""
        entry = self._entries.get(key)
        if entry is not None:
            return entry

        with self._create_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = KeyedEntry(self._factory(key))
                self._entries[key] = entry
            return entry

    def locked(self, key: str) -> _LockedState[S]:
        """Context manager yielding a key's state under its lock."""
        return _LockedState(self.entry(key))

    def keys(self) -> list[str]:
        """Get all keys created so far."""
        with self._create_lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._entries)


class _LockedState(Generic[S]):
    __slots__ = ("_entry",)

    def __init__(self, entry: KeyedEntry[S]) -> None:
        self._entry = entry

    def __enter__(self) -> S:
        self._entry.lock.acquire()
        return self._entry.state

    def __exit__(self, *exc_info: object) -> None:
        self._entry.lock.release()
