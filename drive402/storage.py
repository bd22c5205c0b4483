"""A small object dictionary store with cached and device-backed entries."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

Reader = Callable[[], Any]
Writer = Callable[[Any], None]


class EntryError(KeyError):
    """Raised when an object is not present in the store."""


class Entry:
    """One object of the dictionary, with a cached value.

    ``get`` refreshes the cache through the reader, ``set`` pushes the value
    through the writer; the ``*_cached`` variants touch only the cache.
    """

    def __init__(
        self,
        index: int,
        subindex: int = 0,
        value: Any = 0,
        reader: Optional[Reader] = None,
        writer: Optional[Writer] = None,
    ) -> None:
        self.index = index
        self.subindex = subindex
        self._value = value
        self._reader = reader
        self._writer = writer
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Entry(0x{self.index:04X}sub{self.subindex}={self._value!r})"

    def get(self) -> Any:
        """Read the value from the device if possible and return it."""
        with self._lock:
            if self._reader is not None:
                self._value = self._reader()
            return self._value

    def get_cached(self) -> Any:
        """Return the last known value."""
        with self._lock:
            return self._value

    def set(self, value: Any) -> None:
        """Write the value to the device and cache it."""
        with self._lock:
            if self._writer is not None:
                self._writer(value)
            self._value = value

    def set_cached(self, value: Any) -> None:
        """Store the value in the cache only."""
        with self._lock:
            self._value = value


class ObjectStore:
    """Entries addressed by (index, subindex)."""

    def __init__(self) -> None:
        self._entries: dict[tuple[int, int], Entry] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(
        self,
        index: int,
        subindex: int = 0,
        value: Any = 0,
        reader: Optional[Reader] = None,
        writer: Optional[Writer] = None,
    ) -> Entry:
        """Create and register an entry; an address may be used only once."""
        key = (index, subindex)
        if key in self._entries:
            raise ValueError(f"object 0x{index:04X}sub{subindex} already exists")
        entry = Entry(index, subindex, value, reader, writer)
        self._entries[key] = entry
        return entry

    def entry(self, index: int, subindex: int = 0) -> Entry:
        """Look up an entry, raising EntryError if it is missing."""
        try:
            return self._entries[(index, subindex)]
        except KeyError:
            raise EntryError(f"object 0x{index:04X}sub{subindex} not found") from None