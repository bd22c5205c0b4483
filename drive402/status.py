"""Layer states and the status and report objects that layers fill in."""

from __future__ import annotations

import threading
from enum import IntEnum


class LayerState(IntEnum):
    """Lifecycle state of a layer, ordered from off to ready."""

    OFF = 0
    INIT = 1
    SHUTDOWN = 2
    ERROR = 3
    HALT = 4
    RECOVER = 5
    READY = 6


class Level(IntEnum):
    """Severity of a layer status."""

    OK = 0
    WARN = 1
    ERROR = 2
    STALE = 3
    UNBOUNDED = 3


class LayerStatus:
    """Collects the worst severity seen and the reasons given for it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._level = Level.OK
        self._reasons: list[str] = []

    @property
    def level(self) -> Level:
        return self._level

    @property
    def reason(self) -> str:
        with self._lock:
            return "; ".join(self._reasons)

    def _raise_to(self, level: Level, reason: str) -> None:
        with self._lock:
            if level > self._level:
                self._level = level
            if reason:
                self._reasons.append(reason)

    def warn(self, reason: str) -> None:
        """Raise the severity to at least WARN and record the reason."""
        self._raise_to(Level.WARN, reason)

    def error(self, reason: str) -> None:
        """Raise the severity to at least ERROR and record the reason."""
        self._raise_to(Level.ERROR, reason)

    def bounded(self, level: Level) -> bool:
        """True if the severity is not worse than ``level``."""
        return self._level <= level

    def equals(self, level: Level) -> bool:
        """True if the severity is exactly ``level``."""
        return self._level == level


class LayerReport(LayerStatus):
    """A status that also carries diagnostic key/value pairs."""

    def __init__(self) -> None:
        super().__init__()
        self._values: list[tuple[str, str]] = []

    @property
    def values(self) -> list[tuple[str, str]]:
        return list(self._values)

    def add(self, key: str, value: object) -> None:
        """Attach a diagnostic value, stored as text."""
        self._values.append((key, str(value)))