"""Thread-safe map from release channel to its resolved version."""

from __future__ import annotations

import threading


class VersionCache:
    """Latest resolved version per channel.

    Written by the resolver, read by reconciliation. Every access holds one lock
    for the duration of the dict operation only.
    """

    def __init__(self) -> None:
        self._versions: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, channel: str) -> str | None:
        """Return the cached version for ``channel``, or None if nothing has been resolved."""
        with self._lock:
            return self._versions.get(channel)

    def set(self, channel: str, version: str) -> None:
        with self._lock:
            self._versions[channel] = version

    def snapshot(self) -> dict[str, str]:
        """Return a copy of every cached entry."""
        with self._lock:
            return dict(self._versions)
