"""Per-cycle status record shared by the connection handler and the supervisor."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from gattsync.core.model import StatusEntry, StatusSnapshot


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusStore:
    """Ordered status entries, unique by property name.

    Notification callbacks may fire from a transport thread while the supervisor
    takes a snapshot, so every access goes through the lock.
    """

    def __init__(
        self,
        initial: Iterable[StatusEntry] = (),
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._entries: list[StatusEntry] = []
        self._lock = threading.Lock()
        self._clock = clock
        for entry in initial:
            self._put(entry)

    def upsert(self, name: str, desired: str, reported: str) -> StatusEntry:
        entry = StatusEntry(
            name=name,
            desired=desired,
            reported=reported,
            updated_at=self._clock(),
        )
        with self._lock:
            self._put(entry)
        return entry

    def get(self, name: str) -> StatusEntry | None:
        with self._lock:
            for entry in self._entries:
                if entry.name == name:
                    return entry
        return None

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _put(self, entry: StatusEntry) -> None:
        for index, existing in enumerate(self._entries):
            if existing.name == entry.name:
                self._entries[index] = entry
                return
        self._entries.append(entry)


def snapshot_to_dicts(snapshot: StatusSnapshot) -> list[dict[str, Any]]:
    return [
        {
            "name": entry.name,
            "desired": entry.desired,
            "reported": entry.reported,
            "updated_at": entry.updated_at.isoformat(),
        }
        for entry in snapshot
    ]
