"""Read API over the append-only event log.

Entries are written by the allocator inside the transaction that commits
the transition they describe; this module only reads them.
"""

from __future__ import annotations

from pyvalet.models.car import CarStatus, can_transition
from pyvalet.models.log import LogEntry
from pyvalet.store import ResourceStore


class EventLog:
    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def all(self) -> list[LogEntry]:
        """Every entry in commit order."""
        return self._store.view().logs()

    def recent(self, limit: int = 20) -> list[LogEntry]:
        """The newest *limit* entries, newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._store.view().logs()[-limit:]))

    def since(self, entry_id: int) -> list[LogEntry]:
        """Entries committed after *entry_id*, oldest first."""
        return [entry for entry in self._store.view().logs() if entry.id > entry_id]

    def for_car(self, car_id: str) -> list[LogEntry]:
        return [entry for entry in self._store.view().logs() if entry.car_id == car_id]

    def car_timeline(self, car_id: str) -> list[CarStatus]:
        """Statuses the car went through, replayed from the log."""
        timeline: list[CarStatus] = []
        for entry in self.for_car(car_id):
            if entry.car_status is not None and (not timeline or timeline[-1] is not entry.car_status):
                timeline.append(entry.car_status)
        return timeline

    def timeline_is_monotonic(self, car_id: str) -> bool:
        timeline = self.car_timeline(car_id)
        return all(can_transition(a, b) for a, b in zip(timeline, timeline[1:]))
