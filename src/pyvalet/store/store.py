"""Transactional in-process resource store.

This is the single source of truth for slots, drivers, cars, QR tokens,
conversation sessions and the event log. All writes go through
:meth:`ResourceStore.transaction`: a transaction stages new record
versions, and on exit the staged state is validated against the safety
invariants and swapped in as one unit. Transactions are serialized, so a
transaction never observes another one half-applied.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pyvalet.exceptions import InvariantViolation, SnapshotWriteError, ValetStoreError
from pyvalet.models.car import Car, CarStatus
from pyvalet.models.driver import Driver
from pyvalet.models.log import LogAction, LogEntry
from pyvalet.models.session import ConversationSession
from pyvalet.models.slot import Slot, slot_id_for
from pyvalet.models.token import QRToken
from pyvalet.store.invariants import find_violations, transition_violations

_logger = logging.getLogger(__name__)


_TABLES = ("slots", "drivers", "cars", "tokens", "sessions")
_RESOURCE_TABLES = frozenset({"slots", "drivers", "cars", "tokens"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class _Tables:
    """An immutable generation of the store contents."""

    slots: Mapping[str, Slot] = field(default_factory=dict)
    drivers: Mapping[str, Driver] = field(default_factory=dict)
    cars: Mapping[str, Car] = field(default_factory=dict)
    tokens: Mapping[str, QRToken] = field(default_factory=dict)
    sessions: Mapping[str, ConversationSession] = field(default_factory=dict)
    logs: tuple[LogEntry, ...] = ()


@dataclass(frozen=True)
class CommitInfo:
    """What a committed transaction changed; passed to commit listeners."""

    tables: frozenset[str]
    logs: tuple[LogEntry, ...]

    @property
    def touches_resources(self) -> bool:
        return bool(self.logs) or bool(self.tables & _RESOURCE_TABLES)


class StoreView:
    """Read-only queries over one generation of the store."""

    def __init__(self, tables: _Tables) -> None:
        self._tables = tables

    # Subclasses overlay staged writes on top of these two primitives.
    def _get(self, table: str, key: str) -> Any:
        return getattr(self._tables, table).get(key)

    def _values(self, table: str) -> list[Any]:
        return list(getattr(self._tables, table).values())

    def get_slot(self, slot_id: str) -> Slot | None:
        return self._get("slots", slot_id)

    def get_driver(self, driver_id: str) -> Driver | None:
        return self._get("drivers", driver_id)

    def get_car(self, car_id: str) -> Car | None:
        return self._get("cars", car_id)

    def get_token(self, token: str) -> QRToken | None:
        return self._get("tokens", token)

    def get_session(self, phone_number: str) -> ConversationSession | None:
        return self._get("sessions", phone_number)

    def slots(self) -> list[Slot]:
        """All slots ordered by slot number."""
        return sorted(self._values("slots"), key=lambda s: s.slot_number)

    def drivers(self) -> list[Driver]:
        """All drivers in registration order."""
        return sorted(self._values("drivers"), key=lambda d: (d.registered_at, d.id))

    def cars(self) -> list[Car]:
        """All cars, newest first."""
        return sorted(self._values("cars"), key=lambda c: (c.created_at, c.id), reverse=True)

    def tokens(self) -> list[QRToken]:
        return list(self._values("tokens"))

    def sessions(self) -> list[ConversationSession]:
        return list(self._values("sessions"))

    def logs(self) -> list[LogEntry]:
        return list(self._tables.logs)

    def driver_by_phone(self, phone: str) -> Driver | None:
        for driver in self._values("drivers"):
            if driver.phone == phone:
                return driver
        return None

    def cars_where(self, predicate: Callable[[Car], bool]) -> list[Car]:
        return [car for car in self.cars() if predicate(car)]

    def live_car_by_plate(self, number_plate: str) -> Car | None:
        for car in self._values("cars"):
            if car.number_plate == number_plate and car.status is not CarStatus.RETRIEVED:
                return car
        return None


class Transaction(StoreView):
    """Staged writes over a store generation.

    Obtained from :meth:`ResourceStore.transaction`; never constructed
    directly. Reads see this transaction's own staged writes.
    """

    def __init__(self, tables: _Tables, now: datetime, next_log_id: int) -> None:
        super().__init__(tables)
        self.now = now
        self._staged: dict[str, dict[str, Any]] = {name: {} for name in _TABLES}
        self._new_logs: list[LogEntry] = []
        self._next_log_id = next_log_id
        self._reset = False

    _DELETED = object()

    def _get(self, table: str, key: str) -> Any:
        staged = self._staged[table]
        if key in staged:
            value = staged[key]
            return None if value is self._DELETED else value
        return super()._get(table, key)

    def _values(self, table: str) -> list[Any]:
        merged = dict(getattr(self._tables, table))
        for key, value in self._staged[table].items():
            if value is self._DELETED:
                merged.pop(key, None)
            else:
                merged[key] = value
        return list(merged.values())

    def logs(self) -> list[LogEntry]:
        base = [] if self._reset else list(self._tables.logs)
        return base + self._new_logs

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put_slot(self, slot: Slot) -> Slot:
        self._staged["slots"][slot.id] = slot
        return slot

    def put_driver(self, driver: Driver) -> Driver:
        self._staged["drivers"][driver.id] = driver
        return driver

    def put_car(self, car: Car) -> Car:
        self._staged["cars"][car.id] = car
        return car

    def delete_car(self, car_id: str) -> None:
        self._staged["cars"][car_id] = self._DELETED

    def put_token(self, token: QRToken) -> QRToken:
        self._staged["tokens"][token.token] = token
        return token

    def delete_token(self, token: str) -> None:
        self._staged["tokens"][token] = self._DELETED

    def put_session(self, session: ConversationSession) -> ConversationSession:
        self._staged["sessions"][session.phone_number] = session
        return session

    def delete_session(self, phone_number: str) -> None:
        self._staged["sessions"][phone_number] = self._DELETED

    def append_log(
        self,
        action: LogAction,
        *,
        car: Car | None = None,
        driver_id: str | None = None,
    ) -> LogEntry:
        """Append an event log entry, committed together with this transaction."""
        entry = LogEntry(
            id=self._next_log_id,
            action=action,
            car_id=car.id if car is not None else None,
            driver_id=driver_id,
            car_status=car.status if car is not None else None,
            timestamp=self.now,
        )
        self._next_log_id += 1
        self._new_logs.append(entry)
        return entry

    def clear_history(self) -> None:
        """Drop the event log as part of a development reset."""
        self._reset = True

    # ------------------------------------------------------------------
    # Commit support
    # ------------------------------------------------------------------

    @property
    def dirty(self) -> bool:
        return self._reset or bool(self._new_logs) or any(self._staged.values())

    def _build(self) -> _Tables:
        merged: dict[str, Any] = {}
        for name in _TABLES:
            table = dict(getattr(self._tables, name))
            for key, value in self._staged[name].items():
                if value is self._DELETED:
                    table.pop(key, None)
                else:
                    table[key] = value
            merged[name] = table
        base_logs = () if self._reset else self._tables.logs
        return _Tables(logs=base_logs + tuple(self._new_logs), **merged)


class ResourceStore:
    """Serializable store for all valet records.

    Parameters
    ----------
    clock : callable
        Returns the current UTC time; injected by tests.
    path : str or Path or None
        JSON snapshot file. When given, the store is loaded from it (if it
        exists) and rewritten after every commit.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        path: str | Path | None = None,
    ) -> None:
        self._clock = clock
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._local = threading.local()
        self._tables = _Tables()
        self._listeners: list[Callable[[CommitInfo], None]] = []
        if self._path is not None and self._path.exists():
            self._tables = self._load(self._path)

    def now(self) -> datetime:
        return self._clock()

    def view(self) -> StoreView:
        """A consistent read-only view of the latest committed state."""
        return StoreView(self._tables)

    def add_commit_listener(self, listener: Callable[[CommitInfo], None]) -> Callable[[], None]:
        """Register a callback run after each commit; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    @contextlib.contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Run a serializable transaction.

        If the body raises, nothing is written. On normal exit the staged
        state is validated; :class:`InvariantViolation` is raised (and
        nothing is written) if it would break a safety invariant. When a
        snapshot path is set it is written before the swap, and a failed
        write raises :class:`SnapshotWriteError` with nothing applied.
        """
        if getattr(self._local, "active", False):
            raise ValetStoreError("Nested transactions are not supported; pass the open transaction instead")
        with self._lock:
            before = self._tables
            next_log_id = before.logs[-1].id + 1 if before.logs else 1
            tx = Transaction(before, self._clock(), next_log_id)
            self._local.active = True
            try:
                yield tx
            finally:
                self._local.active = False
            if not tx.dirty:
                return
            after = tx._build()
            self._validate(before, after, allow_reset=tx._reset)
            if self._path is not None:
                try:
                    self._save(self._path, after)
                except OSError as exc:
                    _logger.error("Rejected commit: cannot write snapshot %s: %s", self._path, exc)
                    raise SnapshotWriteError(f"Cannot write store snapshot {self._path}: {exc}") from exc
            self._tables = after
            info = CommitInfo(
                tables=frozenset(name for name in _TABLES if tx._staged[name]),
                logs=tuple(tx._new_logs),
            )
        self._notify(info)

    def initialize_slots(self, total_slots: int) -> int:
        """Create slots ``1..total_slots`` that do not exist yet; returns how many were added."""
        with self.transaction() as tx:
            added = 0
            for number in range(1, total_slots + 1):
                if tx.get_slot(slot_id_for(number)) is None:
                    tx.put_slot(Slot(id=slot_id_for(number), slot_number=number))
                    added += 1
        if added:
            _logger.info("Initialized %d parking slots (pool size %d)", added, total_slots)
        return added

    def check_invariants(self) -> list[str]:
        """Audit the committed state; returns the list of violations."""
        tables = self._tables
        return find_violations(tables.slots, tables.drivers, tables.cars)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(before: _Tables, after: _Tables, *, allow_reset: bool) -> None:
        problems = find_violations(after.slots, after.drivers, after.cars)
        if not allow_reset:
            problems += transition_violations(
                cars_before=before.cars,
                cars_after=after.cars,
                tokens_before=before.tokens,
                tokens_after=after.tokens,
                logs_before=before.logs,
                logs_after=after.logs,
            )
        if problems:
            _logger.error("Rejected commit: %s", "; ".join(problems))
            raise InvariantViolation(problems[0], violations=problems)

    def _notify(self, info: CommitInfo) -> None:
        for listener in list(self._listeners):
            try:
                listener(info)
            except Exception:
                _logger.exception("Commit listener failed")

    @staticmethod
    def _save(path: Path, tables: _Tables) -> None:
        document = {
            "slots": [s.to_wire() for s in tables.slots.values()],
            "drivers": [d.to_wire() for d in tables.drivers.values()],
            "cars": [c.to_wire() for c in tables.cars.values()],
            "tokens": [t.to_wire() for t in tables.tokens.values()],
            "sessions": [s.to_wire() for s in tables.sessions.values()],
            "logs": [entry.to_wire() for entry in tables.logs],
        }
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(document, separators=(",", ":")), encoding="utf-8")
        os.replace(tmp, path)

    @staticmethod
    def _load(path: Path) -> _Tables:
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            tables = _Tables(
                slots={s.id: s for s in map(Slot.model_validate, document.get("slots", []))},
                drivers={d.id: d for d in map(Driver.model_validate, document.get("drivers", []))},
                cars={c.id: c for c in map(Car.model_validate, document.get("cars", []))},
                tokens={t.token: t for t in map(QRToken.model_validate, document.get("tokens", []))},
                sessions={
                    s.phone_number: s for s in map(ConversationSession.model_validate, document.get("sessions", []))
                },
                logs=tuple(LogEntry.model_validate(e) for e in document.get("logs", [])),
            )
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise ValetStoreError(f"Cannot load store snapshot {path}: {exc}") from exc

        problems = find_violations(tables.slots, tables.drivers, tables.cars)
        if problems:
            raise InvariantViolation(f"Snapshot {path} is inconsistent: {problems[0]}", violations=problems)
        _logger.info(
            "Loaded store snapshot %s (%d cars, %d drivers, %d slots)",
            path,
            len(tables.cars),
            len(tables.drivers),
            len(tables.slots),
        )
        return tables
