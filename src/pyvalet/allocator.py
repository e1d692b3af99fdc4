"""Allocator: the transactional core that binds cars to slots and drivers.

The allocator is the only component that mutates slot, driver and car
allocation fields. Every operation runs as one store transaction; when an
operation returns :class:`~pyvalet.results.Err` the transaction is rolled
back, so a failed check-in never leaves a slot reserved, a driver busy or
a token consumed.

Tie-breaks are deterministic: the lowest free slot number, and the
scanning driver if assignable, else the earliest-registered assignable
driver.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from pyvalet._constants import ID_BYTES, normalize_phone
from pyvalet.exceptions import SnapshotWriteError
from pyvalet.ledger import IssuedToken, TokenLedger
from pyvalet.models.car import Car, CarStatus
from pyvalet.models.driver import Driver, DriverStatus
from pyvalet.models.log import LogAction
from pyvalet.models.session import IntakeFields
from pyvalet.models.slot import Slot
from pyvalet.models.token import TokenKind
from pyvalet.results import Err, FailureReason, Ok, Result
from pyvalet.store import ResourceStore, Transaction

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Rollback(Exception):
    def __init__(self, outcome: Err) -> None:
        self.outcome = outcome
        super().__init__(outcome.reason)


@dataclass(frozen=True)
class IntakeResult:
    car: Car
    token: IssuedToken
    reissued: bool = False
    """True when an existing pending intake got a fresh check-in token."""


@dataclass(frozen=True)
class CheckInResult:
    car: Car
    slot: Slot
    driver: Driver

    @property
    def slot_number(self) -> int:
        return self.slot.slot_number

    @property
    def driver_name(self) -> str:
        return self.driver.name

    @property
    def driver_phone(self) -> str:
        return self.driver.phone


@dataclass(frozen=True)
class ParkResult:
    car: Car
    driver: Driver


@dataclass(frozen=True)
class RetrievalRequest:
    car: Car
    driver: Driver
    slot: Slot
    token: IssuedToken
    reissued: bool = False
    """True when the car was already awaiting retrieval and only the token was re-sent."""


@dataclass(frozen=True)
class RetrieveResult:
    car: Car
    driver: Driver
    slot: Slot


def _new_id() -> str:
    return secrets.token_hex(ID_BYTES)


class Allocator:
    """Atomic slot/driver/car transitions over a :class:`ResourceStore`.

    Parameters
    ----------
    store : ResourceStore
        Backing store.
    ledger : TokenLedger
        Ledger whose conditional updates are composed into allocator
        transactions.
    checkin_token_ttl, retrieval_token_ttl : float
        Token lifetimes in seconds.
    """

    def __init__(
        self,
        store: ResourceStore,
        ledger: TokenLedger,
        *,
        checkin_token_ttl: float = 15 * 60,
        retrieval_token_ttl: float = 30 * 60,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._checkin_ttl = checkin_token_ttl
        self._retrieval_ttl = retrieval_token_ttl

    def _atomic(self, fn: Callable[[Transaction], Result[T]]) -> Result[T]:
        """Run *fn* in a transaction that commits only if it returns ``Ok``.

        A snapshot write failure rejects the commit and is reported as
        ``STORE_UNAVAILABLE``.
        """
        try:
            with self._store.transaction() as tx:
                outcome = fn(tx)
                if isinstance(outcome, Err):
                    raise _Rollback(outcome)
        except _Rollback as rollback:
            return rollback.outcome
        except SnapshotWriteError as exc:
            return Err(FailureReason.STORE_UNAVAILABLE, str(exc))
        return outcome

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @staticmethod
    def _pick_slot(tx: Transaction) -> Slot | None:
        for slot in tx.slots():
            if not slot.occupied:
                return slot
        return None

    @staticmethod
    def _pick_driver(tx: Transaction, preferred_id: str | None = None) -> Driver | None:
        if preferred_id is not None:
            preferred = tx.get_driver(preferred_id)
            if preferred is not None and preferred.assignable:
                return preferred
        for driver in tx.drivers():
            if driver.assignable:
                return driver
        return None

    # ------------------------------------------------------------------
    # Check-in
    # ------------------------------------------------------------------

    def register_intake(self, fields: IntakeFields, requester_phone: str | None = None) -> Result[IntakeResult]:
        """Create a ``pending`` car from completed intake fields and issue its check-in token.

        A plate that is already pending with the same owner contact gets a
        fresh token instead of a second car record; any other live car with
        the plate is a duplicate.
        """
        if not (fields.number_plate and fields.owner_name and fields.model and fields.contact):
            raise ValueError("intake fields are incomplete")

        def _register(tx: Transaction) -> Result[IntakeResult]:
            existing = tx.live_car_by_plate(fields.number_plate)
            if existing is not None:
                if existing.status is not CarStatus.PENDING:
                    return Err(FailureReason.DUPLICATE_PLATE, f"{existing.number_plate} is {existing.status}")
                if normalize_phone(fields.contact) != existing.owner_phone:
                    return Err(FailureReason.DUPLICATE_PLATE, f"{existing.number_plate} is pending for another owner")
                token = self._ledger.issue(
                    existing.id, TokenKind.CHECKIN, self._checkin_ttl, existing.owner_phone, tx=tx
                )
                return Ok(IntakeResult(car=existing, token=token, reissued=True))

            car = tx.put_car(
                Car(
                    id=_new_id(),
                    number_plate=fields.number_plate,
                    model=fields.model,
                    owner_name=fields.owner_name,
                    owner_phone=normalize_phone(fields.contact),
                    created_at=tx.now,
                )
            )
            token = self._ledger.issue(car.id, TokenKind.CHECKIN, self._checkin_ttl, car.owner_phone, tx=tx)
            tx.append_log(LogAction.CHECKIN_INITIATED, car=car)
            return Ok(IntakeResult(car=car, token=token))

        outcome = self._atomic(_register)
        if isinstance(outcome, Ok):
            _logger.info(
                "Intake for %s registered by %s (car %s, reissued=%s)",
                outcome.value.car.number_plate,
                normalize_phone(requester_phone or "") or "unknown",
                outcome.value.car.id,
                outcome.value.reissued,
            )
        return outcome

    def try_check_in(
        self,
        car_id: str,
        token: str,
        owner_id: str | None = None,
        scanning_driver_id: str | None = None,
    ) -> Result[CheckInResult]:
        """Bind a pending car to a free slot and a free driver, consuming its check-in token.

        All three legs (slot, driver, token) succeed together or nothing
        changes. On ``NO_FREE_SLOT``/``NO_FREE_DRIVER`` the car stays
        pending and the token stays unused.
        """

        def _check_in(tx: Transaction) -> Result[CheckInResult]:
            car = tx.get_car(car_id)
            if car is None:
                return Err(FailureReason.UNKNOWN_CAR)
            consumed = self._ledger.mark_used_if(
                tx,
                token,
                expected_car_id=car_id,
                expected_owner_id=owner_id,
                expected_kind=TokenKind.CHECKIN,
            )
            if isinstance(consumed, Err):
                return consumed
            if car.status is not CarStatus.PENDING:
                return Err(FailureReason.WRONG_STATE, f"car is {car.status}")

            slot = self._pick_slot(tx)
            if slot is None:
                return Err(FailureReason.NO_FREE_SLOT)
            driver = self._pick_driver(tx, scanning_driver_id)
            if driver is None:
                return Err(FailureReason.NO_FREE_DRIVER)

            slot = tx.put_slot(slot.model_copy(update={"occupied": True, "car_id": car.id}))
            driver = tx.put_driver(driver.model_copy(update={"status": DriverStatus.BUSY}))
            car = tx.put_car(
                car.model_copy(
                    update={
                        "status": CarStatus.CHECKED_IN,
                        "slot_id": slot.id,
                        "driver_id": driver.id,
                        "check_in_time": tx.now,
                    }
                )
            )
            tx.append_log(LogAction.CHECKED_IN, car=car, driver_id=driver.id)
            return Ok(CheckInResult(car=car, slot=slot, driver=driver))

        outcome = self._atomic(_check_in)
        if isinstance(outcome, Ok):
            _logger.info(
                "Car %s checked in: slot %d, driver %s",
                outcome.value.car.id,
                outcome.value.slot_number,
                outcome.value.driver.id,
            )
        else:
            _logger.info("Check-in for car %s refused: %s", car_id, outcome.reason)
        return outcome

    def abandon_pending(self, car_id: str) -> Result[Car]:
        """Delete a pending intake that never got resources, with its tokens."""

        def _abandon(tx: Transaction) -> Result[Car]:
            car = tx.get_car(car_id)
            if car is None:
                return Err(FailureReason.UNKNOWN_CAR)
            if car.status is not CarStatus.PENDING:
                return Err(FailureReason.WRONG_STATE, f"car is {car.status}")
            for record in tx.tokens():
                if record.car_id == car.id:
                    tx.delete_token(record.token)
            tx.delete_car(car.id)
            tx.append_log(LogAction.INTAKE_ABANDONED, car=car)
            return Ok(car)

        return self._atomic(_abandon)

    # ------------------------------------------------------------------
    # Parking
    # ------------------------------------------------------------------

    def try_park(self, driver_id: str, photo_url: str | None = None) -> Result[ParkResult]:
        """Mark the driver's most recent checked-in car as parked and free the driver."""

        def _park(tx: Transaction) -> Result[ParkResult]:
            driver = tx.get_driver(driver_id)
            if driver is None:
                return Err(FailureReason.UNKNOWN_DRIVER)
            assigned = tx.cars_where(lambda c: c.status is CarStatus.CHECKED_IN and c.driver_id == driver.id)
            if not assigned:
                return Err(FailureReason.NO_ASSIGNED_CAR)
            car = max(assigned, key=lambda c: (c.check_in_time, c.id))

            car = tx.put_car(car.model_copy(update={"status": CarStatus.PARKED, "photo_url": photo_url}))
            driver = tx.put_driver(driver.model_copy(update={"status": DriverStatus.FREE}))
            tx.append_log(LogAction.PARKED, car=car, driver_id=driver.id)
            return Ok(ParkResult(car=car, driver=driver))

        return self._atomic(_park)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def request_retrieval(self, owner_phone: str) -> Result[RetrievalRequest]:
        """Assign a free driver to the owner's parked car and issue a retrieval token.

        Repeating the request while a car is already awaiting retrieval
        keeps its assigned driver and re-sends the live token. Once that
        token has expired, another parked car of the same owner is served
        first if a driver is free; otherwise the awaiting car gets a new
        token.
        """
        phone = normalize_phone(owner_phone)

        def _resend(tx: Transaction, car: Car, issued: IssuedToken) -> Ok[RetrievalRequest]:
            return Ok(
                RetrievalRequest(
                    car=car,
                    driver=tx.get_driver(car.driver_id),  # type: ignore[arg-type]
                    slot=tx.get_slot(car.slot_id),  # type: ignore[arg-type]
                    token=issued,
                    reissued=True,
                )
            )

        def _request(tx: Transaction) -> Result[RetrievalRequest]:
            owned = tx.cars_where(lambda c: c.owner_phone == phone)

            awaiting = [c for c in owned if c.status is CarStatus.AWAITING_RETRIEVAL]
            for car in awaiting:
                live = [
                    t
                    for t in tx.tokens()
                    if t.car_id == car.id and t.kind is TokenKind.RETRIEVAL and not t.used and not t.is_expired(tx.now)
                ]
                if live:
                    return _resend(tx, car, self._ledger.payload_for(max(live, key=lambda t: t.expires_at)))

            parked = [c for c in owned if c.status is CarStatus.PARKED]
            driver = self._pick_driver(tx) if parked else None
            if driver is None:
                if awaiting:
                    car = awaiting[0]
                    issued = self._ledger.issue(
                        car.id, TokenKind.RETRIEVAL, self._retrieval_ttl, car.owner_phone, tx=tx
                    )
                    return _resend(tx, car, issued)
                return Err(FailureReason.NO_FREE_DRIVER if parked else FailureReason.NO_PARKED_CAR)
            car = max(parked, key=lambda c: (c.check_in_time, c.id))

            driver = tx.put_driver(driver.model_copy(update={"status": DriverStatus.BUSY}))
            car = tx.put_car(car.model_copy(update={"status": CarStatus.AWAITING_RETRIEVAL, "driver_id": driver.id}))
            issued = self._ledger.issue(car.id, TokenKind.RETRIEVAL, self._retrieval_ttl, car.owner_phone, tx=tx)
            tx.append_log(LogAction.RETRIEVAL_REQUESTED, car=car, driver_id=driver.id)
            slot = tx.get_slot(car.slot_id)  # type: ignore[arg-type]
            return Ok(RetrievalRequest(car=car, driver=driver, slot=slot, token=issued))  # type: ignore[arg-type]

        return self._atomic(_request)

    def try_retrieve(self, token: str, car_id: str, owner_id: str | None, driver_id: str) -> Result[RetrieveResult]:
        """Hand the car back: release slot and driver, consume the retrieval token.

        Only the car's currently assigned driver may complete retrieval.
        """

        def _retrieve(tx: Transaction) -> Result[RetrieveResult]:
            consumed = self._ledger.mark_used_if(
                tx,
                token,
                expected_car_id=car_id,
                expected_owner_id=owner_id,
                expected_kind=TokenKind.RETRIEVAL,
            )
            if isinstance(consumed, Err):
                return consumed
            car = tx.get_car(car_id)
            if car is None:
                return Err(FailureReason.UNKNOWN_CAR)
            if car.status is not CarStatus.AWAITING_RETRIEVAL:
                return Err(FailureReason.WRONG_STATE, f"car is {car.status}")
            if car.driver_id != driver_id:
                return Err(FailureReason.DRIVER_MISMATCH)

            slot = tx.get_slot(car.slot_id)  # type: ignore[arg-type]
            driver = tx.get_driver(driver_id)
            if slot is None or driver is None:
                return Err(FailureReason.WRONG_STATE, "car has no slot or driver on record")

            slot = tx.put_slot(slot.model_copy(update={"occupied": False, "car_id": None}))
            driver = tx.put_driver(driver.model_copy(update={"status": DriverStatus.FREE}))
            car = tx.put_car(car.model_copy(update={"status": CarStatus.RETRIEVED, "retrieval_time": tx.now}))
            tx.append_log(LogAction.RETRIEVED, car=car, driver_id=driver.id)
            return Ok(RetrieveResult(car=car, driver=driver, slot=slot))

        outcome = self._atomic(_retrieve)
        if isinstance(outcome, Err) and outcome.reason is FailureReason.DRIVER_MISMATCH:
            _logger.warning("Driver %s tried to retrieve car %s assigned to someone else", driver_id, car_id)
        return outcome

    # ------------------------------------------------------------------
    # Drivers and administration
    # ------------------------------------------------------------------

    def register_driver(self, name: str, phone: str) -> Result[Driver]:
        normalized = normalize_phone(phone)
        if not name.strip() or not normalized:
            raise ValueError("driver name and phone are required")

        def _register(tx: Transaction) -> Result[Driver]:
            if tx.driver_by_phone(normalized) is not None:
                return Err(FailureReason.DUPLICATE_PHONE, normalized)
            driver = tx.put_driver(
                Driver(
                    id=f"driver-{len(tx.drivers()) + 1:04d}",
                    name=name.strip(),
                    phone=normalized,
                    registered_at=tx.now,
                )
            )
            tx.append_log(LogAction.DRIVER_REGISTERED, driver_id=driver.id)
            return Ok(driver)

        return self._atomic(_register)

    def set_driver_availability(self, driver_id: str, available: bool) -> Result[Driver]:
        """Toggle the driver's duty flag; allocation status is untouched."""

        def _set(tx: Transaction) -> Result[Driver]:
            driver = tx.get_driver(driver_id)
            if driver is None:
                return Err(FailureReason.UNKNOWN_DRIVER)
            if driver.available == available:
                return Ok(driver)
            driver = tx.put_driver(driver.model_copy(update={"available": available}))
            tx.append_log(LogAction.DRIVER_AVAILABILITY, driver_id=driver.id)
            return Ok(driver)

        return self._atomic(_set)

    def reset(self) -> None:
        """Development reset: forget cars, tokens, sessions and history; free every slot and driver."""
        with self._store.transaction() as tx:
            tx.clear_history()
            for car in tx.cars():
                tx.delete_car(car.id)
            for record in tx.tokens():
                tx.delete_token(record.token)
            for session in tx.sessions():
                tx.delete_session(session.phone_number)
            for slot in tx.slots():
                if slot.occupied:
                    tx.put_slot(slot.model_copy(update={"occupied": False, "car_id": None}))
            for driver in tx.drivers():
                if driver.status is not DriverStatus.FREE:
                    tx.put_driver(driver.model_copy(update={"status": DriverStatus.FREE}))
            tx.append_log(LogAction.RESET)
        _logger.warning("All cars, tokens, sessions and logs were reset")
