"""Safety invariants over the resource tables.

This module contains *no* mutation logic. :class:`pyvalet.store.store.ResourceStore`
runs these checks against the post-transaction state before it is swapped
in, and exposes them as a standalone audit.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence

from pyvalet.models.car import SLOT_HOLDING, Car, CarStatus, can_transition
from pyvalet.models.driver import Driver, DriverStatus
from pyvalet.models.log import LogEntry
from pyvalet.models.slot import Slot
from pyvalet.models.token import QRToken


def slot_violations(slots: Mapping[str, Slot], cars: Mapping[str, Car]) -> list[str]:
    problems: list[str] = []
    holders = Counter(car.slot_id for car in cars.values() if car.holds_slot)

    for slot in slots.values():
        if slot.occupied != (slot.car_id is not None):
            problems.append(f"{slot.id}: occupied={slot.occupied} but car_id={slot.car_id}")
            continue
        if slot.car_id is None:
            if holders.get(slot.id):
                problems.append(f"{slot.id}: free but referenced by an active car")
            continue
        car = cars.get(slot.car_id)
        if car is None:
            problems.append(f"{slot.id}: references unknown car {slot.car_id}")
        elif not car.holds_slot:
            problems.append(f"{slot.id}: held by car {car.id} in status {car.status}")
        elif car.slot_id != slot.id:
            problems.append(f"{slot.id}: car {car.id} points at {car.slot_id}")

    for slot_id, count in holders.items():
        if slot_id is None:
            problems.append(f"{count} active car(s) without a slot")
        elif slot_id not in slots:
            problems.append(f"active car references unknown slot {slot_id}")
        elif count > 1:
            problems.append(f"{slot_id}: held by {count} cars")
    return problems


def driver_violations(drivers: Mapping[str, Driver], cars: Mapping[str, Car]) -> list[str]:
    problems: list[str] = []
    holders = Counter(car.driver_id for car in cars.values() if car.holds_driver)

    for car in cars.values():
        if car.status in (CarStatus.CHECKED_IN, CarStatus.AWAITING_RETRIEVAL) and car.driver_id is None:
            problems.append(f"car {car.id}: {car.status} without a driver")

    for driver_id, count in holders.items():
        if driver_id not in drivers:
            problems.append(f"active car references unknown driver {driver_id}")
        elif count > 1:
            problems.append(f"driver {driver_id}: assigned to {count} cars")

    for driver in drivers.values():
        held = holders.get(driver.id, 0)
        if driver.status is DriverStatus.BUSY and held != 1:
            problems.append(f"driver {driver.id}: busy with {held} cars")
        elif driver.status is DriverStatus.FREE and held:
            problems.append(f"driver {driver.id}: free but holds {held} car(s)")

    phones = Counter(driver.phone for driver in drivers.values())
    problems.extend(f"driver phone {phone} registered {n} times" for phone, n in phones.items() if n > 1)
    return problems


def car_violations(cars: Mapping[str, Car]) -> list[str]:
    problems: list[str] = []
    live_plates = Counter(car.number_plate for car in cars.values() if car.status is not CarStatus.RETRIEVED)
    problems.extend(f"plate {plate} is live on {n} cars" for plate, n in live_plates.items() if n > 1)
    for car in cars.values():
        if car.status in SLOT_HOLDING and car.check_in_time is None:
            problems.append(f"car {car.id}: {car.status} without check_in_time")
        if car.status is CarStatus.RETRIEVED and car.retrieval_time is None:
            problems.append(f"car {car.id}: retrieved without retrieval_time")
    return problems


def find_violations(
    slots: Mapping[str, Slot],
    drivers: Mapping[str, Driver],
    cars: Mapping[str, Car],
) -> list[str]:
    """Every state-level invariant violation, empty when the state is safe."""
    return slot_violations(slots, cars) + driver_violations(drivers, cars) + car_violations(cars)


def transition_violations(
    *,
    cars_before: Mapping[str, Car],
    cars_after: Mapping[str, Car],
    tokens_before: Mapping[str, QRToken],
    tokens_after: Mapping[str, QRToken],
    logs_before: Sequence[LogEntry],
    logs_after: Sequence[LogEntry],
) -> list[str]:
    """Violations of monotonicity between two consecutive states."""
    problems: list[str] = []
    for car_id, before in cars_before.items():
        after = cars_after.get(car_id)
        if after is None:
            if before.status is not CarStatus.PENDING:
                problems.append(f"car {car_id}: deleted in status {before.status}")
        elif not can_transition(before.status, after.status):
            problems.append(f"car {car_id}: {before.status} -> {after.status} is not allowed")

    for car_id, after in cars_after.items():
        if car_id not in cars_before and after.status is not CarStatus.PENDING:
            problems.append(f"car {car_id}: created in status {after.status}")

    for token, before in tokens_before.items():
        after = tokens_after.get(token)
        if after is not None and before.used and not after.used:
            problems.append(f"token for car {before.car_id}: used flag reverted")

    if len(logs_after) < len(logs_before) or any(a is not b for a, b in zip(logs_before, logs_after)):
        problems.append("event log is append-only")
    return problems
