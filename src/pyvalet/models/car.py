"""Car model and lifecycle."""

from __future__ import annotations

import enum

from pydantic import Field

from pyvalet.models._base import UtcDatetime, ValetBaseModel, utcnow


class CarStatus(enum.StrEnum):
    PENDING = "pending"
    CHECKED_IN = "checked_in"
    PARKED = "parked"
    AWAITING_RETRIEVAL = "awaiting_retrieval"
    RETRIEVED = "retrieved"


#: The only lifecycle moves a car may make. Anything else is a regression.
ALLOWED_TRANSITIONS: dict[CarStatus, frozenset[CarStatus]] = {
    CarStatus.PENDING: frozenset({CarStatus.CHECKED_IN}),
    CarStatus.CHECKED_IN: frozenset({CarStatus.PARKED}),
    CarStatus.PARKED: frozenset({CarStatus.AWAITING_RETRIEVAL}),
    CarStatus.AWAITING_RETRIEVAL: frozenset({CarStatus.RETRIEVED}),
    CarStatus.RETRIEVED: frozenset(),
}

#: Statuses in which the car holds a slot.
SLOT_HOLDING: frozenset[CarStatus] = frozenset(
    {CarStatus.CHECKED_IN, CarStatus.PARKED, CarStatus.AWAITING_RETRIEVAL}
)

#: Statuses in which the car holds its assigned driver.
DRIVER_HOLDING: frozenset[CarStatus] = frozenset({CarStatus.CHECKED_IN, CarStatus.AWAITING_RETRIEVAL})


def can_transition(current: CarStatus, target: CarStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


class Car(ValetBaseModel):
    """A vehicle handed over to the valet service."""

    id: str
    number_plate: str = Field(min_length=1)
    model: str
    owner_name: str
    owner_phone: str
    """Normalized digits; also the owner identifier embedded in QR payloads."""
    slot_id: str | None = None
    driver_id: str | None = None
    """Currently (or most recently) assigned driver."""
    status: CarStatus = CarStatus.PENDING
    photo_url: str | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    check_in_time: UtcDatetime | None = None
    retrieval_time: UtcDatetime | None = None

    @property
    def holds_slot(self) -> bool:
        return self.status in SLOT_HOLDING

    @property
    def holds_driver(self) -> bool:
        return self.status in DRIVER_HOLDING and self.driver_id is not None
