"""Event log entry model."""

from __future__ import annotations

import enum

from pydantic import Field

from pyvalet.models._base import UtcDatetime, ValetBaseModel, utcnow
from pyvalet.models.car import CarStatus


class LogAction(enum.StrEnum):
    CHECKIN_INITIATED = "Owner initiated check-in"
    CHECKED_IN = "Car checked in"
    PARKED = "Car parked and photo uploaded"
    RETRIEVAL_REQUESTED = "Car retrieval requested"
    RETRIEVED = "Car retrieved"
    INTAKE_ABANDONED = "Pending check-in abandoned"
    DRIVER_REGISTERED = "Driver registered"
    DRIVER_AVAILABILITY = "Driver availability changed"
    RESET = "Data reset"


class LogEntry(ValetBaseModel):
    """One committed transition."""

    id: int
    action: LogAction
    car_id: str | None = None
    driver_id: str | None = None
    car_status: CarStatus | None = None
    """Car status after the transition, when a car was involved."""
    timestamp: UtcDatetime = Field(default_factory=utcnow)
