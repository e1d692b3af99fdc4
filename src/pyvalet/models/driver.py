"""Valet driver model."""

from __future__ import annotations

import enum

from pydantic import Field

from pyvalet.models._base import UtcDatetime, ValetBaseModel, utcnow


class DriverStatus(enum.StrEnum):
    FREE = "free"
    BUSY = "busy"


class Driver(ValetBaseModel):
    """A valet operator.

    ``status`` is owned by the allocator and tracks whether the driver
    currently holds a car. ``available`` is the driver's own duty flag,
    toggled through the ``status`` conversation; only drivers that are
    both free and available are picked for new work.
    """

    id: str
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    """Normalized digits, unique across drivers."""
    status: DriverStatus = DriverStatus.FREE
    available: bool = True
    registered_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def assignable(self) -> bool:
        return self.status is DriverStatus.FREE and self.available
