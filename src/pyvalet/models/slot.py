"""Parking slot model."""

from __future__ import annotations

from pydantic import Field

from pyvalet.models._base import ValetBaseModel


def slot_id_for(slot_number: int) -> str:
    return f"slot-{slot_number}"


class Slot(ValetBaseModel):
    """A physical parking space from the fixed pool."""

    id: str
    slot_number: int = Field(ge=1)
    occupied: bool = False
    car_id: str | None = None
    """Car currently holding the slot; cleared on release."""
