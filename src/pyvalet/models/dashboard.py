"""Dashboard snapshot models."""

from __future__ import annotations

from pydantic import Field

from pyvalet.models._base import ValetBaseModel
from pyvalet.models.car import Car
from pyvalet.models.driver import Driver
from pyvalet.models.log import LogEntry
from pyvalet.models.slot import Slot


class DashboardStats(ValetBaseModel):
    total_slots: int
    available_slots: int
    busy_drivers: int
    pending_checkins: int
    awaiting_retrieval: int


class DashboardSnapshot(ValetBaseModel):
    """Aggregate view pushed to dashboard observers after every commit."""

    stats: DashboardStats
    slots: list[Slot] = Field(default_factory=list)
    cars: list[Car] = Field(default_factory=list)
    drivers: list[Driver] = Field(default_factory=list)
    logs: list[LogEntry] = Field(default_factory=list)
    """Most recent entries first."""
