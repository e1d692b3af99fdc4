"""Data models for pyvalet records."""

from pyvalet.models._base import UtcDatetime, ValetBaseModel
from pyvalet.models.car import ALLOWED_TRANSITIONS, DRIVER_HOLDING, SLOT_HOLDING, Car, CarStatus, can_transition
from pyvalet.models.dashboard import DashboardSnapshot, DashboardStats
from pyvalet.models.driver import Driver, DriverStatus
from pyvalet.models.log import LogAction, LogEntry
from pyvalet.models.message import InboundMessage
from pyvalet.models.session import ConversationSession, IntakeFields, SessionState
from pyvalet.models.slot import Slot, slot_id_for
from pyvalet.models.token import QRToken, TokenKind

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Car",
    "CarStatus",
    "ConversationSession",
    "DRIVER_HOLDING",
    "DashboardSnapshot",
    "DashboardStats",
    "Driver",
    "DriverStatus",
    "InboundMessage",
    "IntakeFields",
    "LogAction",
    "LogEntry",
    "QRToken",
    "SLOT_HOLDING",
    "SessionState",
    "Slot",
    "TokenKind",
    "UtcDatetime",
    "ValetBaseModel",
    "can_transition",
    "slot_id_for",
]
