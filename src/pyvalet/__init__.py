"""pyvalet - WhatsApp-driven valet parking orchestration engine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyvalet")
except PackageNotFoundError:
    __version__ = "0+local"
from pyvalet.allocator import Allocator, CheckInResult, IntakeResult, ParkResult, RetrievalRequest, RetrieveResult
from pyvalet.config import CloudinarySettings, ValetConfig, WhatsAppSettings
from pyvalet.conversation import ConversationEngine, ConversationOutcome, InputKind
from pyvalet.dashboard import DashboardPublisher, build_snapshot
from pyvalet.events import EventLog
from pyvalet.exceptions import (
    InvariantViolation,
    SnapshotWriteError,
    ValetConfigError,
    ValetError,
    ValetStoreError,
    ValetTransportError,
    ValetUploadError,
)
from pyvalet.ledger import IssuedToken, TokenLedger
from pyvalet.models import (
    Car,
    CarStatus,
    ConversationSession,
    DashboardSnapshot,
    Driver,
    DriverStatus,
    InboundMessage,
    LogAction,
    LogEntry,
    QRToken,
    SessionState,
    Slot,
    TokenKind,
)
from pyvalet.results import Err, FailureReason, Ok, Result
from pyvalet.service import ValetService
from pyvalet.store import ResourceStore

__all__ = [
    "__version__",
    "Allocator",
    "Car",
    "CarStatus",
    "CheckInResult",
    "CloudinarySettings",
    "ConversationEngine",
    "ConversationOutcome",
    "ConversationSession",
    "DashboardPublisher",
    "DashboardSnapshot",
    "Driver",
    "DriverStatus",
    "Err",
    "EventLog",
    "FailureReason",
    "InboundMessage",
    "InputKind",
    "IntakeResult",
    "InvariantViolation",
    "IssuedToken",
    "LogAction",
    "LogEntry",
    "Ok",
    "ParkResult",
    "QRToken",
    "ResourceStore",
    "Result",
    "RetrievalRequest",
    "RetrieveResult",
    "SessionState",
    "Slot",
    "SnapshotWriteError",
    "TokenKind",
    "TokenLedger",
    "ValetConfig",
    "ValetConfigError",
    "ValetError",
    "ValetService",
    "ValetStoreError",
    "ValetTransportError",
    "ValetUploadError",
    "WhatsAppSettings",
    "build_snapshot",
]
