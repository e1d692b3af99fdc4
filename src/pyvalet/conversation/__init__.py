"""Conversation engine: session state machine and intent extraction."""

from pyvalet.conversation.engine import TRANSITIONS, ConversationEngine, ConversationOutcome
from pyvalet.conversation.intents import (
    Intent,
    RequestRetrieval,
    ScanToken,
    SetDriverStatus,
    StartCheckIn,
    SubmitParkedPhoto,
)
from pyvalet.conversation.parsing import InputKind, classify

__all__ = [
    "TRANSITIONS",
    "ConversationEngine",
    "ConversationOutcome",
    "InputKind",
    "Intent",
    "RequestRetrieval",
    "ScanToken",
    "SetDriverStatus",
    "StartCheckIn",
    "SubmitParkedPhoto",
    "classify",
]
