"""Conversation session model."""

from __future__ import annotations

import enum

from pydantic import Field

from pyvalet.models._base import UtcDatetime, ValetBaseModel, utcnow


class SessionState(enum.StrEnum):
    IDLE = "IDLE"
    AWAITING_CHECKIN_CONFIRM = "AWAITING_CHECKIN_CONFIRM"
    AWAITING_PLATE = "AWAITING_PLATE"
    AWAITING_OWNER = "AWAITING_OWNER"
    AWAITING_MODEL = "AWAITING_MODEL"
    AWAITING_CONTACT = "AWAITING_CONTACT"
    AWAITING_STATUS_CHOICE = "AWAITING_STATUS_CHOICE"


class IntakeFields(ValetBaseModel):
    """Car details collected so far during a check-in dialogue."""

    number_plate: str | None = None
    owner_name: str | None = None
    model: str | None = None
    contact: str | None = None


class ConversationSession(ValetBaseModel):
    """Resumable dialogue state for one phone number."""

    phone_number: str
    state: SessionState = SessionState.IDLE
    pending_fields: IntakeFields = Field(default_factory=IntakeFields)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
