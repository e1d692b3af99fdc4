"""Per-phone conversation state machine.

Every ``(SessionState, InputKind)`` pair has an entry in
:data:`TRANSITIONS`. Pairs without a specific rule map to the state's help
prompt and leave the session unchanged. The engine decides prompts and
intents only; it never mutates slots, drivers, cars or tokens.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from pyvalet import messages
from pyvalet._constants import normalize_phone
from pyvalet._redact import redact_scan_text
from pyvalet.conversation.intents import (
    Intent,
    RequestRetrieval,
    ScanToken,
    SetDriverStatus,
    StartCheckIn,
    SubmitParkedPhoto,
)
from pyvalet.conversation.parsing import (
    TEXT_LIKE,
    InputKind,
    classify,
    keyword_text,
    parse_contact,
    parse_model,
    parse_owner_name,
    parse_plate,
)
from pyvalet.models.driver import Driver, DriverStatus
from pyvalet.models.message import InboundMessage
from pyvalet.models.session import ConversationSession, IntakeFields, SessionState
from pyvalet.qr import parse_scan_text
from pyvalet.store import ResourceStore

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationOutcome:
    replies: list[str] = field(default_factory=list)
    intent: Intent | None = None


@dataclass(frozen=True)
class _Turn:
    phone: str
    session: ConversationSession
    message: InboundMessage
    driver: Driver | None

    @property
    def text(self) -> str:
        return (self.message.text or "").strip()

    @property
    def fields(self) -> IntakeFields:
        return self.session.pending_fields


@dataclass(frozen=True)
class _Step:
    state: SessionState
    fields: IntakeFields
    replies: tuple[str, ...] = ()
    intent: Intent | None = None


_Handler = Callable[[_Turn], _Step]

_HELP: dict[SessionState, str] = {
    SessionState.IDLE: messages.HELP_IDLE,
    SessionState.AWAITING_CHECKIN_CONFIRM: messages.HELP_CHECKIN_CONFIRM,
    SessionState.AWAITING_PLATE: messages.INVALID_PLATE,
    SessionState.AWAITING_OWNER: messages.INVALID_OWNER,
    SessionState.AWAITING_MODEL: messages.INVALID_MODEL,
    SessionState.AWAITING_CONTACT: messages.INVALID_CONTACT,
    SessionState.AWAITING_STATUS_CHOICE: messages.ASK_STATUS,
}


def _stay(turn: _Turn, *replies: str, intent: Intent | None = None) -> _Step:
    return _Step(turn.session.state, turn.fields, replies, intent)


def _help(turn: _Turn) -> _Step:
    return _stay(turn, _HELP[turn.session.state])


# ----------------------------------------------------------------------
# Rules valid in every state
# ----------------------------------------------------------------------


def _scan(turn: _Turn) -> _Step:
    payload = parse_scan_text(turn.text)
    if payload is None:
        return _stay(turn, messages.INVALID_QR)
    return _stay(turn, intent=ScanToken(payload=payload, scanner_phone=turn.phone))


def _image(turn: _Turn) -> _Step:
    if turn.driver is None or turn.driver.status is not DriverStatus.BUSY:
        return _stay(turn, messages.HELP_PHOTO)
    return _stay(turn, intent=SubmitParkedPhoto(driver_phone=turn.phone, image_ref=turn.message.image_ref or ""))


def _greet(turn: _Turn) -> _Step:
    return _Step(SessionState.AWAITING_CHECKIN_CONFIRM, IntakeFields(), (messages.WELCOME, messages.CHECKIN_HINT))


def _cancel(turn: _Turn) -> _Step:
    if turn.session.state is SessionState.IDLE:
        return _help(turn)
    return _Step(SessionState.IDLE, IntakeFields(), (messages.CANCELLED,))


# ----------------------------------------------------------------------
# Check-in intake
# ----------------------------------------------------------------------


def _confirm_checkin(turn: _Turn) -> _Step:
    return _Step(SessionState.AWAITING_PLATE, IntakeFields(), (messages.ASK_PLATE,))


def _collect_plate(turn: _Turn) -> _Step:
    plate = parse_plate(turn.text)
    if plate is None:
        return _stay(turn, messages.INVALID_PLATE)
    fields = turn.fields.model_copy(update={"number_plate": plate})
    return _Step(SessionState.AWAITING_OWNER, fields, (messages.ASK_OWNER,))


def _collect_owner(turn: _Turn) -> _Step:
    name = parse_owner_name(turn.text)
    if name is None:
        return _stay(turn, messages.INVALID_OWNER)
    fields = turn.fields.model_copy(update={"owner_name": name})
    return _Step(SessionState.AWAITING_MODEL, fields, (messages.ASK_MODEL,))


def _collect_model(turn: _Turn) -> _Step:
    model = parse_model(turn.text)
    if model is None:
        return _stay(turn, messages.INVALID_MODEL)
    fields = turn.fields.model_copy(update={"model": model})
    return _Step(SessionState.AWAITING_CONTACT, fields, (messages.ASK_CONTACT,))


def _collect_contact(turn: _Turn) -> _Step:
    contact = parse_contact(turn.text)
    if contact is None:
        return _stay(turn, messages.INVALID_CONTACT)
    fields = turn.fields.model_copy(update={"contact": contact})
    return _Step(
        SessionState.IDLE,
        IntakeFields(),
        intent=StartCheckIn(fields=fields, requester_phone=turn.phone),
    )


# ----------------------------------------------------------------------
# Retrieval and driver status
# ----------------------------------------------------------------------


def _retrieval(turn: _Turn) -> _Step:
    return _stay(turn, intent=RequestRetrieval(owner_phone=turn.phone))


def _ask_status(turn: _Turn) -> _Step:
    if turn.driver is None:
        _logger.warning("Status change requested by unregistered number %s", turn.phone)
        return _stay(turn, messages.NOT_A_DRIVER)
    return _Step(SessionState.AWAITING_STATUS_CHOICE, IntakeFields(), (messages.ASK_STATUS,))


def _choose_status(turn: _Turn) -> _Step:
    available = keyword_text(turn.message) == "free"
    return _Step(
        SessionState.IDLE,
        IntakeFields(),
        intent=SetDriverStatus(driver_phone=turn.phone, available=available),
    )


def _reject_status(turn: _Turn) -> _Step:
    return _Step(SessionState.IDLE, IntakeFields(), (messages.INVALID_STATUS,))


def _build_transitions() -> dict[tuple[SessionState, InputKind], _Handler]:
    table: dict[tuple[SessionState, InputKind], _Handler] = {
        (state, kind): _help for state in SessionState for kind in InputKind
    }
    for state in SessionState:
        table[(state, InputKind.QR_SCAN)] = _scan
        table[(state, InputKind.IMAGE)] = _image
        table[(state, InputKind.GREETING)] = _greet
        table[(state, InputKind.CANCEL)] = _cancel

    table[(SessionState.AWAITING_CHECKIN_CONFIRM, InputKind.CHECKIN)] = _confirm_checkin

    collectors = {
        SessionState.AWAITING_PLATE: _collect_plate,
        SessionState.AWAITING_OWNER: _collect_owner,
        SessionState.AWAITING_MODEL: _collect_model,
        SessionState.AWAITING_CONTACT: _collect_contact,
    }
    for state, collector in collectors.items():
        for kind in TEXT_LIKE:
            table[(state, kind)] = collector

    table[(SessionState.IDLE, InputKind.RETRIEVAL)] = _retrieval
    table[(SessionState.IDLE, InputKind.STATUS)] = _ask_status

    table[(SessionState.AWAITING_STATUS_CHOICE, InputKind.STATUS_VALUE)] = _choose_status
    for kind in TEXT_LIKE - {InputKind.STATUS_VALUE}:
        table[(SessionState.AWAITING_STATUS_CHOICE, kind)] = _reject_status
    return table


TRANSITIONS: dict[tuple[SessionState, InputKind], _Handler] = _build_transitions()


class ConversationEngine:
    """Resolve a message against the sender's session and persist the new session.

    The session write is committed before :meth:`handle` returns, so any
    reply is sent against already-advanced state.
    """

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def session_for(self, phone_number: str) -> ConversationSession | None:
        return self._store.view().get_session(normalize_phone(phone_number))

    def handle(self, message: InboundMessage) -> ConversationOutcome:
        phone = normalize_phone(message.sender)
        kind = classify(message)
        if _logger.isEnabledFor(logging.DEBUG):
            shown = redact_scan_text(message.text or "") if kind is InputKind.QR_SCAN else message.text
            _logger.debug("Inbound from %s kind=%s text=%r", phone, kind, shown)
        # Routing only; the allocator revalidates the driver inside its own transaction.
        driver = self._store.view().driver_by_phone(phone)

        with self._store.transaction() as tx:
            stored = tx.get_session(phone)
            session = stored or ConversationSession(phone_number=phone, updated_at=tx.now)
            step = TRANSITIONS[(session.state, kind)](_Turn(phone=phone, session=session, message=message, driver=driver))
            if stored is None or step.state is not session.state or step.fields != session.pending_fields:
                tx.put_session(
                    session.model_copy(
                        update={"state": step.state, "pending_fields": step.fields, "updated_at": tx.now}
                    )
                )

        if step.state is not session.state:
            _logger.debug("Session %s: %s -> %s on %s", phone, session.state, step.state, kind)
        return ConversationOutcome(replies=list(step.replies), intent=step.intent)
