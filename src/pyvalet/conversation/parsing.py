"""Inbound message classification and intake field validation."""

from __future__ import annotations

import enum

from pyvalet._constants import (
    CANCEL_WORDS,
    CHECKIN_WORDS,
    GREETINGS,
    MODEL_MAX,
    OWNER_NAME_MAX,
    PHONE_MAX_DIGITS,
    PHONE_MIN_DIGITS,
    PLATE_PATTERN,
    RETRIEVAL_WORDS,
    STATUS_VALUES,
    STATUS_WORDS,
    normalize_phone,
    normalize_plate,
)
from pyvalet.models.message import InboundMessage
from pyvalet.qr import is_scan_text


class InputKind(enum.StrEnum):
    QR_SCAN = "qr_scan"
    IMAGE = "image"
    GREETING = "greeting"
    CHECKIN = "checkin"
    RETRIEVAL = "retrieval"
    STATUS = "status"
    STATUS_VALUE = "status_value"
    CANCEL = "cancel"
    TEXT = "text"


# Kinds whose literal text is accepted as a field value while collecting intake details.
TEXT_LIKE: frozenset[InputKind] = frozenset(
    {InputKind.TEXT, InputKind.CHECKIN, InputKind.RETRIEVAL, InputKind.STATUS, InputKind.STATUS_VALUE}
)

_KEYWORDS: tuple[tuple[frozenset[str], InputKind], ...] = (
    (GREETINGS, InputKind.GREETING),
    (CHECKIN_WORDS, InputKind.CHECKIN),
    (RETRIEVAL_WORDS, InputKind.RETRIEVAL),
    (STATUS_WORDS, InputKind.STATUS),
    (STATUS_VALUES, InputKind.STATUS_VALUE),
    (CANCEL_WORDS, InputKind.CANCEL),
)


def keyword_text(message: InboundMessage) -> str:
    """Trimmed, lowercased text used for keyword matching."""
    return " ".join((message.text or "").split()).lower()


def classify(message: InboundMessage) -> InputKind:
    text = keyword_text(message)
    if is_scan_text(message.text):
        return InputKind.QR_SCAN
    if message.image_ref:
        return InputKind.IMAGE
    for words, kind in _KEYWORDS:
        if text in words:
            return kind
    return InputKind.TEXT


def parse_plate(text: str) -> str | None:
    plate = normalize_plate(text)
    return plate if PLATE_PATTERN.fullmatch(plate) else None


def parse_owner_name(text: str) -> str | None:
    name = " ".join(text.split())
    return name if 0 < len(name) <= OWNER_NAME_MAX else None


def parse_model(text: str) -> str | None:
    model = " ".join(text.split())
    return model if 0 < len(model) <= MODEL_MAX else None


def parse_contact(text: str) -> str | None:
    digits = normalize_phone(text)
    return digits if PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS else None
