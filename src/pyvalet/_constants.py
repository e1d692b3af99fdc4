"""Internal constants shared across the library."""

import re

USER_AGENT = "pyvalet/0.1"

QR_SCAN_PREFIX = "qr_scan:"
WHATSAPP_DEEP_LINK = "https://wa.me/{number}?text={text}"

TOKEN_BYTES = 16
ID_BYTES = 12

GREETINGS: frozenset[str] = frozenset({"hi", "hello", "hey"})
CHECKIN_WORDS: frozenset[str] = frozenset({"check-in", "checkin", "check in"})
RETRIEVAL_WORDS: frozenset[str] = frozenset({"retrieval", "retrieve"})
STATUS_WORDS: frozenset[str] = frozenset({"status"})
STATUS_VALUES: frozenset[str] = frozenset({"free", "busy"})
CANCEL_WORDS: frozenset[str] = frozenset({"cancel", "stop"})

# ------------------------------------------------------------------
# Intake field validation
# ------------------------------------------------------------------

PLATE_PATTERN = re.compile(r"^[A-Z0-9-]{3,15}$")
PHONE_MIN_DIGITS = 7
PHONE_MAX_DIGITS = 15
OWNER_NAME_MAX = 80
MODEL_MAX = 60

_NON_DIGITS = re.compile(r"\D+")
_WHITESPACE = re.compile(r"\s+")


def normalize_phone(value: str) -> str:
    """Reduce a phone number to its digits (``"+91 90253-28996"`` -> ``"919025328996"``)."""
    return _NON_DIGITS.sub("", value or "")


def normalize_plate(value: str) -> str:
    """Uppercase a number plate and drop inner whitespace."""
    return _WHITESPACE.sub("", value or "").upper()
