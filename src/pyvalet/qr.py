"""QR scan payload wire format.

A QR code encodes a deep link that makes the scanning phone send the
literal text ``qr_scan:<token>:<carId>:<ownerIdentifier>`` back to the
service. This module builds and parses that text.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

from pyvalet._constants import QR_SCAN_PREFIX, WHATSAPP_DEEP_LINK, normalize_phone

_FIELD_COUNT = 3


@dataclass(frozen=True)
class ScanPayload:
    token: str
    car_id: str
    owner_id: str


def is_scan_text(text: str | None) -> bool:
    return bool(text) and text.strip().lower().startswith(QR_SCAN_PREFIX)


def build_scan_text(token: str, car_id: str, owner_id: str) -> str:
    for value in (token, car_id, owner_id):
        if not value or ":" in value:
            raise ValueError(f"QR field must be non-empty and colon-free, got {value!r}")
    return f"{QR_SCAN_PREFIX}{token}:{car_id}:{owner_id}"


def build_qr_payload(scan_text: str, business_number: str = "") -> str:
    """Deep link a scanner's messaging client opens to send *scan_text*.

    Without a configured business number the bare scan text is encoded.
    """
    number = normalize_phone(business_number)
    if not number:
        return scan_text
    return WHATSAPP_DEEP_LINK.format(number=number, text=quote(scan_text, safe=""))


def parse_scan_text(text: str) -> ScanPayload | None:
    """Parse ``qr_scan:<token>:<carId>:<ownerId>``; ``None`` when malformed.

    Tokens and car ids are lowercase hex, so they are lowercased to survive
    clients that change letter case. The owner id is reduced to digits.
    """
    stripped = text.strip()
    if not stripped.lower().startswith(QR_SCAN_PREFIX):
        return None
    fields = [part.strip() for part in stripped[len(QR_SCAN_PREFIX) :].split(":")]
    if len(fields) != _FIELD_COUNT or not all(fields):
        return None
    token, car_id, owner_raw = fields
    owner_id = normalize_phone(owner_raw)
    if not owner_id:
        return None
    return ScanPayload(token=token.lower(), car_id=car_id.lower(), owner_id=owner_id)
