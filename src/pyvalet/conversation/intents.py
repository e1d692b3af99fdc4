"""Intents emitted by the conversation engine.

An intent is a request for a resource transition. The engine never
performs it; the service hands it to the allocator or the token ledger.
"""

from __future__ import annotations

from dataclasses import dataclass

from pyvalet.models.session import IntakeFields
from pyvalet.qr import ScanPayload


@dataclass(frozen=True)
class StartCheckIn:
    fields: IntakeFields
    requester_phone: str


@dataclass(frozen=True)
class RequestRetrieval:
    owner_phone: str


@dataclass(frozen=True)
class ScanToken:
    payload: ScanPayload
    scanner_phone: str


@dataclass(frozen=True)
class SubmitParkedPhoto:
    driver_phone: str
    image_ref: str


@dataclass(frozen=True)
class SetDriverStatus:
    driver_phone: str
    available: bool


Intent = StartCheckIn | RequestRetrieval | ScanToken | SubmitParkedPhoto | SetDriverStatus
