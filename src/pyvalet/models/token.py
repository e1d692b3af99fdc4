"""QR token model."""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import Field

from pyvalet.models._base import UtcDatetime, ValetBaseModel, utcnow


class TokenKind(enum.StrEnum):
    CHECKIN = "checkin"
    RETRIEVAL = "retrieval"


class QRToken(ValetBaseModel):
    """A single-use, time-limited credential tied to one car.

    Parameters
    ----------
    token : str
        Opaque random identifier (lowercase hex).
    car_id : str
        Car the token authorizes a transition for.
    kind : TokenKind
        Which transition it authorizes.
    expires_at : datetime
        The token is unusable at and after this instant.
    used : bool
        Flips to ``True`` exactly once, in the same transaction as the
        mutation it authorizes.
    owner_phone : str or None
        Owner identifier embedded in the QR payload.
    """

    token: str = Field(min_length=1)
    car_id: str
    kind: TokenKind
    issued_at: UtcDatetime = Field(default_factory=utcnow)
    expires_at: UtcDatetime
    used: bool = False
    used_at: UtcDatetime | None = None
    owner_phone: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
