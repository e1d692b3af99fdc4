"""Token ledger: issuance, validation and single-use consumption of QR tokens.

The ledger never flips ``used`` on its own authority when a resource
mutation depends on it. :meth:`TokenLedger.mark_used_if` is a conditional
update the allocator runs inside its own transaction, so the token is
consumed if and only if the paired slot/driver/car mutation commits.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from pyvalet._constants import TOKEN_BYTES, normalize_phone
from pyvalet.models.token import QRToken, TokenKind
from pyvalet.qr import build_qr_payload, build_scan_text
from pyvalet.results import Err, FailureReason, Ok, Result
from pyvalet.store import ResourceStore, Transaction

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    """A recorded token and the payloads that carry it.

    ``scan_text`` is what the scanner's phone sends back; ``qr_payload``
    is what gets encoded into the QR image (a deep link to the service's
    messaging number wrapping ``scan_text``).
    """

    record: QRToken
    scan_text: str
    qr_payload: str

    @property
    def token(self) -> str:
        return self.record.token

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


class TokenLedger:
    """Issue and consume QR tokens held in a :class:`ResourceStore`."""

    def __init__(self, store: ResourceStore, *, business_number: str = "") -> None:
        self._store = store
        self._business_number = business_number

    def issue(
        self,
        car_id: str,
        kind: TokenKind,
        ttl: float | timedelta,
        owner_phone: str | None = None,
        *,
        tx: Transaction | None = None,
    ) -> IssuedToken:
        """Record a fresh unused token and return its payloads.

        With *tx* the record is staged in the caller's transaction and
        becomes visible when it commits; otherwise it is committed before
        this method returns.
        """
        if tx is None:
            with self._store.transaction() as own_tx:
                return self.issue(car_id, kind, ttl, owner_phone, tx=own_tx)

        lifetime = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        token = secrets.token_hex(TOKEN_BYTES)
        while tx.get_token(token) is not None:
            token = secrets.token_hex(TOKEN_BYTES)
        owner = normalize_phone(owner_phone) if owner_phone else None
        record = tx.put_token(
            QRToken(
                token=token,
                car_id=car_id,
                kind=kind,
                issued_at=tx.now,
                expires_at=tx.now + lifetime,
                owner_phone=owner or None,
            )
        )
        _logger.debug("Issued %s token for car %s expiring %s", kind, car_id, record.expires_at.isoformat())
        return self.payload_for(record)

    def payload_for(self, record: QRToken) -> IssuedToken:
        scan_text = build_scan_text(record.token, record.car_id, record.owner_phone or "0")
        return IssuedToken(
            record=record,
            scan_text=scan_text,
            qr_payload=build_qr_payload(scan_text, self._business_number),
        )

    def peek(self, token: str) -> QRToken | None:
        """Read-only lookup used for routing; revalidated at commit time."""
        return self._store.view().get_token(token)

    def mark_used_if(
        self,
        tx: Transaction,
        token: str,
        *,
        expected_car_id: str,
        expected_owner_id: str | None = None,
        expected_kind: TokenKind | None = None,
    ) -> Result[QRToken]:
        """Stage ``used=True`` if the token is known, matching, unused and unexpired.

        Checks run in a fixed order so concurrent losers see a
        deterministic reason: unknown, mismatch, already used, expired.
        """
        record = tx.get_token(token)
        if record is None:
            return Err(FailureReason.TOKEN_INVALID)
        if record.car_id != expected_car_id:
            return Err(FailureReason.TOKEN_MISMATCH, "token belongs to another car")
        if expected_kind is not None and record.kind is not expected_kind:
            return Err(FailureReason.TOKEN_MISMATCH, f"token is a {record.kind} token")
        if (
            expected_owner_id is not None
            and record.owner_phone is not None
            and normalize_phone(expected_owner_id) != record.owner_phone
        ):
            return Err(FailureReason.TOKEN_MISMATCH, "owner does not match")
        if record.used:
            return Err(FailureReason.TOKEN_ALREADY_USED)
        if record.is_expired(tx.now):
            return Err(FailureReason.TOKEN_EXPIRED)
        return Ok(tx.put_token(record.model_copy(update={"used": True, "used_at": tx.now})))

    def consume(
        self,
        token: str,
        expected_car_id: str,
        expected_owner_id: str | None = None,
    ) -> Result[tuple[str, TokenKind]]:
        """Consume a token on its own, outside any resource mutation."""
        with self._store.transaction() as tx:
            outcome = self.mark_used_if(
                tx,
                token,
                expected_car_id=expected_car_id,
                expected_owner_id=expected_owner_id,
            )
        if isinstance(outcome, Err):
            return outcome
        return Ok((outcome.value.car_id, outcome.value.kind))

    def purge_expired(self, retention: float | timedelta) -> int:
        """Drop unused tokens that expired more than *retention* ago."""
        keep = retention if isinstance(retention, timedelta) else timedelta(seconds=retention)
        with self._store.transaction() as tx:
            stale = [t for t in tx.tokens() if not t.used and t.expires_at + keep <= tx.now]
            for record in stale:
                tx.delete_token(record.token)
        if stale:
            _logger.info("Purged %d expired QR tokens", len(stale))
        return len(stale)
