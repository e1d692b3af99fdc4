"""Custom exception hierarchy for pyvalet.

Business outcomes (no free slot, expired token, ...) are returned as typed
results from :mod:`pyvalet.results`; these exceptions are reserved for
faults: bad configuration, broken invariants and collaborator failures.
"""

from __future__ import annotations


class ValetError(Exception):
    """Base exception for all pyvalet errors."""


class ValetConfigError(ValetError):
    """Invalid or missing configuration."""


class ValetStoreError(ValetError):
    """Resource store failure (unknown record, corrupt snapshot)."""


class InvariantViolation(ValetStoreError):
    """A transaction would leave the store in an unsafe state.

    Raised at commit time; none of the transaction's writes are applied.
    """

    def __init__(self, message: str, *, violations: list[str] | None = None) -> None:
        self.violations = violations or [message]
        super().__init__(message)


class ValetTransportError(ValetError):
    """HTTP-level failure talking to a collaborator (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class ValetUploadError(ValetTransportError):
    """Image host rejected or failed an upload."""


class SnapshotWriteError(ValetStoreError):
    """The JSON snapshot could not be written; the commit was not applied."""
