"""Typed outcomes for allocator and ledger operations.

Recoverable business conditions (no free slot, expired token, wrong
driver, ...) are values, not exceptions: every operation returns either
:class:`Ok` carrying its payload or :class:`Err` carrying a
:class:`FailureReason`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class FailureReason(enum.StrEnum):
    # Resource exhaustion
    NO_FREE_SLOT = "no_free_slot"
    NO_FREE_DRIVER = "no_free_driver"
    # Token errors
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_MISMATCH = "token_mismatch"
    TOKEN_ALREADY_USED = "token_already_used"
    # Lookup / state
    UNKNOWN_CAR = "unknown_car"
    UNKNOWN_DRIVER = "unknown_driver"
    NO_ASSIGNED_CAR = "no_assigned_car"
    NO_PARKED_CAR = "no_parked_car"
    WRONG_STATE = "wrong_state"
    # Authorization
    DRIVER_MISMATCH = "driver_mismatch"
    # Validation
    DUPLICATE_PLATE = "duplicate_plate"
    DUPLICATE_PHONE = "duplicate_phone"
    # Persistence
    STORE_UNAVAILABLE = "store_unavailable"

    @property
    def is_token_error(self) -> bool:
        return self in _TOKEN_ERRORS

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE


_TOKEN_ERRORS = frozenset(
    {
        FailureReason.TOKEN_INVALID,
        FailureReason.TOKEN_EXPIRED,
        FailureReason.TOKEN_MISMATCH,
        FailureReason.TOKEN_ALREADY_USED,
    }
)
_RETRYABLE = frozenset(
    {
        FailureReason.NO_FREE_SLOT,
        FailureReason.NO_FREE_DRIVER,
        FailureReason.STORE_UNAVAILABLE,
    }
)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    reason: FailureReason
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err
