"""Error taxonomy shared by every component.

Each error carries a machine-readable `kind`, a human-readable message and an
optional details string. `to_dict()` is the public payload: it never includes
stack traces or store-level identifiers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    POSITION_NOT_ON_CHAIN = "position_not_on_chain"
    INVALID_STATE = "invalid_state"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    SIGNATURE_EXPIRED = "signature_expired"
    INVALID_SIGNATURE = "invalid_signature"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SIMULATION_FAILED = "simulation_failed"
    CHAIN_UNAVAILABLE = "chain_unavailable"
    STORE_ERROR = "store_error"
    UNKNOWN = "unknown_error"


class BinPnLError(Exception):
    """Base class for all domain errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Public error payload."""
        return {"kind": self.kind.value, "message": self.message, "details": self.details}

    def __str__(self) -> str:
        return self.message


class ValidationError(BinPnLError):
    """Malformed address, bad signature format, invalid slippage/strategy value."""

    kind = ErrorKind.VALIDATION


class NotFoundError(BinPnLError):
    kind = ErrorKind.NOT_FOUND


class PositionNotOnChainError(NotFoundError):
    """The position account no longer exists on chain (closed or closing)."""

    kind = ErrorKind.POSITION_NOT_ON_CHAIN


class InvalidStateError(BinPnLError):
    """Operation not allowed in the record's current lifecycle state."""

    kind = ErrorKind.INVALID_STATE


class OwnershipMismatchError(BinPnLError):
    kind = ErrorKind.OWNERSHIP_MISMATCH


class SignatureExpiredError(BinPnLError):
    kind = ErrorKind.SIGNATURE_EXPIRED


class InvalidSignatureError(BinPnLError):
    kind = ErrorKind.INVALID_SIGNATURE


class RateLimitExceededError(BinPnLError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    retryable = True


class SimulationFailedError(BinPnLError):
    """Transaction simulation failed; callers degrade to a fixed estimate."""

    kind = ErrorKind.SIMULATION_FAILED
    retryable = True


class ChainUnavailableError(BinPnLError):
    """An RPC or oracle read failed at the transport level."""

    kind = ErrorKind.CHAIN_UNAVAILABLE
    retryable = True


class StoreError(BinPnLError):
    kind = ErrorKind.STORE_ERROR


class DuplicateRecordError(StoreError):
    """A uniqueness constraint rejected the write (same id or tx hash)."""


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Public payload for any exception; unknown errors only expose their message."""
    if isinstance(exc, BinPnLError):
        return exc.to_dict()
    return {"kind": ErrorKind.UNKNOWN.value, "message": str(exc) or type(exc).__name__, "details": None}


def format_error(exc: BaseException) -> str:
    """Render an error for display to a user."""
    payload = error_payload(exc)
    text = f"Error ({payload['kind']}): {payload['message']}"
    if payload["details"]:
        text += f"\nDetails: {payload['details']}"
    return text
