"""Input validation helpers.

Addresses are base58-encoded 32-byte public keys; parsing is delegated to
`solders.pubkey.Pubkey` so the check matches what the chain accepts.
"""

from __future__ import annotations

import re

from solders.pubkey import Pubkey
from solders.signature import Signature

from binpnl.core.errors import ValidationError
from binpnl.core.models import REPOSITION_REASONS, REPOSITION_STRATEGIES, TRANSACTION_TYPES

MIN_ADDRESS_LENGTH = 32
MAX_ADDRESS_LENGTH = 44
_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")


def parse_address(address: str, *, label: str = "address") -> Pubkey:
    """Return the public key for a well-formed address or raise ValidationError."""
    if not isinstance(address, str) or not MIN_ADDRESS_LENGTH <= len(address) <= MAX_ADDRESS_LENGTH:
        raise ValidationError(
            f"Invalid {label} length",
            f"Must be between {MIN_ADDRESS_LENGTH}-{MAX_ADDRESS_LENGTH} characters.",
        )
    if not _BASE58_RE.match(address):
        raise ValidationError(f"Invalid {label} format", "Must be a valid base58 string.")
    try:
        return Pubkey.from_string(address)
    except ValueError as e:
        raise ValidationError(f"Invalid {label}", str(e)) from e


def validate_address(address: str, *, label: str = "address") -> str:
    parse_address(address, label=label)
    return address


def parse_signature(signature: str) -> Signature:
    """Decode a base58 ed25519 signature or raise ValidationError."""
    if not isinstance(signature, str) or not signature or not _BASE58_RE.match(signature):
        raise ValidationError("Invalid signature format", "Signature must be a base58 string.")
    try:
        return Signature.from_string(signature)
    except ValueError as e:
        raise ValidationError("Invalid signature format", str(e)) from e


def validate_choice(value: str, choices: tuple[str, ...], *, label: str) -> str:
    if value not in choices:
        raise ValidationError(f"Invalid {label}: {value!r}", f"Expected one of: {', '.join(choices)}")
    return value


def validate_strategy(strategy: str) -> str:
    return validate_choice(strategy, REPOSITION_STRATEGIES, label="strategy")


def validate_reason(reason: str) -> str:
    return validate_choice(reason, REPOSITION_REASONS, label="reposition reason")


def validate_transaction_type(tx_type: str) -> str:
    return validate_choice(tx_type, TRANSACTION_TYPES, label="transaction type")
