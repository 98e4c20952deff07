"""Shared primitive types for addresses, hashes and exact token amounts.

Token amounts are carried as :class:`fractions.Fraction` rather than
``Decimal`` or ``float``: profit chains multiply and divide amounts with
different decimal counts, and only a rational keeps those chains exact.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Annotated, Any

from pydantic import BeforeValidator, PlainSerializer, PlainValidator

# Ethereum address regex pattern
ETH_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
# Transaction hash regex pattern
TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(value: Any) -> str:
    """Validate an Ethereum address and normalize it to lowercase."""
    if isinstance(value, bytes):
        value = "0x" + value.hex()
    if not isinstance(value, str) or not value:
        raise ValueError("Address cannot be empty")
    v = value.strip().lower()
    if not ETH_ADDRESS_PATTERN.match(v):
        raise ValueError(
            f"Invalid Ethereum address: {v[:20]}... "
            "Expected format: 0x followed by 40 hex characters"
        )
    return v


def normalize_tx_hash(value: Any) -> str:
    """Validate a transaction hash and normalize it to lowercase."""
    if not isinstance(value, str) or not value:
        raise ValueError("Transaction hash cannot be empty")
    v = value.strip().lower()
    if not TX_HASH_PATTERN.match(v):
        raise ValueError(
            f"Invalid transaction hash: {v[:20]}... "
            "Expected format: 0x followed by 64 hex characters"
        )
    return v


def to_rational(value: Any) -> Fraction:
    """Convert ``value`` to an exact :class:`Fraction`.

    Accepts fractions, integers, decimals and numeric strings such as
    ``"10.5"`` or ``"1/3"``. Floats are rejected because they are already
    rounded.

    Raises:
        ValueError: If the value cannot be represented exactly.
    """
    if isinstance(value, Fraction):
        return value
    if isinstance(value, bool):
        raise ValueError("Booleans are not token amounts")
    if isinstance(value, int):
        return Fraction(value)
    if isinstance(value, Decimal):
        try:
            return Fraction(value)
        except (ValueError, OverflowError, InvalidOperation) as e:
            raise ValueError(f"Invalid decimal amount: {value}") from e
    if isinstance(value, str):
        try:
            return Fraction(value.strip())
        except (ValueError, ZeroDivisionError) as e:
            raise ValueError(f"Invalid rational amount: {value}") from e
    raise ValueError(f"Cannot represent {type(value).__name__} exactly as a rational")


def from_raw_amount(raw: int, decimals: int) -> Fraction:
    """Scale an on-chain integer amount by the token's decimals."""
    return Fraction(raw, 10**decimals)


def rational_to_str(value: Fraction) -> str:
    return f"{value.numerator}/{value.denominator}"


Rational = Annotated[
    Fraction,
    PlainValidator(to_rational),
    PlainSerializer(rational_to_str, return_type=str, when_used="json"),
]
Address = Annotated[str, BeforeValidator(normalize_address)]
TxHash = Annotated[str, BeforeValidator(normalize_tx_hash)]


__all__ = [
    "ETH_ADDRESS_PATTERN",
    "TX_HASH_PATTERN",
    "ZERO_ADDRESS",
    "Address",
    "Rational",
    "TxHash",
    "from_raw_amount",
    "normalize_address",
    "normalize_tx_hash",
    "rational_to_str",
    "to_rational",
]
