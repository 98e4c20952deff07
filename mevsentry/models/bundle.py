"""Detection results emitted by inspectors."""

from __future__ import annotations

from enum import StrEnum
from fractions import Fraction
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mevsentry.models.primitives import Address, Rational, TxHash


class BundleKind(StrEnum):
    SANDWICH = "sandwich"
    CEX_DEX = "cex_dex"
    JIT = "jit"
    ATOMIC_BACKRUN = "atomic_backrun"


class Bundle(BaseModel):
    """A detected MEV strategy instance with its profit attribution.

    Attributes:
        kind: Detector that produced the bundle.
        block_number: Block the bundle was found in.
        tx_hashes: Contributing transactions in block order.
        tx_indices: Block positions of ``tx_hashes``.
        actor: Address credited with the strategy (searcher EOA).
        pools: Pools touched by the strategy.
        profit_token: Token the profit is denominated in.
        profit: Net profit in ``profit_token`` (exact).
        profit_usd: USD value of ``profit`` when the token is priced.
        gas_cost: Gas paid, expressed in ``profit_token`` (0 when unpriced).
        confidence: Detection confidence (0.0 to 1.0).
        tag: Classification tag, e.g. ``"priced"`` or ``"gas-unpriced"``.

    Example:
        >>> bundle = Bundle(
        ...     kind=BundleKind.SANDWICH,
        ...     block_number=18_000_000,
        ...     tx_hashes=("0xaa...", "0xbb...", "0xcc..."),
        ...     tx_indices=(1, 2, 3),
        ...     actor="0x66a9...",
        ...     pools=("0x88e6...",),
        ...     profit_token="0xc02a...",
        ...     profit="1/2",
        ... )
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        extra="forbid",
    )

    kind: BundleKind = Field(..., description="Detector that produced the bundle")
    block_number: int = Field(..., ge=0, description="Block number")
    tx_hashes: tuple[TxHash, ...] = Field(
        ...,
        min_length=1,
        description="Contributing transaction hashes in block order",
    )
    tx_indices: tuple[int, ...] = Field(..., min_length=1, description="Block positions")
    actor: Address = Field(..., description="Address credited with the strategy")
    pools: tuple[Address, ...] = Field(default=(), description="Pools involved")
    profit_token: Address = Field(..., description="Denomination of the profit")
    profit: Rational = Field(..., description="Net profit in profit_token")
    profit_usd: Rational | None = Field(default=None, description="USD value of the profit")
    gas_cost: Rational = Field(default=Fraction(0), description="Gas paid in profit_token")
    confidence: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Detection confidence score (0.0 to 1.0)",
    )
    tag: str = Field(default="priced", min_length=1, description="Classification tag")

    @field_validator("tx_indices")
    @classmethod
    def validate_indices(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        """Transaction indices must be listed in block order."""
        if any(b < a for a, b in zip(v, v[1:])):
            raise ValueError("Transaction indices must be in block order")
        return v

    def to_dict(self) -> dict[str, Any]:
        """Convert the bundle to a flat dictionary for DataFrames."""
        return {
            "kind": self.kind.value,
            "block_number": self.block_number,
            "tx_hashes": ",".join(self.tx_hashes),
            "tx_count": len(self.tx_hashes),
            "actor": self.actor,
            "pools": ",".join(self.pools),
            "profit_token": self.profit_token,
            "profit": str(self.profit),
            "profit_usd": str(self.profit_usd) if self.profit_usd is not None else None,
            "gas_cost": str(self.gas_cost),
            "confidence": self.confidence,
            "tag": self.tag,
        }


__all__ = [
    "Bundle",
    "BundleKind",
]
