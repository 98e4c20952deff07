"""Normalized actions: one protocol-independent model of on-chain effects.

Every classified call frame becomes at most one action. Actions keep the
``trace_index`` of the frame that produced them so that execution order
survives normalization.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import StrEnum
from fractions import Fraction
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from mevsentry.errors import MalformedTrace
from mevsentry.models.metadata import Metadata
from mevsentry.models.primitives import Address, Rational, TxHash
from mevsentry.models.trace import WEI_PER_ETH


class Protocol(StrEnum):
    """Protocols with a decode table in the static registry."""

    UNISWAP_V2 = "UniswapV2"
    SUSHISWAP_V2 = "SushiSwapV2"
    UNISWAP_V3 = "UniswapV3"
    ERC20 = "ERC20"


class ActionKind(StrEnum):
    TRANSFER = "transfer"
    SWAP = "swap"
    MINT = "mint"
    BURN = "burn"
    COLLECT = "collect"
    FLASH_LOAN = "flash_loan"
    LIQUIDATION = "liquidation"
    UNCLASSIFIED = "unclassified"


class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    trace_index: int = Field(..., ge=0, description="Index of the originating frame")
    protocol: Protocol | None = Field(default=None, description="Attributed protocol")
    address: Address = Field(..., description="Pool or contract the action ran on")
    from_address: Address = Field(..., description="Caller of the originating frame")
    to_address: Address = Field(..., description="Recipient of the action's output")


class NormalizedTransfer(_ActionBase):
    """Movement of ``amount`` of ``token``; the native token uses the WETH address."""

    kind: Literal[ActionKind.TRANSFER] = ActionKind.TRANSFER
    token: Address
    amount: Rational
    fee: Rational = Fraction(0)


class NormalizedSwap(_ActionBase):
    """Exchange of ``amount_in`` of ``token_in`` for ``amount_out`` of ``token_out``."""

    kind: Literal[ActionKind.SWAP] = ActionKind.SWAP
    pool: Address
    token_in: Address
    amount_in: Rational
    token_out: Address
    amount_out: Rational
    fee_rate: Rational = Fraction(0)

    def is_reverse_of(self, other: NormalizedSwap) -> bool:
        """True when this swap trades in the opposite direction on the same pair."""
        return self.token_in == other.token_out and self.token_out == other.token_in


class _LiquidityAction(_ActionBase):
    pool: Address
    tokens: tuple[Address, ...]
    amounts: tuple[Rational, ...]
    tick_lower: int | None = None
    tick_upper: int | None = None

    @property
    def tick_range(self) -> tuple[int, int] | None:
        if self.tick_lower is None or self.tick_upper is None:
            return None
        return (self.tick_lower, self.tick_upper)

    def amount_of(self, token: str) -> Fraction:
        for t, amount in zip(self.tokens, self.amounts):
            if t == token:
                return amount
        return Fraction(0)


class NormalizedMint(_LiquidityAction):
    kind: Literal[ActionKind.MINT] = ActionKind.MINT
    liquidity: Rational


class NormalizedBurn(_LiquidityAction):
    kind: Literal[ActionKind.BURN] = ActionKind.BURN
    liquidity: Rational


class NormalizedCollect(_LiquidityAction):
    kind: Literal[ActionKind.COLLECT] = ActionKind.COLLECT


class NormalizedFlashLoan(_ActionBase):
    kind: Literal[ActionKind.FLASH_LOAN] = ActionKind.FLASH_LOAN
    pool: Address
    tokens: tuple[Address, ...]
    amounts: tuple[Rational, ...]


class NormalizedLiquidation(_ActionBase):
    kind: Literal[ActionKind.LIQUIDATION] = ActionKind.LIQUIDATION
    liquidated_user: Address
    debt_token: Address
    debt_amount: Rational
    collateral_token: Address
    collateral_amount: Rational


class UnclassifiedAction(_ActionBase):
    """A recognised protocol call with no economic effect of its own."""

    kind: Literal[ActionKind.UNCLASSIFIED] = ActionKind.UNCLASSIFIED
    function: str


NormalizedAction = Annotated[
    Union[
        NormalizedTransfer,
        NormalizedSwap,
        NormalizedMint,
        NormalizedBurn,
        NormalizedCollect,
        NormalizedFlashLoan,
        NormalizedLiquidation,
        UnclassifiedAction,
    ],
    Field(discriminator="kind"),
]


class TransactionActions(BaseModel):
    """Ordered normalized actions of one transaction."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    block_number: int = Field(..., ge=0)
    tx_index: int = Field(..., ge=0)
    tx_hash: TxHash
    sender: Address
    to: Address | None = None
    gas_used: int = Field(default=0, ge=0)
    effective_gas_price: int = Field(default=0, ge=0)
    frame_count: int = Field(default=0, ge=0, description="Call frames in the trace")
    actions: tuple[NormalizedAction, ...] = ()

    @property
    def swaps(self) -> list[NormalizedSwap]:
        return [a for a in self.actions if isinstance(a, NormalizedSwap)]

    @property
    def gas_cost_eth(self) -> Fraction:
        return Fraction(self.gas_used * self.effective_gas_price, WEI_PER_ETH)

    def check_ordering(self) -> None:
        """Raise MalformedTrace unless trace indices are non-decreasing."""
        previous = -1
        for action in self.actions:
            if action.trace_index < previous:
                raise MalformedTrace(
                    f"Actions of tx {self.tx_hash} out of order: "
                    f"{action.trace_index} after {previous}"
                )
            previous = action.trace_index
        if self.frame_count and len(self.actions) > self.frame_count:
            raise MalformedTrace(
                f"Tx {self.tx_hash} has {len(self.actions)} actions "
                f"for {self.frame_count} frames"
            )


class BlockActionSet(BaseModel):
    """All transactions of a block in block order, plus the block metadata."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    block_number: int = Field(..., ge=0)
    transactions: tuple[TransactionActions, ...] = ()
    metadata: Metadata

    @property
    def action_count(self) -> int:
        return sum(len(tx.actions) for tx in self.transactions)

    def check_ordering(self) -> None:
        """Verify block-level and per-transaction ordering invariants.

        Raises:
            MalformedTrace: On any violation.
        """
        if self.metadata.block_number != self.block_number:
            raise MalformedTrace(
                f"Metadata for block {self.metadata.block_number} attached "
                f"to block {self.block_number}"
            )
        previous = -1
        for tx in self.transactions:
            if tx.block_number != self.block_number:
                raise MalformedTrace(
                    f"Tx {tx.tx_hash} belongs to block {tx.block_number}, "
                    f"not {self.block_number}"
                )
            if tx.tx_index <= previous:
                raise MalformedTrace(
                    f"Transactions of block {self.block_number} out of order: "
                    f"index {tx.tx_index} after {previous}"
                )
            previous = tx.tx_index
            tx.check_ordering()

    def ordered_actions(self) -> Iterator[tuple[TransactionActions, NormalizedAction]]:
        """Yield ``(transaction, action)`` pairs in block execution order."""
        for tx in self.transactions:
            for action in tx.actions:
                yield tx, action

    def swaps_by_pool(self) -> dict[str, list[tuple[TransactionActions, NormalizedSwap]]]:
        pools: dict[str, list[tuple[TransactionActions, NormalizedSwap]]] = {}
        for tx, action in self.ordered_actions():
            if isinstance(action, NormalizedSwap):
                pools.setdefault(action.pool, []).append((tx, action))
        return pools


__all__ = [
    "ActionKind",
    "BlockActionSet",
    "NormalizedAction",
    "NormalizedBurn",
    "NormalizedCollect",
    "NormalizedFlashLoan",
    "NormalizedLiquidation",
    "NormalizedMint",
    "NormalizedSwap",
    "NormalizedTransfer",
    "Protocol",
    "TransactionActions",
    "UnclassifiedAction",
]
