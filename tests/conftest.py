"""Shared factory fixtures for actions, transactions, blocks and metadata."""

from __future__ import annotations

from fractions import Fraction

import pytest

from mevsentry.models.actions import (
    BlockActionSet,
    NormalizedBurn,
    NormalizedMint,
    NormalizedSwap,
    Protocol,
    TransactionActions,
)
from mevsentry.models.metadata import Metadata, PriceQuote, PriceTable

BLOCK_NUMBER = 18_000_000
BLOCK_TIMESTAMP = 1_700_000_000
POOL = "0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640"
ROUTER = "0x7a250d5630b4cf539739df2c5dacb4c659f2488d"


def tx_hash_for(block_number: int, tx_index: int) -> str:
    return f"0x{block_number:032x}{tx_index:032x}"


@pytest.fixture
def make_metadata():
    """Build block metadata; ``quotes`` are ``(base, quote, price)`` triples."""

    def _make(
        block_number: int = BLOCK_NUMBER,
        quotes: tuple = (),
        quote_timestamp: int = BLOCK_TIMESTAMP,
        **kwargs,
    ) -> Metadata:
        prices = PriceTable(
            quotes=tuple(
                PriceQuote(base=base, quote=quote, timestamp=quote_timestamp, price=price)
                for base, quote, price in quotes
            )
        )
        return Metadata(
            block_number=block_number,
            block_timestamp=BLOCK_TIMESTAMP,
            prices=prices,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_swap():
    def _make(
        token_in: str,
        amount_in,
        token_out: str,
        amount_out,
        pool: str = POOL,
        trace_index: int = 1,
        fee_rate=Fraction(0),
    ) -> NormalizedSwap:
        return NormalizedSwap(
            trace_index=trace_index,
            protocol=Protocol.UNISWAP_V3,
            address=pool,
            from_address=ROUTER,
            to_address=ROUTER,
            pool=pool,
            token_in=token_in,
            amount_in=amount_in,
            token_out=token_out,
            amount_out=amount_out,
            fee_rate=fee_rate,
        )

    return _make


@pytest.fixture
def make_position():
    """Build a mint or burn on ``pool`` for the given tick range."""

    def _make(
        kind: str,
        tokens: tuple[str, str],
        amounts: tuple,
        liquidity,
        ticks: tuple[int, int] = (-100, 100),
        pool: str = POOL,
        trace_index: int = 1,
    ):
        model = NormalizedMint if kind == "mint" else NormalizedBurn
        return model(
            trace_index=trace_index,
            protocol=Protocol.UNISWAP_V3,
            address=pool,
            from_address=ROUTER,
            to_address=ROUTER,
            pool=pool,
            tokens=tokens,
            amounts=amounts,
            tick_lower=ticks[0],
            tick_upper=ticks[1],
            liquidity=liquidity,
        )

    return _make


@pytest.fixture
def make_tx():
    def _make(
        tx_index: int,
        sender: str,
        actions: tuple = (),
        block_number: int = BLOCK_NUMBER,
        gas_used: int = 0,
        effective_gas_price: int = 0,
        to: str | None = None,
    ) -> TransactionActions:
        return TransactionActions(
            block_number=block_number,
            tx_index=tx_index,
            tx_hash=tx_hash_for(block_number, tx_index),
            sender=sender,
            to=to,
            gas_used=gas_used,
            effective_gas_price=effective_gas_price,
            actions=tuple(actions),
        )

    return _make


@pytest.fixture
def make_block(make_metadata):
    def _make(
        transactions: list[TransactionActions],
        metadata: Metadata | None = None,
        block_number: int = BLOCK_NUMBER,
    ) -> BlockActionSet:
        return BlockActionSet(
            block_number=block_number,
            transactions=tuple(transactions),
            metadata=metadata or make_metadata(block_number=block_number),
        )

    return _make
