"""Per-block pricing and attribution context.

Metadata is produced outside the pipeline (see ``mevsentry.ingest.metadata_store``)
and is read-only for every detector.
"""

from __future__ import annotations

from fractions import Fraction

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mevsentry.models.primitives import Address, Rational, normalize_address

WETH_ADDRESS = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
USDC_ADDRESS = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
USDT_ADDRESS = "0xdac17f958d2ee523a2206206994597c13d831ec7"
DAI_ADDRESS = "0x6b175474e89094c44da98b954eedeac495271d0f"

DEFAULT_USD_TOKENS = (USDC_ADDRESS, USDT_ADDRESS, DAI_ADDRESS)


class PriceQuote(BaseModel):
    """External (CEX) price of ``base`` denominated in ``quote`` at a timestamp."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base: Address
    quote: Address
    timestamp: int = Field(..., ge=0, description="Unix timestamp of the quote")
    price: Rational = Field(..., description="Units of quote per unit of base")

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: Fraction) -> Fraction:
        if v <= 0:
            raise ValueError("Price must be positive")
        return v


class PriceTable(BaseModel):
    """Reference prices keyed by token pair and approximate timestamp."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    quotes: tuple[PriceQuote, ...] = ()

    def __len__(self) -> int:
        return len(self.quotes)

    def lookup(
        self,
        base: str,
        quote: str,
        at: int,
        max_age: int | None = None,
    ) -> Fraction | None:
        """Return the price of ``base`` in ``quote`` nearest to ``at``.

        Falls back to the inverse pair when only ``quote/base`` is quoted.
        Quotes further than ``max_age`` seconds from ``at`` are ignored.
        Returns None when no usable quote exists.
        """
        base = base.lower()
        quote = quote.lower()
        if base == quote:
            return Fraction(1)

        best: tuple[int, int, Fraction] | None = None
        for q in self.quotes:
            if q.base == base and q.quote == quote:
                candidate = q.price
            elif q.base == quote and q.quote == base:
                candidate = 1 / q.price
            else:
                continue
            distance = abs(q.timestamp - at)
            if max_age is not None and distance > max_age:
                continue
            # ties resolve to the earlier quote
            key = (distance, q.timestamp)
            if best is None or key < best[:2]:
                best = (distance, q.timestamp, candidate)
        return best[2] if best is not None else None


class Metadata(BaseModel):
    """Context for a single block.

    Attributes:
        block_number: Block the metadata describes.
        block_timestamp: Unix timestamp of the block.
        base_gas_price: Base fee per gas in wei.
        prices: Reference price table used for CEX comparisons and USD values.
        native_token: Wrapped native token that gas costs are denominated in.
        usd_tokens: Stable coins valued at exactly one USD.
        builder: Fee recipient / builder address if known.
        proposer_fee_recipient: Proposer payment address if known.
        searcher_labels: Known searcher contracts or EOAs mapped to a label.
        pool_liquidity: In-range liquidity per pool before any JIT position.
        price_max_age: Maximum quote age accepted by price lookups, seconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    block_number: int = Field(..., ge=0)
    block_timestamp: int = Field(..., ge=0)
    base_gas_price: int = Field(default=0, ge=0)
    prices: PriceTable = Field(default_factory=PriceTable)
    native_token: Address = WETH_ADDRESS
    usd_tokens: tuple[Address, ...] = DEFAULT_USD_TOKENS
    builder: Address | None = None
    proposer_fee_recipient: Address | None = None
    searcher_labels: dict[str, str] = Field(default_factory=dict)
    pool_liquidity: dict[str, Rational] = Field(default_factory=dict)
    price_max_age: int | None = Field(default=60, ge=0)

    @field_validator("searcher_labels", "pool_liquidity", mode="before")
    @classmethod
    def normalize_keys(cls, v: dict) -> dict:
        return {normalize_address(k): val for k, val in dict(v or {}).items()}

    @property
    def has_pricing(self) -> bool:
        return len(self.prices) > 0

    def price(self, base: str, quote: str) -> Fraction | None:
        """Return the reference price of ``base`` in ``quote`` at the block time."""
        if base.lower() == quote.lower():
            return Fraction(1)
        return self.prices.lookup(base, quote, self.block_timestamp, self.price_max_age)

    def usd_price(self, token: str) -> Fraction | None:
        token = token.lower()
        if token in self.usd_tokens:
            return Fraction(1)
        for usd in self.usd_tokens:
            found = self.price(token, usd)
            if found is not None:
                return found
        return None

    def usd_value(self, token: str, amount: Fraction) -> Fraction | None:
        """Convert ``amount`` of ``token`` to USD, or None if unpriced."""
        unit = self.usd_price(token)
        return amount * unit if unit is not None else None

    def eth_to_token(self, amount_eth: Fraction, token: str) -> Fraction | None:
        """Express an amount of the native token in ``token`` units."""
        if amount_eth == 0:
            return Fraction(0)
        unit = self.price(self.native_token, token)
        return amount_eth * unit if unit is not None else None

    def convert(self, amount: Fraction, token: str, target: str) -> Fraction | None:
        if amount == 0:
            return Fraction(0)
        unit = self.price(token, target)
        return amount * unit if unit is not None else None


__all__ = [
    "DAI_ADDRESS",
    "DEFAULT_USD_TOKENS",
    "USDC_ADDRESS",
    "USDT_ADDRESS",
    "WETH_ADDRESS",
    "Metadata",
    "PriceQuote",
    "PriceTable",
]
