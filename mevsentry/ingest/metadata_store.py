"""Block metadata stores.

The pipeline only reads metadata. A store that lacks a block raises
``MetadataNotFound``; the pipeline then asks it to ``backfill`` the block
and retries once.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Optional

import pandas as pd

from mevsentry.errors import MetadataNotFound
from mevsentry.models.metadata import Metadata, PriceQuote, PriceTable

logger = logging.getLogger(__name__)

BLOCK_COLUMNS = {"block_number", "block_timestamp"}
PRICE_COLUMNS = {"base", "quote", "timestamp", "price"}

BackfillSource = Callable[[int], Optional[Metadata]]


class MetadataStore(ABC):
    """Read access to per-block metadata."""

    @abstractmethod
    async def get_metadata(self, block_number: int, include_pricing: bool = True) -> Metadata:
        """Return the metadata of ``block_number``.

        Raises:
            MetadataNotFound: If the store has no entry for the block.
        """

    @abstractmethod
    async def backfill(self, start_block: int, end_block: int) -> None:
        """Populate the store for ``start_block..end_block`` inclusive."""


class InMemoryMetadataStore(MetadataStore):
    """Dictionary-backed store with an optional backfill source.

    Args:
        entries: Initial metadata, one per block.
        backfill_source: Called with a block number during backfill; returns
            the block's metadata or None when it cannot be produced.
    """

    def __init__(
        self,
        entries: Iterable[Metadata] = (),
        backfill_source: Optional[BackfillSource] = None,
    ) -> None:
        self._entries: dict[int, Metadata] = {m.block_number: m for m in entries}
        self._backfill_source = backfill_source
        self.backfill_requests: list[tuple[int, int]] = []

    def __contains__(self, block_number: int) -> bool:
        return block_number in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, metadata: Metadata) -> None:
        self._entries[metadata.block_number] = metadata

    async def get_metadata(self, block_number: int, include_pricing: bool = True) -> Metadata:
        try:
            metadata = self._entries[block_number]
        except KeyError:
            raise MetadataNotFound(block_number) from None
        if not include_pricing:
            return metadata.model_copy(update={"prices": PriceTable()})
        return metadata

    async def backfill(self, start_block: int, end_block: int) -> None:
        self.backfill_requests.append((start_block, end_block))
        if self._backfill_source is None:
            logger.warning(
                "No backfill source configured for blocks %s-%s", start_block, end_block
            )
            return
        for block_number in range(start_block, end_block + 1):
            metadata = self._backfill_source(block_number)
            if metadata is not None:
                self.put(metadata)

    @classmethod
    def from_frames(
        cls,
        blocks: pd.DataFrame,
        prices: Optional[pd.DataFrame] = None,
        price_window_seconds: int = 3600,
    ) -> InMemoryMetadataStore:
        """Build a store from block and price tables.

        Args:
            blocks: Columns ``block_number`` and ``block_timestamp``, plus
                optional ``base_gas_price``, ``builder`` and
                ``proposer_fee_recipient``.
            prices: Columns ``base``, ``quote``, ``timestamp`` and ``price``
                (decimal or ``"num/den"`` strings). Each block keeps the
                quotes within ``price_window_seconds`` of its timestamp.

        Raises:
            ValueError: If a required column is missing.
        """
        missing = BLOCK_COLUMNS - set(blocks.columns)
        if missing:
            raise ValueError(f"Missing required block columns: {missing}")
        if prices is not None:
            missing = PRICE_COLUMNS - set(prices.columns)
            if missing:
                raise ValueError(f"Missing required price columns: {missing}")

        entries = []
        for row in blocks.to_dict(orient="records"):
            timestamp = int(row["block_timestamp"])
            quotes: tuple[PriceQuote, ...] = ()
            if prices is not None and not prices.empty:
                window = prices[(prices["timestamp"] - timestamp).abs() <= price_window_seconds]
                quotes = tuple(_quote_from_record(r) for r in window.to_dict(orient="records"))
            entries.append(
                Metadata(
                    block_number=int(row["block_number"]),
                    block_timestamp=timestamp,
                    base_gas_price=int(_optional(row, "base_gas_price") or 0),
                    builder=_optional(row, "builder"),
                    proposer_fee_recipient=_optional(row, "proposer_fee_recipient"),
                    prices=PriceTable(quotes=quotes),
                )
            )
        logger.info("Loaded metadata for %s blocks", len(entries))
        return cls(entries)


def _optional(row: Mapping[str, Any], key: str) -> Any:
    value = row.get(key)
    if value is None or pd.isna(value):
        return None
    return value


def _quote_from_record(record: Mapping[str, Any]) -> PriceQuote:
    # tables may hold floats; their decimal text is the intended exact value
    price = record["price"]
    if isinstance(price, float):
        price = repr(price)
    return PriceQuote(
        base=record["base"],
        quote=record["quote"],
        timestamp=int(record["timestamp"]),
        price=price,
    )


__all__ = [
    "InMemoryMetadataStore",
    "MetadataStore",
]
