"""Dispatch of every registered inspector over a block, plus result summaries."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import pandas as pd

from mevsentry.config import PipelineSettings
from mevsentry.detection.atomic_backrun import AtomicBackrunInspector
from mevsentry.detection.base import Inspector
from mevsentry.detection.cex_dex import CexDexInspector
from mevsentry.detection.jit import JitInspector
from mevsentry.detection.sandwich import SandwichInspector
from mevsentry.models.actions import BlockActionSet
from mevsentry.models.bundle import Bundle

logger = logging.getLogger(__name__)

BUNDLE_COLUMNS = [
    "kind",
    "block_number",
    "tx_hashes",
    "tx_count",
    "actor",
    "pools",
    "profit_token",
    "profit",
    "profit_usd",
    "gas_cost",
    "confidence",
    "tag",
]


@dataclass(frozen=True)
class DetectionResult:
    """Bundles found in one block, with per-detector statistics.

    Attributes:
        block_number: Block that was inspected.
        bundles: All bundles in detector registration order.
        transactions_analyzed: Number of transactions in the block.
        actions_analyzed: Number of normalized actions in the block.
    """

    block_number: int
    bundles: tuple[Bundle, ...]
    transactions_analyzed: int
    actions_analyzed: int

    @property
    def total_bundles(self) -> int:
        return len(self.bundles)

    @property
    def counts_by_kind(self) -> dict[str, int]:
        return dict(Counter(b.kind.value for b in self.bundles))

    @property
    def unique_actors(self) -> set[str]:
        return {b.actor for b in self.bundles}

    @property
    def high_confidence_bundles(self) -> list[Bundle]:
        """Return bundles with confidence >= 0.8."""
        return [b for b in self.bundles if b.confidence >= 0.8]

    def to_dict(self) -> dict[str, Any]:
        return {
            "block_number": self.block_number,
            "total_bundles": self.total_bundles,
            "counts_by_kind": self.counts_by_kind,
            "transactions_analyzed": self.transactions_analyzed,
            "actions_analyzed": self.actions_analyzed,
            "unique_actors": len(self.unique_actors),
            "high_confidence_count": len(self.high_confidence_bundles),
        }


class InspectorComposer:
    """Runs every inspector against the same block and concatenates results.

    Bundles are not deduplicated across inspectors: one transaction sequence
    may legitimately be both a sandwich leg and a backrun.

    Example:
        >>> composer = InspectorComposer(default_inspectors())
        >>> bundles = composer.inspect(block)
    """

    def __init__(self, inspectors: Iterable[Inspector]):
        self.inspectors: tuple[Inspector, ...] = tuple(inspectors)

    def inspect(self, block: BlockActionSet) -> list[Bundle]:
        """Return the concatenated bundles of all inspectors.

        Raises:
            MalformedTrace: If the block violates the ordering invariants.
        """
        block.check_ordering()
        bundles: list[Bundle] = []
        for inspector in self.inspectors:
            found = inspector.inspect(block)
            if found:
                logger.debug(
                    "%s found %s bundle(s) in block %s",
                    type(inspector).__name__,
                    len(found),
                    block.block_number,
                )
            bundles.extend(found)
        return bundles

    def inspect_summary(self, block: BlockActionSet) -> DetectionResult:
        return DetectionResult(
            block_number=block.block_number,
            bundles=tuple(self.inspect(block)),
            transactions_analyzed=len(block.transactions),
            actions_analyzed=block.action_count,
        )


def default_inspectors(settings: PipelineSettings | None = None) -> list[Inspector]:
    """Build the four standard inspectors configured from ``settings``."""
    settings = settings or PipelineSettings()
    grouped = settings.group_by_contract
    return [
        SandwichInspector(group_by_contract=grouped),
        CexDexInspector(min_deviation=settings.cex_dex_min_deviation, group_by_contract=grouped),
        JitInspector(group_by_contract=grouped),
        AtomicBackrunInspector(group_by_contract=grouped),
    ]


def bundles_to_dataframe(bundles: Sequence[Bundle]) -> pd.DataFrame:
    """Convert bundles to a DataFrame with one row per bundle."""
    if not bundles:
        return pd.DataFrame(columns=BUNDLE_COLUMNS)
    return pd.DataFrame([b.to_dict() for b in bundles], columns=BUNDLE_COLUMNS)


__all__ = [
    "BUNDLE_COLUMNS",
    "DetectionResult",
    "InspectorComposer",
    "bundles_to_dataframe",
    "default_inspectors",
]
