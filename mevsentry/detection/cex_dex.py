"""CEX-DEX arbitrage detection.

Each swap's on-chain execution price is compared with the reference (CEX)
price of the same pair at the block timestamp. A swap that bought the output
token cheaper than the reference, by more than the threshold, is flagged as
the on-chain leg of an arbitrage. Swaps whose pair has no reference price are
undeterminable and skipped.
"""

from __future__ import annotations

import logging
from fractions import Fraction

from mevsentry.detection.base import Inspector
from mevsentry.detection.utils import actor_of, confidence_for, net_of_gas, usd_value
from mevsentry.models.actions import BlockActionSet, NormalizedSwap, TransactionActions
from mevsentry.models.bundle import Bundle, BundleKind
from mevsentry.models.metadata import Metadata

logger = logging.getLogger(__name__)

DEFAULT_MIN_DEVIATION = Fraction(1, 100)


def execution_price(swap: NormalizedSwap) -> Fraction | None:
    """Units of ``token_in`` paid per unit of ``token_out``."""
    if swap.amount_in <= 0 or swap.amount_out <= 0:
        return None
    return swap.amount_in / swap.amount_out


def price_deviation(swap: NormalizedSwap, metadata: Metadata) -> Fraction | None:
    """Relative discount of the execution price against the reference.

    Positive when the swap bought ``token_out`` cheaper than the reference
    price. None when either price is unavailable.
    """
    executed = execution_price(swap)
    reference = metadata.price(swap.token_out, swap.token_in)
    if executed is None or reference is None:
        return None
    return (reference - executed) / reference


class CexDexInspector(Inspector):
    """Flags swaps priced favourably against the reference price table.

    Args:
        min_deviation: Relative deviation a swap must strictly exceed.
        group_by_contract: Attribute swaps to the called contract.
    """

    kind = BundleKind.CEX_DEX

    def __init__(
        self,
        min_deviation: Fraction = DEFAULT_MIN_DEVIATION,
        group_by_contract: bool = False,
    ):
        if min_deviation < 0:
            raise ValueError("min_deviation must be non-negative")
        self.min_deviation = Fraction(min_deviation)
        self.group_by_contract = group_by_contract

    def inspect(self, block: BlockActionSet) -> list[Bundle]:
        metadata = block.metadata
        if not metadata.has_pricing:
            logger.debug("Block %s has no price table, skipping CEX-DEX", block.block_number)
            return []

        bundles: list[Bundle] = []
        for tx in block.transactions:
            for swap in tx.swaps:
                bundle = self._inspect_swap(block, tx, swap)
                if bundle is not None:
                    bundles.append(bundle)
        return bundles

    def _inspect_swap(
        self,
        block: BlockActionSet,
        tx: TransactionActions,
        swap: NormalizedSwap,
    ) -> Bundle | None:
        metadata = block.metadata
        deviation = price_deviation(swap, metadata)
        if deviation is None:
            return None
        if abs(deviation) <= self.min_deviation or deviation <= 0:
            return None

        reference = metadata.price(swap.token_out, swap.token_in)
        # size times deviation; the CEX leg's costs are not observable on-chain
        profit = swap.amount_out * reference - swap.amount_in
        gas = net_of_gas(Fraction(0), tx.gas_cost_eth, swap.token_in, metadata)

        return Bundle(
            kind=self.kind,
            block_number=block.block_number,
            tx_hashes=(tx.tx_hash,),
            tx_indices=(tx.tx_index,),
            actor=actor_of(tx, self.group_by_contract),
            pools=(swap.pool,),
            profit_token=swap.token_in,
            profit=profit,
            profit_usd=usd_value(metadata, swap.token_in, profit),
            gas_cost=gas.gas_cost,
            confidence=confidence_for(gas.tag, _deviation_confidence(deviation)),
            tag=gas.tag,
        )


def _deviation_confidence(deviation: Fraction) -> float:
    # larger gaps are less likely to be quote noise
    if deviation >= Fraction(5, 100):
        return 1.0
    if deviation >= Fraction(2, 100):
        return 0.9
    return 0.75


__all__ = [
    "DEFAULT_MIN_DEVIATION",
    "CexDexInspector",
    "execution_price",
    "price_deviation",
]
