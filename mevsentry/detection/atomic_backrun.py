"""Atomic (single-transaction) cyclic arbitrage detection."""

from __future__ import annotations

import logging

from mevsentry.detection.base import Inspector
from mevsentry.detection.utils import actor_of, confidence_for, net_of_gas, usd_value
from mevsentry.models.actions import BlockActionSet, NormalizedSwap, TransactionActions
from mevsentry.models.bundle import Bundle, BundleKind

logger = logging.getLogger(__name__)


def find_cycles(swaps: list[NormalizedSwap]) -> list[list[NormalizedSwap]]:
    """Split a transaction's swaps into closed token cycles.

    A cycle starts at an unused swap and follows consecutive swaps whose
    input token is the previous output token. It closes at the first swap,
    second or later, that returns the starting token.

    Example:
        A->B, B->C, C->A gives one cycle of three swaps.
    """
    cycles: list[list[NormalizedSwap]] = []
    start = 0
    while start < len(swaps):
        first = swaps[start]
        chain = [first]
        closed = False
        for swap in swaps[start + 1 :]:
            if swap.token_in != chain[-1].token_out:
                break
            chain.append(swap)
            if swap.token_out == first.token_in:
                closed = True
                break
        if closed:
            cycles.append(chain)
            start += len(chain)
        else:
            start += 1
    return cycles


class AtomicBackrunInspector(Inspector):
    """Flags profitable swap cycles contained in one transaction."""

    kind = BundleKind.ATOMIC_BACKRUN

    def __init__(self, group_by_contract: bool = False):
        self.group_by_contract = group_by_contract

    def inspect(self, block: BlockActionSet) -> list[Bundle]:
        bundles: list[Bundle] = []
        for tx in block.transactions:
            swaps = tx.swaps
            if len(swaps) < 2:
                continue
            for cycle in find_cycles(swaps):
                bundle = self._build_bundle(block, tx, cycle)
                if bundle is not None:
                    bundles.append(bundle)
        return bundles

    def _build_bundle(
        self,
        block: BlockActionSet,
        tx: TransactionActions,
        cycle: list[NormalizedSwap],
    ) -> Bundle | None:
        start, close = cycle[0], cycle[-1]
        token = start.token_in
        gross = close.amount_out - start.amount_in
        net = net_of_gas(gross, tx.gas_cost_eth, token, block.metadata)
        if net.profit <= 0:
            return None

        logger.debug(
            "Atomic backrun in block %s tx %s: %s swap cycle, profit %s",
            block.block_number,
            tx.tx_hash,
            len(cycle),
            net.profit,
        )
        return Bundle(
            kind=self.kind,
            block_number=block.block_number,
            tx_hashes=(tx.tx_hash,),
            tx_indices=(tx.tx_index,),
            actor=actor_of(tx, self.group_by_contract),
            pools=tuple(dict.fromkeys(swap.pool for swap in cycle)),
            profit_token=token,
            profit=net.profit,
            profit_usd=usd_value(block.metadata, token, net.profit),
            gas_cost=net.gas_cost,
            confidence=confidence_for(net.tag),
            tag=net.tag,
        )


__all__ = ["AtomicBackrunInspector", "find_cycles"]
