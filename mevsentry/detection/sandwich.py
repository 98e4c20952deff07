"""Sandwich attack detection over a block's normalized swaps.

A sandwich occurs when an attacker executes two transactions around other
traders' swaps on the same pool to profit from the price movement.

Pattern:
1. Attacker front-runs (A), trading token X for token Y on pool P
2. One or more victims (V) trade on P in the opposite direction, Y for X
3. Attacker back-runs (B), trading Y back into X and ending with more X

Swaps are scanned per pool in block order (transaction index, then
trace index). Unrelated third-party swaps between A and B do not break the
match; only ownership and direction matter.
"""

from __future__ import annotations

import logging
from fractions import Fraction

from mevsentry.detection.base import Inspector
from mevsentry.detection.utils import actor_of, confidence_for, net_of_gas, usd_value
from mevsentry.models.actions import BlockActionSet, NormalizedSwap, TransactionActions
from mevsentry.models.bundle import Bundle, BundleKind

logger = logging.getLogger(__name__)

PoolSwap = tuple[TransactionActions, NormalizedSwap]


class SandwichInspector(Inspector):
    """Detects front-run / victim / back-run triplets on a single pool.

    Args:
        group_by_contract: Attribute transactions to the contract they call
            instead of the signing EOA, so that searchers rotating EOAs
            behind one contract are still matched.
    """

    kind = BundleKind.SANDWICH

    def __init__(self, group_by_contract: bool = False):
        self.group_by_contract = group_by_contract

    def inspect(self, block: BlockActionSet) -> list[Bundle]:
        bundles: list[Bundle] = []
        for pool, swaps in block.swaps_by_pool().items():
            if len(swaps) < 3:
                continue
            bundles.extend(self._inspect_pool(block, pool, swaps))
        bundles.sort(key=lambda b: (b.tx_indices, b.pools))
        return bundles

    def _actor(self, tx: TransactionActions) -> str:
        return actor_of(tx, self.group_by_contract)

    def _inspect_pool(
        self,
        block: BlockActionSet,
        pool: str,
        swaps: list[PoolSwap],
    ) -> list[Bundle]:
        bundles: list[Bundle] = []
        used: set[int] = set()

        for front_pos, (front_tx, _) in enumerate(swaps):
            if front_pos in used:
                continue
            match = self._find_back_run(swaps, front_pos, used)
            if match is None:
                continue
            back_pos, victims = match
            back_tx = swaps[back_pos][0]

            bundle = self._build_bundle(block, pool, swaps[front_pos], swaps[back_pos], victims, swaps)
            if bundle is None:
                continue
            used.update((front_pos, back_pos, *victims))
            bundles.append(bundle)
            logger.debug(
                "Sandwich on %s in block %s: front tx %s, back tx %s, %s victim(s)",
                pool,
                block.block_number,
                front_tx.tx_index,
                back_tx.tx_index,
                len(victims),
            )
        return bundles

    def _find_back_run(
        self,
        swaps: list[PoolSwap],
        front_pos: int,
        used: set[int],
    ) -> tuple[int, list[int]] | None:
        """Return the nearest back-run with at least one victim before it."""
        front_tx, front = swaps[front_pos]
        attacker = self._actor(front_tx)

        for back_pos in range(front_pos + 1, len(swaps)):
            back_tx, back = swaps[back_pos]
            if back_pos in used or back_tx.tx_index <= front_tx.tx_index:
                continue
            if self._actor(back_tx) != attacker or not back.is_reverse_of(front):
                continue
            victims = [
                pos
                for pos in range(front_pos + 1, back_pos)
                if pos not in used
                and front_tx.tx_index < swaps[pos][0].tx_index < back_tx.tx_index
                and self._actor(swaps[pos][0]) != attacker
                and swaps[pos][1].token_in == front.token_out
            ]
            if victims:
                return back_pos, victims
        return None

    def _build_bundle(
        self,
        block: BlockActionSet,
        pool: str,
        front_swap: PoolSwap,
        back_swap: PoolSwap,
        victims: list[int],
        swaps: list[PoolSwap],
    ) -> Bundle | None:
        front_tx, front = front_swap
        back_tx, back = back_swap
        token = front.token_in

        gross = back.amount_out - front.amount_in
        gas_eth = front_tx.gas_cost_eth + back_tx.gas_cost_eth
        net = net_of_gas(gross, gas_eth, token, block.metadata)
        if net.profit <= 0:
            return None

        txs = [front_tx]
        for pos in victims:
            victim_tx = swaps[pos][0]
            if victim_tx.tx_index != txs[-1].tx_index:
                txs.append(victim_tx)
        txs.append(back_tx)

        return Bundle(
            kind=self.kind,
            block_number=block.block_number,
            tx_hashes=tuple(tx.tx_hash for tx in txs),
            tx_indices=tuple(tx.tx_index for tx in txs),
            actor=self._actor(front_tx),
            pools=(pool,),
            profit_token=token,
            profit=net.profit,
            profit_usd=usd_value(block.metadata, token, net.profit),
            gas_cost=net.gas_cost,
            confidence=confidence_for(net.tag, _calculate_confidence(front_tx, back_tx, len(txs) - 2)),
            tag=net.tag,
        )


def _calculate_confidence(
    front_tx: TransactionActions,
    back_tx: TransactionActions,
    victim_txs: int,
) -> float:
    """Confidence from how tightly the attacker wraps the victims.

    A back-run immediately after the last victim, with nothing else between
    the legs, is the canonical bundle-submitted sandwich.
    """
    gap = back_tx.tx_index - front_tx.tx_index - 1
    if gap <= 0:
        return 0.5
    tightness = Fraction(victim_txs, gap)
    if tightness >= 1:
        return 1.0
    if tightness >= Fraction(1, 2):
        return 0.9
    return 0.75


__all__ = ["SandwichInspector"]
