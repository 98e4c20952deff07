"""Just-in-time liquidity detection.

A JIT provider mints a concentrated position right before swaps on a pool and
burns it right after, capturing most of the swap fees. The mint and the burn
must land in the same block.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from fractions import Fraction

from mevsentry.detection.base import Inspector
from mevsentry.detection.utils import (
    TAG_PARTIALLY_PRICED,
    TAG_PRICED,
    actor_of,
    confidence_for,
    usd_value,
)
from mevsentry.models.actions import (
    BlockActionSet,
    NormalizedAction,
    NormalizedBurn,
    NormalizedMint,
    NormalizedSwap,
    TransactionActions,
)
from mevsentry.models.bundle import Bundle, BundleKind

logger = logging.getLogger(__name__)

PoolAction = tuple[TransactionActions, NormalizedAction]


class JitInspector(Inspector):
    """Detects mint / swap(s) / burn sequences by one actor on one pool."""

    kind = BundleKind.JIT

    def __init__(self, group_by_contract: bool = False):
        self.group_by_contract = group_by_contract

    def inspect(self, block: BlockActionSet) -> list[Bundle]:
        by_pool: dict[str, list[PoolAction]] = defaultdict(list)
        for tx, action in block.ordered_actions():
            if isinstance(action, (NormalizedMint, NormalizedBurn, NormalizedSwap)):
                by_pool[action.pool].append((tx, action))

        bundles: list[Bundle] = []
        for pool, actions in by_pool.items():
            bundles.extend(self._inspect_pool(block, pool, actions))
        bundles.sort(key=lambda b: (b.tx_indices, b.pools))
        return bundles

    def _inspect_pool(
        self,
        block: BlockActionSet,
        pool: str,
        actions: list[PoolAction],
    ) -> list[Bundle]:
        bundles: list[Bundle] = []
        used_burns: set[int] = set()

        for mint_pos, (mint_tx, mint) in enumerate(actions):
            if not isinstance(mint, NormalizedMint):
                continue
            actor = actor_of(mint_tx, self.group_by_contract)

            for burn_pos in range(mint_pos + 1, len(actions)):
                burn_tx, burn = actions[burn_pos]
                if (
                    burn_pos in used_burns
                    or not isinstance(burn, NormalizedBurn)
                    or actor_of(burn_tx, self.group_by_contract) != actor
                    or burn.tick_range != mint.tick_range
                    or burn.liquidity < mint.liquidity
                ):
                    continue
                swaps = [
                    (tx, action)
                    for tx, action in actions[mint_pos + 1 : burn_pos]
                    if isinstance(action, NormalizedSwap)
                ]
                if not swaps:
                    continue
                used_burns.add(burn_pos)
                bundles.append(self._build_bundle(block, pool, mint_tx, mint, burn_tx, burn, swaps))
                logger.debug(
                    "JIT on %s in block %s: mint tx %s, burn tx %s, %s swap(s)",
                    pool,
                    block.block_number,
                    mint_tx.tx_index,
                    burn_tx.tx_index,
                    len(swaps),
                )
                break
        return bundles

    def _build_bundle(
        self,
        block: BlockActionSet,
        pool: str,
        mint_tx: TransactionActions,
        mint: NormalizedMint,
        burn_tx: TransactionActions,
        burn: NormalizedBurn,
        swaps: list[tuple[TransactionActions, NormalizedSwap]],
    ) -> Bundle:
        metadata = block.metadata
        share = liquidity_share(mint.liquidity, metadata.pool_liquidity.get(pool))

        per_token: dict[str, Fraction] = {token: Fraction(0) for token in mint.tokens}
        for _, swap in swaps:
            fee = swap.fee_rate * swap.amount_in * share
            per_token[swap.token_in] = per_token.get(swap.token_in, Fraction(0)) + fee
        for token in mint.tokens:
            # principal lost between deposit and withdrawal
            per_token[token] -= mint.amount_of(token) - burn.amount_of(token)

        token0 = mint.tokens[0]
        profit = per_token.pop(token0)
        tag = TAG_PRICED
        for token, amount in per_token.items():
            converted = metadata.convert(amount, token, token0)
            if converted is None:
                tag = TAG_PARTIALLY_PRICED
                continue
            profit += converted

        gas_eth = mint_tx.gas_cost_eth
        if burn_tx.tx_index != mint_tx.tx_index:
            gas_eth += burn_tx.gas_cost_eth
        gas = metadata.eth_to_token(gas_eth, token0)

        txs = {mint_tx.tx_index: mint_tx, burn_tx.tx_index: burn_tx}
        for tx, _ in swaps:
            txs.setdefault(tx.tx_index, tx)
        ordered = [txs[index] for index in sorted(txs)]

        return Bundle(
            kind=self.kind,
            block_number=block.block_number,
            tx_hashes=tuple(tx.tx_hash for tx in ordered),
            tx_indices=tuple(tx.tx_index for tx in ordered),
            actor=actor_of(mint_tx, self.group_by_contract),
            pools=(pool,),
            profit_token=token0,
            profit=profit,
            profit_usd=usd_value(metadata, token0, profit),
            gas_cost=gas if gas is not None else Fraction(0),
            confidence=confidence_for(tag, 1.0 if mint_tx.tx_index != burn_tx.tx_index else 0.8),
            tag=tag,
        )


def liquidity_share(liquidity: Fraction, pool_liquidity: Fraction | None) -> Fraction:
    """Fraction of in-range liquidity the JIT position held during the swaps."""
    if pool_liquidity is None or liquidity + pool_liquidity <= 0:
        return Fraction(1)
    return liquidity / (liquidity + pool_liquidity)


__all__ = ["JitInspector", "liquidity_share"]
