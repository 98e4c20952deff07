"""Tests for atomic backrun (cyclic arbitrage) detection."""

from fractions import Fraction

import pytest

from mevsentry.detection import AtomicBackrunInspector, find_cycles
from mevsentry.detection.utils import TAG_GAS_UNPRICED, TAG_PRICED
from mevsentry.models.bundle import BundleKind
from mevsentry.models.metadata import USDC_ADDRESS, WETH_ADDRESS

SEARCHER = "0x" + "a" * 40
TOKEN_A = "0x" + "1" * 40
TOKEN_B = "0x" + "2" * 40
TOKEN_C = "0x" + "3" * 40
POOL_AB = "0x" + "4" * 40
POOL_BC = "0x" + "5" * 40
POOL_CA = "0x" + "6" * 40
GAS = {"gas_used": 100_000, "effective_gas_price": 10 * 10**9}


@pytest.fixture
def cycle(make_swap):
    """A -> B -> C -> A, spending 10 A and receiving ``close_out`` A."""

    def _make(start=TOKEN_A, close_out=12):
        return [
            make_swap(start, 10, TOKEN_B, 20, pool=POOL_AB, trace_index=1),
            make_swap(TOKEN_B, 20, TOKEN_C, 30, pool=POOL_BC, trace_index=2),
            make_swap(TOKEN_C, 30, start, close_out, pool=POOL_CA, trace_index=3),
        ]

    return _make


class TestFindCycles:
    def test_three_hop_cycle(self, cycle) -> None:
        swaps = cycle()
        assert find_cycles(swaps) == [swaps]

    def test_open_chain(self, cycle) -> None:
        assert find_cycles(cycle()[:2]) == []

    def test_broken_chain(self, make_swap) -> None:
        swaps = [
            make_swap(TOKEN_A, 10, TOKEN_B, 20, trace_index=1),
            make_swap(TOKEN_C, 20, TOKEN_A, 11, trace_index=2),
        ]
        assert find_cycles(swaps) == []

    def test_two_consecutive_cycles(self, make_swap) -> None:
        first = [
            make_swap(TOKEN_A, 10, TOKEN_B, 20, trace_index=1),
            make_swap(TOKEN_B, 20, TOKEN_A, 11, trace_index=2),
        ]
        second = [
            make_swap(TOKEN_C, 5, TOKEN_B, 6, trace_index=3),
            make_swap(TOKEN_B, 6, TOKEN_C, 7, trace_index=4),
        ]
        assert find_cycles(first + second) == [first, second]


class TestAtomicBackrunInspector:
    """Profitable cycles inside a single transaction."""

    @pytest.fixture
    def inspector(self) -> AtomicBackrunInspector:
        return AtomicBackrunInspector()

    def test_profitable_cycle_net_of_gas(self, inspector, cycle, make_tx, make_block) -> None:
        """Gross +2 WETH minus 0.001 ETH of gas."""
        tx = make_tx(4, SEARCHER, cycle(start=WETH_ADDRESS), **GAS)

        bundles = inspector.inspect(make_block([tx]))

        assert len(bundles) == 1
        bundle = bundles[0]
        assert bundle.kind is BundleKind.ATOMIC_BACKRUN
        assert bundle.tx_hashes == (tx.tx_hash,)
        assert bundle.actor == SEARCHER
        assert bundle.pools == (POOL_AB, POOL_BC, POOL_CA)
        assert bundle.profit_token == WETH_ADDRESS
        assert bundle.profit == 2 - Fraction(1, 1000)
        assert bundle.gas_cost == Fraction(1, 1000)
        assert bundle.tag == TAG_PRICED

    def test_gas_converted_through_reference_price(
        self, inspector, cycle, make_tx, make_block, make_metadata
    ) -> None:
        metadata = make_metadata(quotes=[(WETH_ADDRESS, TOKEN_A, 1000), (TOKEN_A, USDC_ADDRESS, 3)])
        tx = make_tx(0, SEARCHER, cycle(), **GAS)

        bundle = inspector.inspect(make_block([tx], metadata=metadata))[0]

        assert bundle.gas_cost == Fraction(1)
        assert bundle.profit == Fraction(1)
        assert bundle.profit_usd == Fraction(3)

    def test_unpriced_gas(self, inspector, cycle, make_tx, make_block) -> None:
        tx = make_tx(0, SEARCHER, cycle(), **GAS)

        bundle = inspector.inspect(make_block([tx]))[0]

        assert bundle.profit == Fraction(2)
        assert bundle.tag == TAG_GAS_UNPRICED
        assert bundle.profit_usd is None

    def test_losing_cycle(self, inspector, cycle, make_tx, make_block) -> None:
        tx = make_tx(0, SEARCHER, cycle(close_out=9))
        assert inspector.inspect(make_block([tx])) == []

    def test_swaps_across_transactions_are_not_a_cycle(
        self, inspector, cycle, make_tx, make_block
    ) -> None:
        swaps = cycle()
        txs = [make_tx(i, SEARCHER, [swap]) for i, swap in enumerate(swaps)]
        assert inspector.inspect(make_block(txs)) == []
