"""Tests for trace, action, metadata and bundle models."""

from fractions import Fraction

import pytest
from pydantic import ValidationError

from mevsentry.errors import MalformedTrace
from mevsentry.models.bundle import Bundle, BundleKind
from mevsentry.models.metadata import USDC_ADDRESS, WETH_ADDRESS, PriceQuote, PriceTable
from mevsentry.models.primitives import to_rational
from mevsentry.models.trace import CallFrame, TransactionTrace

ACTOR = "0x" + "a" * 40
TX_HASH = "0x" + "1" * 64


class TestRational:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("10.5", Fraction(21, 2)), ("1/3", Fraction(1, 3)), (7, Fraction(7))],
    )
    def test_exact_inputs(self, value, expected) -> None:
        assert to_rational(value) == expected

    @pytest.mark.parametrize("value", [0.1, True, "ten", None])
    def test_inexact_inputs_rejected(self, value) -> None:
        with pytest.raises(ValueError):
            to_rational(value)

    def test_json_serialization_is_exact(self) -> None:
        bundle = Bundle(
            kind=BundleKind.SANDWICH,
            block_number=1,
            tx_hashes=(TX_HASH,),
            tx_indices=(0,),
            actor=ACTOR,
            profit_token=WETH_ADDRESS,
            profit="1/3",
        )

        data = bundle.model_dump(mode="json")

        assert data["profit"] == "1/3"
        assert Bundle.model_validate_json(bundle.model_dump_json()).profit == Fraction(1, 3)


class TestBundle:
    def test_indices_must_be_in_block_order(self) -> None:
        with pytest.raises(ValidationError):
            Bundle(
                kind=BundleKind.SANDWICH,
                block_number=1,
                tx_hashes=(TX_HASH, TX_HASH),
                tx_indices=(2, 1),
                actor=ACTOR,
                profit_token=WETH_ADDRESS,
                profit=1,
            )

    def test_addresses_are_normalized(self) -> None:
        bundle = Bundle(
            kind=BundleKind.JIT,
            block_number=1,
            tx_hashes=(TX_HASH.upper().replace("0X", "0x"),),
            tx_indices=(0,),
            actor=ACTOR.upper().replace("0X", "0x"),
            profit_token=WETH_ADDRESS,
            profit=0,
        )
        assert bundle.actor == ACTOR
        assert bundle.tx_hashes == (TX_HASH,)


class TestPriceTable:
    @pytest.fixture
    def table(self) -> PriceTable:
        return PriceTable(
            quotes=(
                PriceQuote(base=WETH_ADDRESS, quote=USDC_ADDRESS, timestamp=100, price=2000),
                PriceQuote(base=WETH_ADDRESS, quote=USDC_ADDRESS, timestamp=160, price=2100),
            )
        )

    def test_nearest_quote(self, table) -> None:
        assert table.lookup(WETH_ADDRESS, USDC_ADDRESS, at=110) == 2000
        assert table.lookup(WETH_ADDRESS, USDC_ADDRESS, at=150) == 2100

    def test_tie_resolves_to_earlier_quote(self, table) -> None:
        assert table.lookup(WETH_ADDRESS, USDC_ADDRESS, at=130) == 2000

    def test_tie_ignores_quote_order(self, table) -> None:
        """The earlier timestamp wins a tie however the quotes are listed."""
        reordered = PriceTable(quotes=tuple(reversed(table.quotes)))
        assert reordered.lookup(WETH_ADDRESS, USDC_ADDRESS, at=130) == 2000

    def test_inverse_pair(self, table) -> None:
        assert table.lookup(USDC_ADDRESS, WETH_ADDRESS, at=100) == Fraction(1, 2000)

    def test_max_age(self, table) -> None:
        assert table.lookup(WETH_ADDRESS, USDC_ADDRESS, at=1000, max_age=60) is None

    def test_non_positive_price_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PriceQuote(base=WETH_ADDRESS, quote=USDC_ADDRESS, timestamp=1, price=0)


class TestMetadata:
    def test_usd_values(self, make_metadata) -> None:
        metadata = make_metadata(quotes=[(WETH_ADDRESS, USDC_ADDRESS, 2000)])

        assert metadata.usd_price(USDC_ADDRESS) == 1
        assert metadata.usd_value(WETH_ADDRESS, Fraction(1, 2)) == 1000
        assert metadata.eth_to_token(Fraction(1, 1000), USDC_ADDRESS) == 2
        assert metadata.usd_price(ACTOR) is None

    def test_pool_liquidity_keys_normalized(self, make_metadata) -> None:
        metadata = make_metadata(pool_liquidity={ACTOR.upper().replace("0X", "0x"): "10"})
        assert metadata.pool_liquidity == {ACTOR: Fraction(10)}


class TestTraceOrdering:
    def test_hex_payloads(self) -> None:
        frame = CallFrame(trace_index=0, address=ACTOR, caller=ACTOR, input="0xa9059cbb")
        assert frame.selector == bytes.fromhex("a9059cbb")

    def test_check_ordering(self) -> None:
        root = CallFrame(
            trace_index=0,
            address=ACTOR,
            caller=ACTOR,
            children=(
                CallFrame(trace_index=1, address=ACTOR, caller=ACTOR),
                CallFrame(trace_index=1, address=ACTOR, caller=ACTOR),
            ),
        )
        trace = TransactionTrace(
            block_number=1, tx_index=0, tx_hash=TX_HASH, sender=ACTOR, root=root
        )
        with pytest.raises(MalformedTrace):
            trace.check_ordering()

    def test_action_ordering(self, make_tx, make_swap) -> None:
        tx = make_tx(
            0,
            ACTOR,
            [
                make_swap(WETH_ADDRESS, 1, USDC_ADDRESS, 1, trace_index=5),
                make_swap(WETH_ADDRESS, 1, USDC_ADDRESS, 1, trace_index=2),
            ],
        )
        with pytest.raises(MalformedTrace):
            tx.check_ordering()
