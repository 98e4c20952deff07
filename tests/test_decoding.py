"""Tests for decode tables and the protocol registry."""

from fractions import Fraction

import pytest

from mevsentry.decoding import (
    ERC20_TABLE,
    UNISWAP_V2_TABLE,
    UNISWAP_V3_TABLE,
    DecodedCall,
    DecodeTable,
    FunctionSchema,
    ProtocolBinding,
    ProtocolRegistry,
    TokenInfo,
    UnrecognizedCall,
    UnrecognizedReason,
    default_registry,
)
from mevsentry.errors import DecodeError
from mevsentry.models.actions import Protocol
from mevsentry.models.metadata import USDC_ADDRESS, WETH_ADDRESS
from mevsentry.models.trace import CallFrame, TransactionTrace

V3_POOL = "0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640"
V2_PAIR = "0xb4e16d0168e52d35cacd2c6185b44281ec28c9dc"
TRADER = "0x" + "a" * 40
STRANGER = "0x" + "e" * 40


def v3_swap_frame(trace_index: int = 0, **overrides) -> CallFrame:
    schema = UNISWAP_V3_TABLE.function("swap")
    fields = {
        "trace_index": trace_index,
        "address": V3_POOL,
        "caller": TRADER,
        "input": schema.encode_input(
            {
                "recipient": TRADER,
                "zeroForOne": False,
                "amountSpecified": 10**18,
                "sqrtPriceLimitX96": 0,
                "data": b"",
            }
        ),
        "output": schema.encode_output({"amount0": -2000 * 10**6, "amount1": 10**18}),
    }
    fields.update(overrides)
    return CallFrame(**fields)


class TestFunctionSchema:
    """Selector derivation and ABI round trips."""

    def test_known_selectors(self) -> None:
        """Selectors match the canonical keccak-derived values."""
        assert ERC20_TABLE.function("transfer").selector.hex() == "a9059cbb"
        assert ERC20_TABLE.function("transferFrom").selector.hex() == "23b872dd"
        assert UNISWAP_V2_TABLE.function("swap").selector.hex() == "022c0d9f"
        assert UNISWAP_V3_TABLE.function("swap").selector.hex() == "128acb08"

    def test_decode_input_round_trip(self) -> None:
        """Encoded arguments decode back to the same values."""
        schema = UNISWAP_V3_TABLE.function("mint")
        args = {
            "recipient": TRADER,
            "tickLower": -887220,
            "tickUpper": 887220,
            "amount": 123456789,
            "data": b"\x01\x02",
        }
        assert schema.decode_input(schema.encode_input(args)) == args

    def test_decode_output_signed_values(self) -> None:
        schema = UNISWAP_V3_TABLE.function("swap")
        returns = {"amount0": -5, "amount1": 7}
        assert schema.decode_output(schema.encode_output(returns)) == returns

    def test_addresses_are_lowercased(self) -> None:
        """Checksummed addresses from the ABI decoder are normalized."""
        schema = ERC20_TABLE.function("transfer")
        decoded = schema.decode_input(schema.encode_input({"to": USDC_ADDRESS, "amount": 1}))
        assert decoded["to"] == USDC_ADDRESS

    def test_truncated_payload_raises(self) -> None:
        schema = ERC20_TABLE.function("transfer")
        calldata = schema.encode_input({"to": TRADER, "amount": 1})
        with pytest.raises(DecodeError):
            schema.decode_input(calldata[:20])

    def test_selector_mismatch_raises(self) -> None:
        schema = ERC20_TABLE.function("transfer")
        with pytest.raises(DecodeError, match="does not match"):
            schema.decode_input(b"\xde\xad\xbe\xef" + b"\x00" * 64)


class TestDecodeTable:
    def test_duplicate_selector_rejected(self) -> None:
        schema = FunctionSchema("transfer", (("to", "address"), ("amount", "uint256")))
        with pytest.raises(ValueError, match="Duplicate selector"):
            DecodeTable("broken", (schema, schema))

    def test_lookup_unknown_selector(self) -> None:
        assert ERC20_TABLE.lookup(b"\x00\x00\x00\x00") is None

    def test_function_by_name(self) -> None:
        with pytest.raises(KeyError):
            ERC20_TABLE.function("approve")


class TestProtocolRegistry:
    """Registry lookups and frame decoding outcomes."""

    @pytest.fixture
    def registry(self) -> ProtocolRegistry:
        return default_registry()

    def test_known_pool_decodes(self, registry: ProtocolRegistry) -> None:
        result = registry.decode(v3_swap_frame())

        assert isinstance(result, DecodedCall)
        assert result.protocol is Protocol.UNISWAP_V3
        assert result.function == "swap"
        assert result.args["recipient"] == TRADER
        assert result.returns == {"amount0": -2000 * 10**6, "amount1": 10**18}

    def test_reencoded_arguments_decode_identically(self, registry: ProtocolRegistry) -> None:
        """Re-encoding a decoded call's arguments yields an equal decoded call."""
        frame = v3_swap_frame()
        first = registry.decode(frame)
        schema = first.binding.table.lookup(frame.selector)

        rebuilt = frame.model_copy(
            update={
                "input": schema.encode_input(first.args),
                "output": schema.encode_output(first.returns),
            }
        )

        assert registry.decode(rebuilt) == first

    def test_sushiswap_shares_v2_table(self, registry: ProtocolRegistry) -> None:
        """Attribution comes from the binding, not the shared table."""
        sushi = registry.binding_for("0x397ff1542f962076d0bfe58ea045ffa2d347aca0")
        uni = registry.binding_for(V2_PAIR)

        assert sushi.protocol is Protocol.SUSHISWAP_V2
        assert uni.protocol is Protocol.UNISWAP_V2
        assert sushi.table is uni.table

    def test_unknown_address(self, registry: ProtocolRegistry) -> None:
        result = registry.decode(v3_swap_frame(address=STRANGER))

        assert isinstance(result, UnrecognizedCall)
        assert result.reason is UnrecognizedReason.UNKNOWN_ADDRESS

    def test_missing_selector(self, registry: ProtocolRegistry) -> None:
        result = registry.decode(v3_swap_frame(input=b"\x01\x02"))
        assert result.reason is UnrecognizedReason.NO_SELECTOR

    def test_unknown_selector(self, registry: ProtocolRegistry) -> None:
        result = registry.decode(v3_swap_frame(input=b"\x12\x34\x56\x78"))

        assert result.reason is UnrecognizedReason.UNKNOWN_SELECTOR
        assert result.detail == "0x12345678"

    def test_truncated_payload_is_contained(self, registry: ProtocolRegistry) -> None:
        """A bad payload under a matched selector never raises."""
        frame = v3_swap_frame()
        result = registry.decode(frame.model_copy(update={"input": frame.input[:40]}))

        assert isinstance(result, UnrecognizedCall)
        assert result.reason is UnrecognizedReason.DECODE_ERROR

    def test_failed_frame_skips_return_data(self, registry: ProtocolRegistry) -> None:
        result = registry.decode(v3_swap_frame(output=b"", success=False))

        assert isinstance(result, DecodedCall)
        assert result.returns == {}

    def test_decode_transaction_keeps_siblings(self, registry: ProtocolRegistry) -> None:
        """One malformed frame does not affect the other frames of the tx."""
        good = v3_swap_frame(trace_index=1)
        bad = v3_swap_frame(trace_index=2).model_copy(update={"input": good.input[:10]})
        trace = TransactionTrace(
            block_number=1,
            tx_index=0,
            tx_hash="0x" + "1" * 64,
            sender=TRADER,
            root=CallFrame(trace_index=0, address=STRANGER, caller=TRADER, children=(good, bad)),
        )

        results = registry.decode_transaction(trace)

        assert set(results) == {0, 1, 2}
        assert isinstance(results[1], DecodedCall)
        assert results[2].reason is UnrecognizedReason.DECODE_ERROR

    def test_tokens_get_erc20_bindings(self, registry: ProtocolRegistry) -> None:
        binding = registry.binding_for(USDC_ADDRESS)
        assert binding.protocol is Protocol.ERC20
        assert registry.token(USDC_ADDRESS).decimals == 6

    def test_unknown_token_defaults_to_18_decimals(self, registry: ProtocolRegistry) -> None:
        assert registry.token(STRANGER).decimals == 18

    def test_address_filter(self, registry: ProtocolRegistry) -> None:
        accept = registry.address_filter()
        assert accept(V3_POOL.upper().replace("0X", "0x"))
        assert not accept(STRANGER)

    def test_predicate_binding(self) -> None:
        """Exact bindings win; predicates cover address classes."""
        registry = ProtocolRegistry(
            [
                ProtocolBinding(Protocol.ERC20, predicate=lambda a: a.startswith("0xee")),
            ],
            [TokenInfo(address=WETH_ADDRESS, symbol="WETH")],
        )
        assert registry.binding_for(STRANGER).predicate is not None
        assert registry.binding_for(WETH_ADDRESS).address == WETH_ADDRESS
        assert registry.binding_for(TRADER) is None

    def test_duplicate_binding_rejected(self) -> None:
        binding = ProtocolBinding(Protocol.UNISWAP_V3, address=V3_POOL)
        with pytest.raises(ValueError, match="Duplicate binding"):
            ProtocolRegistry([binding, binding])

    def test_binding_needs_address_or_predicate(self) -> None:
        with pytest.raises(ValueError):
            ProtocolBinding(Protocol.ERC20)

    def test_from_records_and_merge(self, registry: ProtocolRegistry) -> None:
        extra = ProtocolRegistry.from_records(
            pools=[
                {
                    "protocol": "UniswapV3",
                    "address": STRANGER,
                    "tokens": [USDC_ADDRESS, TRADER],
                    "fee": "1/100",
                }
            ],
            tokens=[{"address": TRADER, "symbol": "TKN", "decimals": 9}],
        )

        merged = registry.merge(extra)

        assert merged.binding_for(STRANGER).fee == Fraction(1, 100)
        assert merged.token(TRADER).decimals == 9
        assert merged.is_known(V3_POOL)
        assert not registry.is_known(STRANGER)

    def test_merge_rejects_conflicting_pool(self, registry: ProtocolRegistry) -> None:
        with pytest.raises(ValueError):
            registry.merge(default_registry())
