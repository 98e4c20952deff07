"""Static protocol bindings: decode tables and the bundled mainnet registry data.

UniswapV2 and SushiSwapV2 pairs are ABI-identical and share one decode table;
the binding, not the table, decides protocol attribution.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from fractions import Fraction

from pydantic import BaseModel, ConfigDict, Field

from mevsentry.decoding.schema import DecodeTable, FunctionSchema
from mevsentry.models.actions import Protocol
from mevsentry.models.metadata import DAI_ADDRESS, USDC_ADDRESS, USDT_ADDRESS, WETH_ADDRESS
from mevsentry.models.primitives import Address, normalize_address

WBTC_ADDRESS = "0x2260fac5e5542a773aa44fbcfedf7c193bc2c599"

UNISWAP_V2_TABLE = DecodeTable(
    name="UniswapV2Pair",
    functions=(
        FunctionSchema(
            "swap",
            (
                ("amount0Out", "uint256"),
                ("amount1Out", "uint256"),
                ("to", "address"),
                ("data", "bytes"),
            ),
        ),
        FunctionSchema("mint", (("to", "address"),), (("liquidity", "uint256"),)),
        FunctionSchema(
            "burn",
            (("to", "address"),),
            (("amount0", "uint256"), ("amount1", "uint256")),
        ),
        FunctionSchema("skim", (("to", "address"),)),
        FunctionSchema("sync", ()),
        # the pair is its own LP token
        FunctionSchema("transfer", (("to", "address"), ("amount", "uint256"))),
        FunctionSchema(
            "transferFrom",
            (("from", "address"), ("to", "address"), ("amount", "uint256")),
        ),
    ),
)

UNISWAP_V3_TABLE = DecodeTable(
    name="UniswapV3Pool",
    functions=(
        FunctionSchema(
            "swap",
            (
                ("recipient", "address"),
                ("zeroForOne", "bool"),
                ("amountSpecified", "int256"),
                ("sqrtPriceLimitX96", "uint160"),
                ("data", "bytes"),
            ),
            (("amount0", "int256"), ("amount1", "int256")),
        ),
        FunctionSchema(
            "mint",
            (
                ("recipient", "address"),
                ("tickLower", "int24"),
                ("tickUpper", "int24"),
                ("amount", "uint128"),
                ("data", "bytes"),
            ),
            (("amount0", "uint256"), ("amount1", "uint256")),
        ),
        FunctionSchema(
            "burn",
            (("tickLower", "int24"), ("tickUpper", "int24"), ("amount", "uint128")),
            (("amount0", "uint256"), ("amount1", "uint256")),
        ),
        FunctionSchema(
            "collect",
            (
                ("recipient", "address"),
                ("tickLower", "int24"),
                ("tickUpper", "int24"),
                ("amount0Requested", "uint128"),
                ("amount1Requested", "uint128"),
            ),
            (("amount0", "uint128"), ("amount1", "uint128")),
        ),
        FunctionSchema(
            "flash",
            (
                ("recipient", "address"),
                ("amount0", "uint256"),
                ("amount1", "uint256"),
                ("data", "bytes"),
            ),
        ),
    ),
)

# Return values are not decoded: several major tokens (USDT) return nothing.
ERC20_TABLE = DecodeTable(
    name="ERC20",
    functions=(
        FunctionSchema("transfer", (("to", "address"), ("amount", "uint256"))),
        FunctionSchema(
            "transferFrom",
            (("from", "address"), ("to", "address"), ("amount", "uint256")),
        ),
    ),
)

PROTOCOL_TABLES: dict[Protocol, DecodeTable] = {
    Protocol.UNISWAP_V2: UNISWAP_V2_TABLE,
    Protocol.SUSHISWAP_V2: UNISWAP_V2_TABLE,
    Protocol.UNISWAP_V3: UNISWAP_V3_TABLE,
    Protocol.ERC20: ERC20_TABLE,
}

# Protocols whose swap calldata does not carry the input amount.
V2_STYLE_PROTOCOLS = frozenset({Protocol.UNISWAP_V2, Protocol.SUSHISWAP_V2})


class TokenInfo(BaseModel):
    """Static token metadata used to scale raw amounts."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    address: Address
    symbol: str = Field(default="UNKNOWN", min_length=1)
    decimals: int = Field(default=18, ge=0, le=77)


@dataclass(frozen=True)
class ProtocolBinding:
    """Maps a contract address (or an address-class predicate) to a protocol.

    Attributes:
        protocol: Protocol the contract is attributed to.
        address: Exact contract address, or None for predicate bindings.
        predicate: Address-class test used when ``address`` is None.
        tokens: Pool tokens ordered as token0, token1 (empty for non-pools).
        fee: Pool swap fee as a rate, e.g. 3/1000.
        table: Decode table; defaults to the protocol's table.
    """

    protocol: Protocol
    address: str | None = None
    predicate: Callable[[str], bool] | None = None
    tokens: tuple[str, ...] = ()
    fee: Fraction = Fraction(0)
    table: DecodeTable | None = None

    def __post_init__(self) -> None:
        if (self.address is None) == (self.predicate is None):
            raise ValueError("A binding needs exactly one of address or predicate")
        if self.address is not None:
            object.__setattr__(self, "address", normalize_address(self.address))
        object.__setattr__(self, "tokens", tuple(normalize_address(t) for t in self.tokens))
        object.__setattr__(self, "fee", Fraction(self.fee))
        if self.table is None:
            object.__setattr__(self, "table", PROTOCOL_TABLES[self.protocol])

    def matches(self, address: str) -> bool:
        if self.address is not None:
            return self.address == address
        return bool(self.predicate(address))

    @property
    def is_pool(self) -> bool:
        return len(self.tokens) >= 2

    @property
    def is_v2_style(self) -> bool:
        return self.protocol in V2_STYLE_PROTOCOLS


def pool(
    protocol: Protocol,
    address: str,
    token0: str,
    token1: str,
    fee: Fraction,
) -> ProtocolBinding:
    return ProtocolBinding(protocol=protocol, address=address, tokens=(token0, token1), fee=fee)


V2_FEE = Fraction(3, 1000)

DEFAULT_TOKENS: tuple[TokenInfo, ...] = (
    TokenInfo(address=WETH_ADDRESS, symbol="WETH", decimals=18),
    TokenInfo(address=USDC_ADDRESS, symbol="USDC", decimals=6),
    TokenInfo(address=USDT_ADDRESS, symbol="USDT", decimals=6),
    TokenInfo(address=DAI_ADDRESS, symbol="DAI", decimals=18),
    TokenInfo(address=WBTC_ADDRESS, symbol="WBTC", decimals=8),
)

DEFAULT_POOLS: tuple[ProtocolBinding, ...] = (
    pool(Protocol.UNISWAP_V2, "0xb4e16d0168e52d35cacd2c6185b44281ec28c9dc",
         USDC_ADDRESS, WETH_ADDRESS, V2_FEE),
    pool(Protocol.UNISWAP_V2, "0x0d4a11d5eeaac28ec3f61d100daf4d40471f1852",
         WETH_ADDRESS, USDT_ADDRESS, V2_FEE),
    pool(Protocol.UNISWAP_V2, "0xa478c2975ab1ea89e8196811f51a7b7ade33eb11",
         DAI_ADDRESS, WETH_ADDRESS, V2_FEE),
    pool(Protocol.SUSHISWAP_V2, "0x397ff1542f962076d0bfe58ea045ffa2d347aca0",
         USDC_ADDRESS, WETH_ADDRESS, V2_FEE),
    pool(Protocol.SUSHISWAP_V2, "0x06da0fd433c1a5d7a4faa01111c044910a184553",
         WETH_ADDRESS, USDT_ADDRESS, V2_FEE),
    pool(Protocol.UNISWAP_V3, "0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640",
         USDC_ADDRESS, WETH_ADDRESS, Fraction(5, 10_000)),
    pool(Protocol.UNISWAP_V3, "0x8ad599c3a0ff1de082011efddc58f1908eb6e6d8",
         USDC_ADDRESS, WETH_ADDRESS, Fraction(3, 1000)),
    pool(Protocol.UNISWAP_V3, "0x4e68ccd3e89f51c3074ca5072bbac773960dfa36",
         WETH_ADDRESS, USDT_ADDRESS, Fraction(3, 1000)),
    pool(Protocol.UNISWAP_V3, "0xcbcdf9626bc03e24f779434178a73a0b4bad62ed",
         WBTC_ADDRESS, WETH_ADDRESS, Fraction(3, 1000)),
)


__all__ = [
    "DEFAULT_POOLS",
    "DEFAULT_TOKENS",
    "ERC20_TABLE",
    "PROTOCOL_TABLES",
    "UNISWAP_V2_TABLE",
    "UNISWAP_V3_TABLE",
    "V2_STYLE_PROTOCOLS",
    "WBTC_ADDRESS",
    "ProtocolBinding",
    "TokenInfo",
    "pool",
]
