"""Protocol binding registry and call-frame decoding.

Maps contract addresses to protocols and decodes call frames against the
protocol's selector table. Unknown contracts and selectors produce an explicit
``UnrecognizedCall`` instead of an error.
"""

from mevsentry.decoding.bindings import (
    DEFAULT_POOLS,
    DEFAULT_TOKENS,
    ERC20_TABLE,
    UNISWAP_V2_TABLE,
    UNISWAP_V3_TABLE,
    ProtocolBinding,
    TokenInfo,
)
from mevsentry.decoding.registry import (
    DecodedCall,
    DecodeResult,
    ProtocolRegistry,
    UnrecognizedCall,
    UnrecognizedReason,
    default_registry,
)
from mevsentry.decoding.schema import DecodeTable, FunctionSchema

__all__ = [
    "DEFAULT_POOLS",
    "DEFAULT_TOKENS",
    "ERC20_TABLE",
    "UNISWAP_V2_TABLE",
    "UNISWAP_V3_TABLE",
    "DecodeResult",
    "DecodeTable",
    "DecodedCall",
    "FunctionSchema",
    "ProtocolBinding",
    "ProtocolRegistry",
    "TokenInfo",
    "UnrecognizedCall",
    "UnrecognizedReason",
    "default_registry",
]
