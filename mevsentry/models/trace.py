"""Pydantic models for transaction execution traces.

A transaction trace is a tree of :class:`CallFrame` objects in the order the
EVM executed them. ``trace_index`` numbers the frames depth-first, so a
pre-order walk of the tree must see strictly increasing indices.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import StrEnum
from fractions import Fraction
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mevsentry.errors import MalformedTrace
from mevsentry.models.primitives import Address, TxHash

WEI_PER_ETH = 10**18


class CallType(StrEnum):
    """EVM call opcode that produced a frame."""

    CALL = "CALL"
    DELEGATECALL = "DELEGATECALL"
    STATICCALL = "STATICCALL"
    CALLCODE = "CALLCODE"
    CREATE = "CREATE"
    CREATE2 = "CREATE2"


def _coerce_bytes(v: Any) -> bytes:
    if v is None:
        return b""
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v)
    if isinstance(v, str):
        text = v[2:] if v.startswith(("0x", "0X")) else v
        try:
            return bytes.fromhex(text)
        except ValueError as e:
            raise ValueError(f"Invalid hex payload: {v[:20]}...") from e
    raise ValueError(f"Expected bytes or hex string, got {type(v).__name__}")


class CallFrame(BaseModel):
    """One node of a transaction's execution call tree.

    Attributes:
        trace_index: Depth-first position of the frame within the transaction.
        call_type: Opcode that created the frame.
        address: Contract that was called.
        caller: Address that issued the call (``msg.sender``).
        input: Raw calldata (selector followed by ABI encoded arguments).
        output: Raw return data.
        value: Wei transferred with the call.
        success: False when the frame reverted.
        children: Sub-calls in execution order.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    trace_index: int = Field(..., ge=0, description="Depth-first frame index")
    call_type: CallType = Field(default=CallType.CALL, description="Call opcode")
    address: Address = Field(..., description="Callee contract address")
    caller: Address = Field(..., description="msg.sender of the frame")
    input: bytes = Field(default=b"", description="Raw calldata")
    output: bytes = Field(default=b"", description="Raw return data")
    value: int = Field(default=0, ge=0, description="Wei transferred")
    success: bool = Field(default=True, description="False if the frame reverted")
    children: tuple[CallFrame, ...] = Field(default=(), description="Ordered sub-calls")

    @field_validator("input", "output", mode="before")
    @classmethod
    def validate_payload(cls, v: Any) -> bytes:
        """Accept raw bytes or 0x-prefixed hex strings."""
        return _coerce_bytes(v)

    @property
    def selector(self) -> bytes | None:
        """Return the 4-byte function selector, or None for short calldata."""
        if len(self.input) < 4:
            return None
        return self.input[:4]

    def walk(self) -> Iterator[CallFrame]:
        """Yield this frame and all descendants in depth-first pre-order."""
        stack: list[CallFrame] = [self]
        while stack:
            frame = stack.pop()
            yield frame
            stack.extend(reversed(frame.children))

    @property
    def frame_count(self) -> int:
        return sum(1 for _ in self.walk())


class TransactionTrace(BaseModel):
    """The full call tree of one transaction plus its receipt data."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    block_number: int = Field(..., ge=0, description="Block containing the transaction")
    tx_index: int = Field(..., ge=0, description="Position within the block")
    tx_hash: TxHash = Field(..., description="Transaction hash")
    sender: Address = Field(..., description="Externally owned account that signed it")
    to: Address | None = Field(default=None, description="Top-level callee")
    gas_used: int = Field(default=0, ge=0, description="Gas consumed")
    effective_gas_price: int = Field(default=0, ge=0, description="Wei paid per gas")
    root: CallFrame = Field(..., description="Top-level call frame")

    @property
    def gas_cost_wei(self) -> int:
        return self.gas_used * self.effective_gas_price

    @property
    def gas_cost_eth(self) -> Fraction:
        return Fraction(self.gas_cost_wei, WEI_PER_ETH)

    @property
    def frame_count(self) -> int:
        return self.root.frame_count

    def check_ordering(self) -> None:
        """Verify that trace indices increase strictly in depth-first order.

        Raises:
            MalformedTrace: If the source produced out-of-order indices.
        """
        previous = -1
        for frame in self.root.walk():
            if frame.trace_index <= previous:
                raise MalformedTrace(
                    f"Non-monotonic trace_index in tx {self.tx_hash}: "
                    f"{frame.trace_index} follows {previous}"
                )
            previous = frame.trace_index


CallFrame.model_rebuild()


__all__ = [
    "WEI_PER_ETH",
    "CallFrame",
    "CallType",
    "TransactionTrace",
]
