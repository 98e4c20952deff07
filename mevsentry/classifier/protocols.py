"""Per-protocol builders turning decoded pool calls into normalized actions.

Builders are registered per ``(protocol, function)`` so a new protocol only
needs new entries in ``ACTION_BUILDERS``; the classifier's dispatch does not
change.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from fractions import Fraction

from mevsentry.decoding.registry import DecodedCall, ProtocolRegistry
from mevsentry.models.actions import (
    NormalizedAction,
    NormalizedBurn,
    NormalizedCollect,
    NormalizedFlashLoan,
    NormalizedMint,
    NormalizedSwap,
    Protocol,
)
from mevsentry.models.primitives import from_raw_amount
from mevsentry.models.trace import CallFrame


@dataclass(frozen=True)
class TransferLeg:
    """A token movement observed as an ERC20 ``transfer``/``transferFrom`` frame."""

    trace_index: int
    protocol: Protocol
    token: str
    from_address: str
    to_address: str
    raw_amount: int


@dataclass(frozen=True)
class BuildContext:
    frame: CallFrame
    call: DecodedCall
    legs: tuple[TransferLeg, ...]
    registry: ProtocolRegistry

    @property
    def pool(self) -> str:
        return self.call.address

    @property
    def tokens(self) -> tuple[str, ...]:
        return self.call.binding.tokens

    def scale(self, token: str, raw: int) -> Fraction:
        return from_raw_amount(raw, self.registry.token(token).decimals)

    def inbound(self, token: str) -> int:
        """Raw amount of ``token`` the absorbed legs moved into the pool."""
        return sum(
            leg.raw_amount for leg in self.legs if leg.token == token and leg.to_address == self.pool
        )

    def common(self) -> dict:
        return {
            "trace_index": self.frame.trace_index,
            "protocol": self.call.protocol,
            "address": self.pool,
            "from_address": self.frame.caller,
        }


ActionBuilder = Callable[[BuildContext], NormalizedAction | None]


def _swap(
    ctx: BuildContext,
    token_in: str,
    raw_in: int,
    token_out: str,
    raw_out: int,
    recipient: str,
) -> NormalizedSwap:
    return NormalizedSwap(
        **ctx.common(),
        to_address=recipient,
        pool=ctx.pool,
        token_in=token_in,
        amount_in=ctx.scale(token_in, raw_in),
        token_out=token_out,
        amount_out=ctx.scale(token_out, raw_out),
        fee_rate=ctx.call.binding.fee,
    )


def build_v2_swap(ctx: BuildContext) -> NormalizedSwap | None:
    token0, token1 = ctx.tokens[:2]
    out0 = ctx.call.args["amount0Out"]
    out1 = ctx.call.args["amount1Out"]
    recipient = ctx.call.args["to"]
    if out0 > 0 and out1 == 0:
        return _swap(ctx, token1, ctx.inbound(token1), token0, out0, recipient)
    if out1 > 0 and out0 == 0:
        return _swap(ctx, token0, ctx.inbound(token0), token1, out1, recipient)
    if out0 > 0 and out1 > 0:
        # both sides paid out: the input is whichever token came in net positive
        net0 = ctx.inbound(token0) - out0
        net1 = ctx.inbound(token1) - out1
        if net0 > 0 >= net1:
            return _swap(ctx, token0, net0, token1, -net1, recipient)
        if net1 > 0 >= net0:
            return _swap(ctx, token1, net1, token0, -net0, recipient)
    return None


def build_v2_mint(ctx: BuildContext) -> NormalizedMint:
    token0, token1 = ctx.tokens[:2]
    return NormalizedMint(
        **ctx.common(),
        to_address=ctx.call.args["to"],
        pool=ctx.pool,
        tokens=(token0, token1),
        amounts=(ctx.scale(token0, ctx.inbound(token0)), ctx.scale(token1, ctx.inbound(token1))),
        liquidity=ctx.scale(ctx.pool, ctx.call.returns["liquidity"]),
    )


def build_v2_burn(ctx: BuildContext) -> NormalizedBurn:
    token0, token1 = ctx.tokens[:2]
    return NormalizedBurn(
        **ctx.common(),
        to_address=ctx.call.args["to"],
        pool=ctx.pool,
        tokens=(token0, token1),
        amounts=(
            ctx.scale(token0, ctx.call.returns["amount0"]),
            ctx.scale(token1, ctx.call.returns["amount1"]),
        ),
        # LP tokens sent to the pair ahead of the burn
        liquidity=ctx.scale(ctx.pool, ctx.inbound(ctx.pool)),
    )


def build_v3_swap(ctx: BuildContext) -> NormalizedSwap | None:
    token0, token1 = ctx.tokens[:2]
    amount0 = ctx.call.returns["amount0"]
    amount1 = ctx.call.returns["amount1"]
    recipient = ctx.call.args["recipient"]
    # positive deltas are paid into the pool
    if amount0 > 0 and amount1 <= 0:
        return _swap(ctx, token0, amount0, token1, -amount1, recipient)
    if amount1 > 0 and amount0 <= 0:
        return _swap(ctx, token1, amount1, token0, -amount0, recipient)
    return None


def _v3_position(ctx: BuildContext) -> dict:
    token0, token1 = ctx.tokens[:2]
    return {
        "pool": ctx.pool,
        "tokens": (token0, token1),
        "amounts": (
            ctx.scale(token0, ctx.call.returns["amount0"]),
            ctx.scale(token1, ctx.call.returns["amount1"]),
        ),
        "tick_lower": ctx.call.args["tickLower"],
        "tick_upper": ctx.call.args["tickUpper"],
    }


def build_v3_mint(ctx: BuildContext) -> NormalizedMint:
    return NormalizedMint(
        **ctx.common(),
        **_v3_position(ctx),
        to_address=ctx.call.args["recipient"],
        liquidity=Fraction(ctx.call.args["amount"]),
    )


def build_v3_burn(ctx: BuildContext) -> NormalizedBurn:
    return NormalizedBurn(
        **ctx.common(),
        **_v3_position(ctx),
        to_address=ctx.frame.caller,
        liquidity=Fraction(ctx.call.args["amount"]),
    )


def build_v3_collect(ctx: BuildContext) -> NormalizedCollect:
    return NormalizedCollect(
        **ctx.common(),
        **_v3_position(ctx),
        to_address=ctx.call.args["recipient"],
    )


def build_v3_flash(ctx: BuildContext) -> NormalizedFlashLoan:
    token0, token1 = ctx.tokens[:2]
    return NormalizedFlashLoan(
        **ctx.common(),
        to_address=ctx.call.args["recipient"],
        pool=ctx.pool,
        tokens=(token0, token1),
        amounts=(
            ctx.scale(token0, ctx.call.args["amount0"]),
            ctx.scale(token1, ctx.call.args["amount1"]),
        ),
    )


_V2_BUILDERS: dict[str, ActionBuilder] = {
    "swap": build_v2_swap,
    "mint": build_v2_mint,
    "burn": build_v2_burn,
}

_V3_BUILDERS: dict[str, ActionBuilder] = {
    "swap": build_v3_swap,
    "mint": build_v3_mint,
    "burn": build_v3_burn,
    "collect": build_v3_collect,
    "flash": build_v3_flash,
}

ACTION_BUILDERS: dict[Protocol, dict[str, ActionBuilder]] = {
    Protocol.UNISWAP_V2: _V2_BUILDERS,
    Protocol.SUSHISWAP_V2: _V2_BUILDERS,
    Protocol.UNISWAP_V3: _V3_BUILDERS,
}

# Functions whose calls move tokens rather than act on a pool.
TRANSFER_FUNCTIONS = frozenset({"transfer", "transferFrom"})


def builder_for(call: DecodedCall) -> ActionBuilder | None:
    return ACTION_BUILDERS.get(call.protocol, {}).get(call.function)


__all__ = [
    "ACTION_BUILDERS",
    "TRANSFER_FUNCTIONS",
    "ActionBuilder",
    "BuildContext",
    "TransferLeg",
    "builder_for",
]
