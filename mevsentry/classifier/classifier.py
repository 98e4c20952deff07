"""Turn decoded call trees into ordered normalized actions.

Classification is a pure function of the traces, their decode results and the
registry: no network, clock or randomness. Running it twice on the same input
yields byte-identical serializations.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping

from mevsentry.classifier.protocols import (
    TRANSFER_FUNCTIONS,
    BuildContext,
    TransferLeg,
    builder_for,
)
from mevsentry.decoding.bindings import ProtocolBinding
from mevsentry.decoding.registry import DecodedCall, DecodeResult, ProtocolRegistry
from mevsentry.errors import MalformedTrace
from mevsentry.models.actions import (
    BlockActionSet,
    NormalizedAction,
    NormalizedTransfer,
    TransactionActions,
    UnclassifiedAction,
)
from mevsentry.models.metadata import Metadata, WETH_ADDRESS
from mevsentry.models.primitives import from_raw_amount
from mevsentry.models.trace import CallFrame, CallType, TransactionTrace

logger = logging.getLogger(__name__)

# Opcodes that can carry native value to the callee.
VALUE_CALL_TYPES = frozenset({CallType.CALL, CallType.CREATE, CallType.CREATE2})

NATIVE_DECIMALS = 18

# Frames that run in another context or cannot change state.
PASSIVE_CALL_TYPES = frozenset({CallType.DELEGATECALL, CallType.STATICCALL})


def _live_frames(root: CallFrame) -> list[tuple[CallFrame, tuple[int, ...]]]:
    """Depth-first frames with their ancestor indices, skipping reverted subtrees."""
    frames: list[tuple[CallFrame, tuple[int, ...]]] = []
    stack: list[tuple[CallFrame, tuple[int, ...]]] = [(root, ())]
    while stack:
        frame, ancestors = stack.pop()
        if not frame.success:
            continue
        frames.append((frame, ancestors))
        chain = ancestors + (frame.trace_index,)
        stack.extend((child, chain) for child in reversed(frame.children))
    return frames


def _pool_tokens(binding: ProtocolBinding) -> frozenset[str]:
    tokens = set(binding.tokens)
    if binding.is_v2_style:
        tokens.add(binding.address)
    return frozenset(tokens)


def _touches_pool(binding: ProtocolBinding, leg: TransferLeg) -> bool:
    return leg.token in _pool_tokens(binding) and binding.address in (
        leg.from_address,
        leg.to_address,
    )


class Classifier:
    """Normalizes transaction traces against a protocol registry.

    Within a transaction each live frame yields at most one action:

    * a decoded pool call (swap, mint, burn, collect, flash) becomes the
      matching action and absorbs the token transfers that settle it;
    * a token transfer nobody absorbed becomes a ``NormalizedTransfer``;
    * a plain call carrying native value becomes a transfer of the native
      token;
    * any other recognised pool call becomes an ``UnclassifiedAction``.

    Frames inside reverted subtrees produce nothing.
    """

    def __init__(self, registry: ProtocolRegistry):
        self.registry = registry

    def classify_transaction(
        self,
        trace: TransactionTrace,
        decoded: Mapping[int, DecodeResult] | None = None,
    ) -> TransactionActions:
        """Classify one transaction.

        Args:
            trace: Transaction call tree.
            decoded: Decode results keyed by ``trace_index``; decoded here
                when omitted.

        Raises:
            MalformedTrace: If the trace indices are not depth-first ordered.
        """
        trace.check_ordering()
        if decoded is None:
            decoded = self.registry.decode_transaction(trace)

        frames = _live_frames(trace.root)
        pool_calls: dict[int, tuple[CallFrame, DecodedCall]] = {}
        legs: dict[int, TransferLeg] = {}
        for frame, _ in frames:
            call = decoded.get(frame.trace_index)
            if not isinstance(call, DecodedCall) or frame.call_type in PASSIVE_CALL_TYPES:
                continue
            if call.binding.is_pool and builder_for(call) is not None:
                pool_calls[frame.trace_index] = (frame, call)
            elif call.function in TRANSFER_FUNCTIONS:
                legs[frame.trace_index] = self._transfer_leg(frame, call)

        claims = self._assign_transfers(frames, pool_calls, legs)
        claimed = {leg.trace_index for owned in claims.values() for leg in owned}

        actions: list[NormalizedAction] = []
        for frame, _ in frames:
            action = self._frame_action(frame, decoded, pool_calls, legs, claims, claimed)
            if action is not None:
                actions.append(action)

        return TransactionActions(
            block_number=trace.block_number,
            tx_index=trace.tx_index,
            tx_hash=trace.tx_hash,
            sender=trace.sender,
            to=trace.to,
            gas_used=trace.gas_used,
            effective_gas_price=trace.effective_gas_price,
            frame_count=trace.frame_count,
            actions=tuple(actions),
        )

    def classify_block(
        self,
        traces: Iterable[TransactionTrace],
        metadata: Metadata,
        decoded: Mapping[str, Mapping[int, DecodeResult]] | None = None,
    ) -> BlockActionSet:
        """Classify a whole block into a ``BlockActionSet``.

        Args:
            traces: Transaction traces of the block, in any order.
            metadata: Metadata of the same block.
            decoded: Optional decode results keyed by tx hash.

        Raises:
            MalformedTrace: If a trace belongs to another block or the
                transaction indices collide.
        """
        ordered = sorted(traces, key=lambda t: t.tx_index)
        transactions = []
        for trace in ordered:
            if trace.block_number != metadata.block_number:
                raise MalformedTrace(
                    f"Trace {trace.tx_hash} is from block {trace.block_number}, "
                    f"expected {metadata.block_number}"
                )
            tx_decoded = decoded.get(trace.tx_hash) if decoded is not None else None
            transactions.append(self.classify_transaction(trace, tx_decoded))

        block = BlockActionSet(
            block_number=metadata.block_number,
            transactions=tuple(transactions),
            metadata=metadata,
        )
        block.check_ordering()
        logger.debug(
            "Classified block %s: %s txs, %s actions",
            block.block_number,
            len(block.transactions),
            block.action_count,
        )
        return block

    def _transfer_leg(self, frame: CallFrame, call: DecodedCall) -> TransferLeg:
        if call.function == "transferFrom":
            source = call.args["from"]
        else:
            source = frame.caller
        return TransferLeg(
            trace_index=frame.trace_index,
            protocol=call.protocol,
            token=call.address,
            from_address=source,
            to_address=call.args["to"],
            raw_amount=call.args["amount"],
        )

    def _assign_transfers(
        self,
        frames: list[tuple[CallFrame, tuple[int, ...]]],
        pool_calls: dict[int, tuple[CallFrame, DecodedCall]],
        legs: dict[int, TransferLeg],
    ) -> dict[int, list[TransferLeg]]:
        claims: dict[int, list[TransferLeg]] = defaultdict(list)
        # pool address each leg has already been counted for
        counted_for: dict[int, str] = {}

        # Settlement inside a pool call's subtree goes to the innermost such call.
        for frame, ancestors in frames:
            leg = legs.get(frame.trace_index)
            if leg is None:
                continue
            for ancestor in reversed(ancestors):
                owner = pool_calls.get(ancestor)
                if owner is not None and _touches_pool(owner[1].binding, leg):
                    claims[ancestor].append(leg)
                    counted_for[leg.trace_index] = owner[1].binding.address
                    break

        # V2 pairs are paid before they are called: take the inbound transfers
        # since the pair's previous action in this transaction. In a routed
        # swap the previous hop pays the next pair from inside its own call,
        # so a leg settling one pool still feeds the pair it lands in.
        previous_on_pool: dict[str, int] = {}
        for index in sorted(pool_calls):
            binding = pool_calls[index][1].binding
            if binding.is_v2_style:
                floor = previous_on_pool.get(binding.address, -1)
                tokens = _pool_tokens(binding)
                for leg_index in sorted(legs):
                    if leg_index >= index:
                        break
                    leg = legs[leg_index]
                    if (
                        leg_index > floor
                        and counted_for.get(leg_index) != binding.address
                        and leg.to_address == binding.address
                        and leg.token in tokens
                    ):
                        claims[index].append(leg)
                        counted_for[leg_index] = binding.address
            previous_on_pool[binding.address] = index

        for owned in claims.values():
            owned.sort(key=lambda leg: leg.trace_index)
        return claims

    def _frame_action(
        self,
        frame: CallFrame,
        decoded: Mapping[int, DecodeResult],
        pool_calls: dict[int, tuple[CallFrame, DecodedCall]],
        legs: dict[int, TransferLeg],
        claims: dict[int, list[TransferLeg]],
        claimed: set[int],
    ) -> NormalizedAction | None:
        index = frame.trace_index
        if frame.call_type in PASSIVE_CALL_TYPES:
            return None
        call = decoded.get(index)

        if index in pool_calls:
            context = BuildContext(
                frame=frame,
                call=pool_calls[index][1],
                legs=tuple(claims.get(index, ())),
                registry=self.registry,
            )
            action = builder_for(context.call)(context)
            if action is not None:
                return action
            return self._unclassified(frame, context.call)

        if index in legs:
            if index in claimed:
                return None
            leg = legs[index]
            return NormalizedTransfer(
                trace_index=index,
                protocol=leg.protocol,
                address=leg.token,
                from_address=leg.from_address,
                to_address=leg.to_address,
                token=leg.token,
                amount=from_raw_amount(leg.raw_amount, self.registry.token(leg.token).decimals),
            )

        if frame.value > 0 and frame.call_type in VALUE_CALL_TYPES:
            return NormalizedTransfer(
                trace_index=index,
                address=frame.address,
                from_address=frame.caller,
                to_address=frame.address,
                token=WETH_ADDRESS,
                amount=from_raw_amount(frame.value, NATIVE_DECIMALS),
            )

        if isinstance(call, DecodedCall) and call.binding.is_pool:
            return self._unclassified(frame, call)
        return None

    @staticmethod
    def _unclassified(frame: CallFrame, call: DecodedCall) -> UnclassifiedAction:
        return UnclassifiedAction(
            trace_index=frame.trace_index,
            protocol=call.protocol,
            address=call.address,
            from_address=frame.caller,
            to_address=call.address,
            function=call.function,
        )


__all__ = ["Classifier", "VALUE_CALL_TYPES"]
