"""Sources of per-transaction call trees for a block."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from mevsentry.errors import MalformedTrace, RpcClientError, TraceSourceError
from mevsentry.ingest.rpc_client import JsonRpcClient
from mevsentry.models.primitives import ZERO_ADDRESS
from mevsentry.models.trace import CallFrame, CallType, TransactionTrace

logger = logging.getLogger(__name__)

CALL_TRACER = {"tracer": "callTracer"}


def parse_hex_int(value: Any, default: int = 0) -> int:
    """Parse a JSON-RPC quantity (``"0x1a"``) or a plain integer."""
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    text = str(value)
    if text.startswith(("0x", "0X")):
        return int(text, 16) if len(text) > 2 else default
    return int(text)


def _call_type(raw: Mapping[str, Any]) -> CallType:
    name = str(raw.get("type", "CALL")).upper()
    try:
        return CallType(name)
    except ValueError:
        # SELFDESTRUCT and similar value-moving pseudo calls
        return CallType.CALL


def _frame_fields(raw: Mapping[str, Any], trace_index: int) -> dict[str, Any]:
    return {
        "trace_index": trace_index,
        "call_type": _call_type(raw),
        "address": raw.get("to") or ZERO_ADDRESS,
        "caller": raw.get("from") or ZERO_ADDRESS,
        "input": raw.get("input") or b"",
        "output": raw.get("output") or b"",
        "value": parse_hex_int(raw.get("value")),
        "success": "error" not in raw,
    }


def build_call_tree(raw_root: Mapping[str, Any]) -> CallFrame:
    """Convert a ``callTracer`` result into a :class:`CallFrame` tree.

    Frames are numbered depth-first in pre-order. The walk is iterative so
    that the EVM's 1024-deep call stacks do not hit the recursion limit.
    """
    if not isinstance(raw_root, Mapping):
        raise MalformedTrace(f"Expected a call object, got {type(raw_root).__name__}")
    order: list[tuple[Mapping[str, Any], int]] = []
    stack: list[tuple[Mapping[str, Any], int]] = [(raw_root, -1)]
    while stack:
        raw, parent = stack.pop()
        position = len(order)
        order.append((raw, parent))
        for child in reversed(raw.get("calls") or []):
            stack.append((child, position))

    children: list[list[CallFrame]] = [[] for _ in order]
    root: CallFrame | None = None
    for position in range(len(order) - 1, -1, -1):
        raw, parent = order[position]
        frame = CallFrame(
            **_frame_fields(raw, position),
            children=tuple(reversed(children[position])),
        )
        if parent >= 0:
            children[parent].append(frame)
        else:
            root = frame
    if root is None:
        raise MalformedTrace("Call tree has no root frame")
    return root


class TraceSource(ABC):
    """Provides the transaction traces of a block."""

    @abstractmethod
    async def get_transaction_traces(self, block_number: int) -> list[TransactionTrace]:
        """Return the block's traces in transaction order.

        Raises:
            TraceSourceError: On a transient failure; callers may retry.
            MalformedTrace: If the source data cannot form valid traces.
        """


class InMemoryTraceSource(TraceSource):
    """Serves pre-built traces, for fixtures and replays."""

    def __init__(self, traces_by_block: Mapping[int, Iterable[TransactionTrace]]):
        self._traces = {block: list(traces) for block, traces in traces_by_block.items()}

    async def get_transaction_traces(self, block_number: int) -> list[TransactionTrace]:
        try:
            return list(self._traces[block_number])
        except KeyError:
            raise TraceSourceError(f"No traces for block {block_number}") from None


class RpcTraceSource(TraceSource):
    """Fetches traces from a node with ``debug_traceBlockByNumber``.

    Receipts supply gas usage; the blocking HTTP client runs in a worker
    thread so that other blocks keep progressing.
    """

    def __init__(self, client: JsonRpcClient):
        self.client = client

    async def get_transaction_traces(self, block_number: int) -> list[TransactionTrace]:
        try:
            return await asyncio.to_thread(self._fetch_block, block_number)
        except RpcClientError as e:
            raise TraceSourceError(f"Failed to fetch traces for block {block_number}: {e}") from e

    def _fetch_block(self, block_number: int) -> list[TransactionTrace]:
        tag = hex(block_number)
        block = self.client.call("eth_getBlockByNumber", [tag, True])
        if block is None:
            raise TraceSourceError(f"Block {block_number} not found")
        receipts = self.client.call("eth_getBlockReceipts", [tag]) or []
        traces = self.client.call("debug_traceBlockByNumber", [tag, CALL_TRACER]) or []

        transactions = block.get("transactions") or []
        if len(traces) != len(transactions):
            raise MalformedTrace(
                f"Block {block_number}: {len(traces)} traces for {len(transactions)} transactions"
            )
        receipts_by_hash = {r.get("transactionHash", "").lower(): r for r in receipts}

        results: list[TransactionTrace] = []
        try:
            for tx, trace in zip(transactions, traces):
                tx_hash = tx["hash"].lower()
                receipt = receipts_by_hash.get(tx_hash, {})
                results.append(
                    TransactionTrace(
                        block_number=block_number,
                        tx_index=parse_hex_int(tx.get("transactionIndex")),
                        tx_hash=tx_hash,
                        sender=tx["from"],
                        to=tx.get("to"),
                        gas_used=parse_hex_int(receipt.get("gasUsed")),
                        effective_gas_price=parse_hex_int(
                            receipt.get("effectiveGasPrice", tx.get("gasPrice"))
                        ),
                        root=build_call_tree(trace.get("result", trace)),
                    )
                )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedTrace(f"Block {block_number}: cannot parse trace data: {e}") from e

        logger.debug("Fetched %s traces for block %s", len(results), block_number)
        return results


__all__ = [
    "CALL_TRACER",
    "InMemoryTraceSource",
    "RpcTraceSource",
    "TraceSource",
    "build_call_tree",
    "parse_hex_int",
]
