"""Process-wide protocol registry and the frame decoder built on it."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from fractions import Fraction
from pathlib import Path
from types import MappingProxyType
from typing import Any

from mevsentry.decoding.bindings import (
    DEFAULT_POOLS,
    DEFAULT_TOKENS,
    ProtocolBinding,
    TokenInfo,
)
from mevsentry.errors import DecodeError
from mevsentry.models.actions import Protocol
from mevsentry.models.trace import CallFrame, TransactionTrace

logger = logging.getLogger(__name__)


class UnrecognizedReason(StrEnum):
    UNKNOWN_ADDRESS = "unknown-address"
    NO_SELECTOR = "no-selector"
    UNKNOWN_SELECTOR = "unknown-selector"
    DECODE_ERROR = "decode-error"


@dataclass(frozen=True)
class DecodedCall:
    """A frame whose selector matched a binding's decode table."""

    trace_index: int
    address: str
    protocol: Protocol
    function: str
    args: dict[str, Any]
    returns: dict[str, Any]
    binding: ProtocolBinding = field(compare=False, repr=False)


@dataclass(frozen=True)
class UnrecognizedCall:
    """Explicit "not a known protocol call" outcome. Not an error."""

    trace_index: int
    address: str
    reason: UnrecognizedReason
    detail: str = ""


DecodeResult = DecodedCall | UnrecognizedCall


class ProtocolRegistry:
    """Immutable registry of known protocol contracts and tokens.

    Every registered token also receives an ERC20 binding so that token
    transfers decode through the same path as protocol calls.

    Example:
        >>> registry = default_registry()
        >>> registry.is_known("0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640")
        True
    """

    def __init__(
        self,
        bindings: Iterable[ProtocolBinding],
        tokens: Iterable[TokenInfo] = (),
    ) -> None:
        by_address: dict[str, ProtocolBinding] = {}
        predicates: list[ProtocolBinding] = []
        for binding in bindings:
            if binding.address is None:
                predicates.append(binding)
                continue
            if binding.address in by_address:
                raise ValueError(f"Duplicate binding for {binding.address}")
            by_address[binding.address] = binding

        token_map = {token.address: token for token in tokens}
        for address in token_map:
            by_address.setdefault(address, ProtocolBinding(Protocol.ERC20, address=address))

        self._bindings = tuple(by_address.values()) + tuple(predicates)
        self._by_address = MappingProxyType(by_address)
        self._predicates = tuple(predicates)
        self._tokens = MappingProxyType(token_map)

    def __len__(self) -> int:
        return len(self._by_address) + len(self._predicates)

    @property
    def bindings(self) -> tuple[ProtocolBinding, ...]:
        return self._bindings

    def binding_for(self, address: str) -> ProtocolBinding | None:
        """Exact-address match first, then predicate bindings in order."""
        address = address.lower()
        binding = self._by_address.get(address)
        if binding is not None:
            return binding
        for candidate in self._predicates:
            if candidate.matches(address):
                return candidate
        return None

    def is_known(self, address: str) -> bool:
        return self.binding_for(address) is not None

    def address_filter(self) -> Callable[[str], bool]:
        """Return a predicate telling whether an address is worth tracing."""
        return self.is_known

    def token(self, address: str) -> TokenInfo:
        """Return token metadata, defaulting to 18 decimals for unknown tokens."""
        address = address.lower()
        info = self._tokens.get(address)
        if info is None:
            return TokenInfo(address=address)
        return info

    def decode(self, frame: CallFrame) -> DecodeResult:
        """Decode one frame against the registry.

        Malformed payloads under a matched selector are contained here and
        reported as ``UnrecognizedCall`` with reason ``decode-error``.
        """
        binding = self.binding_for(frame.address)
        if binding is None:
            return UnrecognizedCall(
                frame.trace_index, frame.address, UnrecognizedReason.UNKNOWN_ADDRESS
            )
        selector = frame.selector
        if selector is None:
            return UnrecognizedCall(
                frame.trace_index, frame.address, UnrecognizedReason.NO_SELECTOR
            )
        schema = binding.table.lookup(selector)
        if schema is None:
            return UnrecognizedCall(
                frame.trace_index,
                frame.address,
                UnrecognizedReason.UNKNOWN_SELECTOR,
                f"0x{selector.hex()}",
            )
        try:
            args = schema.decode_input(frame.input)
            returns = schema.decode_output(frame.output) if frame.success else {}
        except DecodeError as e:
            return UnrecognizedCall(
                frame.trace_index,
                frame.address,
                UnrecognizedReason.DECODE_ERROR,
                str(e),
            )
        return DecodedCall(
            trace_index=frame.trace_index,
            address=frame.address,
            protocol=binding.protocol,
            function=schema.name,
            args=args,
            returns=returns,
            binding=binding,
        )

    def decode_transaction(self, trace: TransactionTrace) -> dict[int, DecodeResult]:
        """Decode every frame of a transaction, keyed by ``trace_index``."""
        results: dict[int, DecodeResult] = {}
        for frame in trace.root.walk():
            result = self.decode(frame)
            if (
                isinstance(result, UnrecognizedCall)
                and result.reason is UnrecognizedReason.DECODE_ERROR
            ):
                logger.debug(
                    "Decode failure contained in block %s tx %s frame %s: %s",
                    trace.block_number,
                    trace.tx_hash,
                    frame.trace_index,
                    result.detail,
                )
            results[frame.trace_index] = result
        return results

    @property
    def tokens(self) -> tuple[TokenInfo, ...]:
        return tuple(self._tokens.values())

    def with_bindings(
        self,
        bindings: Iterable[ProtocolBinding],
        tokens: Iterable[TokenInfo] = (),
    ) -> ProtocolRegistry:
        """Return a new registry with extra entries; this one stays untouched."""
        explicit = [b for b in self._bindings if b.protocol is not Protocol.ERC20]
        return ProtocolRegistry(
            [*explicit, *bindings],
            [*self._tokens.values(), *tokens],
        )

    def merge(self, other: ProtocolRegistry) -> ProtocolRegistry:
        """Return a registry holding the entries of both registries.

        Raises:
            ValueError: If both registries bind the same pool address.
        """
        pools = [b for b in other.bindings if b.protocol is not Protocol.ERC20]
        return self.with_bindings(pools, other.tokens)

    @classmethod
    def from_records(
        cls,
        pools: Iterable[dict[str, Any]],
        tokens: Iterable[dict[str, Any]] = (),
    ) -> ProtocolRegistry:
        """Build a registry from plain records.

        Pool records need ``protocol``, ``address``, ``tokens`` and ``fee``
        (a rational string such as ``"3/1000"``).
        """
        bindings = [
            ProtocolBinding(
                protocol=Protocol(record["protocol"]),
                address=record["address"],
                tokens=tuple(record.get("tokens", ())),
                fee=Fraction(str(record.get("fee", "0"))),
            )
            for record in pools
        ]
        return cls(bindings, [TokenInfo(**record) for record in tokens])

    @classmethod
    def from_json(cls, path: str | Path) -> ProtocolRegistry:
        """Load ``{"pools": [...], "tokens": [...]}`` from a JSON file."""
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_records(payload.get("pools", []), payload.get("tokens", []))


def default_registry() -> ProtocolRegistry:
    """Registry of the bundled mainnet pools and tokens."""
    return ProtocolRegistry(DEFAULT_POOLS, DEFAULT_TOKENS)


__all__ = [
    "DecodeResult",
    "DecodedCall",
    "ProtocolRegistry",
    "UnrecognizedCall",
    "UnrecognizedReason",
    "default_registry",
]
