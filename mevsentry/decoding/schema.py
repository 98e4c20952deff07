"""ABI call schemas keyed by 4-byte function selector."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType
from typing import Any

import eth_abi
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector

from mevsentry.errors import DecodeError


def _normalize_value(abi_type: str, value: Any) -> Any:
    # eth_abi returns checksummed addresses; the rest of the pipeline is lowercase
    if abi_type == "address":
        return value.lower()
    return value


@dataclass(frozen=True)
class FunctionSchema:
    """Argument and return layout of one contract function.

    Attributes:
        name: Function name, e.g. ``"swap"``.
        inputs: ``(name, abi_type)`` pairs of the call arguments.
        outputs: ``(name, abi_type)`` pairs of the return values.
    """

    name: str
    inputs: tuple[tuple[str, str], ...]
    outputs: tuple[tuple[str, str], ...] = ()

    @property
    def input_types(self) -> tuple[str, ...]:
        return tuple(t for _, t in self.inputs)

    @property
    def output_types(self) -> tuple[str, ...]:
        return tuple(t for _, t in self.outputs)

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @cached_property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def decode_input(self, calldata: bytes) -> dict[str, Any]:
        """Decode calldata (selector included) into named arguments.

        Raises:
            DecodeError: If the selector does not match or the payload is
                truncated or malformed.
        """
        if calldata[:4] != self.selector:
            raise DecodeError(f"Selector 0x{calldata[:4].hex()} does not match {self.signature}")
        return self._decode(self.inputs, calldata[4:], "arguments")

    def decode_output(self, returndata: bytes) -> dict[str, Any]:
        """Decode return data into named values.

        Raises:
            DecodeError: If the payload is truncated or malformed.
        """
        return self._decode(self.outputs, returndata, "return data")

    def encode_input(self, args: Mapping[str, Any]) -> bytes:
        values = [args[name] for name, _ in self.inputs]
        return self.selector + eth_abi.encode(list(self.input_types), values)

    def encode_output(self, returns: Mapping[str, Any]) -> bytes:
        values = [returns[name] for name, _ in self.outputs]
        return eth_abi.encode(list(self.output_types), values)

    def _decode(
        self,
        layout: tuple[tuple[str, str], ...],
        payload: bytes,
        what: str,
    ) -> dict[str, Any]:
        if not layout:
            return {}
        types = [t for _, t in layout]
        try:
            values = eth_abi.decode(types, payload)
        except DecodingError as e:
            raise DecodeError(f"Malformed {what} for {self.signature}: {e}") from e
        return {
            name: _normalize_value(abi_type, value)
            for (name, abi_type), value in zip(layout, values)
        }


@dataclass(frozen=True)
class DecodeTable:
    """Selector to schema mapping shared by ABI-identical protocols."""

    name: str
    functions: tuple[FunctionSchema, ...]
    _by_selector: Mapping[bytes, FunctionSchema] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_selector: dict[bytes, FunctionSchema] = {}
        for schema in self.functions:
            if schema.selector in by_selector:
                raise ValueError(f"Duplicate selector for {schema.signature} in {self.name}")
            by_selector[schema.selector] = schema
        object.__setattr__(self, "_by_selector", MappingProxyType(by_selector))

    def lookup(self, selector: bytes) -> FunctionSchema | None:
        return self._by_selector.get(bytes(selector))

    def function(self, name: str) -> FunctionSchema:
        for schema in self.functions:
            if schema.name == name:
                return schema
        raise KeyError(name)

    @property
    def selectors(self) -> Iterable[bytes]:
        return self._by_selector.keys()


__all__ = [
    "DecodeTable",
    "FunctionSchema",
]
