"""Exception hierarchy for the decode, classify and inspect pipeline."""

from __future__ import annotations


class MevSentryError(RuntimeError):
    """Base error for every failure raised by mevsentry."""


class DecodeError(MevSentryError):
    """Raised when calldata under a matched selector is truncated or malformed.

    Contained to a single call frame: the registry converts it into an
    unrecognized call instead of letting it escape.
    """


class MalformedTrace(MevSentryError):
    """Raised when trace or action ordering invariants are violated.

    Fatal for the block being processed, never for the pipeline.
    """


class MetadataNotFound(MevSentryError):
    """Raised by a metadata store that has no entry for a block."""

    def __init__(self, block_number: int) -> None:
        super().__init__(f"No metadata found for block {block_number}")
        self.block_number = block_number


class MetadataUnavailable(MevSentryError):
    """Raised when metadata is still missing after a backfill or timed out."""

    def __init__(self, block_number: int, reason: str) -> None:
        super().__init__(f"Metadata unavailable for block {block_number}: {reason}")
        self.block_number = block_number
        self.reason = reason


class TraceSourceError(MevSentryError):
    """Raised when block traces cannot be fetched; treated as transient."""


class RpcClientError(MevSentryError):
    """Raised when a JSON-RPC request cannot be fulfilled."""


class RpcResponseError(RpcClientError):
    """Raised when the node answers with a JSON-RPC level error."""


__all__ = [
    "DecodeError",
    "MalformedTrace",
    "MetadataNotFound",
    "MetadataUnavailable",
    "MevSentryError",
    "RpcClientError",
    "RpcResponseError",
    "TraceSourceError",
]
