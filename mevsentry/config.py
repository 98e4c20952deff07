"""Pipeline configuration and environment variable utilities."""

from __future__ import annotations

import os
from fractions import Fraction
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mevsentry.models.primitives import Rational

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def get_optional_env(key: str, default: str | None = None) -> str | None:
    """Get an optional environment variable, treating empty values as unset.

    Example:
        >>> max_tasks = int(get_optional_env("MEVSENTRY_MAX_TASKS", "8"))
    """
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_required_env(key: str) -> str:
    """Get a required environment variable.

    Raises:
        ValueError: If the environment variable is not set.
    """
    value = get_optional_env(key)
    if value is None:
        raise ValueError(f"{key} environment variable is not set")
    return value


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


class PipelineSettings(BaseModel):
    """Operator settings for the decode, classify and inspect pipeline.

    Attributes:
        max_tasks: Blocks processed concurrently.
        metadata_timeout_seconds: Bound on a single metadata fetch.
        include_pricing: Request price tables with block metadata.
        trace_max_retries: Retries of a failed trace fetch before skipping.
        trace_backoff_seconds: First retry delay, doubled on each attempt.
        cex_dex_min_deviation: Relative price deviation the CEX-DEX
            inspector must exceed.
        price_max_age_seconds: Oldest reference quote accepted, relative to
            the block timestamp.
        group_by_contract: Attribute transactions to the contract they call
            rather than the signing EOA.
        rpc_url: JSON-RPC endpoint for the RPC trace source.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_tasks: int = Field(default=8, ge=1, description="Blocks in flight")
    metadata_timeout_seconds: float = Field(default=30.0, gt=0)
    include_pricing: bool = True
    trace_max_retries: int = Field(default=3, ge=0)
    trace_backoff_seconds: float = Field(default=1.0, ge=0)
    cex_dex_min_deviation: Rational = Fraction(1, 100)
    price_max_age_seconds: int | None = Field(default=60, ge=0)
    group_by_contract: bool = False
    rpc_url: str | None = None

    @field_validator("cex_dex_min_deviation")
    @classmethod
    def validate_deviation(cls, v: Fraction) -> Fraction:
        if v < 0:
            raise ValueError("cex_dex_min_deviation must be non-negative")
        return v

    @classmethod
    def from_env(cls, env_file: str | Path | None = None, **overrides) -> PipelineSettings:
        """Build settings from ``MEVSENTRY_*`` variables (and a ``.env`` file).

        Keyword overrides win over the environment.

        Raises:
            ValueError: If a variable holds an invalid value.
        """
        load_dotenv(env_file)
        values: dict = {}

        raw = get_optional_env("MEVSENTRY_MAX_TASKS")
        if raw is not None:
            values["max_tasks"] = int(raw)
        raw = get_optional_env("MEVSENTRY_METADATA_TIMEOUT")
        if raw is not None:
            values["metadata_timeout_seconds"] = float(raw)
        raw = get_optional_env("MEVSENTRY_INCLUDE_PRICING")
        if raw is not None:
            values["include_pricing"] = parse_bool(raw)
        raw = get_optional_env("MEVSENTRY_TRACE_MAX_RETRIES")
        if raw is not None:
            values["trace_max_retries"] = int(raw)
        raw = get_optional_env("MEVSENTRY_TRACE_BACKOFF")
        if raw is not None:
            values["trace_backoff_seconds"] = float(raw)
        raw = get_optional_env("MEVSENTRY_CEX_DEX_MIN_DEVIATION")
        if raw is not None:
            values["cex_dex_min_deviation"] = raw
        raw = get_optional_env("MEVSENTRY_PRICE_MAX_AGE")
        if raw is not None:
            values["price_max_age_seconds"] = int(raw)
        raw = get_optional_env("MEVSENTRY_GROUP_BY_CONTRACT")
        if raw is not None:
            values["group_by_contract"] = parse_bool(raw)
        raw = get_optional_env("ETH_RPC_URL")
        if raw is not None:
            values["rpc_url"] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


__all__ = [
    "PipelineSettings",
    "get_optional_env",
    "get_required_env",
    "parse_bool",
]
