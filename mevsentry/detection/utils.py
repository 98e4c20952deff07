"""Helpers shared by the inspectors: attribution, gas pricing, USD values."""

from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction

from mevsentry.models.actions import TransactionActions
from mevsentry.models.metadata import Metadata

TAG_PRICED = "priced"
TAG_GAS_UNPRICED = "gas-unpriced"
TAG_PARTIALLY_PRICED = "partially-priced"


def actor_of(tx: TransactionActions, group_by_contract: bool = False) -> str:
    """Return the address a transaction is attributed to.

    The baseline is the signing EOA. With ``group_by_contract`` enabled,
    transactions sent to the same contract are treated as one actor.
    """
    if group_by_contract and tx.to is not None:
        return tx.to
    return tx.sender


@dataclass(frozen=True)
class NetProfit:
    """Profit after gas, in one token."""

    profit: Fraction
    gas_cost: Fraction
    tag: str

    @property
    def gas_priced(self) -> bool:
        return self.tag != TAG_GAS_UNPRICED


def net_of_gas(
    gross: Fraction,
    gas_eth: Fraction,
    token: str,
    metadata: Metadata,
) -> NetProfit:
    """Subtract gas from a gross profit in ``token``.

    When gas cannot be expressed in ``token`` the gross figure is kept and
    tagged ``gas-unpriced``.
    """
    gas = metadata.eth_to_token(gas_eth, token)
    if gas is None:
        return NetProfit(profit=gross, gas_cost=Fraction(0), tag=TAG_GAS_UNPRICED)
    return NetProfit(profit=gross - gas, gas_cost=gas, tag=TAG_PRICED)


def usd_value(metadata: Metadata, token: str, amount: Fraction) -> Fraction | None:
    return metadata.usd_value(token, amount)


def confidence_for(tag: str, base: float = 1.0) -> float:
    """Scale a detector's base confidence down for incomplete pricing."""
    if tag == TAG_GAS_UNPRICED:
        base *= 0.8
    elif tag == TAG_PARTIALLY_PRICED:
        base *= 0.7
    return round(min(1.0, max(0.0, base)), 4)


__all__ = [
    "TAG_GAS_UNPRICED",
    "TAG_PARTIALLY_PRICED",
    "TAG_PRICED",
    "NetProfit",
    "actor_of",
    "confidence_for",
    "net_of_gas",
    "usd_value",
]
