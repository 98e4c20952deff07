"""Inspector interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from mevsentry.models.actions import BlockActionSet
from mevsentry.models.bundle import Bundle, BundleKind


class Inspector(ABC):
    """A read-only pass over one block's actions that reports bundles.

    Implementations must not mutate the block; the models are frozen, so an
    attempt raises at the point of assignment. An inspector that lacks the
    metadata it needs for a candidate skips that candidate.
    """

    kind: BundleKind

    @abstractmethod
    def inspect(self, block: BlockActionSet) -> list[Bundle]:
        """Return the bundles found in ``block``, in block order."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value})"


__all__ = ["Inspector"]
