"""Normalization of decoded call trees into protocol-independent actions."""

from mevsentry.classifier.classifier import Classifier
from mevsentry.classifier.protocols import ACTION_BUILDERS, BuildContext, TransferLeg

__all__ = [
    "ACTION_BUILDERS",
    "BuildContext",
    "Classifier",
    "TransferLeg",
]
