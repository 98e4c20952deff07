"""Detection algorithms for MEV strategies.

Each inspector is a read-only pass over a block's normalized actions. The
composer runs them all on the same block and concatenates their bundles.
"""

from mevsentry.detection.atomic_backrun import AtomicBackrunInspector, find_cycles
from mevsentry.detection.base import Inspector
from mevsentry.detection.cex_dex import CexDexInspector, execution_price, price_deviation
from mevsentry.detection.composer import (
    DetectionResult,
    InspectorComposer,
    bundles_to_dataframe,
    default_inspectors,
)
from mevsentry.detection.jit import JitInspector, liquidity_share
from mevsentry.detection.sandwich import SandwichInspector

__all__ = [
    "AtomicBackrunInspector",
    "CexDexInspector",
    "DetectionResult",
    "Inspector",
    "InspectorComposer",
    "JitInspector",
    "SandwichInspector",
    "bundles_to_dataframe",
    "default_inspectors",
    "execution_price",
    "find_cycles",
    "liquidity_share",
    "price_deviation",
]
