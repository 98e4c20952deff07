"""Run reports for the block inspection pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class SkipCause(StrEnum):
    """Why a block produced no result."""

    METADATA_UNAVAILABLE = "metadata-unavailable"
    MALFORMED_TRACE = "malformed-trace"
    TRACE_SOURCE = "trace-source"
    SINK = "sink"
    SHUTDOWN = "shutdown"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class SkippedBlock:
    """A block that was not processed, with the attributable cause.

    Attributes:
        block_number: Block that was skipped.
        cause: Category of the failure.
        message: Error message for operators.
    """

    block_number: int
    cause: SkipCause
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "block_number": self.block_number,
            "cause": self.cause.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class RunReport:
    """Outcome of one pipeline run.

    Attributes:
        processed_blocks: Blocks whose results reached the sink, ascending.
        skipped_blocks: Blocks that were skipped, ascending.
        bundle_counts: Bundles found per kind.
        decode_failures: Frames whose payload failed to decode under a
            matched selector (contained, not fatal).

    Example:
        >>> report = await pipeline.run(range(18_000_000, 18_000_010), sink)
        >>> print(report.generate_markdown())
    """

    processed_blocks: tuple[int, ...]
    skipped_blocks: tuple[SkippedBlock, ...] = ()
    bundle_counts: dict[str, int] = field(default_factory=dict)
    decode_failures: int = 0

    @property
    def total_blocks(self) -> int:
        return len(self.processed_blocks) + len(self.skipped_blocks)

    @property
    def total_bundles(self) -> int:
        return sum(self.bundle_counts.values())

    @property
    def success_rate(self) -> float:
        """Processed blocks as a percentage of all submitted blocks."""
        if self.total_blocks == 0:
            return 100.0
        return (len(self.processed_blocks) / self.total_blocks) * 100

    @property
    def is_complete(self) -> bool:
        return not self.skipped_blocks

    def skipped_by_cause(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for skipped in self.skipped_blocks:
            counts[skipped.cause.value] = counts.get(skipped.cause.value, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        """Convert the report to a dictionary for JSON output."""
        return {
            "total_blocks": self.total_blocks,
            "processed_blocks": len(self.processed_blocks),
            "skipped_blocks": len(self.skipped_blocks),
            "success_rate": f"{self.success_rate:.2f}%",
            "skipped_by_cause": self.skipped_by_cause(),
            "bundle_counts": dict(self.bundle_counts),
            "total_bundles": self.total_bundles,
            "decode_failures": self.decode_failures,
            "skipped": [s.to_dict() for s in self.skipped_blocks[:10]],  # Limit in report
        }

    def generate_markdown(self) -> str:
        """Generate markdown report.

        Returns:
            Formatted markdown string.
        """
        lines = [
            "# Block Inspection Report",
            "",
            "## Run Summary",
            "",
            f"- **Total Blocks**: {self.total_blocks:,}",
            f"- **Processed Blocks**: {len(self.processed_blocks):,}",
            f"- **Skipped Blocks**: {len(self.skipped_blocks):,}",
            f"- **Success Rate**: {self.success_rate:.2f}%",
            f"- **Contained Decode Failures**: {self.decode_failures:,}",
            "",
        ]

        if self.processed_blocks:
            lines.extend([
                f"- **Block Range**: {self.processed_blocks[0]} - {self.processed_blocks[-1]}",
                "",
            ])

        lines.extend([
            "## Bundles",
            "",
        ])
        if self.bundle_counts:
            lines.extend([
                "| Kind | Count |",
                "|------|-------|",
            ])
            for kind, count in sorted(self.bundle_counts.items()):
                lines.append(f"| {kind} | {count:,} |")
            lines.append("")
        else:
            lines.extend(["No bundles detected.", ""])

        if self.skipped_blocks:
            lines.extend([
                "## Skipped Blocks",
                "",
            ])
            for skipped in self.skipped_blocks[:10]:
                detail = f": {skipped.message}" if skipped.message else ""
                lines.append(f"- Block {skipped.block_number} ({skipped.cause.value}){detail}")
            if len(self.skipped_blocks) > 10:
                lines.append(f"- ... and {len(self.skipped_blocks) - 10} more skipped blocks")
            lines.append("")

        return "\n".join(lines)


__all__ = [
    "RunReport",
    "SkipCause",
    "SkippedBlock",
]
