#!/usr/bin/env python
"""Decode, classify and inspect a range of blocks for MEV bundles.

This script runs the block pipeline against a JSON-RPC node with the
following features:
- Concurrent block processing bounded by --max-tasks
- Block metadata and reference prices loaded from CSV or parquet tables
- Ctrl-C stops admitting new blocks and lets in-flight blocks finish
- Bundles exported to parquet, run statistics to a markdown report

Example:
    # Basic usage (node URL from ETH_RPC_URL)
    $ python scripts/inspect_blocks.py --start 18000000 --end 18000010 \
        --blocks data/metadata/blocks.csv --prices data/metadata/prices.parquet

    # With custom parameters
    $ python scripts/inspect_blocks.py \
        --start 18000000 --end 18000100 \
        --rpc-url http://localhost:8545 \
        --blocks data/metadata/blocks.parquet \
        --output data/results/bundles.parquet \
        --max-tasks 16 \
        --min-deviation 0.02
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import time
from collections import defaultdict
from fractions import Fraction
from pathlib import Path

import pandas as pd

from mevsentry.config import PipelineSettings
from mevsentry.decoding import ProtocolRegistry, default_registry
from mevsentry.detection import bundles_to_dataframe
from mevsentry.ingest.metadata_store import InMemoryMetadataStore
from mevsentry.ingest.rpc_client import JsonRpcClient
from mevsentry.ingest.trace_source import RpcTraceSource
from mevsentry.models.bundle import Bundle
from mevsentry.pipeline import CollectingSink, Pipeline
from mevsentry.reporting import RunReport

# Configure logging with structured format
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("scripts.inspect_blocks")


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser with comprehensive options."""
    parser = argparse.ArgumentParser(
        prog="inspect_blocks",
        description="Detect sandwich, CEX-DEX, JIT and atomic backrun bundles in a block range",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --start 18000000 --end 18000010 --blocks blocks.csv
  %(prog)s --start 18000000 --end 18000010 --blocks blocks.csv --prices prices.parquet
  %(prog)s -s 18000000 -e 18000100 --blocks blocks.parquet --max-tasks 16 --verbose
        """,
    )

    # Block range
    range_group = parser.add_argument_group("Block Range")
    range_group.add_argument(
        "--start",
        "-s",
        type=int,
        required=True,
        help="First block to inspect",
    )
    range_group.add_argument(
        "--end",
        "-e",
        type=int,
        default=None,
        help="Last block to inspect, inclusive (default: same as --start)",
    )

    # Input options
    input_group = parser.add_argument_group("Input Options")
    input_group.add_argument(
        "--rpc-url",
        type=str,
        default=None,
        help="JSON-RPC endpoint with debug_traceBlockByNumber (default: $ETH_RPC_URL)",
    )
    input_group.add_argument(
        "--blocks",
        dest="blocks_path",
        type=str,
        required=True,
        help="Block metadata table (csv or parquet): block_number, block_timestamp, ...",
    )
    input_group.add_argument(
        "--prices",
        dest="prices_path",
        type=str,
        default=None,
        help="Reference price table (csv or parquet): base, quote, timestamp, price",
    )
    input_group.add_argument(
        "--registry",
        dest="registry_path",
        type=str,
        default=None,
        help="JSON file with extra pools and tokens (default: bundled mainnet registry)",
    )

    # Output options
    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument(
        "--output",
        "-o",
        dest="output_path",
        type=str,
        default="data/results/bundles.parquet",
        help="Output parquet file path (default: data/results/bundles.parquet)",
    )
    output_group.add_argument(
        "--report",
        "-r",
        dest="report_path",
        type=str,
        default="data/results/INSPECTION_REPORT.md",
        help="Inspection report markdown file path",
    )

    # Pipeline options
    pipeline_group = parser.add_argument_group("Pipeline Options")
    pipeline_group.add_argument(
        "--max-tasks",
        type=int,
        default=None,
        help="Blocks processed concurrently (default: $MEVSENTRY_MAX_TASKS or 8)",
    )
    pipeline_group.add_argument(
        "--min-deviation",
        type=str,
        default=None,
        help="CEX-DEX deviation threshold, e.g. 0.01 or 1/100 (default: 1/100)",
    )
    pipeline_group.add_argument(
        "--group-by-contract",
        action="store_true",
        default=None,
        help="Attribute transactions to the contract they call instead of the sender",
    )

    # Logging options
    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    logging_group.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Suppress non-error output",
    )

    return parser


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging level based on arguments."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled")
    elif quiet:
        logging.getLogger().setLevel(logging.WARNING)


def load_table(path: Path) -> pd.DataFrame:
    """Load a csv or parquet table with error handling."""
    if not path.is_file():
        logger.error("Input file not found: %s", path)
        raise SystemExit(1)
    try:
        logger.info("Loading table from %s", path)
        if path.suffix.lower() == ".csv":
            # prices stay text so that decimal quotes are parsed exactly
            df = pd.read_csv(path, dtype={"price": str})
        else:
            df = pd.read_parquet(path)
        logger.info("Loaded %d rows with %d columns", len(df), len(df.columns))
        return df
    except Exception as e:
        logger.error("Failed to load table: %s", e)
        raise SystemExit(1) from e


def save_data(df: pd.DataFrame, path: Path) -> None:
    """Save DataFrame to parquet with directory creation."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Saving %d rows to %s", len(df), path)
        df.to_parquet(path, index=False)
        logger.info("Data saved successfully")
    except Exception as e:
        logger.error("Failed to save parquet file: %s", e)
        raise SystemExit(1) from e


def save_report(report: str, path: Path) -> None:
    """Save inspection report to markdown file."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(report, encoding="utf-8")
        logger.info("Report saved to %s", path)
    except OSError as e:
        logger.error("Failed to save report: %s", e)


def generate_report(
    report: RunReport,
    bundles: list[Bundle],
    settings: PipelineSettings,
    elapsed_time: float,
) -> str:
    """Generate the markdown report: run summary plus top bundles by USD profit."""
    lines = [
        report.generate_markdown(),
        "## Pipeline Configuration",
        "",
        f"- **Max Tasks**: {settings.max_tasks}",
        f"- **CEX-DEX Min Deviation**: {settings.cex_dex_min_deviation}",
        f"- **Group By Contract**: {settings.group_by_contract}",
        f"- **Processing Time**: {elapsed_time:.2f} seconds",
        "",
    ]

    priced = [b for b in bundles if b.profit_usd is not None]
    if priced:
        lines.extend([
            "## Top Bundles by Profit (USD)",
            "",
            "| Rank | Kind | Block | Actor | Profit (USD) | Confidence |",
            "|------|------|-------|-------|--------------|------------|",
        ])
        ranked = sorted(priced, key=lambda b: b.profit_usd, reverse=True)[:20]
        for rank, bundle in enumerate(ranked, 1):
            actor_short = f"{bundle.actor[:10]}...{bundle.actor[-8:]}"
            lines.append(
                f"| {rank} | {bundle.kind.value} | {bundle.block_number} | {actor_short} | "
                f"{float(bundle.profit_usd):,.2f} | {bundle.confidence:.2f} |"
            )
        lines.append("")

        lines.extend([
            "## Profit by Kind",
            "",
            "| Kind | Bundles | Total Profit (USD) |",
            "|------|---------|--------------------|",
        ])
        totals: dict[str, list[Fraction]] = defaultdict(list)
        for bundle in priced:
            totals[bundle.kind.value].append(bundle.profit_usd)
        for kind, profits in sorted(totals.items()):
            lines.append(f"| {kind} | {len(profits)} | {float(sum(profits)):,.2f} |")
        lines.append("")

    return "\n".join(lines)


def print_summary(report: RunReport, output_path: Path, report_path: Path, elapsed_time: float) -> None:
    """Print run summary to console."""
    print("\n" + "=" * 60)
    print("Block Inspection Summary")
    print("=" * 60)
    print(f"Blocks processed:   {len(report.processed_blocks):,}")
    print(f"Blocks skipped:     {len(report.skipped_blocks):,}")
    print(f"Bundles found:      {report.total_bundles:,}")
    for kind, count in sorted(report.bundle_counts.items()):
        print(f"  {kind:<18}{count:,}")
    print(f"Decode failures:    {report.decode_failures:,}")
    print(f"Processing time:    {elapsed_time:.2f}s")
    print("-" * 60)
    print(f"Results file:       {output_path}")
    print(f"Report file:        {report_path}")
    print("=" * 60 + "\n")


async def run_pipeline(
    pipeline: Pipeline,
    block_numbers: list[int],
    sink: CollectingSink,
) -> RunReport:
    """Run the pipeline with Ctrl-C wired to the shutdown event."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, shutdown.set)
    try:
        return await pipeline.run(block_numbers, sink, shutdown)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


def main() -> int:
    """Main entry point for the inspection script."""
    parser = create_parser()
    parsed = parser.parse_args()

    # Setup logging
    setup_logging(parsed.verbose, parsed.quiet)

    end = parsed.end if parsed.end is not None else parsed.start
    if end < parsed.start:
        logger.error("--end (%d) is before --start (%d)", end, parsed.start)
        return 1

    try:
        settings = PipelineSettings.from_env(
            max_tasks=parsed.max_tasks,
            cex_dex_min_deviation=parsed.min_deviation,
            group_by_contract=parsed.group_by_contract,
            rpc_url=parsed.rpc_url,
        )
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 1
    if not settings.rpc_url:
        logger.error("An RPC URL is required (--rpc-url or ETH_RPC_URL)")
        return 1

    output_path = Path(parsed.output_path)
    report_path = Path(parsed.report_path)

    logger.info("=" * 60)
    logger.info("MEV Sentry - Block Inspection")
    logger.info("=" * 60)

    blocks_df = load_table(Path(parsed.blocks_path))
    prices_df = load_table(Path(parsed.prices_path)) if parsed.prices_path else None
    try:
        store = InMemoryMetadataStore.from_frames(blocks_df, prices_df)
    except ValueError as e:
        logger.error("Invalid metadata tables: %s", e)
        return 1

    registry = default_registry()
    if parsed.registry_path:
        try:
            registry = registry.merge(ProtocolRegistry.from_json(parsed.registry_path))
        except (OSError, ValueError, KeyError) as e:
            logger.error("Invalid registry file: %s", e)
            return 1
        logger.info("Registry extended to %d bindings", len(registry))

    pipeline = Pipeline(
        RpcTraceSource(JsonRpcClient(settings.rpc_url)),
        store,
        registry=registry,
        settings=settings,
    )
    sink = CollectingSink()
    block_numbers = list(range(parsed.start, end + 1))

    logger.info("Inspecting blocks %d-%d", parsed.start, end)
    start_time = time.time()
    report = asyncio.run(run_pipeline(pipeline, block_numbers, sink))
    elapsed_time = time.time() - start_time

    bundles = sink.bundles
    save_data(bundles_to_dataframe(bundles), output_path)
    save_report(generate_report(report, bundles, settings, elapsed_time), report_path)

    # Print summary
    if not parsed.quiet:
        print_summary(report, output_path, report_path, elapsed_time)

    return 0 if report.processed_blocks or not block_numbers else 1


if __name__ == "__main__":
    sys.exit(main())
