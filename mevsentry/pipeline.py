"""Block pipeline: fetch, decode, classify, inspect, emit in block order.

Blocks are the unit of concurrency. Up to ``max_tasks`` blocks are in flight
at once; each block is isolated so that its failure is recorded as a skip and
never stops the run. Results reach the sink in ascending block order
regardless of which block finishes first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Optional, Protocol

from mevsentry.classifier import Classifier
from mevsentry.config import PipelineSettings
from mevsentry.decoding import (
    DecodeResult,
    ProtocolRegistry,
    UnrecognizedCall,
    UnrecognizedReason,
    default_registry,
)
from mevsentry.detection import Inspector, InspectorComposer, default_inspectors
from mevsentry.errors import (
    MalformedTrace,
    MetadataNotFound,
    MetadataUnavailable,
    TraceSourceError,
)
from mevsentry.ingest.metadata_store import MetadataStore
from mevsentry.ingest.trace_source import TraceSource
from mevsentry.models.actions import BlockActionSet
from mevsentry.models.bundle import Bundle
from mevsentry.models.metadata import Metadata
from mevsentry.models.trace import TransactionTrace
from mevsentry.reporting import RunReport, SkipCause, SkippedBlock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockResult:
    """Everything the pipeline produced for one block.

    Attributes:
        block_number: Block that was processed.
        actions: Classified actions with the block metadata.
        bundles: Bundles from every inspector, in inspector order.
        decode_failures: Frames contained as ``decode-error``.
    """

    block_number: int
    actions: BlockActionSet
    bundles: tuple[Bundle, ...] = ()
    decode_failures: int = 0

    @property
    def bundle_counts(self) -> dict[str, int]:
        return dict(Counter(b.kind.value for b in self.bundles))


class BlockSink(Protocol):
    """Downstream consumer of block results (persistence, reporting)."""

    async def write(self, result: BlockResult) -> None: ...


class CollectingSink:
    """Sink that keeps results in memory, in the order they were written."""

    def __init__(self) -> None:
        self.results: list[BlockResult] = []

    async def write(self, result: BlockResult) -> None:
        self.results.append(result)

    @property
    def block_numbers(self) -> list[int]:
        return [r.block_number for r in self.results]

    @property
    def bundles(self) -> list[Bundle]:
        return [b for r in self.results for b in r.bundles]


class ResultSequencer:
    """Hands completed results to a sink in ascending block order.

    Every expected block must be completed exactly once, either with a result
    or with None for a skipped block. A skipped block releases the sequence
    without reaching the sink. A failed sink write is logged and reported to
    ``on_write_error``; the blocks after it are still emitted.
    """

    def __init__(
        self,
        block_numbers: Iterable[int],
        sink: BlockSink,
        on_write_error: Optional[Callable[[BlockResult, Exception], None]] = None,
    ):
        self._expected: list[int] = sorted(set(block_numbers))
        self._sink = sink
        self._on_write_error = on_write_error
        self._ready: dict[int, Optional[BlockResult]] = {}
        self._next = 0
        self._completed: set[int] = set()
        self._lock = asyncio.Lock()
        self.emitted: list[int] = []
        self.failed: list[int] = []

    @property
    def pending(self) -> int:
        return len(self._expected) - self._next

    async def complete(self, block_number: int, result: Optional[BlockResult]) -> None:
        async with self._lock:
            if block_number in self._completed:
                raise ValueError(f"Block {block_number} completed twice")
            self._completed.add(block_number)
            self._ready[block_number] = result
            while self._next < len(self._expected) and self._expected[self._next] in self._ready:
                ready = self._ready.pop(self._expected[self._next])
                self._next += 1
                if ready is not None:
                    await self._write(ready)

    async def _write(self, result: BlockResult) -> None:
        try:
            await self._sink.write(result)
        except Exception as exc:
            logger.exception("Sink failed to write block %s", result.block_number)
            self.failed.append(result.block_number)
            if self._on_write_error is not None:
                self._on_write_error(result, exc)
            return
        self.emitted.append(result.block_number)


@dataclass
class _RunState:
    processed: list[int] = field(default_factory=list)
    skipped: list[SkippedBlock] = field(default_factory=list)
    bundle_counts: Counter = field(default_factory=Counter)
    decode_failures: int = 0

    def skip(self, block_number: int, cause: SkipCause, message: str = "") -> None:
        logger.warning("Skipping block %s (%s): %s", block_number, cause.value, message)
        self.skipped.append(SkippedBlock(block_number, cause, message))

    def write_failed(self, result: BlockResult, exc: Exception) -> None:
        # the block was counted as processed before emission
        self.processed.remove(result.block_number)
        self.bundle_counts.subtract(result.bundle_counts)
        self.decode_failures -= result.decode_failures
        self.skip(result.block_number, SkipCause.SINK, f"{type(exc).__name__}: {exc}")

    def report(self) -> RunReport:
        return RunReport(
            processed_blocks=tuple(sorted(self.processed)),
            skipped_blocks=tuple(sorted(self.skipped, key=lambda s: s.block_number)),
            bundle_counts=dict(+self.bundle_counts),
            decode_failures=self.decode_failures,
        )


def _count_decode_failures(decoded: dict[str, dict[int, DecodeResult]]) -> int:
    return sum(
        1
        for results in decoded.values()
        for result in results.values()
        if isinstance(result, UnrecognizedCall) and result.reason is UnrecognizedReason.DECODE_ERROR
    )


class Pipeline:
    """Decode, classify and inspect blocks from a trace source.

    Args:
        trace_source: Provides per-transaction call trees.
        metadata_store: Provides block metadata; asked to backfill on a miss.
        registry: Protocol registry, initialised once and shared read-only.
        inspectors: Inspectors to run; the four defaults when omitted.
        settings: Concurrency, retry and threshold settings.

    Example:
        >>> pipeline = Pipeline(RpcTraceSource(client), store)
        >>> block = await pipeline.process_block(18_000_000)
        >>> bundles = pipeline.inspect(block)
    """

    def __init__(
        self,
        trace_source: TraceSource,
        metadata_store: MetadataStore,
        registry: Optional[ProtocolRegistry] = None,
        inspectors: Optional[Sequence[Inspector]] = None,
        settings: Optional[PipelineSettings] = None,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.trace_source = trace_source
        self.metadata_store = metadata_store
        self.registry = registry if registry is not None else default_registry()
        self.classifier = Classifier(self.registry)
        if inspectors is None:
            inspectors = default_inspectors(self.settings)
        self.composer = InspectorComposer(inspectors)

    async def fetch_traces(self, block_number: int) -> list[TransactionTrace]:
        """Fetch traces, retrying transient failures with exponential backoff.

        Raises:
            TraceSourceError: Once ``trace_max_retries`` retries are exhausted.
        """
        attempt = 0
        wait = self.settings.trace_backoff_seconds
        while True:
            try:
                return await self.trace_source.get_transaction_traces(block_number)
            except TraceSourceError as exc:
                logger.warning(
                    "Trace fetch for block %s failed (%s/%s): %s",
                    block_number,
                    attempt + 1,
                    self.settings.trace_max_retries + 1,
                    exc,
                )
                if attempt >= self.settings.trace_max_retries:
                    raise
                await asyncio.sleep(wait)
                wait *= 2
                attempt += 1

    async def fetch_metadata(self, block_number: int) -> Metadata:
        """Fetch block metadata, backfilling once on a miss.

        Raises:
            MetadataUnavailable: If the metadata is still missing after the
                backfill, or a store call exceeds the configured timeout.
        """
        try:
            metadata = await self._get_metadata(block_number)
        except MetadataNotFound:
            logger.info("Metadata for block %s not found, requesting backfill", block_number)
            await self._bounded(
                self.metadata_store.backfill(block_number, block_number), block_number
            )
            try:
                metadata = await self._get_metadata(block_number)
            except MetadataNotFound as exc:
                raise MetadataUnavailable(block_number, "not found after backfill") from exc

        if metadata.block_number != block_number:
            raise MalformedTrace(
                f"Store returned metadata for block {metadata.block_number} "
                f"when asked for {block_number}"
            )
        return metadata.model_copy(update={"price_max_age": self.settings.price_max_age_seconds})

    async def _get_metadata(self, block_number: int) -> Metadata:
        return await self._bounded(
            self.metadata_store.get_metadata(block_number, self.settings.include_pricing),
            block_number,
        )

    async def _bounded(self, awaitable, block_number: int):
        timeout = self.settings.metadata_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MetadataUnavailable(block_number, f"timed out after {timeout}s") from exc

    async def process_block(self, block_number: int) -> BlockActionSet:
        """Fetch, decode and classify one block.

        Raises:
            MetadataUnavailable: If metadata cannot be obtained.
            TraceSourceError: If traces cannot be fetched after retries.
            MalformedTrace: If the source data violates ordering invariants.
        """
        block, _ = await self._process(block_number)
        return block

    async def _process(self, block_number: int) -> tuple[BlockActionSet, int]:
        metadata = await self.fetch_metadata(block_number)
        traces = await self.fetch_traces(block_number)

        decoded = {trace.tx_hash: self.registry.decode_transaction(trace) for trace in traces}
        failures = _count_decode_failures(decoded)
        if failures:
            logger.info("Block %s: %s frame(s) failed to decode", block_number, failures)

        block = self.classifier.classify_block(traces, metadata, decoded)
        return block, failures

    def inspect(self, block: BlockActionSet) -> list[Bundle]:
        """Run every inspector on ``block`` and concatenate their bundles."""
        return self.composer.inspect(block)

    async def run(
        self,
        block_numbers: Iterable[int],
        sink: BlockSink,
        shutdown: Optional[asyncio.Event] = None,
    ) -> RunReport:
        """Process blocks concurrently and emit results in block order.

        Setting ``shutdown`` stops admission of new blocks; blocks already in
        flight finish and are emitted, the rest are recorded as skipped.
        """
        blocks = list(dict.fromkeys(block_numbers))
        shutdown = shutdown or asyncio.Event()
        state = _RunState()
        sequencer = ResultSequencer(blocks, sink, on_write_error=state.write_failed)
        semaphore = asyncio.Semaphore(self.settings.max_tasks)
        tasks: list[asyncio.Task] = []

        logger.info(
            "Processing %s block(s) with up to %s in flight",
            len(blocks),
            self.settings.max_tasks,
        )
        try:
            for position, block_number in enumerate(blocks):
                await semaphore.acquire()
                if shutdown.is_set():
                    semaphore.release()
                    for remaining in blocks[position:]:
                        state.skip(remaining, SkipCause.SHUTDOWN, "shutdown requested")
                        await sequencer.complete(remaining, None)
                    break
                tasks.append(
                    asyncio.create_task(
                        self._run_block(block_number, semaphore, sequencer, state)
                    )
                )
            await asyncio.gather(*tasks)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        report = state.report()
        logger.info(
            "Run finished: %s processed, %s skipped, %s bundle(s)",
            len(report.processed_blocks),
            len(report.skipped_blocks),
            report.total_bundles,
        )
        return report

    async def _run_block(
        self,
        block_number: int,
        semaphore: asyncio.Semaphore,
        sequencer: ResultSequencer,
        state: _RunState,
    ) -> None:
        result: Optional[BlockResult] = None
        try:
            block, failures = await self._process(block_number)
            bundles = tuple(self.inspect(block))
            result = BlockResult(block_number, block, bundles, failures)
        except MetadataUnavailable as exc:
            state.skip(block_number, SkipCause.METADATA_UNAVAILABLE, str(exc))
        except MalformedTrace as exc:
            state.skip(block_number, SkipCause.MALFORMED_TRACE, str(exc))
        except TraceSourceError as exc:
            state.skip(block_number, SkipCause.TRACE_SOURCE, str(exc))
        except Exception as exc:
            logger.exception("Unexpected failure in block %s", block_number)
            state.skip(block_number, SkipCause.UNEXPECTED, f"{type(exc).__name__}: {exc}")
        finally:
            semaphore.release()

        if result is not None:
            state.processed.append(block_number)
            state.bundle_counts.update(result.bundle_counts)
            state.decode_failures += result.decode_failures
        await sequencer.complete(block_number, result)


__all__ = [
    "BlockResult",
    "BlockSink",
    "CollectingSink",
    "Pipeline",
    "ResultSequencer",
]
