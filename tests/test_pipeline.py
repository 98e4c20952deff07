"""Tests for the concurrent block pipeline."""

import asyncio
from fractions import Fraction

import pytest

from mevsentry.config import PipelineSettings
from mevsentry.errors import MetadataUnavailable, TraceSourceError
from mevsentry.ingest.metadata_store import InMemoryMetadataStore
from mevsentry.ingest.trace_source import InMemoryTraceSource
from mevsentry.models.metadata import Metadata, WETH_ADDRESS
from mevsentry.models.trace import CallFrame, TransactionTrace
from mevsentry.pipeline import BlockResult, CollectingSink, Pipeline, ResultSequencer
from mevsentry.reporting import SkipCause

SENDER = "0x" + "a" * 40
RECIPIENT = "0x" + "b" * 40
FAST = {"trace_backoff_seconds": 0, "metadata_timeout_seconds": 5}


def eth_transfer_trace(block_number: int, tx_index: int = 0) -> TransactionTrace:
    return TransactionTrace(
        block_number=block_number,
        tx_index=tx_index,
        tx_hash=f"0x{block_number:032x}{tx_index:032x}",
        sender=SENDER,
        to=RECIPIENT,
        root=CallFrame(trace_index=0, address=RECIPIENT, caller=SENDER, value=10**18),
    )


def metadata_for(block_number: int) -> Metadata:
    return Metadata(block_number=block_number, block_timestamp=1_700_000_000 + block_number)


def make_pipeline(blocks, trace_source=None, metadata_store=None, **settings) -> Pipeline:
    if trace_source is None:
        trace_source = InMemoryTraceSource({b: [eth_transfer_trace(b)] for b in blocks})
    if metadata_store is None:
        metadata_store = InMemoryMetadataStore([metadata_for(b) for b in blocks])
    return Pipeline(
        trace_source,
        metadata_store,
        settings=PipelineSettings(**{**FAST, **settings}),
    )


class DelayedTraceSource(InMemoryTraceSource):
    def __init__(self, traces_by_block, delays):
        super().__init__(traces_by_block)
        self.delays = delays

    async def get_transaction_traces(self, block_number):
        await asyncio.sleep(self.delays.get(block_number, 0))
        return await super().get_transaction_traces(block_number)


class FlakyTraceSource(InMemoryTraceSource):
    def __init__(self, traces_by_block, failures):
        super().__init__(traces_by_block)
        self.failures = failures
        self.calls = 0

    async def get_transaction_traces(self, block_number):
        self.calls += 1
        if self.calls <= self.failures:
            raise TraceSourceError("node busy")
        return await super().get_transaction_traces(block_number)


class SlowMetadataStore(InMemoryMetadataStore):
    async def get_metadata(self, block_number, include_pricing=True):
        await asyncio.sleep(1)
        return await super().get_metadata(block_number, include_pricing)


class TestProcessBlock:
    @pytest.mark.asyncio
    async def test_classifies_block(self) -> None:
        pipeline = make_pipeline([7])

        block = await pipeline.process_block(7)

        assert block.block_number == 7
        assert block.action_count == 1
        transfer = block.transactions[0].actions[0]
        assert transfer.token == WETH_ADDRESS
        assert transfer.amount == Fraction(1)

    @pytest.mark.asyncio
    async def test_price_max_age_applied(self) -> None:
        pipeline = make_pipeline([7], price_max_age_seconds=5)
        metadata = await pipeline.fetch_metadata(7)
        assert metadata.price_max_age == 5

    @pytest.mark.asyncio
    async def test_backfill_then_retry(self) -> None:
        store = InMemoryMetadataStore(backfill_source=metadata_for)
        pipeline = make_pipeline([7], metadata_store=store)

        block = await pipeline.process_block(7)

        assert block.metadata.block_number == 7
        assert store.backfill_requests == [(7, 7)]

    @pytest.mark.asyncio
    async def test_backfill_failure(self) -> None:
        store = InMemoryMetadataStore()
        pipeline = make_pipeline([7], metadata_store=store)

        with pytest.raises(MetadataUnavailable, match="not found after backfill"):
            await pipeline.process_block(7)
        assert store.backfill_requests == [(7, 7)]

    @pytest.mark.asyncio
    async def test_metadata_timeout(self) -> None:
        store = SlowMetadataStore([metadata_for(7)])
        pipeline = make_pipeline([7], metadata_store=store, metadata_timeout_seconds=0.01)

        with pytest.raises(MetadataUnavailable, match="timed out"):
            await pipeline.process_block(7)

    @pytest.mark.asyncio
    async def test_trace_retries(self) -> None:
        source = FlakyTraceSource({7: [eth_transfer_trace(7)]}, failures=2)
        pipeline = make_pipeline([7], trace_source=source, trace_max_retries=2)

        block = await pipeline.process_block(7)

        assert block.action_count == 1
        assert source.calls == 3

    @pytest.mark.asyncio
    async def test_trace_retries_exhausted(self) -> None:
        source = FlakyTraceSource({7: [eth_transfer_trace(7)]}, failures=5)
        pipeline = make_pipeline([7], trace_source=source, trace_max_retries=1)

        with pytest.raises(TraceSourceError):
            await pipeline.process_block(7)
        assert source.calls == 2


class TestRun:
    """Concurrent runs with ordered emission and per-block isolation."""

    @pytest.mark.asyncio
    async def test_results_emitted_in_block_order(self) -> None:
        blocks = [5, 3, 4]
        source = DelayedTraceSource(
            {b: [eth_transfer_trace(b)] for b in blocks},
            delays={5: 0, 3: 0.05, 4: 0.02},
        )
        pipeline = make_pipeline(blocks, trace_source=source, max_tasks=3)
        sink = CollectingSink()

        report = await pipeline.run(blocks, sink)

        assert sink.block_numbers == [3, 4, 5]
        assert report.processed_blocks == (3, 4, 5)
        assert report.is_complete

    @pytest.mark.asyncio
    async def test_failed_block_does_not_stop_run(self) -> None:
        blocks = [1, 2, 3]
        store = InMemoryMetadataStore([metadata_for(1), metadata_for(3)])
        pipeline = make_pipeline(blocks, metadata_store=store)
        sink = CollectingSink()

        report = await pipeline.run(blocks, sink)

        assert sink.block_numbers == [1, 3]
        assert report.processed_blocks == (1, 3)
        assert [s.block_number for s in report.skipped_blocks] == [2]
        assert report.skipped_blocks[0].cause is SkipCause.METADATA_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_malformed_trace_is_skipped(self) -> None:
        bad = eth_transfer_trace(2).model_copy(
            update={
                "root": CallFrame(
                    trace_index=0,
                    address=RECIPIENT,
                    caller=SENDER,
                    children=(CallFrame(trace_index=0, address=RECIPIENT, caller=SENDER),),
                )
            }
        )
        source = InMemoryTraceSource({1: [eth_transfer_trace(1)], 2: [bad]})
        pipeline = make_pipeline([1, 2], trace_source=source)

        report = await pipeline.run([1, 2], CollectingSink())

        assert report.processed_blocks == (1,)
        assert report.skipped_by_cause() == {"malformed-trace": 1}

    @pytest.mark.asyncio
    async def test_trace_source_failure_is_skipped(self) -> None:
        source = InMemoryTraceSource({1: [eth_transfer_trace(1)]})
        pipeline = make_pipeline([1, 2], trace_source=source, trace_max_retries=0)

        report = await pipeline.run([1, 2], CollectingSink())

        assert report.skipped_by_cause() == {"trace-source": 1}

    @pytest.mark.asyncio
    async def test_shutdown_stops_admission(self) -> None:
        """Blocks in flight finish; later blocks are skipped."""
        shutdown = asyncio.Event()

        class StoppingSource(InMemoryTraceSource):
            async def get_transaction_traces(self, block_number):
                shutdown.set()
                return await super().get_transaction_traces(block_number)

        blocks = [1, 2, 3]
        source = StoppingSource({b: [eth_transfer_trace(b)] for b in blocks})
        pipeline = make_pipeline(blocks, trace_source=source, max_tasks=1)
        sink = CollectingSink()

        report = await pipeline.run(blocks, sink, shutdown=shutdown)

        assert sink.block_numbers == [1]
        assert report.processed_blocks == (1,)
        assert report.skipped_by_cause() == {"shutdown": 2}

    @pytest.mark.asyncio
    async def test_bundle_counts_reported(self) -> None:
        pipeline = make_pipeline([1])
        sink = CollectingSink()

        report = await pipeline.run([1, 1], sink)

        assert report.total_blocks == 1
        assert report.total_bundles == 0
        assert sink.bundles == []

    @pytest.mark.asyncio
    async def test_sink_failure_is_recorded_and_run_continues(self) -> None:
        """A failed write skips that block only; later blocks still reach the sink."""

        class FailingSink(CollectingSink):
            async def write(self, result):
                if result.block_number == 1:
                    raise OSError("disk full")
                await super().write(result)

        blocks = [1, 2, 3]
        pipeline = make_pipeline(blocks)
        sink = FailingSink()

        report = await pipeline.run(blocks, sink)

        assert sink.block_numbers == [2, 3]
        assert report.processed_blocks == (2, 3)
        assert report.skipped_by_cause() == {"sink": 1}
        assert "disk full" in report.skipped_blocks[0].message


class TestResultSequencer:
    @pytest.mark.asyncio
    async def test_skipped_block_releases_sequence(self) -> None:
        sink = CollectingSink()
        sequencer = ResultSequencer([1, 2, 3], sink)

        await sequencer.complete(3, None)
        await sequencer.complete(2, None)
        assert sequencer.pending == 3

        await sequencer.complete(1, None)
        assert sequencer.pending == 0
        assert sink.results == []

    @pytest.mark.asyncio
    async def test_double_completion_rejected(self) -> None:
        sequencer = ResultSequencer([1], CollectingSink())
        await sequencer.complete(1, None)
        with pytest.raises(ValueError):
            await sequencer.complete(1, None)

    @pytest.mark.asyncio
    async def test_failed_write_keeps_sequence_moving(self) -> None:
        failures = []

        class BrokenSink(CollectingSink):
            async def write(self, result):
                raise RuntimeError("sink closed")

        sequencer = ResultSequencer(
            [1, 2],
            BrokenSink(),
            on_write_error=lambda result, exc: failures.append((result.block_number, str(exc))),
        )
        block = await make_pipeline([1]).process_block(1)

        await sequencer.complete(1, BlockResult(1, block))
        await sequencer.complete(2, None)

        assert sequencer.pending == 0
        assert sequencer.failed == [1]
        assert failures == [(1, "sink closed")]
