"""
Integration tests for the export pipeline.

Runs BatchAssembler and Uploader together over an in-memory ledger source
and object store.

Tests cover:
- Object layout for the documented schemas
- Object contents
- Cancellation and drain
- Idempotent re-export
- Failure propagation between workers
"""

import asyncio

import pytest

from datalake.ledger_exporter.assembler import BatchAssembler
from datalake.ledger_exporter.batch import ArchiveBatch
from datalake.ledger_exporter.cancel import CancelToken
from datalake.ledger_exporter.codec import CONTENT_TYPE, XdrBatchCodec, decompress
from datalake.ledger_exporter.config import ExporterConfig
from datalake.ledger_exporter.errors import (
    ExportCancelled,
    HandoffClosedError,
    InvariantViolationError,
    SourceError,
    UploadError,
)
from datalake.ledger_exporter.handoff import Handoff
from datalake.ledger_exporter.source.memory import InMemoryLedgerSource, synthetic_ledger
from datalake.ledger_exporter.store.filesystem import FilesystemObjectStore
from datalake.ledger_exporter.store.memory import InMemoryObjectStore
from datalake.ledger_exporter.uploader import Uploader


async def run_pipeline(config, source, store, start, end, cancel=None):
    """Run assembler and uploader to completion; returns (assembler, uploader, results)."""
    cancel = cancel or CancelToken()
    handoff = Handoff(capacity=1)
    assembler = BatchAssembler(config, source, handoff)
    uploader = Uploader(store, handoff)
    results = await asyncio.gather(
        assembler.run(cancel, start, end),
        uploader.run(cancel),
        return_exceptions=True,
    )
    return assembler, uploader, results


async def read_batch(store, key):
    return XdrBatchCodec().decode(decompress(await store.get(key)))


class TestObjectLayout:
    """Objects written for the documented schemas."""

    @pytest.mark.asyncio
    async def test_single_ledger_files_with_partitions(self):
        """L=1, P=10 over [2, 20] writes one object per ledger."""
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 20)

        _, uploader, results = await run_pipeline(ExporterConfig(1, 10), source, store, 2, 20)

        assert results == [None, None]
        keys = store.keys()
        assert len(keys) == 19
        assert keys[:3] == ["0-9/2.xdr.gz", "0-9/3.xdr.gz", "0-9/4.xdr.gz"]
        assert "10-19/10.xdr.gz" in keys
        assert "20-29/20.xdr.gz" in keys
        assert uploader.stats["batches_uploaded"] == 19

    @pytest.mark.asyncio
    async def test_default_schema(self):
        """L=64, P=10 over [2, 255] writes four objects in one partition."""
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 255)

        assembler, _, results = await run_pipeline(ExporterConfig(64, 10), source, store, 2, 255)

        assert results == [None, None]
        assert store.keys() == [
            "0-639/0-63.xdr.gz",
            "0-639/128-191.xdr.gz",
            "0-639/192-255.xdr.gz",
            "0-639/64-127.xdr.gz",
        ]
        assert assembler.stats["batches_emitted"] == 4
        assert assembler.stats["ledgers_assembled"] == 254

        first = await read_batch(store, "0-639/0-63.xdr.gz")
        assert first.start_sequence == 2
        assert first.end_sequence == 63
        assert [lcm.sequence for lcm in first.ledgers] == list(range(2, 64))

    @pytest.mark.asyncio
    async def test_trailing_partial_batch_is_not_written(self):
        """L=10, P=1 over [2, 10]: ledger 10 opens a batch the range never completes."""
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 10)

        assembler, _, results = await run_pipeline(ExporterConfig(10, 1), source, store, 2, 10)

        assert results == [None, None]
        assert store.keys() == ["0-9.xdr.gz"]
        batch = await read_batch(store, "0-9.xdr.gz")
        assert [lcm.sequence for lcm in batch.ledgers] == list(range(2, 10))
        assert assembler.stats["batches_discarded"] == 1
        assert assembler.stats["pending_batches"] == 0

    @pytest.mark.asyncio
    async def test_single_ledger_range(self):
        """L=1, P=1 over [2, 2] writes exactly one object."""
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 2)

        _, _, results = await run_pipeline(ExporterConfig(1, 1), source, store, 2, 2)

        assert results == [None, None]
        assert store.keys() == ["2.xdr.gz"]
        assert store.object("2.xdr.gz").content_type == CONTENT_TYPE

    @pytest.mark.asyncio
    async def test_objects_cover_range_exactly(self):
        """Every exported ledger appears exactly once across all objects."""
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 99)

        await run_pipeline(ExporterConfig(7, 3), source, store, 2, 97)

        sequences = []
        for key in store.keys():
            batch = await read_batch(store, key)
            sequences.extend(lcm.sequence for lcm in batch.ledgers)
            assert [lcm.data for lcm in batch.ledgers] == [
                synthetic_ledger(lcm.sequence).data for lcm in batch.ledgers
            ]
        assert sorted(sequences) == list(range(2, 98))


class TestOrdering:
    """The assembler refuses ledgers that skip a sequence."""

    @pytest.mark.asyncio
    async def test_gap_is_an_invariant_violation(self):
        handoff = Handoff(capacity=1)
        assembler = BatchAssembler(ExporterConfig(10, 1), InMemoryLedgerSource(), handoff)

        for seq in range(2, 6):
            await assembler.add_ledger(synthetic_ledger(seq))

        with pytest.raises(InvariantViolationError, match="expected 6, got 7"):
            await assembler.add_ledger(synthetic_ledger(7))

    @pytest.mark.asyncio
    async def test_source_returning_wrong_ledger(self):
        """A source that answers with another sequence is a source error."""

        class WrongSource(InMemoryLedgerSource):
            async def get(self, cancel, sequence):
                return synthetic_ledger(sequence + 1)

        store = InMemoryObjectStore()
        _, _, results = await run_pipeline(ExporterConfig(1, 1), WrongSource(), store, 2, 5)

        assert isinstance(results[0], SourceError)
        assert results[1] is None
        assert store.keys() == []


class TestCancellation:
    """Cooperative shutdown."""

    @pytest.mark.asyncio
    async def test_cancel_unbounded_export(self):
        """Cancelling an unbounded export keeps every completed batch and nothing partial."""
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 34)
        cancel = CancelToken()

        pipeline = asyncio.create_task(
            run_pipeline(ExporterConfig(10, 1), source, store, 2, 0, cancel=cancel)
        )

        async def wait_for_objects():
            while len(store.keys()) < 3:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(wait_for_objects(), timeout=2.0)
        cancel.cancel("test shutdown")
        _, _, results = await asyncio.wait_for(pipeline, timeout=2.0)

        assert all(isinstance(result, ExportCancelled) for result in results)
        assert store.keys() == ["0-9.xdr.gz", "10-19.xdr.gz", "20-29.xdr.gz"]

    @pytest.mark.asyncio
    async def test_cancel_while_send_blocked_on_full_handoff(self):
        """A send waiting on a full handoff completes and its batch is still uploaded."""
        store = InMemoryObjectStore(write_delay=0.05)
        source = InMemoryLedgerSource.with_range(2, 1000)
        cancel = CancelToken()

        pipeline = asyncio.create_task(
            run_pipeline(ExporterConfig(1, 1), source, store, 2, 1000, cancel=cancel)
        )
        await asyncio.sleep(0.1)
        cancel.cancel("test shutdown")
        assembler, uploader, results = await asyncio.wait_for(pipeline, timeout=2.0)

        assert all(isinstance(result, ExportCancelled) for result in results)
        emitted = assembler.stats["batches_emitted"]
        assert emitted >= 2
        assert uploader.stats["batches_uploaded"] == emitted
        assert uploader.stats["batches_failed"] == 0
        assert sorted(int(key.split(".")[0]) for key in store.keys()) == list(
            range(2, 2 + emitted)
        )

    @pytest.mark.asyncio
    async def test_uploader_drains_handed_off_batches(self):
        """Batches already in the handoff are uploaded before the uploader stops."""
        store = InMemoryObjectStore()
        handoff = Handoff(capacity=1)
        batch = ArchiveBatch(key="2.xdr.gz", start_sequence=2, end_sequence=2)
        batch.append(synthetic_ledger(2))
        await handoff.send(batch)
        await handoff.close()

        cancel = CancelToken()
        cancel.cancel("shutdown")
        uploader = Uploader(store, handoff)

        with pytest.raises(ExportCancelled):
            await uploader.run(cancel)

        assert store.keys() == ["2.xdr.gz"]

    @pytest.mark.asyncio
    async def test_drain_logs_upload_errors(self, caplog):
        """Upload failures during drain are logged and do not stop the drain."""
        store = InMemoryObjectStore()
        store.fail_keys.add("2.xdr.gz")
        handoff = Handoff(capacity=2)
        for seq in (2, 3):
            batch = ArchiveBatch(key=f"{seq}.xdr.gz", start_sequence=seq, end_sequence=seq)
            batch.append(synthetic_ledger(seq))
            await handoff.send(batch)
        await handoff.close()

        cancel = CancelToken()
        cancel.cancel()
        uploader = Uploader(store, handoff)

        with pytest.raises(ExportCancelled):
            await uploader.run(cancel)

        assert store.keys() == ["3.xdr.gz"]
        assert uploader.stats["batches_failed"] == 1
        assert "Error uploading 2.xdr.gz during shutdown" in caplog.text


class TestFailures:
    """Errors in one worker stop the pipeline."""

    @pytest.mark.asyncio
    async def test_upload_failure_stops_assembler(self):
        store = InMemoryObjectStore()
        store.fail_keys.add("10-19.xdr.gz")
        source = InMemoryLedgerSource.with_range(2, 99)

        assembler, uploader, results = await run_pipeline(
            ExporterConfig(10, 1), source, store, 2, 99
        )

        assert isinstance(results[0], HandoffClosedError)
        assert isinstance(results[1], UploadError)
        assert results[1].key == "10-19.xdr.gz"
        assert store.keys() == ["0-9.xdr.gz"]
        assert uploader.stats["batches_failed"] == 1
        # The assembler stopped well before the end of the range
        assert max(source.requested) < 99

    @pytest.mark.asyncio
    async def test_source_failure_lets_uploader_finish(self):
        """Batches completed before a source error are still written."""
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 99)
        source.fail_sequences.add(25)

        _, _, results = await run_pipeline(ExporterConfig(10, 1), source, store, 2, 99)

        assert isinstance(results[0], SourceError)
        assert results[0].sequence == 25
        assert results[1] is None
        assert store.keys() == ["0-9.xdr.gz", "10-19.xdr.gz"]


class TestIdempotence:
    """Re-exporting a range writes nothing new."""

    @pytest.mark.asyncio
    async def test_rerun_in_memory(self):
        store = InMemoryObjectStore()
        config = ExporterConfig(64, 10)

        await run_pipeline(config, InMemoryLedgerSource.with_range(2, 255), store, 2, 255)
        snapshot = {key: await store.get(key) for key in store.keys()}

        _, uploader, results = await run_pipeline(
            config, InMemoryLedgerSource.with_range(2, 255), store, 2, 255
        )

        assert results == [None, None]
        assert {key: await store.get(key) for key in store.keys()} == snapshot
        assert uploader.stats["batches_uploaded"] == 0
        assert uploader.stats["batches_skipped"] == 4

    @pytest.mark.asyncio
    async def test_rerun_on_filesystem(self, tmp_path):
        store = FilesystemObjectStore(tmp_path)
        await store.connect()
        config = ExporterConfig(10, 2)

        await run_pipeline(config, InMemoryLedgerSource.with_range(2, 39), store, 2, 39)
        files = sorted(p.relative_to(tmp_path).as_posix() for p in tmp_path.rglob("*") if p.is_file())
        mtimes = {p: (tmp_path / p).stat().st_mtime_ns for p in files}

        _, uploader, _ = await run_pipeline(
            config, InMemoryLedgerSource.with_range(2, 39), store, 2, 39
        )

        assert files == ["0-19/0-9.xdr.gz", "0-19/10-19.xdr.gz", "20-39/20-29.xdr.gz", "20-39/30-39.xdr.gz"]
        assert {p: (tmp_path / p).stat().st_mtime_ns for p in files} == mtimes
        assert uploader.stats["batches_skipped"] == 4
