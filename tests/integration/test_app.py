"""
Integration tests for ExporterApp and the command-line entry point.

Tests cover:
- Full export with manifest publication
- Range normalization against the source tip
- Shutdown request and close ordering
- Exit codes
"""

import asyncio
import json

import pytest

from datalake.ledger_exporter import main as cli
from datalake.ledger_exporter.app import ExporterApp
from datalake.ledger_exporter.codec import XdrBatchCodec, decompress
from datalake.ledger_exporter.config import AppConfig, LedgerRange
from datalake.ledger_exporter.errors import (
    ExportCancelled,
    InvalidConfigError,
    ManifestMismatchError,
    UploadError,
)
from datalake.ledger_exporter.manifest import MANIFEST_FILENAME, DatastoreManifest
from datalake.ledger_exporter.source.memory import InMemoryLedgerSource
from datalake.ledger_exporter.store.memory import InMemoryObjectStore


def make_config(ledgers_per_file=64, files_per_partition=10, destination_url="memory://lake"):
    return AppConfig.from_dict(
        {
            "network": "testnet",
            "destination_url": destination_url,
            "exporter": {
                "ledgers_per_file": ledgers_per_file,
                "files_per_partition": files_per_partition,
            },
        }
    )


class RecordingStore(InMemoryObjectStore):
    def __init__(self, events):
        super().__init__()
        self.events = events

    async def close(self):
        self.events.append("store")
        await super().close()


class RecordingSource(InMemoryLedgerSource):
    def __init__(self, events, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.events = events

    async def close(self):
        self.events.append("source")
        await super().close()


class TestExporterApp:
    """Tests for ExporterApp."""

    @pytest.mark.asyncio
    async def test_export_bounded_range(self):
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 300)
        app = ExporterApp(make_config(), source=source, store=store)

        try:
            await app.run(start=2, end=255)
        finally:
            await app.close()

        # The end is rounded up to 256, which opens a batch the range never fills
        assert app.ledger_range == LedgerRange(2, 256)
        assert source.prepared_range == LedgerRange(2, 256)
        assert store.keys() == [
            "0-639/0-63.xdr.gz",
            "0-639/128-191.xdr.gz",
            "0-639/192-255.xdr.gz",
            "0-639/64-127.xdr.gz",
            MANIFEST_FILENAME,
        ]
        assert app.stats["batches_uploaded"] == 4
        assert app.stats["batches_discarded"] == 1
        assert not app.stats["cancelled"]

    @pytest.mark.asyncio
    async def test_start_below_genesis_is_clamped(self):
        """L=1, P=10 over [1, 20] exports 2..20 as 19 objects."""
        store = InMemoryObjectStore()
        app = ExporterApp(
            make_config(1, 10), source=InMemoryLedgerSource.with_range(2, 20), store=store
        )

        await app.run(start=1, end=20)
        await app.close()

        keys = [key for key in store.keys() if key != MANIFEST_FILENAME]
        assert app.ledger_range == LedgerRange(2, 20)
        assert len(keys) == 19
        assert "0-9/2.xdr.gz" in keys
        assert "20-29/20.xdr.gz" in keys

    @pytest.mark.asyncio
    async def test_short_range_rounds_up_to_file_end(self):
        """L=10, P=1 over [0, 5] becomes [2, 10] and writes the complete first file."""
        store = InMemoryObjectStore()
        app = ExporterApp(
            make_config(10, 1), source=InMemoryLedgerSource.with_range(2, 10), store=store
        )

        await app.run(start=0, end=5)
        await app.close()

        assert app.ledger_range == LedgerRange(2, 10)
        assert store.keys() == ["0-9.xdr.gz", MANIFEST_FILENAME]
        batch = XdrBatchCodec().decode(decompress(await store.get("0-9.xdr.gz")))
        assert batch.start_sequence == 2
        assert batch.end_sequence == 9
        assert [lcm.sequence for lcm in batch.ledgers] == list(range(2, 10))

    @pytest.mark.asyncio
    async def test_manifest_written(self):
        store = InMemoryObjectStore()
        app = ExporterApp(
            make_config(1, 1), source=InMemoryLedgerSource.with_range(2, 5), store=store
        )

        await app.run(start=2, end=5)
        await app.close()

        manifest = json.loads(await store.get(MANIFEST_FILENAME))
        assert manifest == {
            "networkPassphrase": "Test SDF Network ; September 2015",
            "version": "1.0",
            "compression": "gzip",
            "ledgersPerFile": 1,
            "filesPerPartition": 1,
        }

    @pytest.mark.asyncio
    async def test_manifest_mismatch_writes_nothing(self):
        store = InMemoryObjectStore()
        await store.put(
            MANIFEST_FILENAME,
            DatastoreManifest.from_config(make_config(ledgers_per_file=1)).to_json(),
        )
        source = InMemoryLedgerSource.with_range(2, 200)
        app = ExporterApp(make_config(), source=source, store=store)

        with pytest.raises(ManifestMismatchError):
            await app.run(start=2, end=127)
        await app.close()

        assert store.keys() == [MANIFEST_FILENAME]
        assert source.prepared_range is None
        assert source.requested == []

    @pytest.mark.asyncio
    async def test_start_beyond_tip(self):
        app = ExporterApp(
            make_config(1, 1), source=InMemoryLedgerSource.with_range(2, 50), store=InMemoryObjectStore()
        )

        with pytest.raises(InvalidConfigError, match="beyond the latest"):
            await app.run(start=100, end=200)
        await app.close()

    @pytest.mark.asyncio
    async def test_from_last(self):
        store = InMemoryObjectStore()
        source = InMemoryLedgerSource.with_range(2, 100)
        app = ExporterApp(make_config(10, 1), source=source, store=store)

        task = asyncio.create_task(app.run(from_last=25))

        async def wait_for_objects():
            while "90-99.xdr.gz" not in store.keys():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(wait_for_objects(), timeout=2.0)
        app.request_shutdown("test done")

        with pytest.raises(ExportCancelled):
            await asyncio.wait_for(task, timeout=2.0)
        await app.close()

        # Tip 100 - 25 = 75, aligned down to 70; unbounded
        assert app.ledger_range == LedgerRange(70, 0)
        assert store.keys() == ["70-79.xdr.gz", "80-89.xdr.gz", "90-99.xdr.gz", MANIFEST_FILENAME]

    @pytest.mark.asyncio
    async def test_shutdown_request(self):
        """request_shutdown() stops an unbounded export with ExportCancelled."""
        store = InMemoryObjectStore()
        app = ExporterApp(
            make_config(10, 1), source=InMemoryLedgerSource.with_range(2, 15), store=store
        )

        task = asyncio.create_task(app.run(start=2, end=0))

        async def wait_for_first_batch():
            while "0-9.xdr.gz" not in store.keys():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(wait_for_first_batch(), timeout=2.0)
        app.request_shutdown("SIGTERM")

        with pytest.raises(ExportCancelled) as exc_info:
            await asyncio.wait_for(task, timeout=2.0)
        await app.close()

        assert exc_info.value.reason == "SIGTERM"
        assert app.stats["cancelled"]
        assert store.keys() == ["0-9.xdr.gz", MANIFEST_FILENAME]

    @pytest.mark.asyncio
    async def test_upload_failure_is_raised(self):
        store = InMemoryObjectStore()
        store.fail_keys.add("10-19.xdr.gz")
        app = ExporterApp(
            make_config(10, 1), source=InMemoryLedgerSource.with_range(2, 100), store=store
        )

        with pytest.raises(UploadError):
            await app.run(start=2, end=99)
        await app.close()

        assert app.cancel.cancelled

    @pytest.mark.asyncio
    async def test_close_order(self):
        """The object store is closed before the ledger source."""
        events = []
        app = ExporterApp(
            make_config(1, 1),
            source=RecordingSource(events),
            store=RecordingStore(events),
        )

        await app.close()
        await app.close()

        assert events == ["store", "source"]

    @pytest.mark.asyncio
    async def test_filesystem_destination(self, tmp_path):
        config = make_config(10, 1, destination_url=f"file://{tmp_path}")
        source = InMemoryLedgerSource.with_range(2, 40)

        app = ExporterApp(config, source=source)
        await app.run(start=2, end=29)
        await app.close()

        rerun = ExporterApp(config, source=InMemoryLedgerSource.with_range(2, 40))
        await rerun.run(start=2, end=29)
        await rerun.close()

        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "0-9.xdr.gz",
            "10-19.xdr.gz",
            "20-29.xdr.gz",
            MANIFEST_FILENAME,
        ]
        assert rerun.stats["batches_skipped"] == 3


class TestMain:
    """Tests for the command-line entry point."""

    def test_start_and_from_last_are_exclusive(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--start", "2", "--from-last", "10"])
        assert exc_info.value.code == 2

    def test_range_required(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code == 2

    def test_invalid_number(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--start", "-5"])
        assert exc_info.value.code == 2

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--start", "2", "--config", str(tmp_path / "missing.yaml")])
        assert exc_info.value.code == 2

    @pytest.mark.asyncio
    async def test_run_exporter_exit_codes(self, monkeypatch, tmp_path):
        """Clean exports exit 0 and bad ranges exit 2."""
        source = InMemoryLedgerSource.with_range(2, 30)
        monkeypatch.setattr(
            cli, "ExporterApp", lambda config: ExporterApp(config, source=source, store=InMemoryObjectStore())
        )
        config = make_config(10, 1)

        assert await cli.run_exporter(config, 2, 19, None) == cli.EXIT_OK
        assert await cli.run_exporter(config, 500, 600, None) == cli.EXIT_INVALID

    @pytest.mark.asyncio
    async def test_run_exporter_failure_exit_code(self, monkeypatch):
        store = InMemoryObjectStore()
        store.fail_keys.add("0-9.xdr.gz")
        monkeypatch.setattr(
            cli,
            "ExporterApp",
            lambda config: ExporterApp(config, source=InMemoryLedgerSource.with_range(2, 30), store=store),
        )

        assert await cli.run_exporter(make_config(10, 1), 2, 19, None) == cli.EXIT_FAILURE
