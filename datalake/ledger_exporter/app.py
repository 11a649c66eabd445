"""
Exporter application: wires the pipeline together and runs it.

    Ledger Source -> BatchAssembler -> Handoff -> Uploader -> Object Store

The app owns the adapters and the shared cancel token. The first worker to
fail cancels the token so its peer stops; the uploader then drains any
batch already handed off before returning.

Invariants:
    - The datastore manifest is verified (or created) before any batch is written
    - Adapters are closed in reverse dependency order: object store, then source
    - A requested shutdown surfaces as ExportCancelled, not as a failure

How to change safely:
    - Test shutdown sequence thoroughly
    - Keep range resolution before manifest publication so bad ranges fail
      without touching the datastore
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .assembler import BatchAssembler
from .cancel import CancelToken
from .config import AppConfig, LedgerRange, resolve_ledger_range
from .errors import ExportCancelled, HandoffClosedError
from .handoff import Handoff
from .manifest import DatastoreManifest, publish_manifest
from .source.base import LedgerSource, create_ledger_source
from .store.base import ObjectStore, create_object_store
from .uploader import Uploader


class ExporterApp:
    """Ledger exporter orchestrator.

    Attributes:
        config: Exporter configuration
        source: Ledger source
        store: Destination object store
        cancel: Shared cancellation token

    Example:
        >>> app = ExporterApp(config)
        >>> try:
        ...     await app.run(start=2, end=255)
        ... finally:
        ...     await app.close()
    """

    def __init__(
        self,
        config: AppConfig,
        source: Optional[LedgerSource] = None,
        store: Optional[ObjectStore] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.source = source or create_ledger_source(config.ledger_source)
        self.store = store or create_object_store(config.destination_url, config.s3)
        self.cancel = CancelToken()

        self.handoff: Optional[Handoff] = None
        self.assembler: Optional[BatchAssembler] = None
        self.uploader: Optional[Uploader] = None
        self.ledger_range: Optional[LedgerRange] = None
        self._closed = False

    async def resolve_range(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        from_last: Optional[int] = None,
    ) -> LedgerRange:
        """Normalize the requested range against the network tip.

        Raises:
            InvalidConfigError: If the range is invalid
        """
        latest = await self.source.latest_sequence()
        self.logger.info("Latest network ledger", extra={"latest_ledger": latest})
        return resolve_ledger_range(
            start,
            end,
            from_last,
            self.config.exporter.ledgers_per_file,
            latest_sequence=latest,
        )

    async def run(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        from_last: Optional[int] = None,
    ) -> None:
        """Export the requested range.

        Raises:
            ExportCancelled: If request_shutdown() was called
            InvalidConfigError: If the range or manifest is invalid
            ExporterError: If the source or upload fails
        """
        self.logger.info("Starting ledger exporter")
        self.config.log_config()

        await self.store.connect()
        self.ledger_range = await self.resolve_range(start, end, from_last)

        await publish_manifest(self.store, DatastoreManifest.from_config(self.config))
        await self.source.prepare(self.ledger_range)

        self.handoff = Handoff(capacity=1)
        self.assembler = BatchAssembler(
            self.config.exporter, self.source, self.handoff, logger=self.logger.getChild("assembler")
        )
        self.uploader = Uploader(self.store, self.handoff, logger=self.logger.getChild("uploader"))

        await self._run_pipeline(self.ledger_range)

    async def _run_pipeline(self, ledger_range: LedgerRange) -> None:
        assembler_task = asyncio.create_task(
            self.assembler.run(self.cancel, ledger_range.start, ledger_range.end),
            name="assembler",
        )
        uploader_task = asyncio.create_task(self.uploader.run(self.cancel), name="uploader")

        error: Optional[BaseException] = None
        pending = {assembler_task, uploader_task}
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                # A closed handoff is a symptom of the peer failing; report the cause.
                for task in sorted(done, key=lambda t: isinstance(t.exception(), HandoffClosedError)):
                    exc = task.exception()
                    if exc is None or isinstance(exc, ExportCancelled):
                        continue
                    if error is not None:
                        self.logger.debug(f"{task.get_name()} stopped after failure: {exc}")
                        continue
                    error = exc
                    self.logger.warning(
                        f"{task.get_name()} failed, stopping pipeline",
                        extra={"worker": task.get_name(), "error": str(exc)},
                    )
                    self.cancel.cancel(f"{task.get_name()} failed")
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self.logger.info("Export pipeline stopped", extra=self.stats)

        if error is not None:
            raise error
        if self.cancel.cancelled:
            raise ExportCancelled(self.cancel.reason or "cancelled")

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        """Request graceful shutdown."""
        self.logger.info("Shutdown requested", extra={"reason": reason})
        self.cancel.cancel(reason)

    async def close(self) -> None:
        """Close adapters: object store first, then ledger source."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.store.close()
        finally:
            await self.source.close()
        self.logger.info("Shutting down ledger exporter")

    @property
    def stats(self) -> dict:
        """Combined assembler and uploader statistics."""
        stats: dict = {"cancelled": self.cancel.cancelled}
        if self.assembler is not None:
            stats.update(self.assembler.stats)
        if self.uploader is not None:
            stats.update(self.uploader.stats)
        return stats
