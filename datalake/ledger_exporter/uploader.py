"""
Uploader: serializes, compresses and writes completed batches.

The uploader consumes batches from the handoff and writes each one to the
object store at its key with put-if-absent, so replaying a range after a
restart is harmless.

Batch lifecycle:
    Received -> Serialized -> Compressed -> (Uploaded | AlreadyExists)

Invariants:
    - Each received batch is written at most once by this process
    - A failed upload stops the run loop and abandons the handoff
    - On cancellation every batch already handed off is still uploaded;
      per-batch errors during that drain are logged, not raised

How to change safely:
    - Changing the codec or compression needs a manifest schema bump
    - Keep drain behaviour; shutdown must not lose a completed batch
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from .batch import ArchiveBatch
from .cancel import CancelToken
from .codec import CONTENT_TYPE, LedgerBatchCodec, XdrBatchCodec, compress
from .errors import (
    CompressError,
    ExportCancelled,
    ExporterError,
    SerializeError,
    UploadError,
)
from .handoff import Handoff
from .store.base import ObjectStore

_CANCELLED = object()


class Uploader:
    """Writes completed batches to the object store.

    Attributes:
        store: Destination object store
        handoff: Source of completed batches
        codec: Batch serializer

    Example:
        >>> uploader = Uploader(store, handoff)
        >>> await uploader.run(token)  # Runs until the handoff is closed
    """

    def __init__(
        self,
        store: ObjectStore,
        handoff: Handoff,
        codec: Optional[LedgerBatchCodec] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.handoff = handoff
        self.codec = codec or XdrBatchCodec()
        self.logger = logger or logging.getLogger(__name__)

        self._uploaded_count = 0
        self._skipped_count = 0
        self._failed_count = 0
        self._bytes_written = 0

    async def upload(self, batch: ArchiveBatch) -> bool:
        """Serialize, compress and write one batch.

        Returns:
            True if the object was created, False if it already existed

        Raises:
            SerializeError: If the codec rejects the batch
            CompressError: If compression fails
            UploadError: If the object store write fails
        """
        self.logger.info(
            f"Uploading {batch.key}",
            extra={
                "key": batch.key,
                "start": batch.start_sequence,
                "end": batch.end_sequence,
                "ledgers": batch.ledger_count,
            },
        )
        started = time.monotonic()

        try:
            raw = self.codec.encode(batch.start_sequence, batch.end_sequence, batch.ledgers)
        except SerializeError:
            raise
        except Exception as e:
            raise SerializeError(f"failed to get binary data for {batch.key}: {e}", key=batch.key) from e

        try:
            blob = compress(raw)
        except CompressError:
            raise
        except Exception as e:
            raise CompressError(f"failed to compress data for {batch.key}: {e}", key=batch.key) from e

        try:
            created = await self.store.put_if_absent(batch.key, blob, content_type=CONTENT_TYPE)
        except ExporterError as e:
            raise UploadError(f"error uploading {batch.key}: {e.message}", key=batch.key) from e
        except Exception as e:
            raise UploadError(f"error uploading {batch.key}: {e}", key=batch.key) from e

        if created:
            self._uploaded_count += 1
            self._bytes_written += len(blob)
        else:
            self._skipped_count += 1
            self.logger.info("Object already exists, treating as uploaded", extra={"key": batch.key})

        self.logger.debug(
            "Batch written",
            extra={
                "key": batch.key,
                "object_created": created,
                "raw_bytes": len(raw),
                "compressed_bytes": len(blob),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return created

    async def run(self, cancel: CancelToken) -> None:
        """Upload batches until the handoff closes.

        Raises:
            ExportCancelled: After draining, if the token fired
            SerializeError, CompressError, UploadError: If a batch fails outside
                the drain; the handoff is abandoned first
        """
        self.logger.info("Uploader starting")
        while True:
            if cancel.cancelled:
                await self._drain()
                self.logger.info("Uploader stopped", extra={"reason": cancel.reason})
                raise ExportCancelled(cancel.reason or "cancelled")

            batch = await self._receive(cancel)
            if batch is _CANCELLED:
                continue
            if batch is None:
                self.logger.info("Handoff closed, uploader finished", extra=self.stats)
                return

            try:
                await self.upload(batch)
            except ExporterError:
                self._failed_count += 1
                self.handoff.abandon()
                raise

    async def _receive(self, cancel: CancelToken):
        """Receive the next batch; None once the handoff is closed, _CANCELLED if the token fired."""
        receiver = asyncio.ensure_future(self.handoff.receive())
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {receiver, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not receiver.done():
                receiver.cancel()

        if receiver in done:
            return receiver.result()
        await asyncio.gather(receiver, return_exceptions=True)
        return _CANCELLED

    async def _drain(self) -> None:
        self.logger.info("Stopping uploader, draining remaining batches from handoff")
        while True:
            batch = await self.handoff.receive()
            if batch is None:
                return
            try:
                await self.upload(batch)
            except ExporterError as e:
                self._failed_count += 1
                self.logger.error(
                    f"Error uploading {batch.key} during shutdown: {e.message}",
                    extra={"key": batch.key, "code": e.code},
                )

    @property
    def stats(self) -> dict:
        """Get uploader statistics."""
        return {
            "batches_uploaded": self._uploaded_count,
            "batches_skipped": self._skipped_count,
            "batches_failed": self._failed_count,
            "bytes_written": self._bytes_written,
        }
