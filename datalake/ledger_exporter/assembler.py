"""
Batch assembler: groups ledgers from the source into archive batches.

The assembler walks a ledger range in order, appends each ledger to the
pending batch for its object key, and sends every batch that completes to
the handoff. The handoff is bounded, so a slow uploader stalls the
assembler and, through it, the source.

Invariants:
    - Batches are sent in strictly increasing start sequence
    - Only complete batches are sent; each is sent exactly once
    - The handoff is closed exactly once when run() returns, for any reason
    - Cancellation is checked before every source fetch, not before sends,
      so a batch already in flight still reaches the uploader's drain

How to change safely:
    - Keep the first-batch boundary rule; it keeps keys on the global grid
    - Never retry source errors here; the source backend owns retries
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .batch import ArchiveBatch, LedgerRecord
from .cancel import CancelToken
from .config import ExporterConfig
from .errors import ExportCancelled, ExporterError, SourceError
from .handoff import Handoff
from .keys import file_bounds
from .source.base import LedgerSource


class BatchAssembler:
    """Drives the ledger source and emits completed batches.

    Attributes:
        config: Batch schema (ledgers per file, files per partition)
        source: Ledger source to read from
        handoff: Destination for completed batches

    Example:
        >>> assembler = BatchAssembler(config, source, handoff)
        >>> await assembler.run(token, 2, 255)
    """

    def __init__(
        self,
        config: ExporterConfig,
        source: LedgerSource,
        handoff: Handoff,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.source = source
        self.handoff = handoff
        self.logger = logger or logging.getLogger(__name__)

        self._pending: Dict[str, ArchiveBatch] = {}
        self._ledger_count = 0
        self._emitted_count = 0
        self._discarded_count = 0

    async def run(self, cancel: CancelToken, start: int, end: int) -> None:
        """Export ledgers ``start``..``end`` inclusive; ``end`` of 0 is unbounded.

        Raises:
            ExportCancelled: If the token fires
            SourceError: If a ledger cannot be fetched
            InvariantViolationError: If ledgers arrive out of order
        """
        self.logger.info(
            "Batch assembler starting",
            extra={"start": start, "end": end, "bounded": end != 0},
        )
        try:
            sequence = start
            while end == 0 or sequence <= end:
                if cancel.cancelled:
                    self.logger.info("Batch assembler stopping", extra={"next_sequence": sequence})
                    raise ExportCancelled(cancel.reason or "cancelled")

                ledger = await self._fetch(cancel, sequence)
                await self.add_ledger(ledger)
                sequence += 1

            self._discard_incomplete()
            self.logger.info(
                "Batch assembler finished",
                extra={"ledgers": self._ledger_count, "batches": self._emitted_count},
            )
        finally:
            await self.handoff.close()

    async def _fetch(self, cancel: CancelToken, sequence: int) -> LedgerRecord:
        try:
            ledger = await self.source.get(cancel, sequence)
        except ExportCancelled:
            raise
        except ExporterError as e:
            raise SourceError(
                f"failed to fetch ledger {sequence} from source: {e.message}", sequence=sequence
            ) from e
        except Exception as e:
            raise SourceError(
                f"failed to fetch ledger {sequence} from source: {e}", sequence=sequence
            ) from e

        if ledger.sequence != sequence:
            raise SourceError(
                f"source returned ledger {ledger.sequence} when {sequence} was requested",
                sequence=sequence,
            )
        return ledger

    async def add_ledger(self, ledger: LedgerRecord) -> None:
        """Append a ledger to its batch, sending the batch if it completes.

        Blocks while the handoff is full.

        Raises:
            InvariantViolationError: If the ledger does not follow the batch's last ledger
        """
        sequence = ledger.sequence
        key = self.config.object_key(sequence)

        batch = self._pending.get(key)
        if batch is None:
            batch = self._new_batch(key, sequence)
            self._pending[key] = batch

        batch.append(ledger)
        self._ledger_count += 1

        if sequence >= batch.end_sequence:
            await self.handoff.send(batch)
            del self._pending[key]
            self._emitted_count += 1
            self.logger.debug(
                "Batch completed",
                extra={"key": key, "start": batch.start_sequence, "end": batch.end_sequence},
            )

    def _new_batch(self, key: str, sequence: int) -> ArchiveBatch:
        # The first file starts at 0 but the chain does not, and an unaligned
        # start would drift off the grid; always close the batch at its file end.
        _, end_sequence = file_bounds(sequence, self.config.ledgers_per_file)
        return ArchiveBatch(key=key, start_sequence=sequence, end_sequence=end_sequence)

    def _discard_incomplete(self) -> None:
        for key, batch in self._pending.items():
            self._discarded_count += 1
            self.logger.warning(
                "Discarding incomplete batch at end of range",
                extra={
                    "key": key,
                    "start": batch.start_sequence,
                    "last": batch.last_sequence,
                    "end": batch.end_sequence,
                },
            )
        self._pending.clear()

    @property
    def stats(self) -> dict:
        """Get assembler statistics."""
        return {
            "ledgers_assembled": self._ledger_count,
            "batches_emitted": self._emitted_count,
            "batches_discarded": self._discarded_count,
            "pending_batches": len(self._pending),
        }
