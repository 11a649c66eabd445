"""
Ledger records and the archive batches that group them.

An ArchiveBatch accumulates consecutive ledgers destined for one object
key. The assembler owns a batch until it completes; ownership then moves
to the uploader through the handoff.

Invariants:
    - ledgers[i + 1].sequence == ledgers[i].sequence + 1
    - start_sequence <= ledger.sequence <= end_sequence for every ledger
    - A batch is complete once its last ledger is end_sequence
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .errors import InvariantViolationError


@dataclass(frozen=True)
class LedgerRecord:
    """A single ledger as delivered by the ledger source.

    Attributes:
        sequence: Ledger sequence number (unsigned 32-bit)
        data: Opaque XDR-encoded ledger close meta
    """

    sequence: int
    data: bytes

    def __str__(self) -> str:
        return f"LedgerRecord(sequence={self.sequence}, size={len(self.data)})"


@dataclass
class ArchiveBatch:
    """Consecutive ledgers that will be stored as one object.

    Attributes:
        key: Object key derived from the batch's sequence range
        start_sequence: First sequence this batch was created for (inclusive)
        end_sequence: Last sequence this batch accepts (inclusive)
        ledgers: Ledgers appended so far, in order
    """

    key: str
    start_sequence: int
    end_sequence: int
    ledgers: List[LedgerRecord] = field(default_factory=list)

    @property
    def last_sequence(self) -> Optional[int]:
        """Sequence of the most recently appended ledger, if any."""
        if not self.ledgers:
            return None
        return self.ledgers[-1].sequence

    @property
    def ledger_count(self) -> int:
        return len(self.ledgers)

    @property
    def is_complete(self) -> bool:
        return self.last_sequence is not None and self.last_sequence >= self.end_sequence

    @property
    def size_bytes(self) -> int:
        return sum(len(ledger.data) for ledger in self.ledgers)

    def append(self, ledger: LedgerRecord) -> None:
        """Append the next ledger.

        Raises:
            InvariantViolationError: If the ledger does not directly follow
                the last one, or falls outside the batch's range
        """
        last = self.last_sequence
        if last is not None and ledger.sequence != last + 1:
            raise InvariantViolationError(last + 1, ledger.sequence, key=self.key)
        if not self.start_sequence <= ledger.sequence <= self.end_sequence:
            raise InvariantViolationError(
                self.start_sequence if last is None else last + 1,
                ledger.sequence,
                key=self.key,
            )
        self.ledgers.append(ledger)

    def __str__(self) -> str:
        return (
            f"ArchiveBatch(key={self.key}, range={self.start_sequence}-{self.end_sequence}, "
            f"ledgers={self.ledger_count})"
        )
