"""
In-memory ledger source for testing.

Ledgers can be supplied up front or added while an export runs; get()
blocks until the requested ledger has been added, which makes it easy to
exercise unbounded runs and cancellation.

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the LedgerSource protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import struct
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..batch import LedgerRecord
from ..cancel import CancelToken
from ..config import LedgerRange
from ..errors import SourceError

logger = logging.getLogger(__name__)


def synthetic_ledger(sequence: int) -> LedgerRecord:
    """A minimal, deterministic V0 LedgerCloseMeta for tests.

    The payload is valid XDR with an empty transaction set, so it survives
    a decode through the stellar-sdk types.
    """
    ledger_hash = hashlib.sha256(f"ledger-{sequence}".encode("utf-8")).digest()
    prev_hash = hashlib.sha256(f"ledger-{sequence - 1}".encode("utf-8")).digest()
    empty_hash = bytes(32)

    scp_value = empty_hash + struct.pack(">QIi", sequence * 5, 0, 0)
    header = b"".join(
        (
            struct.pack(">I", 21),
            prev_hash,
            scp_value,
            empty_hash,
            empty_hash,
            struct.pack(">IqqIQIII", sequence, 10**18, 0, 0, 0, 100, 5_000_000, 1000),
            empty_hash * 4,
            struct.pack(">i", 0),
        )
    )
    header_entry = ledger_hash + header + struct.pack(">i", 0)
    tx_set = prev_hash + struct.pack(">I", 0)
    data = struct.pack(">i", 0) + header_entry + tx_set + struct.pack(">III", 0, 0, 0)
    return LedgerRecord(sequence=sequence, data=data)


class InMemoryLedgerSource:
    """In-memory implementation of LedgerSource.

    Attributes:
        latency: Seconds each get() sleeps before returning
        fail_sequences: Sequences whose fetch raises SourceError
        requested: Sequences passed to get(), in call order

    Example:
        >>> source = InMemoryLedgerSource.with_range(2, 255)
        >>> ledger = await source.get(token, 2)
    """

    def __init__(
        self,
        ledgers: Optional[Iterable[LedgerRecord]] = None,
        latency: float = 0.0,
    ) -> None:
        self.latency = latency
        self.fail_sequences: Set[int] = set()
        self.requested: List[int] = []
        self.prepared_range: Optional[LedgerRange] = None
        self.closed = False
        self._ledgers: Dict[int, LedgerRecord] = {}
        self._added = asyncio.Condition()
        for ledger in ledgers or ():
            self._ledgers[ledger.sequence] = ledger

    @classmethod
    def with_range(
        cls,
        start: int,
        end: int,
        factory: Callable[[int], LedgerRecord] = synthetic_ledger,
        latency: float = 0.0,
    ) -> InMemoryLedgerSource:
        """Source pre-populated with ledgers start..end inclusive."""
        return cls((factory(seq) for seq in range(start, end + 1)), latency=latency)

    async def prepare(self, ledger_range: LedgerRange) -> None:
        self.prepared_range = ledger_range

    async def get(self, cancel: CancelToken, sequence: int) -> LedgerRecord:
        return await cancel.guard(self._get(sequence))

    async def _get(self, sequence: int) -> LedgerRecord:
        self.requested.append(sequence)
        if self.latency:
            await asyncio.sleep(self.latency)
        if sequence in self.fail_sequences:
            raise SourceError(f"injected failure fetching ledger {sequence}", sequence=sequence)

        async with self._added:
            await self._added.wait_for(lambda: sequence in self._ledgers)
            return self._ledgers[sequence]

    async def latest_sequence(self) -> int:
        return max(self._ledgers, default=0)

    async def close(self) -> None:
        self.closed = True

    async def add_ledger(self, ledger: LedgerRecord) -> None:
        """Make a ledger available, waking any waiting get()."""
        async with self._added:
            self._ledgers[ledger.sequence] = ledger
            self._added.notify_all()
