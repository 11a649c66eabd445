"""
Base protocol for ledger sources.

A ledger source hands out ledgers one at a time, by sequence number. The
batch assembler only depends on the LedgerSource protocol; the concrete
backend is selected once at startup.

Invariants:
    - A successful get(cancel, seq) returns a record whose sequence is seq
    - get() blocks until the ledger is available or the token fires
    - Transient failures are retried inside the backend; get() raises
      SourceError only once retrying is pointless

How to change safely:
    - Protocol changes require updating all implementations
    - Keep prepare() idempotent
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Protocol, runtime_checkable

from ..errors import InvalidConfigError

if TYPE_CHECKING:
    from ..batch import LedgerRecord
    from ..cancel import CancelToken
    from ..config import LedgerRange


@runtime_checkable
class LedgerSource(Protocol):
    """Protocol for ledger source backends.

    Example:
        >>> source = RpcLedgerSource("https://soroban-testnet.stellar.org")
        >>> await source.prepare(LedgerRange(start=2, end=255))
        >>> ledger = await source.get(token, 2)
    """

    @abstractmethod
    async def prepare(self, ledger_range: "LedgerRange") -> None:
        """Prepare the backend to serve ``ledger_range``.

        Called once before get(); calling it again with the same range is a no-op.

        Raises:
            SourceError: If the range cannot be served
        """
        ...

    @abstractmethod
    async def get(self, cancel: "CancelToken", sequence: int) -> "LedgerRecord":
        """Fetch the ledger with the given sequence.

        Raises:
            ExportCancelled: If the token fires while waiting
            SourceError: If the ledger cannot be fetched
        """
        ...

    @abstractmethod
    async def latest_sequence(self) -> int:
        """Sequence of the latest ledger closed on the network (the tip)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...


def create_ledger_source(options: Dict[str, Any]) -> LedgerSource:
    """Factory function to create a ledger source from ``ledger_source`` options.

    Raises:
        InvalidConfigError: If the source type is unknown or options are invalid
    """
    from .rpc import RpcLedgerSource

    source_type = str(options.get("type", "rpc")).lower()

    if source_type == "rpc":
        return RpcLedgerSource.from_options(options)
    else:
        raise InvalidConfigError(
            f"Unsupported ledger source type '{source_type}'. Must be one of: rpc",
            field_name="ledger_source.type",
        )
