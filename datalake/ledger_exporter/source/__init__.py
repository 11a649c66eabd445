"""
Ledger sources for the exporter.

- Stellar RPC (production)
- In-memory (for testing)

Invariants:
    - get(seq) returns the ledger with that exact sequence
    - Backends retry transient errors; the exporter core does not
"""

from .base import LedgerSource, create_ledger_source
from .memory import InMemoryLedgerSource, synthetic_ledger
from .rpc import RpcError, RpcLedgerSource

__all__ = [
    # Protocol
    "LedgerSource",
    # Factory
    "create_ledger_source",
    # Implementations
    "RpcLedgerSource",
    "RpcError",
    "InMemoryLedgerSource",
    "synthetic_ledger",
]
