"""
Ledger Exporter - exports blockchain ledgers into an object-store datalake.

Ledgers are fetched one at a time from a ledger source, grouped into
fixed-size batches aligned to a global partition grid, compressed, and
written once each at a deterministic key.

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌──────────┐     ┌──────────────┐
    │   Ledger    │────▶│    Batch     │────▶│ Handoff  │────▶│   Uploader   │
    │   Source    │     │  Assembler   │     │ (size 1) │     │              │
    └─────────────┘     └──────────────┘     └──────────┘     └──────┬───────┘
                                                                     │
                                                                     ▼
                                                            ┌────────────────┐
                                                            │  Object Store  │
                                                            │ (S3/file/mem)  │
                                                            └────────────────┘

Invariants:
    - Ledgers inside a batch are strictly sequential with no gaps
    - Batches are emitted in strictly increasing start sequence
    - Object keys depend only on (sequence, ledgers_per_file, files_per_partition)
    - Objects are written with put-if-absent, so re-runs never overwrite

How to change safely:
    - Never change key derivation for an existing datalake; bump the
      manifest schema version instead
    - Keep the handoff bounded so backpressure reaches the source

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
