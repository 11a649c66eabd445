"""
Serialization and compression of archive batches.

Each object body is the XDR encoding of a ``LedgerCloseMetaBatch``:

    uint32 startSequence
    uint32 endSequence
    LedgerCloseMeta ledgerCloseMetas<>   (count, then each meta's XDR)

Ledger payloads arrive from the source already XDR-encoded, so encoding
only writes the batch header and concatenates them. Decoding parses the
frame with stellar-sdk's generated XDR types, which is what downstream
datalake readers use as well.

Invariants:
    - Compression is gzip at the default level, independent of configuration
    - decode(encode(batch)) returns the same sequences and payloads
    - Every payload is a complete LedgerCloseMeta; XDR keeps it 4-byte aligned

How to change safely:
    - Frame changes require a new manifest schema version
    - Keep decode() able to read every version ever written
"""

from __future__ import annotations

import gzip
import io
import struct
from dataclasses import dataclass
from typing import List, Protocol, Sequence, runtime_checkable

from stellar_sdk import xdr as stellar_xdr

from .batch import LedgerRecord
from .errors import CompressError, SerializeError

COMPRESSION = "gzip"

CONTENT_TYPE = "application/octet-stream"

_BATCH_HEADER = struct.Struct(">III")


@dataclass(frozen=True)
class DecodedBatch:
    """A batch read back from its serialized form."""

    start_sequence: int
    end_sequence: int
    ledgers: List[LedgerRecord]


@runtime_checkable
class LedgerBatchCodec(Protocol):
    """Protocol for batch serializers."""

    def encode(
        self, start_sequence: int, end_sequence: int, ledgers: Sequence[LedgerRecord]
    ) -> bytes:
        """Serialize a batch frame."""
        ...

    def decode(self, data: bytes) -> DecodedBatch:
        """Parse a batch frame."""
        ...


def ledger_sequence(meta: stellar_xdr.LedgerCloseMeta) -> int:
    """Sequence number carried in a LedgerCloseMeta header, for any meta version."""
    versioned = getattr(meta, f"v{meta.v}", None)
    if versioned is None:
        raise SerializeError(f"unsupported LedgerCloseMeta version {meta.v}")
    return versioned.ledger_header.header.ledger_seq.uint32


class XdrBatchCodec:
    """``LedgerCloseMetaBatch`` codec."""

    def encode(
        self, start_sequence: int, end_sequence: int, ledgers: Sequence[LedgerRecord]
    ) -> bytes:
        """Serialize a batch.

        Raises:
            SerializeError: If a header value does not fit uint32 or a payload
                is not aligned XDR
        """
        buf = io.BytesIO()
        try:
            buf.write(_BATCH_HEADER.pack(start_sequence, end_sequence, len(ledgers)))
        except struct.error as e:
            raise SerializeError(f"failed to serialize ledger batch header: {e}") from e

        for ledger in ledgers:
            if len(ledger.data) % 4:
                raise SerializeError(
                    f"ledger {ledger.sequence} payload is not XDR encoded "
                    f"({len(ledger.data)} bytes is not a multiple of 4)"
                )
            buf.write(ledger.data)
        return buf.getvalue()

    def decode(self, data: bytes) -> DecodedBatch:
        """Parse a batch produced by encode().

        Raises:
            SerializeError: If the frame is truncated or malformed
        """
        try:
            batch = stellar_xdr.LedgerCloseMetaBatch.from_xdr_bytes(data)
        except Exception as e:
            raise SerializeError(f"invalid LedgerCloseMetaBatch: {e}") from e

        ledgers: List[LedgerRecord] = []
        consumed = _BATCH_HEADER.size
        for meta in batch.ledger_close_metas:
            payload = meta.to_xdr_bytes()
            consumed += len(payload)
            ledgers.append(LedgerRecord(sequence=ledger_sequence(meta), data=payload))

        if consumed != len(data):
            raise SerializeError(
                f"{len(data) - consumed} trailing bytes after LedgerCloseMetaBatch frame"
            )

        return DecodedBatch(
            start_sequence=batch.start_sequence.uint32,
            end_sequence=batch.end_sequence.uint32,
            ledgers=ledgers,
        )


def compress(data: bytes) -> bytes:
    """Compress data with gzip at the default level.

    The gzip header timestamp is zeroed so output is reproducible.

    Raises:
        CompressError: If compression fails
    """
    buf = io.BytesIO()
    try:
        with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
            gz.write(data)
    except (OSError, TypeError, ValueError) as e:
        raise CompressError(f"failed to compress data: {e}") from e
    return buf.getvalue()


def decompress(blob: bytes) -> bytes:
    """Inverse of compress()."""
    try:
        return gzip.decompress(blob)
    except (OSError, EOFError) as e:
        raise CompressError(f"failed to decompress data: {e}") from e
