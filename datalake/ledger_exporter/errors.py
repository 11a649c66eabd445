"""
Error types for the ledger exporter.

This module defines every exception raised by the exporter core and its
adapters:
- ExporterError: Base exception
- InvalidConfigError: Configuration or ledger range violates invariants
- SourceError: Failure acquiring a ledger from the source
- InvariantViolationError: Sequential ordering broken inside a batch
- SerializeError / CompressError: Batch could not be encoded
- UploadError: Batch could not be written to the object store
- ExportCancelled: Cooperative cancellation (expected, not an operator error)

Invariants:
    - All errors inherit from ExporterError
    - Wrapped causes are chained with ``raise ... from``
    - Error messages are actionable
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ExporterError(Exception):
    """Base exception for all exporter errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "EXPORTER_ERROR"
        self.details = details or {}


class InvalidConfigError(ExporterError):
    """Configuration or requested range is invalid.

    Raised before any I/O is performed, except for manifest mismatches
    which are detected after reading the datastore manifest.
    """

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="INVALID_CONFIG",
            details={"field": field_name},
        )
        self.field_name = field_name


class ManifestMismatchError(InvalidConfigError):
    """Datastore manifest does not match the local configuration."""

    def __init__(self, message: str, field_name: str, expected: Any, actual: Any) -> None:
        super().__init__(message, field_name=field_name)
        self.code = "MANIFEST_MISMATCH"
        self.details.update({"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual


class SourceError(ExporterError):
    """Failed to acquire a ledger from the ledger source."""

    def __init__(self, message: str, sequence: Optional[int] = None) -> None:
        super().__init__(
            message,
            code="SOURCE_ERROR",
            details={"sequence": sequence},
        )
        self.sequence = sequence


class InvariantViolationError(ExporterError):
    """Ledgers were added to a batch out of sequence.

    This indicates a programming error upstream of the batch, never a
    transient condition.
    """

    def __init__(self, expected: int, actual: int, key: Optional[str] = None) -> None:
        super().__init__(
            f"ledgers must be added sequentially: expected {expected}, got {actual}",
            code="INVARIANT_VIOLATION",
            details={"expected": expected, "actual": actual, "key": key},
        )
        self.expected = expected
        self.actual = actual


class SerializeError(ExporterError):
    """Batch could not be serialized by the codec."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="SERIALIZE_ERROR", details={"key": key})


class CompressError(ExporterError):
    """Serialized batch could not be compressed."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="COMPRESS_ERROR", details={"key": key})


class UploadError(ExporterError):
    """Compressed batch could not be written to the object store."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="UPLOAD_ERROR", details={"key": key})
        self.key = key


class ObjectStoreError(ExporterError):
    """Object store operation failed."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="OBJECT_STORE_ERROR", details={"key": key})
        self.key = key


class ObjectNotFoundError(ObjectStoreError):
    """Requested object does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__(f"object not found: {key}", key=key)
        self.code = "OBJECT_NOT_FOUND"


class HandoffClosedError(ExporterError):
    """The handoff between assembler and uploader no longer accepts batches."""

    def __init__(self, message: str = "handoff is closed") -> None:
        super().__init__(message, code="HANDOFF_CLOSED")


class ExportCancelled(ExporterError):
    """The export was cancelled cooperatively.

    Surfaced from ``run()`` so callers can tell a requested shutdown apart
    from a clean finish; the CLI does not treat it as a failure.
    """

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(f"export cancelled: {reason}", code="CANCELLED", details={"reason": reason})
        self.reason = reason
