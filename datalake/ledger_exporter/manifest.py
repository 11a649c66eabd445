"""
Datastore manifest.

A single ``manifest.json`` at the datastore root records the schema every
sibling object was written with. The exporter reads it on startup and
refuses to write into a datastore created with a different schema; if the
manifest is absent it is created with put-if-absent.

Manifest format:
    {"networkPassphrase": "...", "version": "1.0", "compression": "gzip",
     "ledgersPerFile": 64, "filesPerPartition": 10}

Invariants:
    - The manifest is written once and never modified
    - ``version`` is the datalake schema version, not the exporter version

How to change safely:
    - Bump SCHEMA_VERSION whenever keys or the object frame change
    - New fields must be optional when reading old manifests
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from .codec import COMPRESSION
from .config import AppConfig
from .errors import ManifestMismatchError, ObjectNotFoundError, ObjectStoreError
from .store.base import ObjectStore

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"

SCHEMA_VERSION = "1.0"


@dataclass(frozen=True)
class DatastoreManifest:
    """Schema under which a datastore's objects were written.

    Attributes:
        network_passphrase: Network the ledgers belong to
        version: Datalake schema version
        compression: Object compression algorithm
        ledgers_per_file: Ledgers per object
        files_per_partition: Objects per partition directory
    """

    network_passphrase: str
    version: str
    compression: str
    ledgers_per_file: int
    files_per_partition: int

    @classmethod
    def from_config(cls, config: AppConfig) -> DatastoreManifest:
        return cls(
            network_passphrase=config.network_passphrase,
            version=SCHEMA_VERSION,
            compression=COMPRESSION,
            ledgers_per_file=config.exporter.ledgers_per_file,
            files_per_partition=config.exporter.files_per_partition,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON document layout."""
        return {
            "networkPassphrase": self.network_passphrase,
            "version": self.version,
            "compression": self.compression,
            "ledgersPerFile": self.ledgers_per_file,
            "filesPerPartition": self.files_per_partition,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DatastoreManifest:
        return cls(
            network_passphrase=str(data.get("networkPassphrase", "")),
            version=str(data.get("version", "")),
            compression=str(data.get("compression", "")),
            ledgers_per_file=int(data.get("ledgersPerFile", 0)),
            files_per_partition=int(data.get("filesPerPartition", 0)),
        )

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")


def compare_manifests(expected: DatastoreManifest, actual: DatastoreManifest) -> None:
    """Check ``actual`` against ``expected``.

    Empty strings and zeros in ``expected`` match anything.

    Raises:
        ManifestMismatchError: On the first mismatching field
    """
    fields = (
        ("networkPassphrase", expected.network_passphrase, actual.network_passphrase),
        ("version", expected.version, actual.version),
        ("compression", expected.compression, actual.compression),
        ("ledgersPerFile", expected.ledgers_per_file, actual.ledgers_per_file),
        ("filesPerPartition", expected.files_per_partition, actual.files_per_partition),
    )
    for name, want, got in fields:
        if want and want != got:
            raise ManifestMismatchError(
                f"datastore config mismatch: {name} local={want!r}, datastore={got!r}",
                field_name=name,
                expected=want,
                actual=got,
            )


async def read_manifest(store: ObjectStore) -> DatastoreManifest:
    """Read the datastore manifest.

    Raises:
        ObjectNotFoundError: If no manifest exists
        ObjectStoreError: If the manifest cannot be read or parsed
    """
    data = await store.get(MANIFEST_FILENAME)
    try:
        return DatastoreManifest.from_dict(json.loads(data.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValueError, AttributeError) as e:
        raise ObjectStoreError(
            f"invalid JSON in manifest file {MANIFEST_FILENAME!r}: {e}", key=MANIFEST_FILENAME
        ) from e


async def publish_manifest(
    store: ObjectStore, expected: DatastoreManifest
) -> Tuple[DatastoreManifest, bool]:
    """Ensure the datastore manifest exists and matches ``expected``.

    Returns:
        (manifest, created) where created is True if this call wrote it

    Raises:
        ManifestMismatchError: If an existing manifest disagrees
        ObjectStoreError: If the manifest cannot be read or written
    """
    try:
        existing = await read_manifest(store)
    except ObjectNotFoundError:
        existing = None

    if existing is not None:
        compare_manifests(expected, existing)
        logger.info("Datastore manifest verified", extra=existing.to_dict())
        return existing, False

    created = await store.put_if_absent(
        MANIFEST_FILENAME, expected.to_json(), content_type="application/json"
    )
    if created:
        logger.info("Datastore manifest created", extra=expected.to_dict())
        return expected, True

    # Another writer got there first; hold it to the same schema.
    existing = await read_manifest(store)
    compare_manifests(expected, existing)
    return existing, False
