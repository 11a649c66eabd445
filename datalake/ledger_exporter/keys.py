"""
Object key derivation for exported ledger batches.

A key is a pure function of a ledger sequence number and the two schema
integers (ledgers per file, files per partition). Writers use it to place
batches and offline readers use it to locate them, so it must never change
for an existing datalake.

Key shape:
    {partitionStart}-{partitionEnd}/{fileStart}[-{fileEnd}].xdr.gz   (P > 1)
    {fileStart}[-{fileEnd}].xdr.gz                                   (P <= 1)

The ``-{fileEnd}`` segment is omitted when a file holds a single ledger.

Invariants:
    - Referentially transparent, no I/O
    - Every sequence in [fileStart, fileEnd] maps to the same key
"""

from __future__ import annotations

from .errors import InvalidConfigError

FILE_SUFFIX = ".xdr.gz"

MAX_UINT32 = 2**32 - 1


def file_bounds(sequence: int, ledgers_per_file: int) -> tuple[int, int]:
    """Return the inclusive (start, end) sequence range of the file holding ``sequence``."""
    if ledgers_per_file < 1:
        raise InvalidConfigError(
            f"Invalid ledgers per file ({ledgers_per_file}): must be at least 1",
            field_name="ledgers_per_file",
        )
    start = (sequence // ledgers_per_file) * ledgers_per_file
    return start, start + ledgers_per_file - 1


def partition_bounds(
    sequence: int, ledgers_per_file: int, files_per_partition: int
) -> tuple[int, int]:
    """Return the inclusive (start, end) sequence range of the partition holding ``sequence``."""
    return file_bounds(sequence, ledgers_per_file * max(files_per_partition, 1))


def object_key(sequence: int, ledgers_per_file: int, files_per_partition: int) -> str:
    """Derive the object key for the batch that contains ``sequence``.

    Args:
        sequence: Ledger sequence number (unsigned 32-bit)
        ledgers_per_file: Ledgers per archive object, at least 1
        files_per_partition: Archive objects per partition directory;
            values <= 1 disable the partition directory

    Returns:
        Object key relative to the datastore root

    Raises:
        InvalidConfigError: If ledgers_per_file < 1 or sequence is out of range
    """
    if sequence < 0 or sequence > MAX_UINT32:
        raise InvalidConfigError(
            f"Invalid ledger sequence ({sequence}): must be an unsigned 32-bit integer",
            field_name="sequence",
        )

    file_start, file_end = file_bounds(sequence, ledgers_per_file)

    key = ""
    if files_per_partition > 1:
        partition_start, partition_end = partition_bounds(
            sequence, ledgers_per_file, files_per_partition
        )
        key = f"{partition_start}-{partition_end}/"

    key += str(file_start)
    if file_start != file_end:
        key += f"-{file_end}"

    return key + FILE_SUFFIX
