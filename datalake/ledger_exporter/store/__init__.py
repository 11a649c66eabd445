"""
Object-store backends for the exported datalake.

- S3 (and S3-compatible services such as MinIO)
- Local filesystem
- In-memory (for testing)
"""

from .base import ObjectStore, create_object_store, join_key
from .filesystem import FilesystemObjectStore
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    # Protocol
    "ObjectStore",
    "join_key",
    # Factory
    "create_object_store",
    # Implementations
    "S3ObjectStore",
    "FilesystemObjectStore",
    "InMemoryObjectStore",
]
