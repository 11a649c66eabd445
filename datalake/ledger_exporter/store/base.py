"""
Base protocol for object-store backends.

The uploader and the manifest logic only depend on the ObjectStore
protocol; backends are selected once at startup from the destination URL
and never swapped at runtime.

Invariants:
    - Keys are opaque paths; a backend may prepend a fixed prefix
    - put_if_absent() never overwrites: it returns False if the key exists
    - get() raises ObjectNotFoundError for missing keys

How to change safely:
    - Protocol changes require updating all implementations
    - Keep put_if_absent() atomic; deterministic keys rely on it for
      at-most-once writes across restarts
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

from ..errors import InvalidConfigError

if TYPE_CHECKING:
    from ..config import S3Config


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for object-store backends.

    Example:
        >>> store = create_object_store("s3://bucket/ledgers", S3Config.from_env())
        >>> await store.connect()
        >>> created = await store.put_if_absent("0-63.xdr.gz", blob)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections. Must be called before other operations."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Whether an object exists at ``key``."""
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read the object at ``key``.

        Raises:
            ObjectNotFoundError: If no object exists
            ObjectStoreError: For other failures
        """
        ...

    @abstractmethod
    async def size(self, key: str) -> int:
        """Size in bytes of the object at ``key``.

        Raises:
            ObjectNotFoundError: If no object exists
        """
        ...

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        """Write ``data`` at ``key``, replacing any existing object."""
        ...

    @abstractmethod
    async def put_if_absent(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> bool:
        """Write ``data`` at ``key`` only if nothing is there yet.

        Returns:
            True if the object was created, False if it already existed

        Raises:
            ObjectStoreError: For failures other than "already exists"
        """
        ...


def join_key(prefix: str, key: str) -> str:
    """Join a backend prefix and an object key with exactly one slash."""
    prefix = prefix.strip("/")
    key = key.lstrip("/")
    return f"{prefix}/{key}" if prefix else key


def create_object_store(destination_url: str, s3_config: Optional["S3Config"] = None) -> ObjectStore:
    """Factory function to create an object store from a destination URL.

    Supported schemes:
        s3://bucket/prefix   S3 or an S3-compatible service
        file:///abs/path     Local filesystem
        memory://name        In-process store (tests, dry runs)

    Raises:
        InvalidConfigError: If the URL scheme is not supported
    """
    from ..config import S3Config
    from .filesystem import FilesystemObjectStore
    from .memory import InMemoryObjectStore
    from .s3 import S3ObjectStore

    parsed = urlparse(destination_url)
    scheme = parsed.scheme.lower()

    if scheme == "s3":
        if not parsed.netloc:
            raise InvalidConfigError(
                f"Invalid destination URL {destination_url}: missing bucket",
                field_name="destination_url",
            )
        return S3ObjectStore(
            bucket=parsed.netloc,
            prefix=parsed.path.lstrip("/"),
            config=s3_config or S3Config.from_env(),
        )
    elif scheme == "file":
        root = f"{parsed.netloc}{parsed.path}"
        if not root:
            raise InvalidConfigError(
                f"Invalid destination URL {destination_url}: missing path",
                field_name="destination_url",
            )
        return FilesystemObjectStore(root)
    elif scheme == "memory":
        return InMemoryObjectStore(prefix=parsed.path.lstrip("/"))
    else:
        raise InvalidConfigError(
            f"Invalid destination URL {destination_url}. Expected s3://, file:// or memory://",
            field_name="destination_url",
        )
