"""
In-memory object store for testing.

This module provides an object store that keeps everything in a dict:
- Unit and integration tests
- Dry runs without cloud credentials

Invariants:
    - All data is lost on process exit
    - put_if_absent() is atomic with respect to other coroutines

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ObjectStore protocol
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from ..errors import ObjectNotFoundError, ObjectStoreError
from .base import join_key

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """An object held by InMemoryObjectStore."""

    data: bytes
    content_type: Optional[str] = None


class InMemoryObjectStore:
    """In-memory implementation of ObjectStore.

    Attributes:
        prefix: Fixed prefix prepended to every key
        fail_keys: Keys whose writes raise ObjectStoreError (failure injection)
        write_delay: Seconds each write sleeps before completing

    Example:
        >>> store = InMemoryObjectStore()
        >>> await store.put_if_absent("0-63.xdr.gz", blob)
        True
        >>> store.keys()
        ['0-63.xdr.gz']
    """

    def __init__(self, prefix: str = "", write_delay: float = 0.0) -> None:
        self.prefix = prefix
        self.write_delay = write_delay
        self.fail_keys: Set[str] = set()
        self.put_calls = 0
        self._objects: Dict[str, StoredObject] = {}
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryObjectStore connected")

    async def close(self) -> None:
        """Close (data is kept so tests can inspect it)."""
        self._connected = False
        logger.debug("InMemoryObjectStore closed")

    async def exists(self, key: str) -> bool:
        return join_key(self.prefix, key) in self._objects

    async def get(self, key: str) -> bytes:
        path = join_key(self.prefix, key)
        try:
            return self._objects[path].data
        except KeyError:
            raise ObjectNotFoundError(path) from None

    async def size(self, key: str) -> int:
        return len(await self.get(key))

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = await self._before_write(key)
        async with self._lock:
            self._objects[path] = StoredObject(data=bytes(data), content_type=content_type)

    async def put_if_absent(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> bool:
        path = await self._before_write(key)
        async with self._lock:
            if path in self._objects:
                logger.info("Object already exists, skipping upload", extra={"key": path})
                return False
            self._objects[path] = StoredObject(data=bytes(data), content_type=content_type)
            return True

    async def _before_write(self, key: str) -> str:
        self.put_calls += 1
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        path = join_key(self.prefix, key)
        if path in self.fail_keys or key in self.fail_keys:
            raise ObjectStoreError(f"injected write failure for {path}", key=path)
        return path

    # Testing helpers

    def keys(self) -> List[str]:
        """All stored keys, sorted."""
        return sorted(self._objects)

    def object(self, key: str) -> StoredObject:
        """Stored object (with content type) at ``key``."""
        return self._objects[join_key(self.prefix, key)]

    def clear(self) -> None:
        self._objects.clear()
