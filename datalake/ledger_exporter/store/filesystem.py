"""
Local filesystem object store.

Keys map to files below a root directory. Writes go to a temporary file
first and are published with ``os.link`` (put-if-absent) or ``os.replace``
(put), so readers never observe a partially written object.

Blocking file I/O runs in the default executor to keep the event loop
responsive.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import ObjectNotFoundError, ObjectStoreError

logger = logging.getLogger(__name__)


class FilesystemObjectStore:
    """ObjectStore backed by a directory tree.

    Attributes:
        root: Directory all keys are resolved against
    """

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root)

    async def connect(self) -> None:
        await self._run(self.root.mkdir, parents=True, exist_ok=True)
        logger.debug("Filesystem object store ready", extra={"root": str(self.root)})

    async def close(self) -> None:
        """Nothing to release; files are closed after every write."""

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ObjectStoreError(f"key escapes store root: {key}", key=key)
        return path

    async def exists(self, key: str) -> bool:
        return await self._run(self._path(key).is_file)

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await self._run(path.read_bytes)
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None
        except OSError as e:
            raise ObjectStoreError(f"failed to read {key}: {e}", key=key) from e

    async def size(self, key: str) -> int:
        path = self._path(key)
        try:
            stat = await self._run(path.stat)
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None
        return stat.st_size

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        await self._run(self._write, key, data, False)

    async def put_if_absent(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> bool:
        created = await self._run(self._write, key, data, True)
        if not created:
            logger.info("File already exists, skipping upload", extra={"key": key})
        return created

    def _write(self, key: str, data: bytes, exclusive: bool) -> bool:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=path.suffix)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                if not exclusive:
                    os.replace(tmp_name, path)
                    return True
                try:
                    os.link(tmp_name, path)
                except FileExistsError:
                    return False
                return True
            finally:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
        except OSError as e:
            raise ObjectStoreError(f"failed to put file {key}: {e}", key=key) from e

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))
