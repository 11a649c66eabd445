"""
S3 object store backend.

Uses aiobotocore for async access to S3 or any S3-compatible service
(MinIO, LocalStack). Conditional writes use ``If-None-Match: *`` so that
put_if_absent() is atomic on the server side; a 412 response means the
object already exists.

Invariants:
    - All keys are written below the configured prefix
    - put_if_absent() never overwrites an existing object

How to change safely:
    - Test against MinIO before relying on new S3 features
    - Keep error-code mapping in sync with _is_* helpers
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..errors import ObjectNotFoundError, ObjectStoreError
from .base import join_key

logger = logging.getLogger(__name__)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _status_code(error: ClientError) -> int:
    return int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0))


def _is_not_found(error: ClientError) -> bool:
    return _error_code(error) in ("NoSuchKey", "404", "NotFound") or _status_code(error) == 404


def _is_precondition_failed(error: ClientError) -> bool:
    return _error_code(error) in ("PreconditionFailed", "412") or _status_code(error) == 412


class S3ObjectStore:
    """ObjectStore backed by an S3 bucket.

    Attributes:
        bucket: Bucket name
        prefix: Key prefix inside the bucket
        config: Region, endpoint and credentials

    Example:
        >>> store = S3ObjectStore("my-bucket", "ledgers", S3Config.from_env())
        >>> await store.connect()
        >>> await store.put_if_absent("0-639/0-63.xdr.gz", blob)
    """

    def __init__(self, bucket: str, prefix: str = "", config: Optional[S3Config] = None) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self.config = config or S3Config()
        self._session = None
        self._client_ctx = None
        self._client: Any = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the S3 client and verify the bucket is reachable.

        Raises:
            ObjectStoreError: If the bucket cannot be reached
        """
        if self._client is not None:
            return

        self._session = get_session()

        client_kwargs = {
            "region_name": self.config.region,
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()

        try:
            await self._client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            await self.close()
            raise ObjectStoreError(f"S3 bucket '{self.bucket}' is not accessible: {e}") from e

        logger.info(
            "Connected to S3",
            extra={
                "bucket": self.bucket,
                "prefix": self.prefix,
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close the S3 client."""
        if self._client is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None

    def _key(self, key: str) -> str:
        return join_key(self.prefix, key)

    def _require_client(self) -> Any:
        if self._client is None:
            raise ObjectStoreError("S3 object store is not connected")
        return self._client

    async def _head(self, key: str) -> dict:
        client = self._require_client()
        path = self._key(key)
        try:
            return await client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFoundError(path) from None
            raise ObjectStoreError(f"S3 HeadObject failed for {path}: {e}", key=path) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"S3 HeadObject failed for {path}: {e}", key=path) from e

    async def exists(self, key: str) -> bool:
        try:
            await self._head(key)
        except ObjectNotFoundError:
            return False
        return True

    async def size(self, key: str) -> int:
        head = await self._head(key)
        return int(head["ContentLength"])

    async def get(self, key: str) -> bytes:
        client = self._require_client()
        path = self._key(key)
        try:
            response = await client.get_object(Bucket=self.bucket, Key=path)
            return await response["Body"].read()
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFoundError(path) from None
            raise ObjectStoreError(f"S3 GetObject failed for {path}: {e}", key=path) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"S3 GetObject failed for {path}: {e}", key=path) from e

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        await self._put(key, data, content_type, conditional=False)

    async def put_if_absent(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> bool:
        return await self._put(key, data, content_type, conditional=True)

    async def _put(
        self, key: str, data: bytes, content_type: Optional[str], conditional: bool
    ) -> bool:
        client = self._require_client()
        path = self._key(key)

        params: dict[str, Any] = {"Bucket": self.bucket, "Key": path, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        if conditional:
            params["IfNoneMatch"] = "*"

        try:
            await client.put_object(**params)
        except ClientError as e:
            if conditional and _is_precondition_failed(e):
                logger.info("File already exists in the bucket, skipping upload", extra={"key": path})
                return False
            raise ObjectStoreError(f"S3 PutObject failed for {path}: {e}", key=path) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"S3 PutObject failed for {path}: {e}", key=path) from e

        logger.debug("Object written to S3", extra={"key": path, "size_bytes": len(data)})
        return True
