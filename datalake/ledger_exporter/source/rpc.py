"""
Ledger source backed by a Stellar RPC endpoint.

Ledgers are read with the JSON-RPC ``getLedgers`` method and buffered
locally, so one request serves ``buffer_size`` consecutive get() calls.
Requests for ledgers that have not closed yet are polled until they do,
which is how unbounded exports follow the network tip.

Invariants:
    - get(seq) returns the ledger whose sequence is seq, or raises
    - Transient failures (transport errors, HTTP 429/5xx) are retried with
      linear backoff; everything else raises SourceError immediately

How to change safely:
    - Keep request payloads compatible with the RPC API version in use
    - Test retry behaviour with httpx.MockTransport
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional

import httpx

from ..batch import LedgerRecord
from ..cancel import CancelToken
from ..config import LedgerRange
from ..errors import InvalidConfigError, SourceError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class RpcError(SourceError):
    """The RPC server returned a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str) -> None:
        super().__init__(f"RPC {method} failed ({code}): {message}")
        self.method = method
        self.rpc_code = code


class RpcLedgerSource:
    """LedgerSource that reads ledgers from Stellar RPC.

    Attributes:
        rpc_url: JSON-RPC endpoint
        buffer_size: Ledgers requested per getLedgers call
        poll_interval: Seconds between polls while waiting for a ledger to close
        max_retries: Retries for transient failures
        retry_delay_ms: Base delay between retries (multiplied by attempt)

    Example:
        >>> source = RpcLedgerSource("https://soroban-testnet.stellar.org")
        >>> await source.prepare(LedgerRange(start=1000, end=2000))
        >>> ledger = await source.get(token, 1000)
    """

    def __init__(
        self,
        rpc_url: str,
        buffer_size: int = 100,
        poll_interval: float = 2.0,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay_ms: int = 500,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.buffer_size = buffer_size
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)
        self._buffer: "OrderedDict[int, LedgerRecord]" = OrderedDict()
        self._prepared: Optional[LedgerRange] = None

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> RpcLedgerSource:
        """Build from the ``ledger_source`` config table.

        Raises:
            InvalidConfigError: If rpc_url is missing or a value is malformed
        """
        rpc_url = options.get("rpc_url")
        if not rpc_url:
            raise InvalidConfigError(
                "ledger_source.rpc_url is required for the selected network",
                field_name="ledger_source.rpc_url",
            )
        try:
            source = cls(
                rpc_url=str(rpc_url),
                buffer_size=int(options.get("buffer_size", 100)),
                poll_interval=float(options.get("poll_interval_seconds", 2.0)),
                timeout=float(options.get("timeout_seconds", 30.0)),
                max_retries=int(options.get("max_retries", 3)),
                retry_delay_ms=int(options.get("retry_delay_ms", 500)),
            )
        except (TypeError, ValueError) as e:
            raise InvalidConfigError(f"invalid ledger_source option: {e}", field_name="ledger_source") from e

        if source.buffer_size < 1:
            raise InvalidConfigError(
                "ledger_source.buffer_size must be at least 1", field_name="ledger_source.buffer_size"
            )
        return source

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def prepare(self, ledger_range: LedgerRange) -> None:
        """Check the RPC server retains the start of the range.

        Raises:
            SourceError: If the server is unhealthy or has pruned the start ledger
        """
        if self._prepared == ledger_range:
            return

        health = await self._call("getHealth")
        status = health.get("status")
        if status != "healthy":
            raise SourceError(f"RPC server at {self.rpc_url} is not healthy: {status}")

        oldest = int(health.get("oldestLedger", 0))
        if oldest and ledger_range.start < oldest:
            raise SourceError(
                f"start ledger {ledger_range.start} is older than the oldest ledger "
                f"retained by the RPC server ({oldest})",
                sequence=ledger_range.start,
            )

        self._prepared = ledger_range
        logger.info(
            "Prepared RPC ledger source",
            extra={
                "rpc_url": self.rpc_url,
                "range": str(ledger_range),
                "oldest_ledger": oldest,
                "latest_ledger": health.get("latestLedger"),
            },
        )

    async def get(self, cancel: CancelToken, sequence: int) -> LedgerRecord:
        while True:
            ledger = self._buffer.pop(sequence, None)
            if ledger is not None:
                return ledger

            latest = await cancel.guard(self.latest_sequence())
            if sequence <= latest:
                await cancel.guard(self._fill(sequence))
                if sequence in self._buffer:
                    continue
                raise SourceError(
                    f"RPC server did not return ledger {sequence}", sequence=sequence
                )

            logger.debug(
                "Waiting for ledger to close",
                extra={"sequence": sequence, "latest_ledger": latest},
            )
            await cancel.guard(asyncio.sleep(self.poll_interval))

    async def _fill(self, sequence: int) -> None:
        """Fetch a page of ledgers starting at ``sequence`` into the buffer."""
        result = await self._call(
            "getLedgers",
            {"startLedger": sequence, "pagination": {"limit": self.buffer_size}},
        )

        self._buffer.clear()
        for entry in result.get("ledgers") or []:
            record = self._decode_ledger(entry)
            if record.sequence >= sequence:
                self._buffer[record.sequence] = record

    def _decode_ledger(self, entry: Dict[str, Any]) -> LedgerRecord:
        try:
            sequence = int(entry["sequence"])
            data = base64.b64decode(entry["metadataXdr"], validate=True)
        except (KeyError, TypeError, ValueError) as e:
            raise SourceError(f"malformed ledger in getLedgers response: {e}") from e
        return LedgerRecord(sequence=sequence, data=data)

    async def latest_sequence(self) -> int:
        result = await self._call("getLatestLedger")
        try:
            return int(result["sequence"])
        except (KeyError, TypeError, ValueError) as e:
            raise SourceError(f"malformed getLatestLedger response: {e}") from e

    async def close(self) -> None:
        self._buffer.clear()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Invoke a JSON-RPC method, retrying transient failures.

        Raises:
            RpcError: If the server answers with a JSON-RPC error
            SourceError: If the request keeps failing
        """
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            payload["params"] = params

        attempt = 0
        while True:
            try:
                response = await self._http().post(self.rpc_url, json=payload)
                if response.status_code in RETRYABLE_STATUS:
                    raise httpx.HTTPStatusError(
                        f"retryable status {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                response.raise_for_status()
                body = response.json()
                break
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                retryable = not isinstance(e, httpx.HTTPStatusError) or (
                    e.response.status_code in RETRYABLE_STATUS
                )
                if not retryable or attempt >= self.max_retries:
                    raise SourceError(f"RPC {method} request to {self.rpc_url} failed: {e}") from e
                attempt += 1
                delay = self.retry_delay_ms * attempt / 1000
                logger.warning(
                    f"RPC {method} failed, retrying in {delay:.2f}s",
                    extra={"attempt": attempt, "max_retries": self.max_retries, "error": str(e)},
                )
                await asyncio.sleep(delay)
            except ValueError as e:
                raise SourceError(f"RPC {method} returned invalid JSON: {e}") from e

        if "error" in body:
            error = body["error"] or {}
            raise RpcError(method, int(error.get("code", 0)), str(error.get("message", "")))

        result = body.get("result")
        if not isinstance(result, dict):
            raise SourceError(f"RPC {method} returned no result")
        return result
