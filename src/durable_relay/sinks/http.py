"""
HTTP sink client.

POSTs each record's payload as JSON and forwards the record id as
`Idempotency-Key` so the receiving side can drop redeliveries.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

import httpx
from loguru import logger

from ..errors import RetryableSinkError, TerminalSinkError
from ..models import Record

RETRYABLE_STATUSES = frozenset({408, 425, 429})


def classify_response(resp: httpx.Response) -> Optional[Exception]:
    """None for 2xx, else the sink error matching the status."""
    code = resp.status_code
    if 200 <= code < 300:
        return None
    detail = f"HTTP {code} from {resp.request.url}: {resp.text[:200]}"
    if code in RETRYABLE_STATUSES or code >= 500:
        return RetryableSinkError(detail)
    return TerminalSinkError(detail)


class HttpSinkClient:
    """Delivers records to an HTTP endpoint.

    Example:
        async with HttpSinkClient("https://collector.example/ingest") as sink:
            queue = DeliveryQueue(store, sink)
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 10.0,
        headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._headers = dict(headers or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=self._headers, transport=self._transport
            )

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpSinkClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _post(self, body: Any, key: str) -> httpx.Response:
        await self.start()
        try:
            return await self._client.post(
                self.endpoint, json=body, headers={"Idempotency-Key": key}
            )
        except httpx.TransportError as exc:
            raise RetryableSinkError(f"{type(exc).__name__}: {exc}") from exc

    async def submit(self, record: Record) -> None:
        resp = await self._post(record.payload, record.id)
        error = classify_response(resp)
        if error is not None:
            raise error
        logger.debug(f"Record {record.id} accepted by {self.endpoint} ({resp.status_code})")

    async def submit_batch(
        self, records: Sequence[Record]
    ) -> dict[str, Optional[BaseException]]:
        """POST all payloads as one JSON array; the status applies to every record."""
        body = [{"id": r.id, "payload": r.payload} for r in records]
        key = ",".join(r.id for r in records)
        try:
            resp = await self._post(body, key)
        except RetryableSinkError as exc:
            return {r.id: exc for r in records}
        error = classify_response(resp)
        return {r.id: error for r in records}
