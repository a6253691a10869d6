"""Remote reconciliation client for workshop.

Talks to the sync backend over HTTP:
- ``POST /sync`` applies a batch of mutation records
- ``GET /units`` returns the authoritative entities for an owner

Pure HTTP logic, no DB coupling. Every transport-level problem (connection
errors, non-2xx responses, unreadable bodies) surfaces as ``TransportError``.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from workshop.types import FailedRecord, MutationRecord, PushBatchResult, TransportError
from workshop.validation import validate_backend_url

logger = logging.getLogger(__name__)


class RemoteClient:
    """Async HTTP client for the sync backend.

    Args:
        backend_url: Base URL of the backend (https, or http for localhost).
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests inject MockTransport or
            ASGITransport here).
    """

    def __init__(
        self,
        backend_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        validated = validate_backend_url(backend_url)
        if not validated:
            raise ValueError(f"Refusing unsafe backend URL: {backend_url!r}")
        self.backend_url = validated.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.backend_url,
            timeout=timeout,
            transport=transport,
        )

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, token: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method, path, headers=self._headers(token), **kwargs
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Connection failed: {e}") from e

        if response.status_code == 401:
            raise TransportError("Authentication failed", status_code=401)
        if not response.is_success:
            raise TransportError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                f"Unreadable response body: {e}", status_code=response.status_code
            ) from e

        if not isinstance(body, dict) or not body.get("success", False):
            message = body.get("message") if isinstance(body, dict) else None
            raise TransportError(
                f"Request rejected: {message or 'unknown error'}",
                status_code=response.status_code,
            )
        return body

    async def push_batch(self, records: List[MutationRecord], token: str) -> PushBatchResult:
        """Apply a batch of mutation records.

        Returns:
            Processed count and the records the server refused, each with
            its error message.

        Raises:
            TransportError: The batch as a whole could not be applied.
        """
        if not records:
            return PushBatchResult()

        body = await self._request(
            "POST", "/sync", token, json={"items": [r.to_wire() for r in records]}
        )
        data = body.get("data") or {}

        by_id = {r.id: r for r in records}
        failed: List[FailedRecord] = []
        for entry in data.get("failed") or []:
            item = entry.get("item") or {}
            record = by_id.get(item.get("id"))
            if record is None:
                logger.warning(f"Server reported failure for unknown record {item.get('id')}")
                continue
            failed.append(FailedRecord(record=record, error_message=str(entry.get("error", ""))))

        return PushBatchResult(processed_count=int(data.get("processed", 0)), failed=failed)

    async def pull_entities(
        self, token: str, owner_scope: str, page_size_hint: int = 1000
    ) -> List[Dict[str, Any]]:
        """Fetch the first page of authoritative units for ``owner_scope``.

        Timestamps are returned in wire format (ISO-8601 strings).

        Raises:
            TransportError: The request failed.
        """
        body = await self._request(
            "GET",
            "/units",
            token,
            params={"owner_id": owner_scope, "limit": page_size_hint},
        )
        data = body.get("data") or {}
        items = data.get("items") or []
        if data.get("has_more"):
            logger.debug(f"Pull returned first page only ({len(items)} of {data.get('total')})")
        return items

    async def health_check(self) -> Dict[str, Any]:
        """Test backend connectivity.

        Returns:
            Dict with 'healthy', plus 'latency_ms' or 'error'.
        """
        start = time.time()
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as e:
            logger.debug("Backend health check failed: %s", e)
            return {"healthy": False, "error": f"Connection failed: {e}"}

        latency_ms = (time.time() - start) * 1000
        if response.status_code == 200:
            return {"healthy": True, "latency_ms": round(latency_ms, 2)}
        return {"healthy": False, "error": f"HTTP {response.status_code}"}

    async def aclose(self) -> None:
        await self._client.aclose()
