"""
backend_sync.py — REST client for the authoritative backend.

One call matters here:

    POST {api_url}/sos/bulk-sync
    Authorization: Bearer <token>
    {"messages": [<Alert wire dict>, ...]}

Any 2xx response is an acknowledgment of the whole batch. Everything else
(non-2xx, connection refused, DNS failure, timeout, unparseable URL)
becomes ``SyncFailure`` so the reconciler can leave its queues untouched.

Unlike the push channels this client is request/response only and is
driven by the sync reconciler, not by the propagation engine.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from saferoute.app.core.config import settings
from saferoute.app.core.errors import SyncFailure

logger = logging.getLogger(__name__)

BULK_SYNC_PATH = "/sos/bulk-sync"


class BackendSyncClient:
    """
    Async HTTP client for bulk alert upload.

    Usage:
        client = BackendSyncClient("https://api.example.org/api", token)
        await client.bulk_sync([alert.to_dict() for alert in batch])
        await client.close()
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        token: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url or settings.BACKEND_API_URL
        self.token = token if token is not None else settings.BACKEND_API_TOKEN
        self.timeout = settings.SYNC_TIMEOUT if timeout is None else timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    @staticmethod
    def bulk_sync_url(api_url: str) -> str:
        return api_url.rstrip("/") + BULK_SYNC_PATH

    async def bulk_sync(
        self,
        messages: List[Dict[str, Any]],
        *,
        api_url: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Upload one batch.

        Returns
        -------
        dict
            Parsed JSON body of the acknowledgment ({} if not JSON).

        Raises
        ------
        SyncFailure
            If the backend did not acknowledge the batch.
        """
        url = self.bulk_sync_url(api_url or self.api_url)
        bearer = token if token is not None else self.token
        headers = {"Content-Type": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        client = await self._get_client()
        start = time.perf_counter()

        try:
            response = await client.post(url, json={"messages": messages}, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SyncFailure(
                f"backend answered {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise SyncFailure(f"timed out after {self.timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise SyncFailure(f"request failed: {e}") from e
        except httpx.InvalidURL as e:
            # Not an HTTPError subclass; raised before any request is made
            raise SyncFailure(f"invalid backend URL: {e}") from e

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Bulk sync accepted: %d messages → %s (%.1fms)",
            len(messages), url, duration_ms,
            extra={"duration_ms": duration_ms, "status_code": response.status_code},
        )

        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"result": body}
