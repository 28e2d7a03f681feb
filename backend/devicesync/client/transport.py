"""
HTTP transport between the offline replica and the sync endpoints
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

import httpx

from ..core.config import settings
from ..core.timeutil import to_iso, from_iso
from ..models.sync import ChangeQueueEntry, PullResult, PushResult, RemoteChange
from ..services.identity_exceptions import (
    NotAuthenticatedError,
    StaleAuthVersionError,
    SyncTransportError,
)

logger = logging.getLogger(__name__)

DEVICE_KEY_HEADER = "X-Device-Key"
AUTH_VERSION_HEADER = "X-Auth-Version"
AUTH_VERSION_MISMATCH = "AuthVersionMismatch"


class HttpSyncTransport:
    """Talks to ``POST /sync`` and ``GET /sync`` of the identity server"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_prefix: Optional[str] = None,
    ):
        self.base_url = base_url or settings.SYNC_SERVER_URL
        if not self.base_url:
            raise ValueError("SYNC_SERVER_URL is not configured")
        self.timeout = timeout or settings.SYNC_HTTP_TIMEOUT_SECONDS
        self.api_prefix = api_prefix if api_prefix is not None else settings.API_V1_STR
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.disconnect()

    async def connect(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )

    async def disconnect(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _auth_headers(device_id: str, auth_version: Optional[int]) -> Dict[str, str]:
        headers = {DEVICE_KEY_HEADER: device_id}
        if auth_version is not None:
            headers[AUTH_VERSION_HEADER] = str(auth_version)
        return headers

    async def _request(self, method: str, path: str, headers: Dict[str, str], **kwargs) -> Dict[str, Any]:
        await self.connect()
        try:
            response = await self._client.request(method, f"{self.api_prefix}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncTransportError(f"Sync request timed out: {e}") from e
        except httpx.TransportError as e:
            raise SyncTransportError(f"Cannot reach sync server: {e}") from e

        if response.status_code == 401:
            body = self._json(response)
            if body.get("error") == AUTH_VERSION_MISMATCH:
                raise StaleAuthVersionError(body.get("current_version"))
            raise NotAuthenticatedError(body.get("message") or "Not authenticated")
        if response.status_code >= 400:
            body = self._json(response)
            raise SyncTransportError(
                f"Sync server answered {response.status_code}: {body.get('message') or response.text}"
            )
        return self._json(response)

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def push(self, changes: List[ChangeQueueEntry], device_id: str,
                   auth_version: Optional[int]) -> PushResult:
        body = await self._request(
            "POST", "/sync",
            headers=self._auth_headers(device_id, auth_version),
            json={"changes": [change.to_wire() for change in changes]},
        )
        return PushResult(
            applied=[str(i) for i in body.get("applied", [])],
            superseded=[str(i) for i in body.get("superseded", [])],
            rejected=[str(i) for i in body.get("rejected", [])],
            failed=[str(i) for i in body.get("failed", [])],
            auth_version=body.get("auth_version"),
            corrections=[RemoteChange.from_dict(item) for item in body.get("corrections", [])],
        )

    async def pull(self, since: Optional[datetime], device_id: str,
                   auth_version: Optional[int]) -> PullResult:
        params = {"since": to_iso(since)} if since else {}
        body = await self._request(
            "GET", "/sync",
            headers=self._auth_headers(device_id, auth_version),
            params=params,
        )
        current_time = from_iso(body.get("current_time"))
        if current_time is None:
            raise SyncTransportError("Sync server response has no current_time")
        return PullResult(
            changes=[RemoteChange.from_dict(item) for item in body.get("changes", [])],
            since=from_iso(body.get("since")),
            current_time=current_time,
        )
