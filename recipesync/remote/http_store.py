"""RemoteStore over a JSON/HTTP record service.

Handles transport retries with exponential backoff and maps HTTP failures
onto RemoteStoreError codes.
"""

import asyncio
import logging
from typing import Any

import httpx

from ..catalog.ids import CompositeID, ZoneID
from ..catalog.records import RemoteRecord, Scope, ShareMetadata
from .base import ErrorCode, Predicate, RemoteStore, RemoteStoreError, SortOrder

logger = logging.getLogger(__name__)

# HTTP statuses that map to a specific error code when the body has none
_STATUS_CODES = {
    401: ErrorCode.PERMISSION_FAILURE,
    403: ErrorCode.PERMISSION_FAILURE,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.SERVER_REJECTED,
    422: ErrorCode.INVALID_PAYLOAD,
    429: ErrorCode.RATE_LIMITED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


class HttpRemoteStore(RemoteStore):
    """Client for the record service's JSON API.

    Connection failures, timeouts and 5xx responses are retried with
    exponential backoff. Other error responses are raised immediately.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the store client.

        Args:
            base_url: Base URL of the record service (e.g., "https://records.example").
            api_token: Bearer token for the caller's account.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            backoff_seconds: Delay before the first retry; doubles each retry.
            transport: Optional httpx transport, mainly for tests.
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _error_from_response(self, response: httpx.Response) -> RemoteStoreError:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return RemoteStoreError.from_dict(body["error"])
        code = _STATUS_CODES.get(response.status_code, ErrorCode.SERVER_REJECTED)
        return RemoteStoreError(code, f"HTTP {response.status_code}: {response.text}")

    async def _request(self, method: str, path: str, json_data: Any = None) -> Any:
        """Make a request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path relative to base_url.
            json_data: Optional JSON body.

        Returns:
            Decoded JSON response body.

        Raises:
            RemoteStoreError: On any failure after retries.
        """
        client = await self._get_client()
        backoff = self.backoff_seconds
        last_error = RemoteStoreError(ErrorCode.NETWORK_FAILURE, "No attempts made")

        for attempt in range(self.max_retries):
            try:
                response = await client.request(method, path, json=json_data)

                if response.status_code < 400:
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError as e:
                        raise RemoteStoreError(
                            ErrorCode.INVALID_PAYLOAD, f"Malformed response body: {e}"
                        ) from e

                error = self._error_from_response(response)
                if response.status_code < 500:
                    # Client error, don't retry
                    raise error
                logger.warning(
                    f"Server error {response.status_code} on {path}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                if error.code == ErrorCode.SERVER_REJECTED:
                    error = RemoteStoreError(ErrorCode.SERVICE_UNAVAILABLE, error.message)
                last_error = error

            except httpx.ConnectError as e:
                logger.warning(
                    f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                )
                code = (
                    ErrorCode.DNS_FAILURE
                    if "name or service not known" in str(e).lower()
                    else ErrorCode.NETWORK_UNAVAILABLE
                )
                last_error = RemoteStoreError(code, str(e) or "Connection failed")
            except httpx.TimeoutException as e:
                logger.warning(
                    f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = RemoteStoreError(ErrorCode.TIMEOUT, str(e) or "Request timed out")
            except httpx.TransportError as e:
                logger.warning(
                    f"Transport error: {e}, attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = RemoteStoreError(ErrorCode.NETWORK_FAILURE, str(e))

            # Exponential backoff
            if attempt < self.max_retries - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        raise last_error

    async def current_user(self) -> str:
        data = await self._request("GET", "/users/current")
        return data["userRecordName"]

    async def fetch_all(
        self,
        record_type: str,
        predicate: Predicate,
        sort: SortOrder | None,
        scope: Scope,
        zone: ZoneID | None = None,
    ) -> list[RemoteRecord]:
        payload = {
            "recordType": record_type,
            "scope": scope.value,
            "zone": zone.to_dict() if zone else None,
            "predicate": predicate.to_dict(),
            "sort": sort.to_dict() if sort else None,
        }
        data = await self._request("POST", "/records/query", payload)
        try:
            return [RemoteRecord.from_dict(r) for r in data.get("records", [])]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RemoteStoreError(
                ErrorCode.INVALID_PAYLOAD, f"Malformed {record_type} query result: {e}"
            ) from e

    async def fetch(self, record_id: CompositeID, scope: Scope) -> RemoteRecord:
        data = await self._request(
            "POST", "/records/lookup", {"scope": scope.value, "id": record_id.to_dict()}
        )
        return RemoteRecord.from_dict(data["record"])

    async def save(self, record: RemoteRecord, scope: Scope) -> RemoteRecord:
        saved = await self.save_batch([record], scope)
        return saved[0]

    async def save_batch(
        self, records: list[RemoteRecord], scope: Scope
    ) -> list[RemoteRecord]:
        data = await self._request(
            "POST",
            "/records/save",
            {"scope": scope.value, "atomic": True, "records": [r.to_dict() for r in records]},
        )
        return [RemoteRecord.from_dict(r) for r in data["records"]]

    async def delete(self, record_id: CompositeID, scope: Scope) -> None:
        try:
            await self._request(
                "POST", "/records/delete", {"scope": scope.value, "id": record_id.to_dict()}
            )
        except RemoteStoreError as e:
            if e.code != ErrorCode.NOT_FOUND:
                raise
            logger.debug(f"Delete of absent record {record_id} treated as success")

    async def ensure_zone(self, zone: ZoneID) -> None:
        await self._request("POST", "/zones/ensure", {"zone": zone.to_dict()})

    async def delete_zone(self, zone: ZoneID, scope: Scope) -> None:
        await self._request(
            "POST", "/zones/delete", {"scope": scope.value, "zone": zone.to_dict()}
        )

    async def list_zones(self, scope: Scope) -> list[ZoneID]:
        data = await self._request("POST", "/zones/list", {"scope": scope.value})
        return [ZoneID.from_dict(z) for z in data.get("zones", [])]

    async def fetch_share_metadata(self, url: str) -> ShareMetadata:
        data = await self._request("POST", "/shares/metadata", {"url": url})
        return ShareMetadata.from_dict(data)

    async def accept_share(self, metadata: ShareMetadata) -> None:
        await self._request("POST", "/shares/accept", metadata.to_dict())
