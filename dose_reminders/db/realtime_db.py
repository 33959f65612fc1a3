"""
Firebase Realtime Database REST client.
Read-once document access plus set and multi-path update, authenticated
with a service account access token.
"""

import asyncio
from typing import Any, Protocol

import httpx

from dose_reminders.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4, 8 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Placeholder resolved by the database to its own clock at write time
SERVER_TIMESTAMP = {".sv": "timestamp"}


class AccessTokenProvider(Protocol):
    async def get_access_token(self) -> str: ...


class DocumentStore(Protocol):
    """Key-value document access used by the reminder job."""

    async def get(self, path: str) -> Any: ...

    async def set(self, path: str, value: Any) -> None: ...

    async def update(self, fields: dict[str, Any]) -> None: ...


class RealtimeDatabaseError(Exception):
    """Custom exception for Realtime Database REST errors."""

    def __init__(self, message: str, status_code: int | None = None, path: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


def _normalize_path(path: str) -> str:
    return "/".join(part for part in path.strip().split("/") if part)


class RealtimeDatabaseClient:
    """
    Async Realtime Database client over the REST API.

    Args:
        database_url: e.g. https://<project>-default-rtdb.firebaseio.com
        credentials: Anything with an async get_access_token()
        client: Optional shared httpx client
    """

    def __init__(
        self,
        database_url: str,
        credentials: AccessTokenProvider,
        client: httpx.AsyncClient | None = None,
        backoff_factor: float = BACKOFF_FACTOR,
    ):
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url.rstrip("/")
        self.credentials = credentials
        self.backoff_factor = backoff_factor
        self._client = client or self._create_client()
        self._owns_client = client is None

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        path = _normalize_path(path)
        return f"{self.database_url}/{path}.json" if path else f"{self.database_url}/.json"

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff (all verbs used here are idempotent)."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = self.backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        "Realtime Database retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    "Realtime Database request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Realtime Database retry loop exhausted")

    async def _call(self, method: str, path: str, json_body: Any = None) -> Any:
        access_token = await self.credentials.get_access_token()
        params = {"access_token": access_token}
        if method in ("PUT", "PATCH"):
            # Skip echoing the written value back
            params["print"] = "silent"

        try:
            response = await self._request_with_retry(
                method, self._url(path), params=params, json=json_body
            )
        except httpx.RequestError as e:
            logger.error("Realtime Database request failed", method=method, path=path, error=str(e))
            raise RealtimeDatabaseError(f"Request failed: {e}", path=path) from e

        if not response.is_success:
            try:
                detail = response.json().get("error", "") if response.text else ""
            except (ValueError, AttributeError):
                detail = response.text[:200]
            logger.error(
                "Realtime Database request rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                error=detail,
            )
            raise RealtimeDatabaseError(
                f"Realtime Database error (HTTP {response.status_code}): {detail or 'unknown'}",
                status_code=response.status_code,
                path=path,
            )

        if not response.text:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RealtimeDatabaseError(f"Invalid response format: {e}", path=path) from e

    async def get(self, path: str) -> Any:
        """Read the value at path; None when nothing is stored there."""
        return await self._call("GET", path)

    async def set(self, path: str, value: Any) -> None:
        """Replace the value at path."""
        await self._call("PUT", path, value)

    async def update(self, fields: dict[str, Any]) -> None:
        """
        Multi-path update from the database root.

        Each key is a slash-separated path; every path is written in one
        request, siblings are left untouched.
        """
        if not fields:
            return
        body = {_normalize_path(path): value for path, value in fields.items()}
        await self._call("PATCH", "", body)
