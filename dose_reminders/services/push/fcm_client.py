"""
Firebase Cloud Messaging HTTP v1 client.

Sends one notification to many registration tokens and reports aggregate
success/failure counts, the same shape a multicast send returns. A token
that FCM rejects counts as a failure; only errors that prevent the send
as a whole (credentials, configuration) raise.
"""

import asyncio
from typing import Any, Protocol

import httpx

from dose_reminders.infrastructure.observability.logging import get_logger
from dose_reminders.models.domain.reminder_domain import DeliveryResult
from dose_reminders.services.infrastructure.service_account import ServiceAccountError

logger = get_logger(__name__)

FCM_API_BASE_URL = "https://fcm.googleapis.com/v1"

# FCM multicast limit per batch
MAX_TOKENS_PER_BATCH = 500
REQUEST_TIMEOUT = 30  # seconds
# In-flight sends per transport; stays under the shared client connection pool
MAX_CONCURRENT_SENDS = 50


class PushTransport(Protocol):
    async def send_to_many(
        self, title: str, body: str, tokens: list[str], data: dict[str, str]
    ) -> DeliveryResult: ...


class PushTransportError(Exception):
    """Raised when a push send could not be attempted at all."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def chunk_tokens(tokens: list[str], size: int = MAX_TOKENS_PER_BATCH) -> list[list[str]]:
    return [tokens[i : i + size] for i in range(0, len(tokens), size)]


def _error_code(response: httpx.Response) -> str:
    """Pull the FCM error code (e.g. UNREGISTERED) out of an error response."""
    try:
        error = response.json().get("error", {})
    except (ValueError, AttributeError):
        return f"HTTP_{response.status_code}"
    for detail in error.get("details", []) or []:
        if detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status") or f"HTTP_{response.status_code}"


def _is_credential_rejection(outcome: tuple[bool, str | None, int | None]) -> bool:
    """
    True when FCM refused the bearer token itself.

    A 401 carrying THIRD_PARTY_AUTH_ERROR is an APNs/web-push key problem
    for that one token and counts as a per-token failure.
    """
    ok, code, status = outcome
    return not ok and status == 401 and code in ("UNAUTHENTICATED", "HTTP_401")


class FcmPushTransport:
    """
    Push transport backed by the FCM HTTP v1 API.

    Args:
        project_id: Firebase project id
        credentials: Anything with an async get_access_token()
        client: Optional shared httpx client
        max_concurrent_sends: Cap on in-flight send requests across all callers
    """

    def __init__(
        self,
        project_id: str,
        credentials,
        client: httpx.AsyncClient | None = None,
        max_concurrent_sends: int = MAX_CONCURRENT_SENDS,
    ):
        if not project_id:
            raise ValueError("project_id is required")
        self.project_id = project_id
        self.credentials = credentials
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
        self._owns_client = client is None
        self._send_semaphore = asyncio.Semaphore(max_concurrent_sends)

    @property
    def send_url(self) -> str:
        return f"{FCM_API_BASE_URL}/projects/{self.project_id}/messages:send"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _build_message(self, token: str, title: str, body: str, data: dict[str, str]) -> dict[str, Any]:
        return {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                # FCM data payload values must be strings
                "data": {key: str(value) for key, value in data.items()},
            }
        }

    async def send_to_many(
        self, title: str, body: str, tokens: list[str], data: dict[str, str]
    ) -> DeliveryResult:
        """
        Send the notification to every token.

        Returns:
            DeliveryResult: success/failure counts across all tokens

        Raises:
            PushTransportError: If no send could be attempted
        """
        if not tokens:
            raise PushTransportError("No registration tokens supplied")

        try:
            access_token = await self.credentials.get_access_token()
        except ServiceAccountError as e:
            raise PushTransportError(f"FCM authorization failed: {e}") from e

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

        result = DeliveryResult()
        for index, batch in enumerate(chunk_tokens(tokens)):
            if index == 0:
                # One send settles whether FCM accepts the access token at all,
                # before any other device has been reached.
                first = await self._send_one(batch[0], title, body, data, headers)
                if _is_credential_rejection(first):
                    raise PushTransportError(
                        "FCM rejected the access token (HTTP 401)", status_code=401
                    )
                result = result.merge(self._aggregate(batch[:1], [first]))
                batch = batch[1:]
            outcomes = await asyncio.gather(
                *(self._send_one(token, title, body, data, headers) for token in batch)
            )
            result = result.merge(self._aggregate(batch, outcomes))

        logger.debug(
            "FCM multicast finished",
            token_count=len(tokens),
            success_count=result.success_count,
            failure_count=result.failure_count,
        )
        return result

    async def _send_one(
        self, token: str, title: str, body: str, data: dict[str, str], headers: dict
    ) -> tuple[bool, str | None, int | None]:
        try:
            async with self._send_semaphore:
                response = await self._client.post(
                    self.send_url,
                    json=self._build_message(token, title, body, data),
                    headers=headers,
                )
        except httpx.RequestError as e:
            return False, f"NETWORK_ERROR: {type(e).__name__}", None

        if response.is_success:
            return True, None, response.status_code
        return False, _error_code(response), response.status_code

    @staticmethod
    def _aggregate(batch: list[str], outcomes: list[tuple[bool, str | None, int | None]]) -> DeliveryResult:
        failed = {token: code for token, (ok, code, _) in zip(batch, outcomes) if not ok}
        return DeliveryResult(
            success_count=len(batch) - len(failed),
            failure_count=len(failed),
            failed_tokens=failed,
        )
