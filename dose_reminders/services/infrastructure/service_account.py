"""
Google service account credentials for Firebase REST APIs.
Mints OAuth2 access tokens from a signed JWT bearer assertion and caches
them until shortly before they expire.
"""

import asyncio
import json
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import jwt

from dose_reminders.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

FIREBASE_SCOPES = [
    "https://www.googleapis.com/auth/firebase.database",
    "https://www.googleapis.com/auth/firebase.messaging",
    "https://www.googleapis.com/auth/userinfo.email",
]

ASSERTION_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_BUFFER_SECONDS = 300  # Refresh tokens expiring within 5 minutes
REQUEST_TIMEOUT = 10  # seconds

REQUIRED_FIELDS = ("client_email", "private_key")


class ServiceAccountError(Exception):
    """Custom exception for service account loading and token exchange."""

    def __init__(self, message: str, error_code: str | None = None, response_data: dict | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}


class AccessToken:
    """Structured representation of an OAuth token response."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = data.get("expires_in")

        if self.expires_in:
            self.expires_at = datetime.now(UTC) + timedelta(seconds=int(self.expires_in))
        else:
            self.expires_at = None

    def is_valid(self) -> bool:
        return bool(self.access_token and self.token_type)

    def needs_refresh(self) -> bool:
        if not self.expires_at:
            return False
        buffer = timedelta(seconds=TOKEN_REFRESH_BUFFER_SECONDS)
        return datetime.now(UTC) + buffer >= self.expires_at


def load_service_account(path: str | Path) -> dict:
    """
    Read and validate a service account JSON file.

    Raises:
        ServiceAccountError: If the file is missing or not a usable key
    """
    path = Path(path)
    if not path.is_file():
        raise ServiceAccountError(f"Service account JSON not found at {path}", error_code="not_found")

    try:
        info = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ServiceAccountError(f"Invalid service account JSON: {e}", error_code="invalid") from e

    missing = [field for field in REQUIRED_FIELDS if not info.get(field)]
    if missing:
        raise ServiceAccountError(
            f"Service account JSON missing fields: {', '.join(missing)}", error_code="invalid"
        )
    return info


class ServiceAccountCredentials:
    """
    Access-token provider backed by a service account key.

    Shared by the Realtime Database and FCM clients; one token covers both
    scopes.
    """

    def __init__(
        self,
        info: dict,
        client: httpx.AsyncClient | None = None,
        scopes: list[str] | None = None,
    ):
        self.info = info
        self.client_email = info["client_email"]
        self.token_uri = info.get("token_uri") or GOOGLE_TOKEN_URL
        self.scopes = scopes or FIREBASE_SCOPES
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT))
        self._owns_client = client is None
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _build_assertion(self) -> str:
        issued_at = int(time.time())
        claims = {
            "iss": self.client_email,
            "scope": " ".join(self.scopes),
            "aud": self.token_uri,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {"kid": self.info["private_key_id"]} if self.info.get("private_key_id") else None
        return jwt.encode(claims, self.info["private_key"], algorithm="RS256", headers=headers)

    async def get_access_token(self) -> str:
        """
        Return a cached access token, exchanging a new assertion when needed.

        Raises:
            ServiceAccountError: If signing or the token exchange fails
        """
        async with self._lock:
            if self._token and self._token.is_valid() and not self._token.needs_refresh():
                return self._token.access_token

            self._token = await self._exchange_assertion()
            return self._token.access_token

    async def _exchange_assertion(self) -> AccessToken:
        try:
            assertion = self._build_assertion()
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise ServiceAccountError(f"Failed to sign token assertion: {e}", error_code="signing") from e

        try:
            response = await self._client.post(
                self.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as e:
            raise ServiceAccountError(f"Token request failed: {e}", error_code="network") from e

        try:
            data = response.json() if response.text else {}
        except ValueError:
            data = {}

        if not response.is_success:
            logger.error(
                "Service account token exchange failed",
                status_code=response.status_code,
                error_code=data.get("error"),
            )
            raise ServiceAccountError(
                f"Token exchange failed (HTTP {response.status_code}): "
                f"{data.get('error_description') or data.get('error') or 'unknown error'}",
                error_code=data.get("error"),
                response_data=data,
            )

        token = AccessToken(data)
        if not token.is_valid():
            raise ServiceAccountError("Token response missing access_token", response_data=data)

        logger.debug("Service account access token issued", expires_in=token.expires_in)
        return token
