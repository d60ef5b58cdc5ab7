"""Delegated Google credentials with automatic refresh."""

import time
from dataclasses import dataclass

import httpx

from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
EXPIRY_BUFFER_SECONDS = 5 * 60


@dataclass
class GoogleTokens:
    """Stored OAuth tokens for one linked Google account."""

    access_token: str
    refresh_token: str | None
    expires_at: int  # Unix timestamp in seconds


def is_token_expired(expires_at: int, now: float | None = None) -> bool:
    """Check if an access token is expired, with a 5-minute buffer."""
    current = now if now is not None else time.time()
    return current >= expires_at - EXPIRY_BUFFER_SECONDS


class GoogleTokenStore:
    """In-memory linked-account store that refreshes expiring access tokens.

    Lookups are best-effort: any failure yields ``None`` and is logged.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.http_client = http_client
        self._accounts: dict[str, GoogleTokens] = {}

    def link(self, user_id: str, tokens: GoogleTokens) -> None:
        """Store tokens for a user, replacing any previous link."""
        self._accounts[user_id] = tokens

    def unlink(self, user_id: str) -> None:
        self._accounts.pop(user_id, None)

    async def get_access_token(self, user_id: str) -> str | None:
        """Get a usable access token, refreshing it when it is about to expire."""
        tokens = self._accounts.get(user_id)
        if tokens is None:
            logger.debug(f"No Google account linked for user {user_id}")
            return None

        if not is_token_expired(tokens.expires_at):
            return tokens.access_token

        if not tokens.refresh_token:
            logger.info(f"Google token for user {user_id} expired and cannot be refreshed")
            return None

        try:
            refreshed = await self._refresh(tokens.refresh_token)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(f"Failed to refresh Google token for user {user_id}: {e}")
            return None

        self._accounts[user_id] = refreshed
        logger.info(f"Refreshed Google access token for user {user_id}")
        return refreshed.access_token

    async def _refresh(self, refresh_token: str) -> GoogleTokens:
        if not self.client_id or not self.client_secret:
            raise ValueError("Google OAuth client is not configured")

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self.http_client is not None:
            response = await self.http_client.post(GOOGLE_TOKEN_URL, data=data)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
        response.raise_for_status()
        payload = response.json()

        access_token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 3600))
        return GoogleTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token", refresh_token),
            expires_at=int(time.time()) + expires_in,
        )
