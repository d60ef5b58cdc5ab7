"""Out-of-band user notifications.

Notifications are side effects of a conversation run and are always sent as
detached tasks; a failed notification never affects the run that produced it.
"""

from typing import Protocol

import httpx

from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
MAX_TELEGRAM_MESSAGE = 4096


class Notifier(Protocol):
    """Interface for delivering a short message to a user."""

    async def notify(self, user_id: str, text: str) -> None:
        """Deliver ``text`` to the user, raising on transport failure."""
        ...


class LoggingNotifier:
    """Notifier used when no delivery channel is configured."""

    async def notify(self, user_id: str, text: str) -> None:
        logger.debug(f"Notification for {user_id} not delivered (no channel configured): {text[:80]}")


class TelegramNotifier:
    """Sends notifications through the Telegram Bot API."""

    def __init__(self, bot_token: str, http_client: httpx.AsyncClient | None = None):
        self.bot_token = bot_token
        self.http_client = http_client
        self._chat_ids: dict[str, int | str] = {}

    def link_chat(self, user_id: str, chat_id: int | str) -> None:
        """Associate a Telegram chat with a user."""
        self._chat_ids[user_id] = chat_id

    async def notify(self, user_id: str, text: str) -> None:
        chat_id = self._chat_ids.get(user_id)
        if chat_id is None:
            logger.debug(f"No Telegram chat linked for user {user_id}")
            return

        url = f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text[:MAX_TELEGRAM_MESSAGE]}
        if self.http_client is not None:
            response = await self.http_client.post(url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.post(url, json=payload)
        response.raise_for_status()
