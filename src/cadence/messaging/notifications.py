"""Best-effort push notifications for agent messages."""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
from loguru import logger

DEFAULT_TRUNCATE_LENGTH = 100


def truncate(content: str, length: int = DEFAULT_TRUNCATE_LENGTH) -> str:
    return f"{content[:length]}..." if len(content) > length else content


class Notifier(ABC):
    @abstractmethod
    async def notify(self, user_id: str, title: str, body: str) -> None:
        ...


class LogNotifier(Notifier):
    async def notify(self, user_id: str, title: str, body: str) -> None:
        logger.info(f"[notify] {user_id}: {title} - {body}")


class WebhookNotifier(Notifier):
    """POSTs ``{"user_id", "title", "body"}`` to a webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def notify(self, user_id: str, title: str, body: str) -> None:
        response = await self._client.post(
            self.url, json={"user_id": user_id, "title": title, "body": body}
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


async def notify_safely(
    notifier: Notifier,
    user_id: str,
    title: str,
    body: str,
    truncate_length: int = DEFAULT_TRUNCATE_LENGTH,
) -> bool:
    """Send a notification, logging and swallowing any failure."""
    try:
        await notifier.notify(user_id, title, truncate(body, truncate_length))
        return True
    except Exception as e:
        logger.error(f"[notify] Failed to notify {user_id}: {e}")
        return False
