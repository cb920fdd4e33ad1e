"""Fire-and-forget conversation events (messages, typing, read receipts)."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable
from uuid import UUID

import redis.asyncio as redis
from loguru import logger


def message_event(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "message", "message": payload}


def typing_event(is_typing: bool, sender: str = "agent") -> Dict[str, Any]:
    return {"type": "typing", "sender": sender, "is_typing": is_typing}


def read_receipt_events(message_ids: Iterable[UUID]) -> list[Dict[str, Any]]:
    return [{"type": "read_receipt", "message_id": str(mid)} for mid in message_ids]


class Broadcaster(ABC):
    """Publishes events to whoever watches a conversation. No delivery guarantee."""

    @abstractmethod
    async def publish(self, conversation_id: UUID, event: Dict[str, Any]) -> None:
        ...


class LogBroadcaster(Broadcaster):
    """Writes events to the log only (single-instance runs without Redis)."""

    async def publish(self, conversation_id: UUID, event: Dict[str, Any]) -> None:
        logger.info(f"[broadcast] {conversation_id} {event.get('type')}: {event}")


class RedisBroadcaster(Broadcaster):
    """Publishes JSON events on the ``conversation:{id}`` channel."""

    def __init__(self, redis_client):
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisBroadcaster":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    @staticmethod
    def channel(conversation_id: UUID) -> str:
        return f"conversation:{conversation_id}"

    async def publish(self, conversation_id: UUID, event: Dict[str, Any]) -> None:
        try:
            await self.redis.publish(self.channel(conversation_id), json.dumps(event, default=str))
        except (redis.RedisError, OSError) as e:
            logger.warning(f"[broadcast] Publish to {conversation_id} failed: {e}")

    async def close(self) -> None:
        await self.redis.close()
