"""
Order Service — イベント発行

Redis Pub/Sub は fire-and-forget。発行の失敗はログに残すだけで、
注文や在庫の結果には影響させない。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

INVENTORY_CHANNEL = "inventory_events"
ORDER_CHANNEL = "order_events"


class EventPublisher:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(self, channel: str, event: BaseModel) -> None:
        event_type = type(event).__name__
        payload = json.dumps(
            {
                "event_type": event_type,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        )
        try:
            await self.redis.publish(channel, payload)
        except RedisError:
            logger.warning("Failed to publish %s on %s", event_type, channel, exc_info=True)
