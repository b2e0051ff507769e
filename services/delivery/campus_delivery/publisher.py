"""
Campus Delivery — Redis event publisher

Publishing runs after the database commit. A publish failure is logged and
does not undo the committed command.
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def publish(
    redis: aioredis.Redis | None,
    channel: str,
    event: BaseModel,
) -> None:
    if redis is None:
        return
    payload = json.dumps(
        {"event_type": type(event).__name__, "data": event.model_dump()},
        default=str,
    )
    try:
        await redis.publish(channel, payload)
    except RedisError:
        logger.exception("failed to publish %s on %s", type(event).__name__, channel)
