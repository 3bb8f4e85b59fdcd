"""Redis adapter for publishing lifecycle facts as JSON."""

import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import date, datetime

import redis

from config import get_redis_host_and_port

logger = logging.getLogger(__name__)

r = redis.Redis(**get_redis_host_and_port())


def _default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize(message) -> str:
    """Serialize a dataclass to JSON, handling datetime objects at any depth."""
    payload = asdict(message) if is_dataclass(message) else message
    return json.dumps(payload, default=_default)


def publish(channel: str, message, client: redis.Redis = None) -> int:
    """Publish a message to a Redis channel; returns the number of receivers."""
    logger.info("publishing: channel=%s, message=%s", channel, message)
    return (client or r).publish(channel, serialize(message))
