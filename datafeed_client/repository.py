"""Persistence of the datafeed id so a restarted client resumes the same feed."""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import redis

logger = logging.getLogger(__name__)


class FeedIdRepository(ABC):
    @abstractmethod
    def read(self) -> Optional[str]:
        ...

    @abstractmethod
    def write(self, feed_id: str):
        ...

    @abstractmethod
    def clear(self):
        ...


class InMemoryFeedIdRepository(FeedIdRepository):
    def __init__(self, feed_id: Optional[str] = None):
        self._feed_id = feed_id

    def read(self) -> Optional[str]:
        return self._feed_id

    def write(self, feed_id: str):
        self._feed_id = feed_id

    def clear(self):
        self._feed_id = None


class RedisFeedIdRepository(FeedIdRepository):
    """A Redis-based store for the datafeed id."""

    def __init__(self, redis_url: str = None, key: str = "datafeed:id", client: Optional[redis.Redis] = None,
                 ttl_seconds: Optional[int] = None):
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.redis_client = client or redis.from_url(redis_url, decode_responses=True)

    def read(self) -> Optional[str]:
        try:
            value = self.redis_client.get(self.key)
        except redis.exceptions.RedisError as e:
            logger.warning("Could not read datafeed id from %s: %s", self.key, e)
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value or None

    def write(self, feed_id: str):
        try:
            if self.ttl_seconds:
                self.redis_client.setex(self.key, self.ttl_seconds, feed_id)
            else:
                self.redis_client.set(self.key, feed_id)
        except redis.exceptions.RedisError as e:
            # The feed still works, it only won't survive a restart
            logger.warning("Could not store datafeed id under %s: %s", self.key, e)

    def clear(self):
        try:
            self.redis_client.delete(self.key)
        except redis.exceptions.RedisError as e:
            logger.warning("Could not delete datafeed id %s: %s", self.key, e)
