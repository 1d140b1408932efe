"""
Local record of (category, identity) pairs that have already voted.

Used only for the optimistic duplicate check. The data store's unique
constraint stays authoritative, so cache failures never block a vote.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Set

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class VotedCache(ABC):
    """Optimistic voted-category markers."""

    @abstractmethod
    async def has_voted(self, category_id: int, identity: str) -> bool:
        """Return True if (category_id, identity) is known to have voted."""

    @abstractmethod
    async def mark_as_voted(self, category_id: int, identity: str) -> None:
        """Record that (category_id, identity) has voted."""

    async def close(self) -> None:
        """Release resources."""


class MemoryVotedCache(VotedCache):
    """Per-process voted markers."""

    def __init__(self):
        self._voted: Dict[str, Set[int]] = {}

    async def has_voted(self, category_id: int, identity: str) -> bool:
        return category_id in self._voted.get(identity, set())

    async def mark_as_voted(self, category_id: int, identity: str) -> None:
        self._voted.setdefault(identity, set()).add(category_id)
        logger.debug(f"Category {category_id} marked as voted for {identity}")


class RedisVotedCache(VotedCache):
    """Voted markers shared through Redis sets: voted:<identity> -> {category ids}."""

    KEY_TEMPLATE = 'voted:{}'

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisVotedCache':
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            health_check_interval=30
        )
        return cls(client)

    async def has_voted(self, category_id: int, identity: str) -> bool:
        try:
            result = await self.client.sismember(self.KEY_TEMPLATE.format(identity), str(category_id))
            logger.debug(f"Identity {identity} voted check for category {category_id}: {result}")
            return bool(result)
        except redis.RedisError as e:
            logger.error(f"Redis error checking voted marker: {e}")
            return False

    async def mark_as_voted(self, category_id: int, identity: str) -> None:
        try:
            await self.client.sadd(self.KEY_TEMPLATE.format(identity), str(category_id))
            logger.debug(f"Category {category_id} marked as voted for {identity}")
        except redis.RedisError as e:
            logger.error(f"Redis error marking as voted: {e}")

    async def close(self) -> None:
        try:
            await self.client.aclose()
            logger.info("Redis connection closed")
        except redis.RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
