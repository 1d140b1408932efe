"""Vote submission gateway and voted-cache implementations."""

from .gateway import VoteGateway
from .voted_cache import VotedCache, MemoryVotedCache, RedisVotedCache

__all__ = [
    'VoteGateway',
    'VotedCache',
    'MemoryVotedCache',
    'RedisVotedCache',
]
