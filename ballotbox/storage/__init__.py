"""Storage backends and the event definition cache."""

from .base import SubmissionUnit, VotingStore
from .cache import EventCache, MemoryEventCache, RedisEventCache
from .memory import MemoryStore

__all__ = [
    'SubmissionUnit',
    'VotingStore',
    'EventCache',
    'MemoryEventCache',
    'RedisEventCache',
    'MemoryStore',
]
