"""
Retry module.
Contains the Redis connection and the sorted-set retry store.
"""

from taskbroker.retry.connection import RedisConnection
from taskbroker.retry.store import RetryStore

__all__ = [
    "RedisConnection",
    "RetryStore",
]
