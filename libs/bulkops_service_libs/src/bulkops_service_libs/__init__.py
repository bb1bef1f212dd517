"""
Bulk operations service libraries.

Shared infrastructure used by the bulk operations service: structured
logging and the Redis client used for tracking, queueing and pub/sub.
"""

from .redis_client import RedisClient

__all__ = [
    "RedisClient",
]
