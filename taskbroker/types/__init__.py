"""
Type definitions for the task dispatch core.
Contains the wire envelope, retry record and queue configuration types.
"""

from taskbroker.types.queue import QueueConfig
from taskbroker.types.task import (
    PublishRequest,
    RetryRecord,
    TaskEnvelope,
    TaskHandler,
    dumps_canonical,
)

__all__ = [
    "QueueConfig",
    "TaskEnvelope",
    "RetryRecord",
    "PublishRequest",
    "TaskHandler",
    "dumps_canonical",
]
