"""
Worker module.
Contains the worker process, handler registry and retry poller.
"""

from taskbroker.worker.handlers import HandlerRegistry, register_builtin_handlers
from taskbroker.worker.main import Worker
from taskbroker.worker.poller import RetryPoller

__all__ = [
    "Worker",
    "HandlerRegistry",
    "register_builtin_handlers",
    "RetryPoller",
]
