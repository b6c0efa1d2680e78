"""
Task handler registry and built-in handlers.

Handlers receive the verified ``TaskEnvelope`` and signal failure by
raising. A failed task may be delivered again through the retry store, so
handlers must be idempotent.
"""

import logging
from collections.abc import Callable

from taskbroker.constants import DEFAULT_ACTION
from taskbroker.exceptions import HandlerNotFoundError
from taskbroker.types.task import TaskEnvelope, TaskHandler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Dispatch table from action name to handler.

    Populated before the worker starts; registering an action again
    replaces the previous handler.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, action: str, handler: TaskHandler) -> TaskHandler:
        """
        Bind a handler to an action.

        Args:
            action: Action name carried in ``context.action``.
            handler: Async handler.

        Returns:
            The handler, unchanged.
        """
        self._handlers[action] = handler
        logger.info(f"Registered handler for action: {action}")
        return handler

    def handler(self, action: str) -> Callable[[TaskHandler], TaskHandler]:
        """
        Decorator form of ``register``.

        Example:
            @registry.handler("send_email")
            async def handle_send_email(task: TaskEnvelope) -> None:
                ...
        """

        def decorator(handler: TaskHandler) -> TaskHandler:
            return self.register(action, handler)

        return decorator

    def get(self, action: str) -> TaskHandler:
        """
        Get the handler for an action.

        Raises:
            HandlerNotFoundError: If no handler is registered.
        """
        handler = self._handlers.get(action)
        if handler is None:
            raise HandlerNotFoundError(action)
        return handler

    def actions(self) -> list[str]:
        """List all registered actions."""
        return list(self._handlers.keys())


# ============================================================================
# Built-in task handlers
# ============================================================================


async def handle_echo(task: TaskEnvelope) -> None:
    """Log the task payload."""
    logger.info(
        "Echo task executing",
        extra={"task_id": task.task_id, "payload": task.payload},
    )


async def handle_failing_task(task: TaskEnvelope) -> None:
    """Handler that always fails - for exercising the retry path."""
    logger.info(
        "Failing task executing (will fail)",
        extra={"task_id": task.task_id, "retry_count": task.retry_count},
    )
    raise RuntimeError(f"Intentional failure on retry {task.retry_count}")


def register_builtin_handlers(registry: HandlerRegistry) -> None:
    """Register the built-in handlers, with echo as the default action."""
    registry.register(DEFAULT_ACTION, handle_echo)
    registry.register("echo", handle_echo)
    registry.register("failing_task", handle_failing_task)
