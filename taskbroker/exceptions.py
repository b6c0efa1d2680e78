"""
Error taxonomy for the task dispatch core.

Setup errors are fatal and abort startup. Everything raised inside a
consume callback is turned into an ack/reject decision by the consumer.
"""


class TaskBrokerError(Exception):
    """Base class for all task dispatch errors."""


class SetupError(TaskBrokerError):
    """Fatal configuration or topology error raised during startup."""


class BrokerConfigError(SetupError):
    """Broker connection parameters are missing."""


class RetryStoreConfigError(SetupError):
    """Retry store connection parameters are missing."""


class SigningConfigError(SetupError):
    """No message signing secret is configured."""


class QueueConfigError(SetupError):
    """No queue configuration exists for a queue key."""

    def __init__(self, queue_key: str):
        self.queue_key = queue_key
        super().__init__(f"Queue config not found for key: {queue_key}")


class TopologyError(SetupError):
    """Asserting exchanges, queues or bindings failed."""


class PublishValidationError(TaskBrokerError):
    """Publish arguments were rejected before any network I/O."""


class SignatureError(TaskBrokerError):
    """A delivery carried a missing or mismatching signature."""


class HandlerNotFoundError(TaskBrokerError):
    """No handler is registered for a task's action."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"No handler registered for action: {action}")
