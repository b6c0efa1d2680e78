"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class ExchangeType(StrEnum):
    """AMQP exchange types supported by the topology manager."""

    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"
    HEADERS = "headers"


class DeliveryOutcome(StrEnum):
    """
    Terminal outcome of a single delivery.

    - ACKED: signature verified and the handler returned
    - REJECTED: the body or signature was invalid, or the handler raised;
      the broker routes the delivery to the DLQ
    """

    ACKED = "acked"
    REJECTED = "rejected"


# Transport headers
SIGNATURE_HEADER = "x-message-signature"
PRODUCER_HEADER = "x-producer"
CONTENT_TYPE_JSON = "application/json"

# Queue arguments used for dead-letter wiring
DEAD_LETTER_EXCHANGE_ARG = "x-dead-letter-exchange"
DEAD_LETTER_ROUTING_KEY_ARG = "x-dead-letter-routing-key"
DEFAULT_EXCHANGE = ""

# Default values
DEFAULT_ACTION = "default"
DEFAULT_PREFETCH = 5
DEFAULT_WORKER_PREFETCH = 2
DEFAULT_RETRY_PREFIX = "retry"
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_DELAY_MS = 5000
DEFAULT_RETRY_BATCH_SIZE = 10
DEFAULT_RETRY_POLL_INTERVAL_SECONDS = 1.0

# Metrics names
METRIC_TASKS_PUBLISHED = "tasks_published_total"
METRIC_DELIVERIES = "task_deliveries_total"
METRIC_SIGNATURE_FAILURES = "task_signature_failures_total"
METRIC_HANDLER_DURATION = "task_handler_duration_seconds"
METRIC_RETRIES_SCHEDULED = "task_retries_scheduled_total"
METRIC_RETRIES_EXHAUSTED = "task_retries_exhausted_total"
METRIC_RETRIES_REPUBLISHED = "task_retries_republished_total"
METRIC_RETRIES_PENDING = "task_retries_pending"

# Trace span names
SPAN_PUBLISH_TASK = "publish_task"
SPAN_HANDLE_TASK = "handle_task"
SPAN_REPUBLISH_RETRY = "republish_retry"
