"""
Queue topology type definitions.
"""

from pydantic import BaseModel, ConfigDict, Field

from taskbroker.constants import ExchangeType


class QueueConfig(BaseModel):
    """
    Static routing configuration for one logical queue.

    Immutable for the process lifetime and looked up by queue key.
    Accepts both snake_case names and the camelCase keys used in
    JSON queue definitions (``type``, ``routingKey``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    queue: str = Field(..., min_length=1, description="Main queue name")
    exchange: str = Field(..., min_length=1, description="Exchange the queue is bound to")
    exchange_type: ExchangeType = Field(default=ExchangeType.DIRECT, alias="type")
    routing_key: str = Field(default="", alias="routingKey")
    dlq: str = Field(..., min_length=1, description="Dead-letter queue name")
