"""
Task-related type definitions for the wire envelope and the retry store.
"""

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskbroker.constants import DEFAULT_ACTION


def dumps_canonical(data: Any) -> str:
    """
    Serialize data to JSON with a stable key order.

    Signer and verifier must produce byte-identical output for the same
    logical body, so keys are sorted and separators are compact.

    Args:
        data: JSON-compatible value.

    Returns:
        The canonical JSON text.
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class TaskEnvelope(BaseModel):
    """
    The signed unit transmitted on the wire.

    The signature travels as a transport header and is computed over the
    canonical serialization of this body.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    task_id: str = Field(..., alias="taskId")
    payload: Any = Field(...)
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(..., alias="createdAt")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")

    @field_validator("context", mode="before")
    @classmethod
    def context_or_empty(cls, value: Any) -> Any:
        """Treat a null context as an empty mapping."""
        return {} if value is None else value

    @classmethod
    def new(
        cls,
        payload: Any,
        context: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> "TaskEnvelope":
        """Create an envelope with a fresh task id and the current timestamp."""
        return cls(
            task_id=str(uuid4()),
            payload=payload,
            context=dict(context or {}),
            created_at=datetime.now(UTC).isoformat(),
            retry_count=retry_count,
        )

    @property
    def action(self) -> str:
        """Routing action, falling back to the default handler."""
        return self.context.get("action") or DEFAULT_ACTION

    def to_body(self) -> dict[str, Any]:
        """Wire representation with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


class RetryRecord(BaseModel):
    """
    A failed task persisted in the retry store.

    Stored as a sorted-set member whose score equals ``next_retry_at``.
    Members are addressed by value, so ``serialize`` must be deterministic.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    task_id: str = Field(..., alias="taskId")
    payload: Any = Field(...)
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = Field(default=None, alias="createdAt")
    retry_count: int = Field(..., ge=1, alias="_retryCount")
    next_retry_at: int = Field(..., alias="_nextRetryAt")

    @field_validator("context", mode="before")
    @classmethod
    def context_or_empty(cls, value: Any) -> Any:
        """Treat a null context as an empty mapping."""
        return {} if value is None else value

    @classmethod
    def from_envelope(
        cls,
        envelope: TaskEnvelope,
        retry_count: int,
        next_retry_at: int,
    ) -> "RetryRecord":
        """Build a record from the handler-facing envelope."""
        return cls(
            task_id=envelope.task_id,
            payload=envelope.payload,
            context=envelope.context,
            created_at=envelope.created_at,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
        )

    @classmethod
    def parse(cls, raw: str | bytes) -> "RetryRecord":
        """Parse a serialized member read back from the store."""
        return cls.model_validate_json(raw)

    def serialize(self) -> str:
        """Serialize to the sorted-set member text."""
        return dumps_canonical(self.model_dump(by_alias=True, mode="json", exclude_none=True))


class PublishRequest(BaseModel):
    """Arguments to a publish call, validated before any network I/O."""

    queue_key: str = Field(..., min_length=1)
    payload: Any = Field(...)
    context: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)

    @field_validator("context", mode="before")
    @classmethod
    def context_or_empty(cls, value: Any) -> Any:
        """Treat a null context as an empty mapping."""
        return {} if value is None else value

    @field_validator("payload")
    @classmethod
    def payload_required(cls, value: Any) -> Any:
        """Reject a missing payload."""
        if value is None:
            raise ValueError("payload is required")
        return value


# Type alias for task handler functions
TaskHandler = Callable[[TaskEnvelope], Awaitable[None]]
