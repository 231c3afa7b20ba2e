"""
Message envelope type.
Wraps an opaque application payload with its delivery lifecycle metadata.
"""

import json
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar
from uuid import UUID, NAMESPACE_URL, uuid4, uuid5

from pydantic import BaseModel, Field, field_validator
from pydantic_core import to_jsonable_python

from docqueue.constants import TTL_NEVER, UNLOCKED

T = TypeVar("T")

# Namespace for ids derived from payload content
MESSAGE_ID_NAMESPACE = uuid5(NAMESPACE_URL, "docqueue:message")


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form all stored timestamps use."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class Message(BaseModel, Generic[T]):
    """
    A unit of work and its lifecycle metadata.

    The queue engine never inspects ``body``. The remaining fields drive
    delivery:

    - ``locked_until`` in the future hides the message from dequeue (lease).
    - ``scheduled_enqueue_time`` in the future delays delivery.
    - ``completed`` set means the message is done.
    - ``delivery_count`` reaching the queue's maximum poisons the message.

    Producers that want deduplication should set ``id`` from the payload,
    see :meth:`deterministic_id`.
    """

    id: UUID = Field(default_factory=uuid4)
    body: T
    created: datetime = Field(default_factory=utcnow)
    completed: datetime | None = None
    delivery_count: int = Field(default=0, ge=0)
    locked_until: datetime = UNLOCKED
    partition_key: str | None = None
    scheduled_enqueue_time: datetime = UNLOCKED
    ttl: int = TTL_NEVER

    @field_validator("created", "locked_until", "scheduled_enqueue_time")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @field_validator("completed")
    @classmethod
    def _normalize_completed(cls, value: datetime | None) -> datetime | None:
        return None if value is None else to_naive_utc(value)

    @staticmethod
    def deterministic_id(body: Any, namespace: UUID = MESSAGE_ID_NAMESPACE) -> UUID:
        """
        Derive a stable id from the payload content.

        Two bodies that serialize to the same JSON produce the same id, so
        enqueueing the second one is rejected as a duplicate.

        Args:
            body: The message payload.
            namespace: UUID namespace to derive ids in.

        Returns:
            A name-based (version 5) UUID.
        """
        canonical = json.dumps(
            to_jsonable_python(body),
            sort_keys=True,
            separators=(",", ":"),
        )
        return uuid5(namespace, canonical)

    @property
    def is_locked(self) -> bool:
        """Check if the message is currently leased."""
        return self.locked_until > utcnow()

    @property
    def is_scheduled(self) -> bool:
        """Check if delivery is deferred to a future time."""
        return self.scheduled_enqueue_time > utcnow()

    @property
    def is_completed(self) -> bool:
        """Check if a consumer reported success."""
        return self.completed is not None

    def is_poisoned(self, max_delivery_count: int) -> bool:
        """Check if the message has used up its delivery attempts."""
        return self.delivery_count >= max_delivery_count

    def __repr__(self) -> str:
        return (
            f"Message(id={self.id}, partition={self.partition_key!r}, "
            f"deliveries={self.delivery_count}, completed={self.completed})"
        )
