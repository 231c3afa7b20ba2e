"""
SQLAlchemy database models.
Defines the messages table that backs the queue.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Integer, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from docqueue.constants import MESSAGES_TABLE, TTL_NEVER, UNLOCKED
from docqueue.types.message import utcnow


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class MessageRecord(Base):
    """
    Stored form of a queue message.

    The table is the authoritative source of truth for message state; the
    queue engine only applies its protocol on top of it.

    Key constraints:
    - ``id`` is the primary key, which doubles as the deduplication constraint
    - ``ts`` is maintained by the store on every write and is the expiry
      pivot in store-timestamp expiry mode
    - indexes are provisioned at runtime by the queue, see ``db.indexes``
    """

    __tablename__ = MESSAGES_TABLE

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Opaque payload
    body: Mapped[Any] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=True,
    )

    # Lifecycle
    created: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    completed: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    delivery_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Leasing and scheduling
    locked_until: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=UNLOCKED,
    )
    scheduled_enqueue_time: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=UNLOCKED,
    )

    # Partitioning
    partition_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Expiry hints
    ttl: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=TTL_NEVER,
    )
    ts: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"MessageRecord(id={self.id}, partition={self.partition_key!r}, "
            f"deliveries={self.delivery_count}, completed={self.completed})"
        )


# Core table, used for the queue's set-based statements
messages_table = MessageRecord.__table__
