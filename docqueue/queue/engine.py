"""
Queue engine.
Turns the messages table into a lease-based queue with at-least-once delivery.
"""

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import Insert, RowMapping, and_, delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docqueue.config import Settings, get_settings
from docqueue.constants import (
    DEFAULT_STREAM_PAGE_SIZE,
    DEQUEUE_INDEX_COLUMNS,
    INDEX_COMPLETED_EXPIRY,
    INDEX_DEQUEUE,
    SPAN_COMPLETE,
    SPAN_DELETE,
    SPAN_DEQUEUE,
    SPAN_DEQUEUE_BATCH,
    SPAN_DEQUEUE_PAGE,
    SPAN_ENQUEUE,
    SPAN_FAIL,
    SPAN_PEEK,
    UNLOCKED,
)
from docqueue.db.connection import session_scope
from docqueue.db.indexes import build_index, ensure_index
from docqueue.db.models import messages_table
from docqueue.observability.metrics import get_metrics
from docqueue.observability.tracing import get_tracer, set_batch_attributes, set_message_attributes
from docqueue.queue.expiry import ExpiryStrategy, build_expiry_strategy
from docqueue.queue.locks import PartitionLockRegistry
from docqueue.types.message import Message, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Message fields persisted as columns of the same name
MESSAGE_FIELDS = (
    "id",
    "body",
    "created",
    "completed",
    "delivery_count",
    "locked_until",
    "partition_key",
    "scheduled_enqueue_time",
    "ttl",
)


def _message_ids(messages: "Message[Any] | Iterable[Message[Any]]") -> list[UUID]:
    if isinstance(messages, Message):
        return [messages.id]
    return [message.id for message in messages]


class MessageQueue(Generic[T]):
    """
    Lease-based message queue over the messages table.

    Implements:
    - Deduplicating enqueue (duplicate ids return False)
    - Visibility-timeout leasing on dequeue (single, batch, stream)
    - Poison detection by delivery count
    - Complete / fail / delete, with optional expiry of completed messages

    Batch and stream dequeues read candidates and then lease them in a
    second statement. The pair is serialized per partition within this
    process by the lock registry, but it is not atomic across processes: a
    message may be delivered twice when independent processes race, which
    at-least-once delivery allows. Single dequeue is one atomic statement and
    takes no lock, so it can also race a local batch or stream between its
    read and its lease.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        body_type: Any = Any,
        *,
        max_delivery_count: int,
        lock_duration: timedelta,
        expire_after: timedelta | None = None,
        cosmos_db_compatibility: bool = False,
        stream_page_size: int = DEFAULT_STREAM_PAGE_SIZE,
        locks: PartitionLockRegistry | None = None,
    ):
        """
        Initialize the queue.

        Call :meth:`ensure_indexes` (or build through :meth:`create`) before
        first use against a fresh database.

        Args:
            session_factory: Factory for sessions on the backing store.
            body_type: Type of message bodies, used to validate loaded payloads.
            max_delivery_count: Deliveries after which a message is poisoned.
            lock_duration: Lease length; zero means no effective lease.
            expire_after: Time after completion before the store removes a
                message. None or zero keeps completed messages forever.
            cosmos_db_compatibility: Drive expiry from the store write
                timestamp and ttl hint instead of the completed timestamp.
            stream_page_size: Messages fetched per page by dequeue_stream.
            locks: Partition lock registry; a private one by default.

        Raises:
            ValueError: If any limit is out of range.
        """
        if max_delivery_count < 1:
            raise ValueError("max_delivery_count must be at least 1")
        if lock_duration < timedelta(0):
            raise ValueError("lock_duration must not be negative")
        if expire_after is not None and expire_after < timedelta(0):
            raise ValueError("expire_after must not be negative")
        if stream_page_size < 1:
            raise ValueError("stream_page_size must be at least 1")

        self._session_factory = session_factory
        self._message_type = Message[body_type]
        self.max_delivery_count = max_delivery_count
        self.lock_duration = lock_duration
        self.stream_page_size = stream_page_size
        self.expiry: ExpiryStrategy = build_expiry_strategy(
            expire_after, cosmos_db_compatibility
        )
        self.locks = locks if locks is not None else PartitionLockRegistry()
        self._metrics = get_metrics()
        self._tracer = get_tracer()

    @classmethod
    async def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        body_type: Any = Any,
        **kwargs: Any,
    ) -> "MessageQueue[Any]":
        """Construct a queue and provision its indexes."""
        queue = cls(session_factory, body_type, **kwargs)
        await queue.ensure_indexes()
        return queue

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        body_type: Any = Any,
        settings: Settings | None = None,
    ) -> "MessageQueue[Any]":
        """
        Construct a queue from application settings.

        Args:
            session_factory: Factory for sessions on the backing store.
            body_type: Type of message bodies.
            settings: Settings to read; the cached settings by default.

        Returns:
            The configured queue.
        """
        if settings is None:
            settings = get_settings()

        return cls(
            session_factory,
            body_type,
            max_delivery_count=settings.queue_max_delivery_count,
            lock_duration=timedelta(seconds=settings.queue_lock_duration_seconds),
            expire_after=timedelta(seconds=settings.queue_expire_after_seconds),
            cosmos_db_compatibility=settings.queue_cosmos_db_compatibility,
            stream_page_size=settings.queue_stream_page_size,
        )

    async def ensure_indexes(self) -> list[str]:
        """
        Provision the expiry and dequeue indexes if they are absent.

        Returns:
            Names of the indexes that were created.
        """
        indexes = []
        if self.expiry.expiry_index_field is not None:
            indexes.append(
                build_index(INDEX_COMPLETED_EXPIRY, [self.expiry.expiry_index_field])
            )
        indexes.append(build_index(INDEX_DEQUEUE, DEQUEUE_INDEX_COLUMNS))

        created = []
        async with session_scope(self._session_factory) as session:
            for index in indexes:
                if await ensure_index(session, index):
                    created.append(index.name)

        return created

    # ------------------------------------------------------------------
    # Statement building
    # ------------------------------------------------------------------

    def _eligible(self, now: datetime, partition_key: str | None, table: Any = messages_table) -> Any:
        c = table.c
        return and_(
            c.delivery_count < self.max_delivery_count,
            c.locked_until <= now,
            c.scheduled_enqueue_time <= now,
            c.completed.is_(None),
            c.partition_key.is_(None) if partition_key is None else c.partition_key == partition_key,
        )

    def _eligible_query(self, now: datetime, partition_key: str | None):
        c = messages_table.c
        return (
            select(messages_table)
            .where(self._eligible(now, partition_key))
            .order_by(c.created.asc(), c.id.asc())
        )

    def _lease_until(self, now: datetime) -> datetime:
        if self.lock_duration > timedelta(0):
            return now + self.lock_duration
        return now

    def _lease_values(self, now: datetime, auto_complete: bool) -> dict[str, Any]:
        values: dict[str, Any] = {
            "locked_until": self._lease_until(now),
            "delivery_count": messages_table.c.delivery_count + 1,
        }
        if auto_complete:
            values["completed"] = now
            values.update(self.expiry.arm_expiry())
        return values

    def _insert_for(self, session: AsyncSession) -> tuple[Insert, bool]:
        dialect = session.bind.dialect.name
        if dialect == "postgresql":
            return pg_insert(messages_table), True
        if dialect == "sqlite":
            return sqlite_insert(messages_table), True
        return insert(messages_table), False

    def _to_message(self, row: RowMapping) -> Message[T]:
        return self._message_type.model_validate({field: row[field] for field in MESSAGE_FIELDS})

    def _to_row(self, message: Message[T]) -> dict[str, Any]:
        values = message.model_dump(include=set(MESSAGE_FIELDS))
        values["body"] = message.model_dump(mode="json", include={"body"})["body"]
        return values

    async def _lease(
        self,
        session: AsyncSession,
        messages: Sequence[Message[T]],
        now: datetime,
        auto_complete: bool,
    ) -> None:
        """Lease already-read messages by id and mirror the update locally."""
        values = self._lease_values(now, auto_complete)
        stmt = (
            update(messages_table)
            .where(messages_table.c.id.in_([m.id for m in messages]))
            .values(**values)
        )
        await session.execute(stmt)

        locked_until = values["locked_until"]
        for message in messages:
            message.locked_until = locked_until
            message.delivery_count += 1
            if auto_complete:
                message.completed = now
                message.ttl = values.get("ttl", message.ttl)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, message: Message[T]) -> bool:
        """
        Insert a message.

        Args:
            message: The message to enqueue.

        Returns:
            True if inserted, False if a message with the same id exists.
            The existing message is left untouched.
        """
        with self._tracer.start_as_current_span(SPAN_ENQUEUE) as span:
            set_message_attributes(span, message)

            async with session_scope(self._session_factory) as session:
                stmt, supports_on_conflict = self._insert_for(session)
                stmt = stmt.values(**self._to_row(message))

                if supports_on_conflict:
                    stmt = stmt.on_conflict_do_nothing(
                        index_elements=[messages_table.c.id]
                    ).returning(messages_table.c.id)
                    result = await session.execute(stmt)
                    inserted = result.scalar_one_or_none() is not None
                else:
                    try:
                        async with session.begin_nested():
                            await session.execute(stmt)
                        inserted = True
                    except IntegrityError:
                        # Backends without ON CONFLICT: primary key is the only constraint
                        inserted = False

            if not inserted:
                logger.info(
                    "Duplicate message ignored",
                    extra={"message_id": str(message.id)}
                )
                self._metrics.record_duplicate()
                return False

            logger.debug(
                "Enqueued message",
                extra={
                    "message_id": str(message.id),
                    "partition_key": message.partition_key,
                }
            )
            self._metrics.record_enqueued()
            return True

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def dequeue(
        self,
        partition_key: str | None = None,
        auto_complete: bool = False,
    ) -> Message[T] | None:
        """
        Lease the oldest eligible message in a partition.

        Selecting and leasing happen in one atomic statement (rows already
        locked by a concurrent transaction are skipped where the store
        supports it). No partition lock is taken, so within one process a
        single dequeue is not serialized against a concurrent
        :meth:`dequeue_batch` or :meth:`dequeue_stream` on the same partition:
        it can lease a message those have read but not yet leased, and the
        message is then delivered twice.

        Args:
            partition_key: Partition to dequeue from; None for the unpartitioned lane.
            auto_complete: Also mark the message completed.

        Returns:
            The leased message, or None if nothing is eligible.
        """
        with self._tracer.start_as_current_span(SPAN_DEQUEUE) as span:
            now = utcnow()
            # Aliased so the subquery is not correlated to the UPDATE target
            candidates = messages_table.alias("candidates")
            candidate = (
                select(candidates.c.id)
                .where(self._eligible(now, partition_key, candidates))
                .order_by(candidates.c.created.asc(), candidates.c.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            stmt = (
                update(messages_table)
                .where(messages_table.c.id.in_(candidate))
                .values(**self._lease_values(now, auto_complete))
                .returning(*messages_table.c)
            )

            async with session_scope(self._session_factory) as session:
                result = await session.execute(stmt)
                row = result.mappings().one_or_none()

            if row is None:
                return None

            message = self._to_message(row)
            set_message_attributes(span, message)
            self._metrics.record_dequeued("single")
            return message

    async def dequeue_batch(
        self,
        count: int,
        partition_key: str | None = None,
        auto_complete: bool = False,
    ) -> list[Message[T]]:
        """
        Lease up to ``count`` eligible messages, oldest first.

        Holds the partition lock across the read and the lease update.

        Args:
            count: Maximum number of messages to lease.
            partition_key: Partition to dequeue from; None for the unpartitioned lane.
            auto_complete: Also mark the messages completed.

        Returns:
            The leased messages, possibly empty.
        """
        if count < 1:
            raise ValueError("count must be at least 1")

        with self._tracer.start_as_current_span(SPAN_DEQUEUE_BATCH) as span:
            set_batch_attributes(span, count, partition_key)

            async with self.locks.get(partition_key):
                async with session_scope(self._session_factory) as session:
                    now = utcnow()
                    result = await session.execute(
                        self._eligible_query(now, partition_key).limit(count)
                    )
                    messages = [self._to_message(row) for row in result.mappings().all()]

                    if messages:
                        await self._lease(session, messages, now, auto_complete)

            if messages:
                logger.debug(
                    f"Leased {len(messages)} messages",
                    extra={"partition_key": partition_key, "message_count": len(messages)}
                )
                self._metrics.record_dequeued("batch", len(messages))

            return messages

    async def dequeue_stream(
        self,
        partition_key: str | None = None,
        auto_complete: bool = False,
        page_size: int | None = None,
    ) -> AsyncIterator[Message[T]]:
        """
        Lease and yield eligible messages page by page until none remain.

        The partition lock is held for the lifetime of the iteration and is
        released when it finishes, when the consuming task is cancelled, or
        when the generator is closed. Wrap it in ``contextlib.aclosing`` when
        breaking out early.

        Args:
            partition_key: Partition to dequeue from; None for the unpartitioned lane.
            auto_complete: Also mark the messages completed.
            page_size: Messages read and leased per store round trip.

        Yields:
            Leased messages in ascending creation order.
        """
        page_size = page_size or self.stream_page_size
        c = messages_table.c

        async with self.locks.get(partition_key):
            # Eligibility is pinned to the start of the stream; each page is
            # leased from the time it is read
            started = utcnow()
            last: Message[T] | None = None

            while True:
                with self._tracer.start_as_current_span(SPAN_DEQUEUE_PAGE):
                    query = self._eligible_query(started, partition_key).limit(page_size)
                    if last is not None:
                        query = query.where(
                            or_(
                                c.created > last.created,
                                and_(c.created == last.created, c.id > last.id),
                            )
                        )

                    async with session_scope(self._session_factory) as session:
                        result = await session.execute(query)
                        page = [self._to_message(row) for row in result.mappings().all()]
                        if page:
                            await self._lease(session, page, utcnow(), auto_complete)

                if not page:
                    return

                self._metrics.record_dequeued("stream", len(page))
                last = page[-1]

                for message in page:
                    yield message

    async def peek(self, partition_key: str | None = None) -> Message[T] | None:
        """Return the next eligible message without leasing it."""
        messages = await self.peek_batch(1, partition_key)
        return messages[0] if messages else None

    async def peek_batch(
        self,
        count: int,
        partition_key: str | None = None,
    ) -> list[Message[T]]:
        """
        Return up to ``count`` eligible messages without leasing them.

        Peeked messages stay eligible and are returned again by the next
        dequeue.

        Args:
            count: Maximum number of messages to return.
            partition_key: Partition to read; None for the unpartitioned lane.

        Returns:
            Eligible messages, oldest first.
        """
        if count < 1:
            raise ValueError("count must be at least 1")

        with self._tracer.start_as_current_span(SPAN_PEEK):
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    self._eligible_query(utcnow(), partition_key).limit(count)
                )
                return [self._to_message(row) for row in result.mappings().all()]

    async def complete(self, messages: Message[T] | Iterable[Message[T]]) -> bool:
        """
        Mark one or more messages completed.

        No check is made that the messages are leased; unknown ids are
        ignored.

        Args:
            messages: A message or an iterable of messages.

        Returns:
            True once the store acknowledged the write.
        """
        ids = _message_ids(messages)
        if not ids:
            return True

        with self._tracer.start_as_current_span(SPAN_COMPLETE) as span:
            set_batch_attributes(span, len(ids))

            values = {"completed": utcnow(), **self.expiry.arm_expiry()}
            async with session_scope(self._session_factory) as session:
                await session.execute(
                    update(messages_table)
                    .where(messages_table.c.id.in_(ids))
                    .values(**values)
                )

            self._metrics.record_completed(len(ids))
            return True

    async def fail(self, message: Message[T]) -> bool:
        """
        Return a message to the queue.

        Clears the lease and any completion (undoing auto-complete), and
        applies the message's ``scheduled_enqueue_time`` so callers can back
        off. The delivery count is left as is.

        Args:
            message: The message, carrying the desired scheduled_enqueue_time.

        Returns:
            True once the store acknowledged the write.
        """
        with self._tracer.start_as_current_span(SPAN_FAIL) as span:
            set_message_attributes(span, message)

            values = {
                "locked_until": UNLOCKED,
                "scheduled_enqueue_time": to_naive_utc(message.scheduled_enqueue_time),
                "completed": None,
                **self.expiry.disarm_expiry(),
            }
            async with session_scope(self._session_factory) as session:
                await session.execute(
                    update(messages_table)
                    .where(messages_table.c.id == message.id)
                    .values(**values)
                )

            logger.debug(
                "Failed message",
                extra={
                    "message_id": str(message.id),
                    "delivery_count": message.delivery_count,
                }
            )
            self._metrics.record_failed()
            return True

    async def delete(self, messages: Message[T] | Iterable[Message[T]]) -> bool:
        """
        Remove one or more messages regardless of state.

        Args:
            messages: A message or an iterable of messages.

        Returns:
            True once the store acknowledged the write.
        """
        ids = _message_ids(messages)
        if not ids:
            return True

        with self._tracer.start_as_current_span(SPAN_DELETE):
            async with session_scope(self._session_factory) as session:
                await session.execute(
                    delete(messages_table).where(messages_table.c.id.in_(ids))
                )

            self._metrics.record_deleted(len(ids))
            return True

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get(self, message_id: UUID) -> Message[T] | None:
        """Load a message by id regardless of state."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(messages_table).where(messages_table.c.id == message_id)
            )
            row = result.mappings().one_or_none()
        return None if row is None else self._to_message(row)

    async def get_queue_depth(self, partition_key: str | None = None) -> int:
        """Number of messages currently eligible for delivery in a partition."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(func.count())
                .select_from(messages_table)
                .where(self._eligible(utcnow(), partition_key))
            )
            return result.scalar() or 0

    async def find_poisoned(
        self,
        count: int = 100,
        partition_key: str | None = None,
    ) -> list[Message[T]]:
        """
        List outstanding messages that can no longer be delivered.

        Relocating them (dead-lettering) is up to the caller.

        Args:
            count: Maximum number of messages to return.
            partition_key: Partition to inspect; None for the unpartitioned lane.

        Returns:
            Poisoned messages, oldest first.
        """
        c = messages_table.c
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(messages_table)
                .where(
                    c.delivery_count >= self.max_delivery_count,
                    c.completed.is_(None),
                    c.partition_key.is_(None) if partition_key is None else c.partition_key == partition_key,
                )
                .order_by(c.created.asc(), c.id.asc())
                .limit(count)
            )
            return [self._to_message(row) for row in result.mappings().all()]
