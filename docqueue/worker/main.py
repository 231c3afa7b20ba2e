"""
Worker process for consuming messages.

The worker leases messages from the queue, hands each to a handler, and
completes or fails it depending on the outcome. Handlers must be
idempotent: delivery is at-least-once.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from docqueue.config import get_settings
from docqueue.constants import SPAN_HANDLE_MESSAGE
from docqueue.db import close_db, get_engine, init_db
from docqueue.observability.logging import bind_message_context, clear_context, setup_logging
from docqueue.observability.metrics import get_metrics, serve_metrics
from docqueue.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    set_message_attributes,
    setup_tracing,
)
from docqueue.queue.engine import MessageQueue
from docqueue.types.message import Message, utcnow
from docqueue.worker.handlers import MessageHandler, resolve_handler

logger = logging.getLogger(__name__)

# Upper bound for the retry backoff
MAX_BACKOFF_SECONDS = 300.0

PoisonedCallback = Callable[[Message[Any]], Awaitable[None]]


class Worker:
    """
    Message worker that polls the queue and runs a handler per message.

    Features:
    - Single atomic dequeue, or partition-locked batches when batch_size > 1
    - Concurrent handling of a leased batch
    - Exponential backoff through scheduled_enqueue_time on failure
    - Poisoned messages reported to an optional callback (dead-lettering)
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        queue: MessageQueue,
        handler: MessageHandler,
        partition_key: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        retry_backoff_seconds: float | None = None,
        on_poisoned: PoisonedCallback | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The queue to consume.
            handler: Coroutine called with each leased message; raising fails it.
            partition_key: Partition to consume; None for the unpartitioned lane.
            batch_size: Number of messages to lease per poll.
            poll_interval: Seconds between polls when the queue is empty.
            retry_backoff_seconds: Base delay before a failed message is redelivered.
            on_poisoned: Called with messages that used their last delivery.
        """
        settings = get_settings()

        self.queue = queue
        self.handler = handler
        self.partition_key = partition_key
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        self.retry_backoff = (
            retry_backoff_seconds
            if retry_backoff_seconds is not None
            else settings.worker_retry_backoff_seconds
        )
        self.on_poisoned = on_poisoned

        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the worker."""
        logger.info(
            "Worker starting",
            extra={"partition_key": self.partition_key, "batch_size": self.batch_size}
        )

        self._running = True

        while self._running:
            try:
                processed = await self.run_once()

                # If nothing was processed, wait before polling again
                if processed == 0:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(f"Error in worker loop: {e}")
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped")

    async def stop(self) -> None:
        """Stop the worker after the current poll."""
        logger.info("Worker stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Lease one batch and handle it.

        Returns:
            Number of messages handled.
        """
        if self.batch_size == 1:
            message = await self.queue.dequeue(self.partition_key)
            messages = [message] if message is not None else []
        else:
            messages = await self.queue.dequeue_batch(self.batch_size, self.partition_key)

        if not messages:
            return 0

        await asyncio.gather(*(self._handle(message) for message in messages))
        return len(messages)

    async def drain(self) -> int:
        """
        Handle messages until none are eligible.

        Returns:
            Total number of messages handled.
        """
        total = 0
        while processed := await self.run_once():
            total += processed
        return total

    def backoff_for(self, delivery_count: int) -> timedelta:
        """Delay before redelivery after the given number of deliveries."""
        if self.retry_backoff <= 0:
            return timedelta(0)
        seconds = self.retry_backoff * 2 ** max(delivery_count - 1, 0)
        return timedelta(seconds=min(seconds, MAX_BACKOFF_SECONDS))

    async def _handle(self, message: Message[Any]) -> None:
        start_time = time.monotonic()
        bind_message_context(message.id, message.partition_key, delivery_count=message.delivery_count)

        try:
            with get_tracer().start_as_current_span(SPAN_HANDLE_MESSAGE) as span:
                set_message_attributes(span, message)

                await self.handler(message)

        except Exception as e:
            logger.warning(
                "Message handler failed",
                extra={"message_id": str(message.id), "error": str(e)}
            )
            self._metrics.record_handler("failed", time.monotonic() - start_time)
            await self._fail(message)
            return

        finally:
            clear_context()

        await self.queue.complete(message)
        self._metrics.record_handler("succeeded", time.monotonic() - start_time)

    async def _fail(self, message: Message[Any]) -> None:
        message.scheduled_enqueue_time = utcnow() + self.backoff_for(message.delivery_count)
        await self.queue.fail(message)

        if message.is_poisoned(self.queue.max_delivery_count):
            logger.warning(
                f"Message poisoned after {message.delivery_count} deliveries",
                extra={"message_id": str(message.id)}
            )
            self._metrics.record_poisoned()
            if self.on_poisoned is not None:
                await self.on_poisoned(message)


async def run_async(handler_path: str | None = None) -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    if settings.otel_enabled:
        setup_tracing()
        instrument_sqlalchemy(get_engine())
    if settings.metrics_port:
        serve_metrics(settings.metrics_port)

    session_factory = await init_db()

    queue = MessageQueue.from_settings(session_factory, settings=settings)
    worker = Worker(queue, resolve_handler(handler_path or settings.worker_handler))

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await queue.ensure_indexes()
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
