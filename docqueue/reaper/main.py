"""
Expiry reaper for removing completed messages.

Stores with a native TTL sweep remove expired documents on their own. The
messages table has none, so the reaper plays that role: it runs
periodically and deletes the documents the queue's expiry strategy reports
as due, whether that is ``completed + expire_after`` or ``ts`` with an
armed ``ttl``.
"""

import asyncio
import logging
import signal
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docqueue.config import get_settings
from docqueue.constants import SPAN_SWEEP_EXPIRED
from docqueue.db import close_db, get_engine, init_db, session_scope
from docqueue.db.models import messages_table
from docqueue.observability.logging import setup_logging
from docqueue.observability.metrics import get_metrics, serve_metrics
from docqueue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from docqueue.queue.engine import MessageQueue
from docqueue.queue.expiry import ExpiryStrategy
from docqueue.types.message import utcnow

logger = logging.getLogger(__name__)


class Reaper:
    """
    Expiry sweep for completed messages.

    Runs periodically to:
    1. Build the expired filter from the expiry strategy
    2. Delete matching messages
    3. Record metrics for monitoring
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        expiry: ExpiryStrategy,
        interval_seconds: float | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            session_factory: Factory for sessions on the backing store.
            expiry: The expiry strategy of the queue being swept.
            interval_seconds: Seconds between sweeps.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._session_factory = session_factory
        self._expiry = expiry
        self._running = False
        self._metrics = get_metrics()

    @classmethod
    def for_queue(
        cls,
        queue: MessageQueue,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float | None = None,
    ) -> "Reaper":
        """Build a reaper that sweeps with the queue's expiry strategy."""
        return cls(session_factory, queue.expiry, interval_seconds)

    async def start(self) -> None:
        """Start the reaper loop."""
        if self._expiry.expire_after is None:
            logger.info("Expiry disabled, reaper has nothing to do")
            return

        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self, now: datetime | None = None) -> int:
        """
        Delete expired messages once (for testing or cron-style execution).

        Args:
            now: Reference time; the current time by default.

        Returns:
            Number of messages removed.
        """
        clause = self._expiry.expired_clause(now or utcnow())
        if clause is None:
            return 0

        with get_tracer().start_as_current_span(SPAN_SWEEP_EXPIRED):
            async with session_scope(self._session_factory) as session:
                result = await session.execute(delete(messages_table).where(clause))
                count = result.rowcount or 0

        if count > 0:
            logger.info(f"Removed {count} expired messages")
            self._metrics.record_expired(count)

        return count


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging()
    if settings.otel_enabled:
        setup_tracing()
        instrument_sqlalchemy(get_engine())
    if settings.metrics_port:
        serve_metrics(settings.metrics_port)

    session_factory = await init_db()

    queue = MessageQueue.from_settings(session_factory, settings=settings)
    reaper = Reaper.for_queue(queue, session_factory)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await queue.ensure_indexes()
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
