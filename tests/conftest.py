"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from docqueue.db.connection import create_session_factory, create_tables, get_test_engine
from docqueue.db.models import Base, messages_table
from docqueue.queue.engine import MESSAGE_FIELDS, MessageQueue
from docqueue.types.message import Message

# Set to a postgresql+asyncpg URL to run against PostgreSQL;
# otherwise each test gets its own SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class SampleData(BaseModel):
    """Payload used throughout the tests."""

    data: str


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'docqueue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with a fresh messages table."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory for the test engine."""
    return create_session_factory(async_engine)


@pytest.fixture
def make_queue(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[MessageQueue[SampleData]]]:
    """Factory for queues over the test database, with indexes provisioned."""

    async def _make(
        max_delivery_count: int = 1,
        lock_duration: timedelta = timedelta(seconds=1),
        expire_after: timedelta | None = timedelta(seconds=10),
        cosmos_db_compatibility: bool = False,
        **kwargs: Any,
    ) -> MessageQueue[SampleData]:
        return await MessageQueue.create(
            session_factory,
            SampleData,
            max_delivery_count=max_delivery_count,
            lock_duration=lock_duration,
            expire_after=expire_after,
            cosmos_db_compatibility=cosmos_db_compatibility,
            **kwargs,
        )

    return _make


@pytest.fixture
def read_all_messages(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], Awaitable[list[Message[SampleData]]]]:
    """Read every stored message straight from the table, oldest first."""

    async def _read() -> list[Message[SampleData]]:
        async with session_factory() as session:
            result = await session.execute(
                select(messages_table).order_by(messages_table.c.created.asc())
            )
            return [
                Message[SampleData].model_validate({field: row[field] for field in MESSAGE_FIELDS})
                for row in result.mappings().all()
            ]

    return _read


def new_message(data: str | None = None, **kwargs: Any) -> Message[SampleData]:
    """Build a message with a unique payload."""
    return Message[SampleData](body=SampleData(data=data or uuid4().hex), **kwargs)
