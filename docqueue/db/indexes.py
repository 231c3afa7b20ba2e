"""
Runtime index provisioning for the messages table.
"""

import logging
from collections.abc import Sequence

from sqlalchemy import Column, Connection, Index, MetaData, Table, inspect
from sqlalchemy.ext.asyncio import AsyncSession

from docqueue.constants import MESSAGES_TABLE

logger = logging.getLogger(__name__)


def build_index(name: str, columns: Sequence[str]) -> Index:
    """
    Build an ascending index over columns of the messages table.

    The index is bound to a detached table definition so that creating it
    never adds duplicate indexes to the ORM metadata.

    Args:
        name: Index name, used for the existence check.
        columns: Column names in index order.

    Returns:
        An unattached Index ready for ``Index.create``.
    """
    table = Table(MESSAGES_TABLE, MetaData(), *(Column(column) for column in columns))
    return Index(name, *(table.c[column] for column in columns))


def list_index_names(sync_conn: Connection) -> set[str]:
    """Names of the indexes currently defined on the messages table."""
    return {
        index["name"]
        for index in inspect(sync_conn).get_indexes(MESSAGES_TABLE)
        if index.get("name")
    }


async def ensure_index(session: AsyncSession, index: Index) -> bool:
    """
    Create an index unless one with the same name already exists.

    Args:
        session: Session whose connection runs the DDL.
        index: The index to provision.

    Returns:
        True if the index was created, False if it already existed.
    """

    def _ensure(sync_conn: Connection) -> bool:
        if index.name in list_index_names(sync_conn):
            return False
        index.create(sync_conn)
        return True

    conn = await session.connection()
    created = await conn.run_sync(_ensure)

    if created:
        logger.info("Created index", extra={"index": index.name})

    return created
