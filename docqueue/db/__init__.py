"""
Database module.
Contains database connection, the messages table, and index provisioning.
"""

from docqueue.db.connection import (
    close_db,
    create_session_factory,
    create_tables,
    get_engine,
    init_db,
    session_scope,
)
from docqueue.db.indexes import build_index, ensure_index
from docqueue.db.models import Base, MessageRecord, messages_table

__all__ = [
    "get_engine",
    "init_db",
    "close_db",
    "create_session_factory",
    "create_tables",
    "session_scope",
    "build_index",
    "ensure_index",
    "Base",
    "MessageRecord",
    "messages_table",
]
