"""
Message handler type and lookup.

Handlers must be idempotent - they may be called more than once for the
same message when a lease expires or a worker crashes.
"""

import importlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from docqueue.types.message import Message

logger = logging.getLogger(__name__)

# Type alias for message handler functions
MessageHandler = Callable[[Message[Any]], Awaitable[None]]


def resolve_handler(path: str) -> MessageHandler:
    """
    Import a handler from a ``module:attribute`` path.

    Args:
        path: Dotted module path and attribute name separated by a colon.

    Returns:
        The handler coroutine function.

    Raises:
        ValueError: If the path is malformed or does not name a callable.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Handler path must look like 'module:function', got {path!r}")

    handler = getattr(importlib.import_module(module_name), attr, None)
    if not callable(handler):
        raise ValueError(f"{path!r} is not a callable handler")

    logger.info(f"Using handler {path}")
    return handler


async def log_message(message: Message[Any]) -> None:
    """Default handler: log the message and succeed."""
    logger.info(
        "Received message",
        extra={
            "message_id": str(message.id),
            "partition_key": message.partition_key,
            "delivery_count": message.delivery_count,
        }
    )
