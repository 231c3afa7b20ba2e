"""
Queue module.
Contains the queue engine, partition locks, and expiry strategies.
"""

from docqueue.queue.engine import MessageQueue
from docqueue.queue.expiry import (
    CompletedFieldExpiry,
    ExpiryStrategy,
    NoExpiry,
    StoreTimestampExpiry,
    build_expiry_strategy,
)
from docqueue.queue.locks import PartitionLockRegistry

__all__ = [
    "MessageQueue",
    "PartitionLockRegistry",
    "ExpiryStrategy",
    "NoExpiry",
    "CompletedFieldExpiry",
    "StoreTimestampExpiry",
    "build_expiry_strategy",
]
