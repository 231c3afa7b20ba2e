"""
docqueue

A message queue on top of a document table: visibility-timeout leasing,
poison detection, scheduled delivery, partitioned ordering, deduplication,
and optional expiry of completed messages, without a broker process.
"""

__version__ = "1.0.0"

from docqueue.queue import MessageQueue, PartitionLockRegistry  # noqa: E402
from docqueue.types import Message  # noqa: E402

__all__ = [
    "Message",
    "MessageQueue",
    "PartitionLockRegistry",
    "__version__",
]
