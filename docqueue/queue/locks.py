"""
Partition lock registry.

Serializes batch and stream dequeues that target the same partition key
within one process, so the read of candidates and the lease update are not
interleaved with another local dequeue racing for the same rows. It gives no
protection across processes.
"""

import asyncio
from collections.abc import Iterator

from docqueue.constants import DEFAULT_PARTITION


class PartitionLockRegistry:
    """
    Map of partition key to lock, created on first use and never removed.

    The unpartitioned lane (``None``) shares the key ``""``.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def key_for(partition_key: str | None) -> str:
        """Registry key for a partition key."""
        return DEFAULT_PARTITION if partition_key is None else partition_key

    def get(self, partition_key: str | None) -> asyncio.Lock:
        """
        Get the lock for a partition, creating it if needed.

        Args:
            partition_key: The partition key, or None for the unpartitioned lane.

        Returns:
            The lock shared by every caller of this registry for that key.
        """
        # No await between lookup and insert, so this is atomic on the event loop
        return self._locks.setdefault(self.key_for(partition_key), asyncio.Lock())

    def is_locked(self, partition_key: str | None) -> bool:
        """Check if the partition lock is currently held."""
        lock = self._locks.get(self.key_for(partition_key))
        return lock is not None and lock.locked()

    def __contains__(self, partition_key: str | None) -> bool:
        return self.key_for(partition_key) in self._locks

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._locks))

    def __len__(self) -> int:
        return len(self._locks)
